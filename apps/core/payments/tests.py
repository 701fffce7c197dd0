import json
import time
from datetime import date
from decimal import Decimal
from unittest import mock

import requests
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.exceptions import ValidationError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from apps.core.fees.exceptions import BillingConflict
from apps.core.fees.models import LedgerPayment, LedgerRecord, MonthCharge
from apps.core.fees.services import record_monthly_payment
from apps.core.students.models import Family, Student
from apps.operations.communication.models import NotificationLog

from .client import PaymentProcessorClient, ProcessorError, ProcessorResourceMissing
from .models import DirectDebitMandate
from .services import charge_direct_debit, start_mandate_setup
from .signatures import SignatureVerificationError, compute_signature, verify_signature
from .webhooks import handle_event

WEBHOOK_SECRET = 'whsec_test'


class FakeProcessorClient:
    def __init__(self, mandate_status='active', fail_confirm=False, known_customers=()):
        self.mandate_status = mandate_status
        self.fail_confirm = fail_confirm
        self.known_customers = set(known_customers)
        self.calls = []
        self.idempotency_keys = []

    def ensure_customer(self, *, customer_id, email, name, metadata=None):
        self.calls.append(('ensure_customer', customer_id))
        if customer_id in self.known_customers:
            return {'id': customer_id}
        return {'id': 'cus_new'}

    def create_setup_session(self, *, customer_id, success_url, cancel_url, metadata=None):
        self.calls.append(('create_setup_session', customer_id, metadata))
        return {'id': 'cs_1', 'url': 'https://processor.test/setup/cs_1'}

    def retrieve_mandate(self, mandate_id):
        self.calls.append(('retrieve_mandate', mandate_id))
        return {'id': mandate_id, 'status': self.mandate_status}

    def create_payment_intent(self, **kwargs):
        self.calls.append(('create_payment_intent', kwargs['amount_minor']))
        self.idempotency_keys.append(kwargs.get('idempotency_key'))
        return {'id': 'pi_dd_1', 'status': 'requires_confirmation'}

    def confirm_payment_intent(self, payment_intent_id):
        self.calls.append(('confirm_payment_intent', payment_intent_id))
        if self.fail_confirm:
            raise ProcessorError('Processor error 402: insufficient funds')
        return {'id': payment_intent_id, 'status': 'processing'}

    def cancel_payment_intent(self, payment_intent_id):
        self.calls.append(('cancel_payment_intent', payment_intent_id))
        return {'id': payment_intent_id, 'status': 'canceled'}


def fake_response(status_code, body):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = body
    response.text = json.dumps(body)
    return response


class SignatureTests(SimpleTestCase):
    def setUp(self):
        self.payload = b'{"id": "evt_1"}'
        self.timestamp = 1760000000

    def header(self, secret=WEBHOOK_SECRET, timestamp=None):
        timestamp = timestamp or self.timestamp
        return f"t={timestamp},v1={compute_signature(self.payload, secret, timestamp)}"

    def test_valid_signature(self):
        self.assertEqual(
            verify_signature(self.payload, self.header(), WEBHOOK_SECRET, now=self.timestamp + 10),
            self.timestamp,
        )

    def test_wrong_secret_is_rejected(self):
        with self.assertRaises(SignatureVerificationError):
            verify_signature(self.payload, self.header(secret='other'), WEBHOOK_SECRET, now=self.timestamp)

    def test_stale_timestamp_is_rejected(self):
        with self.assertRaises(SignatureVerificationError):
            verify_signature(self.payload, self.header(), WEBHOOK_SECRET, now=self.timestamp + 301)

    def test_malformed_header_is_rejected(self):
        for header in ('', 'v1=abc', 't=notanumber,v1=abc', f"t={self.timestamp}"):
            with self.subTest(header=header):
                with self.assertRaises(SignatureVerificationError):
                    verify_signature(self.payload, header, WEBHOOK_SECRET, now=self.timestamp)


class ProcessorClientTests(SimpleTestCase):
    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.client = PaymentProcessorClient('sk_test', api_base='https://processor.test/v1', session=self.session)

    def test_missing_api_key(self):
        with self.assertRaises(ProcessorError):
            PaymentProcessorClient('')

    def test_ensure_customer_recreates_missing_customer(self):
        self.session.request.side_effect = [
            fake_response(404, {'error': {'message': 'No such customer'}}),
            fake_response(200, {'id': 'cus_new'}),
        ]

        customer = self.client.ensure_customer(customer_id='cus_gone', email='a@example.com', name='A')

        self.assertEqual(customer['id'], 'cus_new')
        method, url = self.session.request.call_args_list[1][0]
        self.assertEqual((method, url), ('POST', 'https://processor.test/v1/customers'))

    def test_deleted_customer_counts_as_missing(self):
        self.session.request.return_value = fake_response(200, {'id': 'cus_1', 'deleted': True})
        with self.assertRaises(ProcessorResourceMissing):
            self.client.retrieve_customer('cus_1')

    def test_network_error_becomes_processor_error(self):
        self.session.request.side_effect = requests.Timeout('timed out')
        with self.assertRaises(ProcessorError):
            self.client.retrieve_mandate('mandate_1')

    def test_payment_intent_is_created_unconfirmed_with_bounded_timeout(self):
        self.session.request.return_value = fake_response(200, {'id': 'pi_1'})

        self.client.create_payment_intent(
            amount_minor=5000,
            currency='gbp',
            customer_id='cus_1',
            payment_method_id='pm_1',
            mandate_id='mandate_1',
            metadata={'family_id': '7'},
            idempotency_key='dd-7-abc',
        )

        kwargs = self.session.request.call_args[1]
        self.assertEqual(kwargs['timeout'], 15)
        self.assertEqual(kwargs['headers'], {'Idempotency-Key': 'dd-7-abc'})
        self.assertEqual(kwargs['data']['confirm'], 'false')
        self.assertEqual(kwargs['data']['metadata[family_id]'], '7')
        self.assertEqual(kwargs['data']['payment_method_types[0]'], 'bacs_debit')


class PaymentsBaseTestCase(TestCase):
    def setUp(self):
        self.family = Family.objects.create(name='Okafor', email='okafor@example.com')
        self.student = Student.objects.create(
            family=self.family,
            name='Tobi',
            monthly_fee=Decimal('50.00'),
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_ENROLLED,
        )

    def active_mandate(self):
        return DirectDebitMandate.objects.create(
            family=self.family,
            processor_customer_id='cus_1',
            processor_mandate_id='mandate_1',
            processor_payment_method_id='pm_1',
            status=DirectDebitMandate.STATUS_ACTIVE,
            mandate_status='active',
        )

    def allocations(self, *months):
        return [
            {'student': self.student.pk, 'year': year, 'month': month, 'amount': '50'}
            for year, month in months
        ]


class MandateEventTests(PaymentsBaseTestCase):
    def setup_event(self, event_id='evt_setup', mandate_id='mandate_1'):
        return {
            'id': event_id,
            'type': 'setup_intent.succeeded',
            'data': {'object': {
                'id': 'seti_1',
                'customer': 'cus_1',
                'mandate': mandate_id,
                'payment_method': 'pm_1',
                'metadata': {'family_id': str(self.family.pk), 'preferred_payment_date': '5'},
            }},
        }

    def mandate_event(self, status, event_id='evt_mandate'):
        return {
            'id': event_id,
            'type': 'mandate.updated',
            'data': {'object': {'id': 'mandate_1', 'status': status}},
        }

    def test_setup_creates_pending_mandate_and_emails_once(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(handle_event(self.setup_event()), 'mandate_pending')
        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(handle_event(self.setup_event(event_id='evt_setup_retry')), 'unchanged')

        mandate = DirectDebitMandate.objects.get(family=self.family)
        self.assertEqual(mandate.status, DirectDebitMandate.STATUS_PENDING)
        self.assertEqual(mandate.preferred_payment_date, 5)
        self.assertEqual(len(mail.outbox), 1)

    def test_activation_sends_single_success_email(self):
        handle_event(self.setup_event())
        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(handle_event(self.mandate_event('active')), 'mandate_active')
        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(handle_event(self.mandate_event('active', event_id='evt_again')), 'unchanged')

        mandate = DirectDebitMandate.objects.get(family=self.family)
        self.assertTrue(mandate.is_active)
        self.assertIsNotNone(mandate.success_email_sent_at)
        self.assertEqual(
            NotificationLog.objects.filter(kind=NotificationLog.KIND_MANDATE_ACTIVE).count(),
            1,
        )

    def test_setup_event_ignored_for_active_mandate(self):
        self.active_mandate()
        self.assertEqual(handle_event(self.setup_event(mandate_id='mandate_2')), 'ignored')
        self.assertEqual(DirectDebitMandate.objects.get(family=self.family).processor_mandate_id, 'mandate_1')

    def test_revoked_mandate_is_cancelled(self):
        self.active_mandate()
        with self.captureOnCommitCallbacks(execute=True):
            self.assertEqual(handle_event(self.mandate_event('inactive')), 'mandate_cancelled')
        self.assertEqual(handle_event(self.mandate_event('inactive', event_id='evt_2')), 'unchanged')

        mandate = DirectDebitMandate.objects.get(family=self.family)
        self.assertEqual(mandate.status, DirectDebitMandate.STATUS_CANCELLED)
        self.assertEqual(mail.outbox[0].to, ['okafor@example.com'])

    def test_unknown_event_type_is_ignored(self):
        self.assertEqual(handle_event({'id': 'evt_x', 'type': 'invoice.created'}), 'ignored')


class DirectDebitChargeTests(PaymentsBaseTestCase):
    def test_charge_records_awaiting_payment_then_confirms(self):
        self.active_mandate()
        client = FakeProcessorClient()

        result = charge_direct_debit(
            family=self.family,
            allocations=self.allocations((2025, 9), (2025, 10)),
            client=client,
        )

        self.assertEqual(result['payment_intent_id'], 'pi_dd_1')
        self.assertEqual(len(result['records']), 2)
        self.assertTrue(all(record.status == LedgerRecord.STATUS_PENDING for record in result['records']))
        self.assertIn(('create_payment_intent', 10000), client.calls)
        self.assertEqual(client.calls[-1], ('confirm_payment_intent', 'pi_dd_1'))
        self.assertEqual(
            set(LedgerPayment.objects.values_list('confirmation', flat=True)),
            {LedgerPayment.CONFIRMATION_AWAITING_PROCESSOR},
        )

    def test_charge_requires_active_mandate(self):
        with self.assertRaises(ValidationError):
            charge_direct_debit(family=self.family, allocations=self.allocations((2025, 9)), client=FakeProcessorClient())

    def test_charge_rejected_when_processor_mandate_inactive(self):
        self.active_mandate()
        client = FakeProcessorClient(mandate_status='inactive')
        with self.assertRaises(ValidationError):
            charge_direct_debit(family=self.family, allocations=self.allocations((2025, 9)), client=client)
        self.assertFalse(LedgerRecord.objects.exists())

    def test_failed_confirmation_marks_records_failed(self):
        self.active_mandate()
        with self.assertRaises(ProcessorError):
            charge_direct_debit(
                family=self.family,
                allocations=self.allocations((2025, 9)),
                client=FakeProcessorClient(fail_confirm=True),
            )

        record = LedgerRecord.objects.get()
        self.assertEqual(record.status, LedgerRecord.STATUS_FAILED)
        self.assertFalse(MonthCharge.objects.filter(is_void=False).exists())

    def test_intent_idempotency_key_changes_only_with_a_new_attempt(self):
        self.active_mandate()
        client = FakeProcessorClient(fail_confirm=True)
        allocations = self.allocations((2025, 9))

        with self.assertRaises(ProcessorError):
            charge_direct_debit(family=self.family, allocations=allocations, client=client)
        with self.assertRaises(ProcessorError):
            charge_direct_debit(family=self.family, allocations=allocations, client=client)

        first, second = client.idempotency_keys
        self.assertTrue(first.startswith(f"dd-{self.family.pk}-"))
        self.assertNotEqual(first, second)

    def test_recording_failure_cancels_intent(self):
        self.active_mandate()
        record_monthly_payment(
            family=self.family,
            allocations=self.allocations((2025, 9)),
            method=LedgerPayment.METHOD_CASH,
        )
        client = FakeProcessorClient()
        with self.assertRaises(BillingConflict):
            charge_direct_debit(family=self.family, allocations=self.allocations((2025, 9)), client=client)
        self.assertIn(('cancel_payment_intent', 'pi_dd_1'), client.calls)

    def test_mandate_setup_reuses_known_customer(self):
        DirectDebitMandate.objects.create(family=self.family, processor_customer_id='cus_1')
        client = FakeProcessorClient(known_customers={'cus_1'})

        session = start_mandate_setup(
            family=self.family,
            success_url='https://portal.test/ok',
            cancel_url='https://portal.test/cancel',
            preferred_payment_date='12',
            client=client,
        )

        self.assertEqual(session, {'customer_id': 'cus_1', 'session_id': 'cs_1', 'url': 'https://processor.test/setup/cs_1'})
        self.assertEqual(client.calls[1][2]['preferred_payment_date'], '12')

    def test_mandate_setup_rejects_bad_payment_day(self):
        with self.assertRaises(ValidationError):
            start_mandate_setup(
                family=self.family,
                success_url='https://portal.test/ok',
                cancel_url='https://portal.test/cancel',
                preferred_payment_date=31,
                client=FakeProcessorClient(),
            )


@override_settings(PAYMENT_PROCESSOR_WEBHOOK_SECRET=WEBHOOK_SECRET)
class WebhookViewTests(PaymentsBaseTestCase):
    def setUp(self):
        super().setUp()
        self.active_mandate()
        charge_direct_debit(
            family=self.family,
            allocations=self.allocations((2025, 9)),
            client=FakeProcessorClient(),
        )

    def post_event(self, event, secret=WEBHOOK_SECRET):
        payload = json.dumps(event).encode()
        timestamp = int(time.time())
        header = f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"
        return self.client.post(
            reverse('payment_processor_webhook'),
            data=payload,
            content_type='application/json',
            HTTP_STRIPE_SIGNATURE=header,
        )

    def intent_event(self, event_type, event_id='evt_pi'):
        return {'id': event_id, 'type': event_type, 'data': {'object': {'id': 'pi_dd_1'}}}

    def test_bad_signature_is_rejected(self):
        response = self.post_event(self.intent_event('payment_intent.succeeded'), secret='wrong')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(LedgerRecord.objects.get().status, LedgerRecord.STATUS_PENDING)

    def test_success_settles_record_and_replay_is_harmless(self):
        with self.captureOnCommitCallbacks(execute=True):
            response = self.post_event(self.intent_event('payment_intent.succeeded'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'record_paid')

        with self.captureOnCommitCallbacks(execute=True):
            replay = self.post_event(self.intent_event('payment_intent.succeeded', event_id='evt_pi_retry'))
        self.assertEqual(replay.json()['outcome'], 'unchanged')

        record = LedgerRecord.objects.get()
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(
            set(LedgerPayment.objects.values_list('confirmation', flat=True)),
            {LedgerPayment.CONFIRMATION_CONFIRMED},
        )

    def test_failure_after_success_is_ignored(self):
        self.post_event(self.intent_event('payment_intent.succeeded'))
        response = self.post_event(self.intent_event('payment_intent.payment_failed', event_id='evt_late'))
        self.assertEqual(response.json()['outcome'], 'unchanged')
        self.assertEqual(LedgerRecord.objects.get().status, LedgerRecord.STATUS_PAID)

    def test_charge_failure_uses_payment_intent_reference(self):
        event = {
            'id': 'evt_charge',
            'type': 'charge.failed',
            'data': {'object': {'id': 'ch_1', 'payment_intent': 'pi_dd_1', 'failure_message': 'account closed'}},
        }
        response = self.post_event(event)
        self.assertEqual(response.json()['outcome'], 'record_failed')

    def test_unknown_intent_acknowledged(self):
        event = {'id': 'evt_other', 'type': 'payment_intent.succeeded', 'data': {'object': {'id': 'pi_unknown'}}}
        response = self.post_event(event)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['outcome'], 'ignored')

    def test_handler_error_returns_500(self):
        with mock.patch('apps.core.payments.views.handle_event', side_effect=RuntimeError('boom')):
            response = self.post_event(self.intent_event('payment_intent.succeeded'))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error']['code'], 'INTERNAL_ERROR')


class DirectDebitViewTests(PaymentsBaseTestCase):
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        user_model.objects.create_user(username='dd_accountant', password='pass12345', role='accountant')
        user_model.objects.create_user(
            username='dd_parent',
            password='pass12345',
            role='parent',
            family=self.family,
        )

    def post_json(self, url, body):
        return self.client.post(url, data=json.dumps(body), content_type='application/json')

    def test_parent_cannot_start_charge(self):
        self.client.login(username='dd_parent', password='pass12345')
        response = self.post_json(reverse('direct_debit_charge'), {'family': self.family.pk, 'allocations': []})
        self.assertEqual(response.status_code, 403)

    def test_accountant_starts_charge(self):
        self.active_mandate()
        self.client.login(username='dd_accountant', password='pass12345')
        with mock.patch(
            'apps.core.payments.services.PaymentProcessorClient.from_settings',
            return_value=FakeProcessorClient(),
        ):
            response = self.post_json(reverse('direct_debit_charge'), {
                'family': self.family.pk,
                'allocations': self.allocations((2025, 9)),
            })

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()['payment_intent_id'], 'pi_dd_1')
        self.assertEqual(response.json()['records'][0]['status'], 'pending')

    def test_parent_starts_setup_for_own_family(self):
        self.client.login(username='dd_parent', password='pass12345')
        with mock.patch(
            'apps.core.payments.services.PaymentProcessorClient.from_settings',
            return_value=FakeProcessorClient(),
        ):
            response = self.post_json(reverse('direct_debit_setup'), {'preferred_payment_date': 3})

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['url'], 'https://processor.test/setup/cs_1')

    def test_processor_outage_maps_to_502(self):
        self.active_mandate()
        self.client.login(username='dd_accountant', password='pass12345')
        client = FakeProcessorClient()
        client.retrieve_mandate = mock.Mock(side_effect=ProcessorError('Network error contacting payment processor'))
        with mock.patch('apps.core.payments.services.PaymentProcessorClient.from_settings', return_value=client):
            response = self.post_json(reverse('direct_debit_charge'), {
                'family': self.family.pk,
                'allocations': self.allocations((2025, 9)),
            })

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()['error']['code'], 'EXTERNAL_DEPENDENCY_ERROR')
