import json
from datetime import date
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from django.urls import reverse

from apps.core.students.models import Family, Student
from apps.operations.communication.models import NotificationLog

from .calculator import billable_months, discounted_fee, to_minor_units
from .exceptions import BillingConflict, LedgerNotFound
from .models import LedgerPayment, LedgerRecord, MonthCharge, PaymentAllocation
from .outstanding import unpaid_months
from .reminders import send_fee_reminders
from .services import (
    apply_processor_outcome,
    cancel_record,
    record_admission_payment,
    record_monthly_payment,
    record_payment,
    top_up_payment,
    verify_on_hold_record,
)


class CalculatorTests(SimpleTestCase):
    def test_discounted_fee_rounds_half_up_to_two_places(self):
        self.assertEqual(discounted_fee(100, 10), Decimal('90.00'))
        self.assertEqual(discounted_fee(50, 0), Decimal('50.00'))
        self.assertEqual(discounted_fee(Decimal('33.33'), 15), Decimal('28.33'))

    def test_discount_outside_range_is_rejected(self):
        with self.assertRaises(ValidationError):
            discounted_fee(50, 101)
        with self.assertRaises(ValidationError):
            discounted_fee(50, -1)

    def test_pre_cutover_join_bills_from_cutover(self):
        months = billable_months(date(2024, 3, 15), date(2025, 11, 2), cutover_date=date(2025, 9, 1))
        self.assertEqual(months, [(2025, 9), (2025, 10), (2025, 11)])

    def test_join_mid_month_includes_that_month(self):
        months = billable_months(date(2025, 10, 20), date(2025, 12, 1), cutover_date=date(2025, 9, 1))
        self.assertEqual(months, [(2025, 10), (2025, 11), (2025, 12)])

    def test_future_join_or_pre_cutover_as_of_is_empty(self):
        self.assertEqual(billable_months(date(2026, 1, 5), date(2025, 12, 31), cutover_date=date(2025, 9, 1)), [])
        self.assertEqual(billable_months(date(2025, 1, 5), date(2025, 8, 31), cutover_date=date(2025, 9, 1)), [])

    def test_billable_months_cross_year_boundary(self):
        months = billable_months(date(2025, 11, 1), date(2026, 2, 1), cutover_date=date(2025, 9, 1))
        self.assertEqual(months, [(2025, 11), (2025, 12), (2026, 1), (2026, 2)])

    def test_minor_units(self):
        self.assertEqual(to_minor_units(Decimal('28.33')), 2833)
        self.assertEqual(to_minor_units('0.005'), 1)


class FeesBaseTestCase(TestCase):
    def setUp(self):
        self.family = Family.objects.create(name='Rahman', email='rahman@example.com')
        self.aisha = Student.objects.create(
            family=self.family,
            name='Aisha',
            monthly_fee=Decimal('50.00'),
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_ENROLLED,
        )
        self.bilal = Student.objects.create(
            family=self.family,
            name='Bilal',
            monthly_fee=Decimal('50.00'),
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_ENROLLED,
        )

    def monthly(self, *rows, **kwargs):
        kwargs.setdefault('method', LedgerPayment.METHOD_CARD)
        kwargs.setdefault('paid_on', date(2025, 9, 5))
        allocations = [
            {'student': student.pk, 'year': year, 'month': month, 'amount': amount}
            for student, year, month, amount in rows
        ]
        return record_monthly_payment(family=self.family, allocations=allocations, **kwargs)

    def assert_conserved(self, record):
        charged = sum(
            (charge.paid for charge in MonthCharge.objects.filter(line__record=record)),
            Decimal('0.00'),
        )
        admission = sum(
            (
                allocation.amount
                for allocation in PaymentAllocation.objects.filter(
                    payment__record=record,
                    component=PaymentAllocation.COMPONENT_ADMISSION,
                )
            ),
            Decimal('0.00'),
        )
        received = sum((payment.amount for payment in record.payments.all()), Decimal('0.00'))
        self.assertEqual(charged + admission, received)


class MonthlyPaymentTests(FeesBaseTestCase):
    def test_combined_payment_for_two_students_settles_one_record(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.monthly((self.aisha, 2025, 9, '50'), (self.bilal, 2025, 9, '50'))

        self.assertEqual(len(result['records']), 1)
        record = result['records'][0]
        self.assertEqual(record.payment_type, LedgerRecord.TYPE_MONTHLY)
        self.assertEqual(record.expected_total, Decimal('100.00'))
        self.assertEqual(record.remaining, Decimal('0.00'))
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(record.payments.count(), 1)
        self.assertEqual(record.payments.get().amount, Decimal('100.00'))

        charge = MonthCharge.objects.get(student=self.aisha, year=2025, month=9)
        self.assertEqual(charge.monthly_fee, Decimal('50.00'))
        self.assertEqual(charge.discounted_fee, Decimal('50.00'))
        self.assertEqual(charge.paid, Decimal('50.00'))
        self.assert_conserved(record)

        self.assertEqual(len(mail.outbox), 1)
        log = NotificationLog.objects.get()
        self.assertEqual(log.kind, NotificationLog.KIND_MONTHLY_CONFIRMATION)

    def test_partial_payment_with_family_discount(self):
        self.family.discount_percent = Decimal('10')
        self.family.save()

        result = self.monthly((self.aisha, 2025, 10, '22.50'), (self.bilal, 2025, 10, '22.50'))
        record = result['records'][0]

        self.assertEqual(record.expected_total, Decimal('90.00'))
        self.assertEqual(record.status, LedgerRecord.STATUS_PARTIAL)
        self.assertEqual(record.remaining, Decimal('45.00'))

    def test_top_up_accumulates_until_paid(self):
        record = self.monthly((self.aisha, 2025, 9, '20.10'))['records'][0]
        record = top_up_payment(
            record=record,
            allocations=[{'student': self.aisha.pk, 'year': 2025, 'month': 9, 'amount': '10.20'}],
            method=LedgerPayment.METHOD_CASH,
        )['records'][0]
        self.assertEqual(record.status, LedgerRecord.STATUS_PARTIAL)
        self.assertEqual(record.remaining, Decimal('19.70'))

        record = top_up_payment(
            record=record,
            allocations=[{'student': self.aisha.pk, 'year': 2025, 'month': 9, 'amount': '19.70'}],
            method=LedgerPayment.METHOD_CASH,
        )['records'][0]

        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(record.remaining, Decimal('0.00'))
        self.assertEqual(record.paid_total, Decimal('50.00'))
        self.assertEqual(record.payments.count(), 3)
        self.assertEqual(MonthCharge.objects.get(student=self.aisha, year=2025, month=9).paid, Decimal('50.00'))
        self.assertEqual(record.student_lines.get().subtotal, Decimal('50.00'))
        self.assert_conserved(record)

    def test_top_up_must_target_the_record_month(self):
        record = self.monthly((self.aisha, 2025, 9, '10'))['records'][0]
        with self.assertRaises(ValidationError):
            top_up_payment(
                record=record,
                allocations=[{'student': self.aisha.pk, 'year': 2025, 'month': 10, 'amount': '10'}],
                method=LedgerPayment.METHOD_CASH,
            )

    def test_several_months_create_one_record_each_and_one_email(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.monthly(
                (self.aisha, 2025, 10, '50'),
                (self.aisha, 2025, 9, '50'),
                (self.bilal, 2025, 9, '25'),
            )

        periods = [record.billing_period for record in result['records']]
        self.assertEqual(periods, ['2025-09', '2025-10'])
        self.assertEqual(result['records'][0].status, LedgerRecord.STATUS_PARTIAL)
        self.assertEqual(result['records'][1].status, LedgerRecord.STATUS_PAID)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn('October 2025', mail.outbox[0].body)

    def test_second_payment_for_open_month_merges_into_same_record(self):
        first = self.monthly((self.aisha, 2025, 9, '50'), (self.bilal, 2025, 9, '10'))['records'][0]
        second = self.monthly((self.bilal, 2025, 9, '40'))['records'][0]

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(LedgerRecord.objects.count(), 1)
        self.assert_conserved(second)

    def test_settled_student_month_cannot_be_billed_twice(self):
        self.monthly((self.aisha, 2025, 9, '50'))

        with self.assertRaises(BillingConflict):
            self.monthly((self.aisha, 2025, 9, '5'))

        self.assertEqual(LedgerRecord.objects.count(), 1)
        self.assertEqual(MonthCharge.objects.filter(student=self.aisha, year=2025, month=9).count(), 1)

    def test_unknown_or_foreign_student_is_not_found_without_mutation(self):
        other = Family.objects.create(name='Other', email='other@example.com')
        stranger = Student.objects.create(
            family=other,
            name='Zara',
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_ENROLLED,
        )

        with self.assertRaises(LedgerNotFound):
            self.monthly((stranger, 2025, 9, '50'))
        with self.assertRaises(LedgerNotFound):
            record_monthly_payment(
                family=self.family,
                allocations=[{'student': 999999, 'year': 2025, 'month': 9, 'amount': '50'}],
                method=LedgerPayment.METHOD_CARD,
            )
        self.assertFalse(LedgerRecord.objects.exists())

    def test_family_email_is_required(self):
        family = Family.objects.create(name='No Email', email='')
        student = Student.objects.create(family=family, name='Omar', starting_date=date(2025, 9, 1))

        with self.assertRaises(ValidationError):
            record_monthly_payment(
                family=family,
                allocations=[{'student': student.pk, 'year': 2025, 'month': 9, 'amount': '50'}],
                method=LedgerPayment.METHOD_CARD,
            )

    def test_months_before_billing_cutover_are_rejected(self):
        with self.assertRaises(ValidationError):
            self.monthly((self.aisha, 2025, 8, '50'))

    def test_months_before_student_joined_are_rejected(self):
        self.bilal.starting_date = date(2025, 11, 12)
        self.bilal.save()

        with self.assertRaises(ValidationError):
            self.monthly((self.bilal, 2025, 10, '50'))
        record = self.monthly((self.bilal, 2025, 11, '50'))['records'][0]

        self.assertEqual(record.billing_period, '2025-11')
        self.assertEqual(LedgerRecord.objects.count(), 1)

    def test_students_not_enrolled_cannot_be_billed(self):
        for status in (Student.STATUS_HOLD, Student.STATUS_REJECTED, Student.STATUS_APPROVED):
            self.bilal.status = status
            self.bilal.save()
            with self.subTest(status=status), self.assertRaises(ValidationError):
                self.monthly((self.aisha, 2025, 9, '50'), (self.bilal, 2025, 9, '50'))

        self.assertFalse(LedgerRecord.objects.exists())

    def test_invalid_amounts_are_rejected(self):
        for amount in ('0', '-5', 'abc', 'NaN'):
            with self.subTest(amount=amount), self.assertRaises(ValidationError):
                self.monthly((self.aisha, 2025, 9, amount))

    def test_on_hold_payment_waits_for_verification(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.monthly((self.aisha, 2025, 9, '50'), method=LedgerPayment.METHOD_BANK_TRANSFER, on_hold=True)
        record = result['records'][0]

        self.assertEqual(record.payment_type, LedgerRecord.TYPE_MONTHLY_ON_HOLD)
        self.assertEqual(record.status, LedgerRecord.STATUS_PENDING)
        self.assertEqual(NotificationLog.objects.get().kind, NotificationLog.KIND_PAYMENT_ON_HOLD)

        with self.captureOnCommitCallbacks(execute=True):
            record = verify_on_hold_record(record=record)

        self.assertEqual(record.payment_type, LedgerRecord.TYPE_MONTHLY)
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(
            list(NotificationLog.objects.order_by('id').values_list('kind', flat=True)),
            [NotificationLog.KIND_PAYMENT_ON_HOLD, NotificationLog.KIND_MONTHLY_CONFIRMATION],
        )

    def test_verifying_a_confirmed_record_is_rejected(self):
        record = self.monthly((self.aisha, 2025, 9, '10'))['records'][0]
        with self.assertRaises(ValidationError):
            verify_on_hold_record(record=record)

    def test_notification_failure_does_not_roll_back_payment(self):
        with mock.patch(
            'apps.operations.communication.services.send_mail',
            side_effect=OSError('smtp unavailable'),
        ):
            with self.captureOnCommitCallbacks(execute=True):
                result = self.monthly((self.aisha, 2025, 9, '50'))

        self.assertTrue(LedgerRecord.objects.filter(pk=result['records'][0].pk).exists())
        self.assertEqual(NotificationLog.objects.get().status, NotificationLog.STATUS_FAILED)

    def test_notification_error_after_commit_is_logged_not_raised(self):
        with mock.patch(
            'apps.core.fees.services.send_payment_notification',
            side_effect=RuntimeError('notification log unavailable'),
        ):
            with self.assertLogs('django.test', level='ERROR'):
                with self.captureOnCommitCallbacks(execute=True):
                    result = self.monthly((self.aisha, 2025, 9, '50'))

        record = LedgerRecord.objects.get(pk=result['records'][0].pk)
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)

    def test_cancel_releases_months(self):
        record = self.monthly((self.aisha, 2025, 9, '10'))['records'][0]

        record = cancel_record(record=record, reason='Entered against wrong family')

        self.assertEqual(record.status, LedgerRecord.STATUS_CANCELLED)
        self.assertFalse(MonthCharge.objects.filter(line__record=record, is_void=False).exists())
        with self.assertRaises(ValidationError):
            cancel_record(record=record, reason='again')

        new_record = self.monthly((self.aisha, 2025, 9, '50'))['records'][0]
        self.assertNotEqual(new_record.pk, record.pk)
        self.assertEqual(new_record.status, LedgerRecord.STATUS_PAID)

    def test_cancel_requires_reason(self):
        record = self.monthly((self.aisha, 2025, 9, '10'))['records'][0]
        with self.assertRaises(ValidationError):
            cancel_record(record=record, reason='  ')

    def test_overpayment_clamps_remaining_to_zero(self):
        with self.assertLogs('apps.core.fees.services', level='WARNING'):
            record = self.monthly((self.aisha, 2025, 9, '60'))['records'][0]

        self.assertEqual(record.remaining, Decimal('0.00'))
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)

    def test_ledger_rows_cannot_be_deleted_or_edited(self):
        record = self.monthly((self.aisha, 2025, 9, '50'))['records'][0]
        payment = record.payments.get()

        with self.assertRaises(ValidationError):
            record.delete()
        with self.assertRaises(ValidationError):
            payment.save()


class AdmissionPaymentTests(FeesBaseTestCase):
    def admission(self, *rows, **kwargs):
        kwargs.setdefault('method', LedgerPayment.METHOD_CARD)
        return record_admission_payment(
            family=self.family,
            allocations=[{'student': student.pk, 'amount': amount} for student, amount in rows],
            **kwargs,
        )

    def test_underpayment_is_still_settled(self):
        record = self.admission((self.aisha, '15'))['records'][0]

        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(record.remaining, Decimal('0.00'))
        line = record.student_lines.get()
        self.assertEqual(line.admission_paid, Decimal('15.00'))
        charge = MonthCharge.objects.get(line=line)
        self.assertEqual((charge.year, charge.month), (2025, 9))
        self.assertEqual(charge.paid, Decimal('0.00'))
        self.assertTrue(charge.settled_by_admission)
        self.assertEqual(
            list(PaymentAllocation.objects.filter(line=line).values_list('component', 'amount')),
            [(PaymentAllocation.COMPONENT_ADMISSION, Decimal('15.00'))],
        )
        self.assert_conserved(record)

    def test_approved_student_can_be_admitted_but_rejected_cannot(self):
        self.aisha.status = Student.STATUS_APPROVED
        self.aisha.save()
        self.bilal.status = Student.STATUS_REJECTED
        self.bilal.save()

        with self.assertRaises(ValidationError):
            self.admission((self.aisha, '70'), (self.bilal, '70'))
        self.assertFalse(LedgerRecord.objects.exists())

        record = self.admission((self.aisha, '70'))['records'][0]
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)

    def test_amount_goes_to_admission_fee_then_first_month(self):
        record = self.admission((self.aisha, '70'), (self.bilal, '45'))['records'][0]

        aisha_charge = MonthCharge.objects.get(student=self.aisha)
        bilal_charge = MonthCharge.objects.get(student=self.bilal)
        self.assertEqual(aisha_charge.paid, Decimal('50.00'))
        self.assertEqual(bilal_charge.paid, Decimal('25.00'))
        self.assertEqual(record.expected_total, Decimal('140.00'))
        self.assertEqual(record.paid_total, Decimal('115.00'))
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assert_conserved(record)

    def test_partial_update_on_admission_record_is_rejected(self):
        record = self.admission((self.aisha, '70'))['records'][0]

        with self.assertRaisesMessage(ValidationError, 'create a new payment instead'):
            record_payment(
                record=record,
                allocations=[{'student': self.aisha.pk, 'year': 2025, 'month': 9, 'amount': '5'}],
                method=LedgerPayment.METHOD_CARD,
            )
        self.assertEqual(record.payments.count(), 1)

    def test_on_hold_admission_is_pending(self):
        with self.captureOnCommitCallbacks(execute=True):
            record = self.admission((self.aisha, '70'), on_hold=True, method=LedgerPayment.METHOD_BANK_TRANSFER)['records'][0]

        self.assertEqual(record.payment_type, LedgerRecord.TYPE_ADMISSION_ON_HOLD)
        self.assertEqual(record.status, LedgerRecord.STATUS_PENDING)
        self.assertEqual(record.remaining, Decimal('0.00'))
        self.assertEqual(NotificationLog.objects.get().kind, NotificationLog.KIND_PAYMENT_ON_HOLD)

    def test_admission_month_already_billed_is_a_conflict(self):
        self.monthly((self.aisha, 2025, 9, '50'))

        with self.assertRaises(BillingConflict):
            self.admission((self.aisha, '70'))
        self.assertEqual(LedgerRecord.objects.count(), 1)

    def test_record_payment_dispatches_on_payment_type(self):
        result = record_payment(
            family=self.family,
            payment_type=LedgerRecord.TYPE_ADMISSION,
            allocations=[{'student': self.aisha.pk, 'amount': '20'}],
            method=LedgerPayment.METHOD_CASH,
        )
        self.assertTrue(result['records'][0].is_admission)

        with self.assertRaises(ValidationError):
            record_payment(
                family=self.family,
                payment_type='yearly',
                allocations=[{'student': self.aisha.pk, 'amount': '20'}],
                method=LedgerPayment.METHOD_CASH,
            )


class OutstandingMonthsTests(FeesBaseTestCase):
    def periods(self, groups):
        return [group['period'] for group in groups]

    def test_full_payment_removes_month_from_unpaid(self):
        before = unpaid_months(student=self.aisha, as_of=date(2025, 10, 15))
        self.assertEqual(self.periods(before['unpaid']), ['2025-09', '2025-10'])

        self.monthly((self.aisha, 2025, 9, '50'))

        after = unpaid_months(student=self.aisha, as_of=date(2025, 10, 15))
        self.assertEqual(self.periods(after['unpaid']), ['2025-10'])
        self.assertEqual(after['total_due'], Decimal('50.00'))

    def test_groups_by_month_across_students(self):
        result = unpaid_months(family=self.family, as_of=date(2025, 9, 30))

        self.assertEqual(len(result['unpaid']), 1)
        group = result['unpaid'][0]
        self.assertEqual(group['total_amount'], Decimal('100.00'))
        self.assertEqual([row['name'] for row in group['students']], ['Aisha', 'Bilal'])

    def test_partially_paid_months_reported_separately(self):
        self.monthly((self.aisha, 2025, 9, '20'))

        result = unpaid_months(family=self.family, as_of=date(2025, 9, 30))

        self.assertEqual([row['name'] for row in result['unpaid'][0]['students']], ['Bilal'])
        partial = result['partially_paid'][0]
        self.assertEqual(partial['students'][0]['remaining'], Decimal('30.00'))
        self.assertEqual(result['total_due'], Decimal('80.00'))

    def test_admission_covers_first_month_regardless_of_amount(self):
        record_admission_payment(
            family=self.family,
            allocations=[{'student': self.aisha.pk, 'amount': '15'}],
            method=LedgerPayment.METHOD_CASH,
        )

        result = unpaid_months(student=self.aisha, as_of=date(2025, 10, 1))
        self.assertEqual(self.periods(result['unpaid']), ['2025-10'])
        self.assertEqual(result['partially_paid'], [])

    def test_pre_cutover_join_starts_at_cutover(self):
        self.aisha.starting_date = date(2024, 1, 10)
        self.aisha.save()

        result = unpaid_months(student=self.aisha, as_of=date(2025, 9, 10))
        self.assertEqual(self.periods(result['unpaid']), ['2025-09'])

    def test_students_not_enrolled_are_excluded(self):
        self.bilal.status = Student.STATUS_HOLD
        self.bilal.save()

        family_result = unpaid_months(family=self.family, as_of=date(2025, 9, 30))
        student_result = unpaid_months(student=self.bilal, as_of=date(2025, 9, 30))

        self.assertEqual([row['name'] for row in family_result['unpaid'][0]['students']], ['Aisha'])
        self.assertEqual(student_result['unpaid'], [])

    def test_discount_change_applies_to_unpaid_but_not_paid_history(self):
        record = self.monthly((self.aisha, 2025, 9, '50'))['records'][0]
        self.family.discount_percent = Decimal('20')
        self.family.save()

        result = unpaid_months(student=self.aisha, as_of=date(2025, 10, 1))

        self.assertEqual(result['unpaid'][0]['students'][0]['due'], Decimal('40.00'))
        record.refresh_from_db()
        self.assertEqual(record.expected_total, Decimal('50.00'))

    def test_cancelled_or_failed_records_do_not_cover(self):
        record = self.monthly(
            (self.aisha, 2025, 9, '50'),
            method=LedgerPayment.METHOD_DIRECT_DEBIT,
            awaiting_processor=True,
            processor_payment_intent_id='pi_123',
        )['records'][0]
        self.assertEqual(record.status, LedgerRecord.STATUS_PENDING)
        self.assertEqual(unpaid_months(student=self.aisha, as_of=date(2025, 9, 30))['unpaid'], [])

        apply_processor_outcome(payment_intent_id='pi_123', new_status=LedgerRecord.STATUS_FAILED)

        self.assertEqual(
            self.periods(unpaid_months(student=self.aisha, as_of=date(2025, 9, 30))['unpaid']),
            ['2025-09'],
        )

    def test_descending_order(self):
        result = unpaid_months(family=self.family, as_of=date(2025, 11, 1), descending=True)
        self.assertEqual(self.periods(result['unpaid']), ['2025-11', '2025-10', '2025-09'])


class ProcessorOutcomeTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.record = self.monthly(
            (self.aisha, 2025, 9, '30'),
            method=LedgerPayment.METHOD_DIRECT_DEBIT,
            awaiting_processor=True,
            processor_payment_intent_id='pi_abc',
        )['records'][0]

    def test_direct_debit_payment_waits_for_processor(self):
        self.assertEqual(self.record.status, LedgerRecord.STATUS_PENDING)
        self.assertEqual(self.record.remaining, Decimal('20.00'))

    def test_success_is_terminal_and_idempotent(self):
        [(record, changed)] = apply_processor_outcome(payment_intent_id='pi_abc', new_status=LedgerRecord.STATUS_PAID)
        self.assertTrue(changed)
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(record.remaining, Decimal('0.00'))

        [(record, changed)] = apply_processor_outcome(payment_intent_id='pi_abc', new_status=LedgerRecord.STATUS_PAID)
        self.assertFalse(changed)

        [(record, changed)] = apply_processor_outcome(payment_intent_id='pi_abc', new_status=LedgerRecord.STATUS_PENDING)
        self.assertFalse(changed)
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)

    def test_failure_voids_months_and_success_restores_them(self):
        [(record, changed)] = apply_processor_outcome(payment_intent_id='pi_abc', new_status=LedgerRecord.STATUS_FAILED)
        self.assertTrue(changed)
        self.assertFalse(MonthCharge.objects.filter(line__record=record, is_void=False).exists())

        [(record, changed)] = apply_processor_outcome(payment_intent_id='pi_abc', new_status=LedgerRecord.STATUS_PAID)
        self.assertTrue(changed)
        self.assertTrue(MonthCharge.objects.filter(line__record=record, is_void=False).exists())

    def test_unknown_intent_does_nothing(self):
        outcomes = apply_processor_outcome(payment_intent_id='pi_missing', new_status=LedgerRecord.STATUS_PAID)
        self.assertEqual(outcomes, [])

    def test_one_intent_settles_every_month_it_paid_for(self):
        other = self.monthly(
            (self.bilal, 2025, 10, '50'),
            method=LedgerPayment.METHOD_DIRECT_DEBIT,
            awaiting_processor=True,
            processor_payment_intent_id='pi_abc',
        )['records'][0]

        outcomes = apply_processor_outcome(payment_intent_id='pi_abc', new_status=LedgerRecord.STATUS_PAID)

        self.assertEqual([record.pk for record, _ in outcomes], sorted([self.record.pk, other.pk]))
        self.assertTrue(all(changed for _, changed in outcomes))
        other.refresh_from_db()
        self.assertEqual(other.status, LedgerRecord.STATUS_PAID)

    def test_unsupported_outcome_is_rejected(self):
        with self.assertRaises(ValueError):
            apply_processor_outcome(payment_intent_id='pi_abc', new_status='refunded')


class SharedRecordTests(FeesBaseTestCase):
    def debit(self, *rows, intent='pi_shared'):
        return self.monthly(
            *rows,
            method=LedgerPayment.METHOD_DIRECT_DEBIT,
            awaiting_processor=True,
            processor_payment_intent_id=intent,
        )['records'][0]

    def test_failed_debit_keeps_cash_on_the_same_record(self):
        cash = self.monthly((self.aisha, 2025, 9, '25'), method=LedgerPayment.METHOD_CASH)['records'][0]
        record = self.debit((self.aisha, 2025, 9, '25'))
        self.assertEqual(record.pk, cash.pk)
        self.assertEqual(record.status, LedgerRecord.STATUS_PENDING)

        [(record, changed)] = apply_processor_outcome(
            payment_intent_id='pi_shared',
            new_status=LedgerRecord.STATUS_FAILED,
        )

        self.assertTrue(changed)
        self.assertEqual(record.status, LedgerRecord.STATUS_PARTIAL)
        self.assertEqual(record.paid_total, Decimal('25.00'))
        self.assertEqual(record.remaining, Decimal('25.00'))
        charge = MonthCharge.objects.get(student=self.aisha, year=2025, month=9, is_void=False)
        self.assertEqual(charge.paid, Decimal('25.00'))
        self.assertEqual(
            list(record.payments.values_list('method', 'confirmation')),
            [
                (LedgerPayment.METHOD_CASH, LedgerPayment.CONFIRMATION_CONFIRMED),
                (LedgerPayment.METHOD_DIRECT_DEBIT, LedgerPayment.CONFIRMATION_REVERSED),
            ],
        )

        result = unpaid_months(student=self.aisha, as_of=date(2025, 9, 30))
        self.assertEqual(result['unpaid'], [])
        self.assertEqual(result['partially_paid'][0]['students'][0]['paid'], Decimal('25.00'))

        replay = apply_processor_outcome(payment_intent_id='pi_shared', new_status=LedgerRecord.STATUS_FAILED)
        self.assertEqual([changed for _, changed in replay], [False])

    def test_failed_debit_frees_only_the_month_it_paid_for(self):
        self.debit((self.bilal, 2025, 9, '50'))
        record = self.monthly((self.aisha, 2025, 9, '50'), method=LedgerPayment.METHOD_CASH)['records'][0]

        [(record, _)] = apply_processor_outcome(payment_intent_id='pi_shared', new_status=LedgerRecord.STATUS_FAILED)

        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(record.expected_total, Decimal('50.00'))
        self.assertFalse(MonthCharge.objects.filter(student=self.bilal, is_void=False).exists())
        unpaid = unpaid_months(family=self.family, as_of=date(2025, 9, 30))['unpaid']
        self.assertEqual([row['name'] for row in unpaid[0]['students']], ['Bilal'])

    def test_late_success_restores_a_reversed_debit(self):
        self.monthly((self.aisha, 2025, 9, '25'), method=LedgerPayment.METHOD_CASH)
        self.debit((self.aisha, 2025, 9, '25'))
        apply_processor_outcome(payment_intent_id='pi_shared', new_status=LedgerRecord.STATUS_FAILED)

        [(record, changed)] = apply_processor_outcome(
            payment_intent_id='pi_shared',
            new_status=LedgerRecord.STATUS_PAID,
        )

        self.assertTrue(changed)
        self.assertEqual(record.status, LedgerRecord.STATUS_PAID)
        self.assertEqual(record.paid_total, Decimal('50.00'))
        self.assertEqual(MonthCharge.objects.get(student=self.aisha, is_void=False).paid, Decimal('50.00'))
        self.assert_conserved(record)

        replay = apply_processor_outcome(payment_intent_id='pi_shared', new_status=LedgerRecord.STATUS_PAID)
        self.assertEqual([changed for _, changed in replay], [False])

    def test_cancel_reverses_only_unverified_payments(self):
        self.monthly((self.aisha, 2025, 9, '25'), method=LedgerPayment.METHOD_CASH)
        record = self.monthly(
            (self.aisha, 2025, 9, '25'),
            method=LedgerPayment.METHOD_BANK_TRANSFER,
            on_hold=True,
        )['records'][0]
        self.assertEqual(record.payment_type, LedgerRecord.TYPE_MONTHLY_ON_HOLD)

        record = cancel_record(record=record, reason='Transfer never arrived')

        self.assertEqual(record.status, LedgerRecord.STATUS_PARTIAL)
        self.assertEqual(record.payment_type, LedgerRecord.TYPE_MONTHLY)
        self.assertEqual(record.paid_total, Decimal('25.00'))
        self.assertEqual(record.status_reason, 'Transfer never arrived')
        self.assertEqual(MonthCharge.objects.get(student=self.aisha, is_void=False).paid, Decimal('25.00'))


class FeeReminderTests(FeesBaseTestCase):
    def test_reminder_sent_only_to_families_with_unpaid_current_month(self):
        paid_family = Family.objects.create(name='Paid', email='paid@example.com')
        paid_student = Student.objects.create(
            family=paid_family,
            name='Hana',
            starting_date=date(2025, 9, 1),
            status=Student.STATUS_ENROLLED,
        )
        record_monthly_payment(
            family=paid_family,
            allocations=[{'student': paid_student.pk, 'year': 2025, 'month': 10, 'amount': '50'}],
            method=LedgerPayment.METHOD_CARD,
        )

        summary = send_fee_reminders(reminder_day=10, as_of=date(2025, 10, 10))

        self.assertEqual(summary, {'sent': 1, 'failed': 0, 'skipped': 1})
        self.assertEqual(mail.outbox[0].to, ['rahman@example.com'])
        self.assertIn('Aisha', mail.outbox[0].body)

    def test_final_notice_on_last_reminder_day(self):
        send_fee_reminders(reminder_day=29, as_of=date(2025, 10, 29))
        self.assertTrue(mail.outbox[0].subject.startswith('Final notice'))

    def test_part_paid_family_is_not_reminded(self):
        self.monthly((self.aisha, 2025, 10, '10'), (self.bilal, 2025, 10, '10'))

        summary = send_fee_reminders(reminder_day=20, as_of=date(2025, 10, 20))

        self.assertEqual(summary, {'sent': 0, 'failed': 0, 'skipped': 1})
        self.assertEqual(len(mail.outbox), 0)

    def test_invalid_reminder_day_is_rejected(self):
        with self.assertRaises(ValidationError):
            send_fee_reminders(reminder_day=15, as_of=date(2025, 10, 15))

    def test_management_command(self):
        out = StringIO()
        call_command('send_fee_reminders', '--day', '20', '--as-of', '2025-10-20', stdout=out)
        self.assertIn('Reminders sent: 1', out.getvalue())


class FeeViewTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        self.accountant = user_model.objects.create_user(
            username='fees_accountant',
            password='pass12345',
            role='accountant',
        )
        self.parent = user_model.objects.create_user(
            username='fees_parent',
            password='pass12345',
            role='parent',
            family=self.family,
        )
        self.other_family = Family.objects.create(name='Other', email='other@example.com')

    def post_json(self, url, body):
        return self.client.post(url, data=json.dumps(body), content_type='application/json')

    def test_accountant_records_monthly_payment(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self.post_json(reverse('fee_payment_create'), {
            'family': self.family.pk,
            'payment_type': 'monthly',
            'method': 'cash',
            'date': '2025-09-03',
            'allocations': [
                {'student': self.aisha.pk, 'month': '09', 'year': 2025, 'amount': '50'},
                {'student': self.bilal.pk, 'month': '09', 'year': 2025, 'amount': '50'},
            ],
        })

        self.assertEqual(response.status_code, 201)
        record = response.json()['records'][0]
        self.assertEqual(record['status'], 'paid')
        self.assertEqual(record['expected_total'], '100.00')
        self.assertEqual(record['students'][0]['months_paid'][0]['month'], '09')

    def test_admission_top_up_returns_validation_error(self):
        record = record_admission_payment(
            family=self.family,
            allocations=[{'student': self.aisha.pk, 'amount': '70'}],
            method=LedgerPayment.METHOD_CASH,
        )['records'][0]
        self.client.login(username='fees_accountant', password='pass12345')

        response = self.post_json(reverse('fee_payment_top_up', args=[record.pk]), {
            'method': 'cash',
            'allocations': [{'student': self.aisha.pk, 'month': 9, 'year': 2025, 'amount': '5'}],
        })

        self.assertEqual(response.status_code, 400)
        error = response.json()['error']
        self.assertEqual(error['code'], 'VALIDATION_ERROR')
        self.assertIn('create a new payment instead', error['message'])

    def test_conflict_maps_to_409(self):
        self.monthly((self.aisha, 2025, 9, '50'))
        self.client.login(username='fees_accountant', password='pass12345')

        response = self.post_json(reverse('fee_payment_create'), {
            'family': self.family.pk,
            'payment_type': 'monthly',
            'method': 'cash',
            'allocations': [{'student': self.aisha.pk, 'month': 9, 'year': 2025, 'amount': '5'}],
        })

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error']['code'], 'CONFLICT')

    def test_parent_cannot_pay_for_another_family(self):
        self.client.login(username='fees_parent', password='pass12345')
        response = self.post_json(reverse('fee_payment_create'), {
            'family': self.other_family.pk,
            'payment_type': 'monthly',
            'method': 'card',
            'allocations': [],
        })

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['error']['code'], 'NOT_FOUND')

    def test_parent_payment_waits_for_office_verification(self):
        self.client.login(username='fees_parent', password='pass12345')
        response = self.post_json(reverse('fee_payment_create'), {
            'family': self.family.pk,
            'payment_type': 'monthly',
            'method': 'cash',
            'allocations': [{'student': self.aisha.pk, 'month': 9, 'year': 2025, 'amount': '50'}],
        })

        self.assertEqual(response.status_code, 201)
        record = response.json()['records'][0]
        self.assertEqual(record['payment_type'], LedgerRecord.TYPE_MONTHLY_ON_HOLD)
        self.assertEqual(record['status'], 'pending')
        self.assertEqual(record['payments'][0]['confirmation'], LedgerPayment.CONFIRMATION_AWAITING_VERIFICATION)

        response = self.post_json(reverse('fee_payment_top_up', args=[record['id']]), {
            'method': 'bank_transfer',
            'allocations': [{'student': self.bilal.pk, 'month': 9, 'year': 2025, 'amount': '50'}],
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            {payment['confirmation'] for payment in response.json()['records'][0]['payments']},
            {LedgerPayment.CONFIRMATION_AWAITING_VERIFICATION},
        )

    def test_parent_cannot_verify_records(self):
        record = self.monthly((self.aisha, 2025, 9, '50'), on_hold=True)['records'][0]
        self.client.login(username='fees_parent', password='pass12345')

        response = self.client.post(reverse('fee_record_verify', args=[record.pk]))

        self.assertEqual(response.status_code, 403)

    def test_parent_sees_own_unpaid_months(self):
        self.client.login(username='fees_parent', password='pass12345')
        response = self.client.get(reverse('fee_unpaid_months'), {'as_of': '2025-10-01', 'order': 'desc'})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual([group['period'] for group in body['unpaid']], ['2025-10', '2025-09'])
        self.assertEqual(body['total_due'], '200.00')

    def test_unknown_record_is_404(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self.client.get(reverse('fee_record_detail', args=[424242]))
        self.assertEqual(response.status_code, 404)

    def test_cancel_endpoint(self):
        record = self.monthly((self.aisha, 2025, 9, '10'))['records'][0]
        self.client.login(username='fees_accountant', password='pass12345')

        response = self.post_json(reverse('fee_record_cancel', args=[record.pk]), {'reason': 'Duplicate entry'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['record']['status'], 'cancelled')

    def test_anonymous_is_redirected_to_login(self):
        response = self.client.get(reverse('fee_record_list'), {'family': self.family.pk})
        self.assertEqual(response.status_code, 302)
