from unittest import mock

from django.core import mail
from django.test import TestCase, override_settings

from apps.core.students.models import Family
from apps.operations.communication.models import NotificationLog
from apps.operations.communication.services import send_notification, send_payment_notification


class NotificationDeliveryTests(TestCase):
    def setUp(self):
        self.family = Family.objects.create(name='Khan', email='khan@example.com')
        self.payload = {
            'parent_name': 'Khan',
            'method': 'card',
            'paid_on': '2025-09-05',
            'total_paid': '90.00',
            'students': [
                {'name': 'Aisha', 'months': [{'label': 'September 2025', 'paid': '45.00'}]},
                {'name': 'Bilal', 'months': [{'label': 'September 2025', 'paid': '45.00'}]},
            ],
        }

    def test_payment_notification_is_sent_and_logged(self):
        log = send_payment_notification(NotificationLog.KIND_MONTHLY_CONFIRMATION, self.family, self.payload)

        self.assertEqual(log.status, NotificationLog.STATUS_SENT)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['khan@example.com'])
        self.assertIn('Aisha', mail.outbox[0].body)
        self.assertIn('90.00', mail.outbox[0].body)

    def test_delivery_failure_is_recorded_not_raised(self):
        with mock.patch(
            'apps.operations.communication.services.send_mail',
            side_effect=OSError('smtp down'),
        ):
            log = send_payment_notification(NotificationLog.KIND_PAYMENT_ON_HOLD, self.family, self.payload)

        self.assertEqual(log.status, NotificationLog.STATUS_FAILED)
        self.assertIn('smtp down', log.error)

    def test_missing_recipient_is_skipped(self):
        log = send_notification(NotificationLog.KIND_MANDATE_PENDING, '', {'parent_name': 'Khan'})

        self.assertEqual(log.status, NotificationLog.STATUS_SKIPPED)
        self.assertEqual(len(mail.outbox), 0)

    @override_settings(NOTIFICATIONS_EMAIL_ENABLED=False)
    def test_disabled_sending_skips_delivery(self):
        log = send_notification(NotificationLog.KIND_MANDATE_ACTIVE, 'khan@example.com', {'parent_name': 'Khan'})

        self.assertEqual(log.status, NotificationLog.STATUS_SKIPPED)
        self.assertEqual(len(mail.outbox), 0)

    def test_unknown_kind_is_rejected(self):
        with self.assertRaises(ValueError):
            send_notification('newsletter', 'khan@example.com', {})
