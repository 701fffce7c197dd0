from django.db import models


class NotificationLog(models.Model):
    KIND_ADMISSION_CONFIRMATION = 'admission_confirmation'
    KIND_MONTHLY_CONFIRMATION = 'monthly_confirmation'
    KIND_PAYMENT_ON_HOLD = 'payment_on_hold'
    KIND_PAYMENT_SUCCEEDED = 'payment_succeeded'
    KIND_MANDATE_PENDING = 'mandate_pending'
    KIND_MANDATE_ACTIVE = 'mandate_active'
    KIND_MANDATE_FAILED = 'mandate_failed'
    KIND_FEE_REMINDER = 'fee_reminder'
    KIND_ATTENDANCE_ALERT = 'attendance_alert'
    KIND_CHOICES = (
        (KIND_ADMISSION_CONFIRMATION, 'Admission payment confirmation'),
        (KIND_MONTHLY_CONFIRMATION, 'Monthly payment confirmation'),
        (KIND_PAYMENT_ON_HOLD, 'Payment on hold'),
        (KIND_PAYMENT_SUCCEEDED, 'Direct debit payment succeeded'),
        (KIND_MANDATE_PENDING, 'Direct debit pending verification'),
        (KIND_MANDATE_ACTIVE, 'Direct debit active'),
        (KIND_MANDATE_FAILED, 'Direct debit failed'),
        (KIND_FEE_REMINDER, 'Fee reminder'),
        (KIND_ATTENDANCE_ALERT, 'Attendance alert'),
    )

    STATUS_SENT = 'sent'
    STATUS_SKIPPED = 'skipped'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = (
        (STATUS_SENT, 'Sent'),
        (STATUS_SKIPPED, 'Skipped'),
        (STATUS_FAILED, 'Failed'),
    )

    kind = models.CharField(max_length=40, choices=KIND_CHOICES)
    recipient = models.EmailField(blank=True)
    family = models.ForeignKey(
        'core_students.Family',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='notifications',
    )
    subject = models.CharField(max_length=200, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    error = models.TextField(blank=True)
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['kind', 'status'], name='notification_kind_status_idx'),
            models.Index(fields=['family', '-created_at'], name='notification_family_idx'),
        ]

    def __str__(self):
        return f"{self.kind} -> {self.recipient or 'n/a'} ({self.status})"
