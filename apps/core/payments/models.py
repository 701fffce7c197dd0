from django.db import models
from django.db.models import Q

from apps.core.students.models import Family


class DirectDebitMandate(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_ACTIVE = 'active'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending'),
        (STATUS_ACTIVE, 'Active'),
        (STATUS_CANCELLED, 'Cancelled'),
    )

    family = models.OneToOneField(Family, on_delete=models.PROTECT, related_name='mandate')
    processor_customer_id = models.CharField(max_length=120, blank=True, db_index=True)
    processor_mandate_id = models.CharField(max_length=120, blank=True, db_index=True)
    processor_payment_method_id = models.CharField(max_length=120, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    mandate_status = models.CharField(max_length=40, blank=True)
    preferred_payment_date = models.PositiveSmallIntegerField(null=True, blank=True)
    setup_date = models.DateTimeField(null=True, blank=True)
    active_date = models.DateTimeField(null=True, blank=True)
    success_email_sent_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['family__name', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(preferred_payment_date__isnull=True)
                | (Q(preferred_payment_date__gte=1) & Q(preferred_payment_date__lte=28)),
                name='mandate_preferred_day_in_range',
            ),
        ]

    @property
    def is_active(self):
        return self.status == self.STATUS_ACTIVE

    def __str__(self):
        return f"{self.family.name}: {self.status} ({self.processor_mandate_id or 'no mandate'})"
