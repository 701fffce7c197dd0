from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone


class Family(models.Model):
    name = models.CharField(max_length=150)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=20, blank=True)
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']
        verbose_name_plural = 'families'
        constraints = [
            models.CheckConstraint(
                condition=Q(discount_percent__gte=0) & Q(discount_percent__lte=100),
                name='family_discount_within_range',
            ),
        ]

    def clean(self):
        super().clean()
        if self.discount_percent is None or not (0 <= self.discount_percent <= 100):
            raise ValidationError({'discount_percent': 'Discount must be between 0 and 100.'})

    def __str__(self):
        return f"{self.name} <{self.email}>"


def default_monthly_fee():
    return settings.FEES_DEFAULT_MONTHLY_FEE


class Student(models.Model):
    STATUS_ENROLLED = 'enrolled'
    STATUS_HOLD = 'hold'
    STATUS_APPROVED = 'approved'
    STATUS_REJECTED = 'rejected'
    STATUS_CHOICES = (
        (STATUS_ENROLLED, 'Enrolled'),
        (STATUS_HOLD, 'On Hold'),
        (STATUS_APPROVED, 'Approved'),
        (STATUS_REJECTED, 'Rejected'),
    )

    SESSION_WEEKDAYS = 'weekdays'
    SESSION_WEEKEND = 'weekend'
    SESSION_CHOICES = (
        (SESSION_WEEKDAYS, 'Weekdays'),
        (SESSION_WEEKEND, 'Weekend'),
    )

    family = models.ForeignKey(Family, on_delete=models.PROTECT, related_name='students')
    name = models.CharField(max_length=150)
    email = models.EmailField(blank=True)
    monthly_fee = models.DecimalField(max_digits=10, decimal_places=2, default=default_monthly_fee)
    starting_date = models.DateField(default=timezone.localdate)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_APPROVED)
    class_session = models.CharField(max_length=20, choices=SESSION_CHOICES, default=SESSION_WEEKDAYS)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']
        indexes = [
            models.Index(fields=['family', 'status'], name='student_family_status_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(monthly_fee__gte=0),
                name='student_monthly_fee_non_negative',
            ),
        ]

    @property
    def is_billable(self):
        return self.status == self.STATUS_ENROLLED

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Student name is required.'})
        if self.monthly_fee is None or self.monthly_fee < 0:
            raise ValidationError({'monthly_fee': 'Monthly fee cannot be negative.'})

    def __str__(self):
        return f"{self.name} ({self.family.name})"


class StudentStatusHistory(models.Model):
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='status_history')
    old_status = models.CharField(max_length=20, choices=Student.STATUS_CHOICES)
    new_status = models.CharField(max_length=20, choices=Student.STATUS_CHOICES)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='student_status_changes',
    )
    reason = models.CharField(max_length=255, blank=True)
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-changed_at']

    def __str__(self):
        return f"{self.student.name}: {self.old_status} -> {self.new_status}"
