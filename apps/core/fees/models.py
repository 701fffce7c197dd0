from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.students.models import Family, Student
from apps.core.utils.managers import FamilyScopedManager


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted. Cancel the record instead.')


class LedgerRecord(FinancialRecordModel):
    TYPE_ADMISSION = 'admission'
    TYPE_ADMISSION_ON_HOLD = 'admissionOnHold'
    TYPE_MONTHLY = 'monthly'
    TYPE_MONTHLY_ON_HOLD = 'monthlyOnHold'
    PAYMENT_TYPE_CHOICES = (
        (TYPE_ADMISSION, 'Admission'),
        (TYPE_ADMISSION_ON_HOLD, 'Admission (on hold)'),
        (TYPE_MONTHLY, 'Monthly'),
        (TYPE_MONTHLY_ON_HOLD, 'Monthly (on hold)'),
    )
    ADMISSION_TYPES = (TYPE_ADMISSION, TYPE_ADMISSION_ON_HOLD)
    MONTHLY_TYPES = (TYPE_MONTHLY, TYPE_MONTHLY_ON_HOLD)
    ON_HOLD_TYPES = (TYPE_ADMISSION_ON_HOLD, TYPE_MONTHLY_ON_HOLD)

    STATUS_PENDING = 'pending'
    STATUS_PARTIAL = 'partial'
    STATUS_PAID = 'paid'
    STATUS_FAILED = 'failed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = (
        (STATUS_PENDING, 'Pending'),
        (STATUS_PARTIAL, 'Partially paid'),
        (STATUS_PAID, 'Paid'),
        (STATUS_FAILED, 'Failed'),
        (STATUS_CANCELLED, 'Cancelled'),
    )
    OPEN_STATUSES = (STATUS_PENDING, STATUS_PARTIAL)
    TERMINAL_STATUSES = (STATUS_PAID, STATUS_FAILED, STATUS_CANCELLED)
    COVERING_STATUSES = (STATUS_PENDING, STATUS_PARTIAL, STATUS_PAID)

    family = models.ForeignKey(Family, on_delete=models.PROTECT, related_name='ledger_records')
    objects = FamilyScopedManager()

    payment_type = models.CharField(max_length=20, choices=PAYMENT_TYPE_CHOICES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    billing_year = models.PositiveSmallIntegerField(null=True, blank=True)
    billing_month = models.PositiveSmallIntegerField(null=True, blank=True)
    expected_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    remaining = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    method = models.CharField(max_length=30, blank=True)
    version = models.PositiveIntegerField(default=0)
    status_reason = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['family', 'billing_year', 'billing_month'],
                condition=Q(payment_type__in=('monthly', 'monthlyOnHold')) & Q(status__in=('pending', 'partial')),
                name='unique_open_monthly_record_per_family_month',
            ),
            models.CheckConstraint(
                condition=Q(expected_total__gte=0) & Q(paid_total__gte=0) & Q(remaining__gte=0),
                name='ledger_record_non_negative_amounts',
            ),
            models.CheckConstraint(
                condition=(
                    (
                        Q(payment_type__in=('monthly', 'monthlyOnHold'))
                        & Q(billing_year__isnull=False)
                        & Q(billing_month__gte=1)
                        & Q(billing_month__lte=12)
                    )
                    | (
                        Q(payment_type__in=('admission', 'admissionOnHold'))
                        & Q(billing_year__isnull=True)
                        & Q(billing_month__isnull=True)
                    )
                ),
                name='ledger_record_billing_period_matches_type',
            ),
        ]
        indexes = [
            models.Index(fields=['family', 'status'], name='ledger_family_status_idx'),
            models.Index(fields=['family', 'billing_year', 'billing_month'], name='ledger_record_period_idx'),
        ]

    @property
    def is_admission(self):
        return self.payment_type in self.ADMISSION_TYPES

    @property
    def is_monthly(self):
        return self.payment_type in self.MONTHLY_TYPES

    @property
    def is_on_hold(self):
        return self.payment_type in self.ON_HOLD_TYPES

    @property
    def is_open(self):
        return self.status in self.OPEN_STATUSES

    @property
    def billing_period(self):
        if self.billing_year is None:
            return None
        return f"{self.billing_year}-{self.billing_month:02d}"

    @property
    def settled_type(self):
        return self.TYPE_ADMISSION if self.is_admission else self.TYPE_MONTHLY

    @property
    def on_hold_type(self):
        return self.TYPE_ADMISSION_ON_HOLD if self.is_admission else self.TYPE_MONTHLY_ON_HOLD

    def clean(self):
        super().clean()
        if self.is_monthly and (self.billing_year is None or not self.billing_month):
            raise ValidationError('Monthly records need a billing year and month.')
        if self.is_admission and (self.billing_year is not None or self.billing_month is not None):
            raise ValidationError('Admission records do not carry a billing month.')

    def __str__(self):
        period = self.billing_period or 'admission'
        return f"{self.family.name} {period} ({self.status})"


class AdmissionLedgerManager(FamilyScopedManager):
    def get_queryset(self):
        return super().get_queryset().filter(payment_type__in=LedgerRecord.ADMISSION_TYPES)


class MonthlyLedgerManager(FamilyScopedManager):
    def get_queryset(self):
        return super().get_queryset().filter(payment_type__in=LedgerRecord.MONTHLY_TYPES)


class AdmissionLedger(LedgerRecord):
    objects = AdmissionLedgerManager()

    class Meta:
        proxy = True


class MonthlyLedger(LedgerRecord):
    objects = MonthlyLedgerManager()

    class Meta:
        proxy = True


class LedgerStudent(FinancialRecordModel):
    record = models.ForeignKey(LedgerRecord, on_delete=models.PROTECT, related_name='student_lines')
    student = models.ForeignKey(Student, on_delete=models.PROTECT, related_name='ledger_lines')
    name = models.CharField(max_length=150)
    admission_fee = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    admission_paid = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    class Meta:
        ordering = ['id']
        constraints = [
            models.UniqueConstraint(fields=['record', 'student'], name='unique_student_per_ledger_record'),
            models.CheckConstraint(
                condition=Q(admission_paid__gte=0) & Q(subtotal__gte=0),
                name='ledger_student_non_negative_amounts',
            ),
        ]

    def __str__(self):
        return f"{self.name} on record {self.record_id}"


class MonthCharge(FinancialRecordModel):
    line = models.ForeignKey(LedgerStudent, on_delete=models.PROTECT, related_name='months')
    student = models.ForeignKey(Student, on_delete=models.PROTECT, related_name='month_charges')
    year = models.PositiveSmallIntegerField()
    month = models.PositiveSmallIntegerField()
    monthly_fee = models.DecimalField(max_digits=10, decimal_places=2)
    discounted_fee = models.DecimalField(max_digits=10, decimal_places=2)
    paid = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    settled_by_admission = models.BooleanField(default=False)
    is_void = models.BooleanField(default=False)

    class Meta:
        ordering = ['year', 'month', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'year', 'month'],
                condition=Q(is_void=False),
                name='unique_active_charge_per_student_month',
            ),
            models.CheckConstraint(
                condition=Q(month__gte=1) & Q(month__lte=12),
                name='month_charge_valid_month',
            ),
            models.CheckConstraint(
                condition=Q(monthly_fee__gte=0) & Q(discounted_fee__gte=0) & Q(paid__gte=0),
                name='month_charge_non_negative_amounts',
            ),
        ]
        indexes = [
            models.Index(fields=['student', 'year', 'month'], name='month_charge_period_idx'),
        ]

    @property
    def period(self):
        return f"{self.year}-{self.month:02d}"

    def __str__(self):
        return f"{self.student_id} {self.period}: {self.paid}/{self.discounted_fee}"


class LedgerPayment(FinancialRecordModel):
    METHOD_CARD = 'card'
    METHOD_BANK_TRANSFER = 'bank_transfer'
    METHOD_CASH = 'cash'
    METHOD_DIRECT_DEBIT = 'direct_debit'
    METHOD_OTHER = 'other'
    METHOD_CHOICES = (
        (METHOD_CARD, 'Card'),
        (METHOD_BANK_TRANSFER, 'Bank transfer'),
        (METHOD_CASH, 'Cash'),
        (METHOD_DIRECT_DEBIT, 'Direct debit'),
        (METHOD_OTHER, 'Other'),
    )

    CONFIRMATION_CONFIRMED = 'confirmed'
    CONFIRMATION_AWAITING_VERIFICATION = 'awaiting_verification'
    CONFIRMATION_AWAITING_PROCESSOR = 'awaiting_processor'
    CONFIRMATION_REVERSED = 'reversed'
    CONFIRMATION_CHOICES = (
        (CONFIRMATION_CONFIRMED, 'Confirmed'),
        (CONFIRMATION_AWAITING_VERIFICATION, 'Awaiting office verification'),
        (CONFIRMATION_AWAITING_PROCESSOR, 'Awaiting processor'),
        (CONFIRMATION_REVERSED, 'Reversed'),
    )
    UNCONFIRMED = (CONFIRMATION_AWAITING_VERIFICATION, CONFIRMATION_AWAITING_PROCESSOR)

    record = models.ForeignKey(LedgerRecord, on_delete=models.PROTECT, related_name='payments')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    method = models.CharField(max_length=30, choices=METHOD_CHOICES)
    paid_on = models.DateField(default=timezone.localdate)
    confirmation = models.CharField(
        max_length=30,
        choices=CONFIRMATION_CHOICES,
        default=CONFIRMATION_CONFIRMED,
    )
    processor_payment_intent_id = models.CharField(max_length=120, blank=True, db_index=True)
    reference = models.CharField(max_length=120, blank=True)
    recorded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='recorded_ledger_payments',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='ledger_payment_amount_positive'),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Ledger payments are append-only.')
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.amount} via {self.method} on record {self.record_id}"


class PaymentAllocation(FinancialRecordModel):
    COMPONENT_ADMISSION = 'admission'
    COMPONENT_MONTH = 'month'
    COMPONENT_CHOICES = (
        (COMPONENT_ADMISSION, 'Admission fee'),
        (COMPONENT_MONTH, 'Monthly fee'),
    )

    payment = models.ForeignKey(LedgerPayment, on_delete=models.PROTECT, related_name='allocations')
    line = models.ForeignKey(LedgerStudent, on_delete=models.PROTECT, related_name='allocations')
    month_charge = models.ForeignKey(
        MonthCharge,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='allocations',
    )
    component = models.CharField(max_length=20, choices=COMPONENT_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name='payment_allocation_amount_positive'),
            models.CheckConstraint(
                condition=(
                    (Q(component='month') & Q(month_charge__isnull=False))
                    | (Q(component='admission') & Q(month_charge__isnull=True))
                ),
                name='payment_allocation_target_matches_component',
            ),
        ]

    def __str__(self):
        return f"{self.amount} to {self.component} for line {self.line_id}"
