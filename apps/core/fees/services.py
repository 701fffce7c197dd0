from __future__ import annotations

import logging
from collections import OrderedDict
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Sum
from django.utils import timezone

from apps.core.students.models import Family, Student
from apps.operations.communication.models import NotificationLog
from apps.operations.communication.services import send_payment_notification

from .calculator import discounted_fee, first_billable_month, month_label, period_key, quantize, to_decimal
from .exceptions import BillingConflict, LedgerNotFound
from .models import (
    AdmissionLedger,
    LedgerPayment,
    LedgerRecord,
    LedgerStudent,
    MonthCharge,
    MonthlyLedger,
    PaymentAllocation,
)

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')
PAYMENT_METHODS = {choice[0] for choice in LedgerPayment.METHOD_CHOICES}
ADMISSION_TOP_UP_MESSAGE = (
    'Partial payments are not allowed for admission fees; create a new payment instead.'
)
ADMISSION_STATUSES = (Student.STATUS_ENROLLED, Student.STATUS_APPROVED)

# Statuses a processor outcome may move a record out of.
PROCESSOR_TRANSITIONS = {
    LedgerRecord.STATUS_PAID: (
        LedgerRecord.STATUS_PENDING,
        LedgerRecord.STATUS_PARTIAL,
        LedgerRecord.STATUS_FAILED,
    ),
    LedgerRecord.STATUS_FAILED: (LedgerRecord.STATUS_PENDING, LedgerRecord.STATUS_PARTIAL),
    LedgerRecord.STATUS_CANCELLED: (LedgerRecord.STATUS_PENDING, LedgerRecord.STATUS_PARTIAL),
    LedgerRecord.STATUS_PENDING: (LedgerRecord.STATUS_PARTIAL,),
}


def _sum_amount(queryset, field_name='amount') -> Decimal:
    value = queryset.aggregate(total=Sum(field_name)).get('total')
    return quantize(value)


def _parse_amount(value, field='amount') -> Decimal:
    try:
        amount = to_decimal(value)
        if not amount.is_finite():
            raise ValidationError({field: 'Enter a valid amount.'})
        amount = quantize(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({field: 'Enter a valid amount.'})
    if amount <= 0:
        raise ValidationError({field: 'Amount must be greater than zero.'})
    return amount


def _parse_period(year, month) -> tuple[int, int]:
    try:
        year, month = int(year), int(month)
    except (TypeError, ValueError):
        raise ValidationError('Each allocation needs a numeric month and year.')
    if not 1 <= month <= 12:
        raise ValidationError({'month': 'Month must be between 1 and 12.'})

    cutover = settings.FEES_BILLING_CUTOVER_DATE
    if (year, month) < (cutover.year, cutover.month):
        raise ValidationError(f"Billing starts from {month_label(cutover.year, cutover.month)}.")
    return year, month


def _require_billable(student: Student, year: int, month: int):
    if not student.is_billable:
        raise ValidationError(
            {'student': f"{student.name} is {student.get_status_display().lower()} and cannot be billed."}
        )
    first = first_billable_month(student.starting_date)
    if (year, month) < first:
        raise ValidationError(f"{student.name} is billed from {month_label(*first)}.")


def _require_family_email(family: Family):
    if not (family.email or '').strip():
        raise ValidationError({'email': 'Family email is required to record a payment.'})


def _family_discount(family: Family) -> Decimal:
    # Always read the current value; historical charges keep the fee they were billed at.
    return Family.objects.values_list('discount_percent', flat=True).get(pk=family.pk)


def _family_students(family: Family, student_ids) -> dict:
    ids = set()
    for student_id in student_ids:
        try:
            ids.add(int(student_id))
        except (TypeError, ValueError):
            raise ValidationError({'student': 'Student id must be an integer.'})

    students = {student.pk: student for student in Student.objects.filter(family=family, pk__in=ids)}
    missing = sorted(ids - set(students))
    if missing:
        raise LedgerNotFound(f"Student {missing[0]} not found for family {family.pk}.")
    return students


def _payment_meta(*, method, paid_on=None, processor_payment_intent_id='', reference='', recorded_by=None):
    if method not in PAYMENT_METHODS:
        raise ValidationError({'method': 'Select a valid payment method.'})
    return {
        'method': method,
        'paid_on': paid_on or timezone.localdate(),
        'processor_payment_intent_id': (processor_payment_intent_id or '')[:120],
        'reference': (reference or '')[:120],
        'recorded_by': recorded_by,
    }


def _confirmation_for(*, on_hold: bool, awaiting_processor: bool) -> str:
    if awaiting_processor:
        return LedgerPayment.CONFIRMATION_AWAITING_PROCESSOR
    if on_hold:
        return LedgerPayment.CONFIRMATION_AWAITING_VERIFICATION
    return LedgerPayment.CONFIRMATION_CONFIRMED


def _normalize_month_allocations(family: Family, allocations):
    if not allocations:
        raise ValidationError('At least one allocation is required.')

    students = _family_students(family, [row.get('student') for row in allocations])
    merged = OrderedDict()
    for row in allocations:
        student = students[int(row.get('student'))]
        year, month = _parse_period(row.get('year'), row.get('month'))
        _require_billable(student, year, month)
        amount = _parse_amount(row.get('amount'))
        key = (student.pk, year, month)
        if key in merged:
            merged[key] = (student, year, month, quantize(merged[key][3] + amount))
        else:
            merged[key] = (student, year, month, amount)
    return list(merged.values())


def allocation_total(family: Family, allocations) -> Decimal:
    rows = _normalize_month_allocations(family, allocations)
    return quantize(sum((row[3] for row in rows), ZERO))


def _lock_record(record_id) -> LedgerRecord:
    record = LedgerRecord.objects.select_for_update().select_related('family').filter(pk=record_id).first()
    if record is None:
        raise LedgerNotFound(f"Ledger record {record_id} not found.")
    return record


def _claim_month_charge(*, line, student, year, month, discount, settled_by_admission=False):
    """Return the single active charge for a student-month, creating it on this line if free."""
    existing = (
        MonthCharge.objects.select_for_update()
        .filter(student=student, year=year, month=month, is_void=False)
        .first()
    )
    if existing is None:
        try:
            with transaction.atomic():
                return MonthCharge.objects.create(
                    line=line,
                    student=student,
                    year=year,
                    month=month,
                    monthly_fee=quantize(student.monthly_fee),
                    discounted_fee=discounted_fee(student.monthly_fee, discount),
                    settled_by_admission=settled_by_admission,
                )
        except IntegrityError:
            existing = MonthCharge.objects.filter(student=student, year=year, month=month, is_void=False).first()
            if existing is None:
                raise

    if existing.line_id != line.pk:
        raise BillingConflict(
            f"{student.name} is already billed for {month_label(year, month)} "
            f"on record {existing.line.record_id}."
        )
    return existing


def _open_monthly_record(*, family: Family, year: int, month: int, on_hold: bool) -> LedgerRecord:
    attempts = settings.FEES_RECORD_RETRY_ATTEMPTS
    for attempt in range(1, attempts + 1):
        record = (
            MonthlyLedger.objects.for_family(family)
            .select_for_update()
            .filter(billing_year=year, billing_month=month, status__in=LedgerRecord.OPEN_STATUSES)
            .first()
        )
        if record is not None:
            if on_hold and not record.is_on_hold:
                record.payment_type = LedgerRecord.TYPE_MONTHLY_ON_HOLD
                record.save(update_fields=['payment_type', 'updated_at'])
            return record

        try:
            with transaction.atomic():
                record = LedgerRecord.objects.create(
                    family=family,
                    payment_type=LedgerRecord.TYPE_MONTHLY_ON_HOLD if on_hold else LedgerRecord.TYPE_MONTHLY,
                    billing_year=year,
                    billing_month=month,
                )
            logger.info('Opened monthly record %s for family %s %s', record.pk, family.pk, period_key(year, month))
            return record
        except IntegrityError:
            logger.info(
                'Concurrent monthly record create for family %s %s (attempt %s/%s)',
                family.pk,
                period_key(year, month),
                attempt,
                attempts,
            )

    raise BillingConflict(
        f"Could not open a record for {month_label(year, month)}; another payment is in progress."
    )


def _live_payments(record: LedgerRecord):
    return record.payments.exclude(confirmation=LedgerPayment.CONFIRMATION_REVERSED)


def _derive_status(record: LedgerRecord, paid_total: Decimal, remaining: Decimal) -> str:
    if record.payments.filter(confirmation__in=LedgerPayment.UNCONFIRMED).exists():
        return LedgerRecord.STATUS_PENDING
    if record.is_admission or remaining <= 0:
        return LedgerRecord.STATUS_PAID
    if paid_total > 0:
        return LedgerRecord.STATUS_PARTIAL
    return LedgerRecord.STATUS_PENDING


def _refresh_record(record: LedgerRecord, method: str = '') -> LedgerRecord:
    """Recompute totals from charges and the payment trail, then store them in one conditional write."""
    paid_total = _sum_amount(_live_payments(record))

    for line in record.student_lines.all():
        subtotal = _sum_amount(line.allocations.exclude(payment__confirmation=LedgerPayment.CONFIRMATION_REVERSED))
        if subtotal != line.subtotal:
            LedgerStudent.objects.filter(pk=line.pk).update(subtotal=subtotal)

    charges = MonthCharge.objects.filter(line__record=record, is_void=False)
    if record.is_admission:
        expected_total = quantize(
            _sum_amount(record.student_lines.all(), 'admission_fee') + _sum_amount(charges, 'discounted_fee')
        )
        remaining = ZERO
    else:
        expected_total = _sum_amount(charges, 'discounted_fee')
        remaining = quantize(expected_total - paid_total)
        if remaining < 0:
            logger.warning(
                'Clamped negative remaining %s to zero on record %s (expected %s, paid %s)',
                remaining,
                record.pk,
                expected_total,
                paid_total,
            )
            remaining = ZERO

    status = _derive_status(record, paid_total, remaining)
    updates = {
        'expected_total': expected_total,
        'paid_total': paid_total,
        'remaining': remaining,
        'status': status,
        'version': F('version') + 1,
        'updated_at': timezone.now(),
    }
    if method:
        updates['method'] = method

    updated = LedgerRecord.objects.filter(pk=record.pk, version=record.version).update(**updates)
    if not updated:
        raise BillingConflict(f"Ledger record {record.pk} was modified concurrently.")
    record.refresh_from_db()
    return record


def _void_charges(record_id):
    return MonthCharge.objects.filter(line__record_id=record_id, is_void=False).update(is_void=True)


def _restore_charges(record_id):
    for charge in MonthCharge.objects.filter(line__record_id=record_id, is_void=True):
        try:
            with transaction.atomic():
                MonthCharge.objects.filter(pk=charge.pk).update(is_void=False)
        except IntegrityError:
            logger.warning(
                'Could not restore charge %s for student %s %s: month already billed elsewhere',
                charge.pk,
                charge.student_id,
                charge.period,
            )


def _reverse_payments(payment_ids):
    """Take these payments off their charges; a charge left with nothing paid is freed."""
    charge_ids = set()
    for allocation in PaymentAllocation.objects.filter(payment_id__in=payment_ids, month_charge__isnull=False):
        MonthCharge.objects.filter(pk=allocation.month_charge_id).update(paid=F('paid') - allocation.amount)
        charge_ids.add(allocation.month_charge_id)
    LedgerPayment.objects.filter(pk__in=payment_ids).update(confirmation=LedgerPayment.CONFIRMATION_REVERSED)
    MonthCharge.objects.filter(pk__in=charge_ids, paid__lte=0, settled_by_admission=False).update(is_void=True)


def _reapply_payments(payment_ids):
    allocations = PaymentAllocation.objects.filter(
        payment_id__in=payment_ids,
        month_charge__isnull=False,
    ).select_related('month_charge')
    for allocation in allocations:
        charge = allocation.month_charge
        if charge.is_void:
            active = MonthCharge.objects.filter(
                student_id=charge.student_id,
                year=charge.year,
                month=charge.month,
                is_void=False,
            ).first()
            if active is None:
                MonthCharge.objects.filter(pk=charge.pk).update(is_void=False)
            elif active.line_id == charge.line_id:
                # Month was billed again on this record while the payment was reversed.
                PaymentAllocation.objects.filter(pk=allocation.pk).update(month_charge=active)
                charge = active
            else:
                logger.warning(
                    'Could not restore charge %s for student %s %s: month already billed elsewhere',
                    charge.pk,
                    charge.student_id,
                    charge.period,
                )
        MonthCharge.objects.filter(pk=charge.pk).update(paid=F('paid') + allocation.amount)
    LedgerPayment.objects.filter(pk__in=payment_ids).update(confirmation=LedgerPayment.CONFIRMATION_CONFIRMED)


def payment_summary(records, *, method='', paid_on=None) -> dict:
    students = OrderedDict()
    family = None
    total_paid = ZERO
    for record in records:
        family = record.family
        total_paid = quantize(total_paid + record.paid_total)
        for line in record.student_lines.prefetch_related('months'):
            entry = students.setdefault(line.student_id, {'name': line.name, 'months': []})
            if line.admission_fee is not None:
                entry['admission_fee'] = str(line.admission_paid)
            for charge in line.months.all():
                if charge.is_void:
                    continue
                entry['months'].append({
                    'label': month_label(charge.year, charge.month),
                    'paid': str(charge.paid),
                    'expected': str(charge.discounted_fee),
                    'remaining': str(max(ZERO, quantize(charge.discounted_fee - charge.paid))),
                })

    return {
        'parent_name': family.name if family else '',
        'method': method,
        'paid_on': paid_on.isoformat() if paid_on else '',
        'total_paid': str(total_paid),
        'records': [record.pk for record in records],
        'students': list(students.values()),
    }


def notify_after_commit(kind, family, payload):
    def send():
        send_payment_notification(kind, family, payload)

    transaction.on_commit(send, robust=True)


def _confirmation_kind(record: LedgerRecord) -> str:
    if record.is_on_hold:
        return NotificationLog.KIND_PAYMENT_ON_HOLD
    if record.is_admission:
        return NotificationLog.KIND_ADMISSION_CONFIRMATION
    return NotificationLog.KIND_MONTHLY_CONFIRMATION


def _apply_month_allocations(record: LedgerRecord, rows, meta, confirmation, discount) -> LedgerPayment:
    payment = LedgerPayment.objects.create(
        record=record,
        amount=quantize(sum((row[3] for row in rows), ZERO)),
        confirmation=confirmation,
        **meta,
    )

    for student, year, month, amount in rows:
        line, _ = LedgerStudent.objects.get_or_create(
            record=record,
            student=student,
            defaults={'name': student.name},
        )
        charge = _claim_month_charge(line=line, student=student, year=year, month=month, discount=discount)
        MonthCharge.objects.filter(pk=charge.pk).update(paid=F('paid') + amount)
        PaymentAllocation.objects.create(
            payment=payment,
            line=line,
            month_charge=charge,
            component=PaymentAllocation.COMPONENT_MONTH,
            amount=amount,
        )

    return payment


@transaction.atomic
def record_admission_payment(
    *,
    family: Family,
    allocations,
    method,
    paid_on=None,
    on_hold=False,
    awaiting_processor=False,
    processor_payment_intent_id='',
    reference='',
    recorded_by=None,
):
    """Create one admission record; each student's amount goes to the admission fee first, then the first month."""
    _require_family_email(family)
    meta = _payment_meta(
        method=method,
        paid_on=paid_on,
        processor_payment_intent_id=processor_payment_intent_id,
        reference=reference,
        recorded_by=recorded_by,
    )
    if not allocations:
        raise ValidationError('At least one allocation is required.')

    students = _family_students(family, [row.get('student') for row in allocations])
    rows = OrderedDict()
    for row in allocations:
        student = students[int(row.get('student'))]
        if student.pk in rows:
            raise ValidationError({'student': f"{student.name} appears more than once."})
        if student.status not in ADMISSION_STATUSES:
            raise ValidationError(
                {'student': f"{student.name} is {student.get_status_display().lower()} and cannot be admitted."}
            )
        rows[student.pk] = (student, _parse_amount(row.get('amount')))

    discount = _family_discount(family)
    admission_fee = quantize(settings.FEES_ADMISSION_FEE)
    record = AdmissionLedger.objects.create(
        family=family,
        payment_type=LedgerRecord.TYPE_ADMISSION_ON_HOLD if on_hold else LedgerRecord.TYPE_ADMISSION,
        method=meta['method'],
    )
    payment = LedgerPayment.objects.create(
        record=record,
        amount=quantize(sum((amount for _, amount in rows.values()), ZERO)),
        confirmation=_confirmation_for(on_hold=on_hold, awaiting_processor=awaiting_processor),
        **meta,
    )

    for student, amount in rows.values():
        admission_part = min(amount, admission_fee)
        month_part = quantize(amount - admission_part)
        line = LedgerStudent.objects.create(
            record=record,
            student=student,
            name=student.name,
            admission_fee=admission_fee,
            admission_paid=admission_part,
        )
        year, month = first_billable_month(student.starting_date)
        charge = _claim_month_charge(
            line=line,
            student=student,
            year=year,
            month=month,
            discount=discount,
            settled_by_admission=True,
        )
        PaymentAllocation.objects.create(
            payment=payment,
            line=line,
            component=PaymentAllocation.COMPONENT_ADMISSION,
            amount=admission_part,
        )
        if month_part > 0:
            MonthCharge.objects.filter(pk=charge.pk).update(paid=F('paid') + month_part)
            PaymentAllocation.objects.create(
                payment=payment,
                line=line,
                month_charge=charge,
                component=PaymentAllocation.COMPONENT_MONTH,
                amount=month_part,
            )

    record = _refresh_record(record)
    logger.info(
        'Recorded admission payment %s of %s for family %s on record %s (%s)',
        payment.pk,
        payment.amount,
        family.pk,
        record.pk,
        record.status,
    )

    if not awaiting_processor:
        notify_after_commit(
            _confirmation_kind(record),
            family,
            payment_summary([record], method=meta['method'], paid_on=meta['paid_on']),
        )
    return {'records': [record], 'payments': [payment]}


@transaction.atomic
def record_monthly_payment(
    *,
    family: Family,
    allocations,
    method,
    paid_on=None,
    on_hold=False,
    awaiting_processor=False,
    processor_payment_intent_id='',
    reference='',
    recorded_by=None,
):
    """Apply month allocations, one ledger record per distinct calendar month."""
    _require_family_email(family)
    meta = _payment_meta(
        method=method,
        paid_on=paid_on,
        processor_payment_intent_id=processor_payment_intent_id,
        reference=reference,
        recorded_by=recorded_by,
    )
    rows = _normalize_month_allocations(family, allocations)
    discount = _family_discount(family)
    confirmation = _confirmation_for(on_hold=on_hold, awaiting_processor=awaiting_processor)

    by_month = OrderedDict()
    for row in sorted(rows, key=lambda item: (item[1], item[2], item[0].pk)):
        by_month.setdefault((row[1], row[2]), []).append(row)

    records, payments = [], []
    for (year, month), month_rows in by_month.items():
        record = _open_monthly_record(family=family, year=year, month=month, on_hold=on_hold)
        payment = _apply_month_allocations(record, month_rows, meta, confirmation, discount)
        record = _refresh_record(record, method=meta['method'])
        records.append(record)
        payments.append(payment)
        logger.info(
            'Recorded monthly payment %s of %s for family %s %s on record %s (%s, remaining %s)',
            payment.pk,
            payment.amount,
            family.pk,
            period_key(year, month),
            record.pk,
            record.status,
            record.remaining,
        )

    if not awaiting_processor:
        kind = NotificationLog.KIND_PAYMENT_ON_HOLD if on_hold else NotificationLog.KIND_MONTHLY_CONFIRMATION
        notify_after_commit(kind, family, payment_summary(records, method=meta['method'], paid_on=meta['paid_on']))
    return {'records': records, 'payments': payments}


@transaction.atomic
def top_up_payment(
    *,
    record: LedgerRecord,
    allocations,
    method,
    paid_on=None,
    on_hold=False,
    reference='',
    recorded_by=None,
):
    record = _lock_record(record.pk)
    if record.is_admission:
        raise ValidationError(ADMISSION_TOP_UP_MESSAGE)
    if not record.is_open:
        raise ValidationError(f"Record {record.pk} is {record.status}; create a new payment instead.")

    meta = _payment_meta(method=method, paid_on=paid_on, reference=reference, recorded_by=recorded_by)
    rows = _normalize_month_allocations(record.family, allocations)
    for _, year, month, _ in rows:
        if (year, month) != (record.billing_year, record.billing_month):
            raise ValidationError(f"Top-up allocations must target {record.billing_period}.")

    if on_hold and not record.is_on_hold:
        record.payment_type = LedgerRecord.TYPE_MONTHLY_ON_HOLD
        record.save(update_fields=['payment_type', 'updated_at'])

    payment = _apply_month_allocations(
        record,
        rows,
        meta,
        _confirmation_for(on_hold=on_hold, awaiting_processor=False),
        _family_discount(record.family),
    )
    record = _refresh_record(record, method=meta['method'])
    logger.info('Top-up %s of %s applied to record %s (%s)', payment.pk, payment.amount, record.pk, record.status)

    kind = NotificationLog.KIND_PAYMENT_ON_HOLD if on_hold else NotificationLog.KIND_MONTHLY_CONFIRMATION
    notify_after_commit(kind, record.family, payment_summary([record], method=meta['method'], paid_on=meta['paid_on']))
    return {'records': [record], 'payments': [payment]}


def record_payment(*, payment_type=None, allocations, family=None, record=None, **meta):
    """Top up an existing record when one is given, otherwise create records for the family."""
    if record is not None:
        return top_up_payment(
            record=record,
            allocations=allocations,
            on_hold=payment_type in LedgerRecord.ON_HOLD_TYPES,
            **meta,
        )

    if family is None:
        raise ValidationError({'family': 'Family is required.'})
    valid_types = {choice[0] for choice in LedgerRecord.PAYMENT_TYPE_CHOICES}
    if payment_type not in valid_types:
        raise ValidationError({'payment_type': 'Select a valid payment type.'})

    on_hold = payment_type in LedgerRecord.ON_HOLD_TYPES
    if payment_type in LedgerRecord.ADMISSION_TYPES:
        return record_admission_payment(family=family, allocations=allocations, on_hold=on_hold, **meta)
    return record_monthly_payment(family=family, allocations=allocations, on_hold=on_hold, **meta)


@transaction.atomic
def verify_on_hold_record(*, record: LedgerRecord, verified_by=None):
    record = _lock_record(record.pk)
    if not record.is_on_hold:
        raise ValidationError('Record is not awaiting verification.')
    if record.status in (LedgerRecord.STATUS_FAILED, LedgerRecord.STATUS_CANCELLED):
        raise ValidationError(f"Record {record.pk} is {record.status} and cannot be verified.")

    record.payments.filter(
        confirmation=LedgerPayment.CONFIRMATION_AWAITING_VERIFICATION,
    ).update(confirmation=LedgerPayment.CONFIRMATION_CONFIRMED)
    record.payment_type = record.settled_type
    record.save(update_fields=['payment_type', 'updated_at'])
    record = _refresh_record(record)

    logger.info(
        'Record %s verified by %s (%s)',
        record.pk,
        getattr(verified_by, 'pk', None),
        record.status,
    )
    notify_after_commit(
        _confirmation_kind(record),
        record.family,
        payment_summary([record], method=record.method, paid_on=timezone.localdate()),
    )
    return record


@transaction.atomic
def cancel_record(*, record: LedgerRecord, reason: str, cancelled_by=None):
    """Cancel an open record.

    When confirmed money sits on the record next to unconfirmed payments, only the
    unconfirmed payments are reversed and the record stays open.
    """
    record = _lock_record(record.pk)
    if not record.is_open:
        raise ValidationError('Only pending or partially paid records can be cancelled.')
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError({'reason': 'Cancellation reason is required.'})

    live = _live_payments(record)
    unconfirmed_ids = list(live.filter(confirmation__in=LedgerPayment.UNCONFIRMED).values_list('pk', flat=True))
    if unconfirmed_ids and live.filter(confirmation=LedgerPayment.CONFIRMATION_CONFIRMED).exists():
        _reverse_payments(unconfirmed_ids)
        record.payment_type = record.settled_type
        record.status_reason = reason[:255]
        record.save(update_fields=['payment_type', 'status_reason', 'updated_at'])
        record = _refresh_record(record)
        logger.info(
            'Unconfirmed payments %s on record %s cancelled by %s: %s (%s)',
            unconfirmed_ids,
            record.pk,
            getattr(cancelled_by, 'pk', None),
            reason,
            record.status,
        )
        return record

    _void_charges(record.pk)
    LedgerRecord.objects.filter(pk=record.pk).update(
        status=LedgerRecord.STATUS_CANCELLED,
        status_reason=reason[:255],
        version=F('version') + 1,
        updated_at=timezone.now(),
    )
    logger.info('Record %s cancelled by %s: %s', record.pk, getattr(cancelled_by, 'pk', None), reason)
    record.refresh_from_db()
    return record


def _apply_shared_outcome(record, payment_intent_id, new_status) -> bool:
    """Settle only this intent's payments on a record that also holds other money."""
    intent_payments = record.payments.filter(processor_payment_intent_id=payment_intent_id)
    if new_status == LedgerRecord.STATUS_PAID:
        if record.status not in LedgerRecord.COVERING_STATUSES:
            return False
        reversed_ids = list(
            intent_payments.filter(confirmation=LedgerPayment.CONFIRMATION_REVERSED).values_list('pk', flat=True)
        )
        awaiting = intent_payments.filter(confirmation__in=LedgerPayment.UNCONFIRMED)
        if not reversed_ids and not awaiting.exists():
            return False
        awaiting.update(confirmation=LedgerPayment.CONFIRMATION_CONFIRMED)
        _reapply_payments(reversed_ids)
    else:
        if not record.is_open:
            return False
        payment_ids = list(
            intent_payments.filter(confirmation__in=LedgerPayment.UNCONFIRMED).values_list('pk', flat=True)
        )
        if not payment_ids:
            return False
        _reverse_payments(payment_ids)

    _refresh_record(record)
    return True


def _apply_outcome(record_id, payment_intent_id, new_status):
    record = _lock_record(record_id)
    shared = _live_payments(record).exclude(processor_payment_intent_id=payment_intent_id).exists()
    if shared and new_status != LedgerRecord.STATUS_PENDING:
        previous = record.status
        changed = _apply_shared_outcome(record, payment_intent_id, new_status)
        record.refresh_from_db()
        logger.info(
            'Intent %s %s on shared record %s: %s -> %s%s',
            payment_intent_id,
            new_status,
            record.pk,
            previous,
            record.status,
            '' if changed else ' (no change)',
        )
        return record, changed

    updates = {
        'status': new_status,
        'version': F('version') + 1,
        'updated_at': timezone.now(),
    }
    if new_status == LedgerRecord.STATUS_PAID:
        updates['remaining'] = ZERO

    changed = bool(
        LedgerRecord.objects.filter(
            pk=record.pk,
            status__in=PROCESSOR_TRANSITIONS[new_status],
        ).update(**updates)
    )

    if changed:
        if new_status == LedgerRecord.STATUS_PAID:
            LedgerPayment.objects.filter(
                record_id=record.pk,
                processor_payment_intent_id=payment_intent_id,
            ).update(confirmation=LedgerPayment.CONFIRMATION_CONFIRMED)
            if record.status == LedgerRecord.STATUS_FAILED:
                _restore_charges(record.pk)
        elif new_status in (LedgerRecord.STATUS_FAILED, LedgerRecord.STATUS_CANCELLED):
            _void_charges(record.pk)
        logger.info('Record %s moved %s -> %s by intent %s', record.pk, record.status, new_status, payment_intent_id)
    else:
        logger.info(
            'Record %s left as %s; %s from intent %s not applicable',
            record.pk,
            record.status,
            new_status,
            payment_intent_id,
        )

    record.refresh_from_db()
    return record, changed


@transaction.atomic
def apply_processor_outcome(*, payment_intent_id: str, new_status: str):
    """Move every record paid through this payment intent to new_status.

    Returns a list of (record, changed) pairs, empty when no payment carries the intent id.
    """
    if new_status not in PROCESSOR_TRANSITIONS:
        raise ValueError(f"Unsupported processor outcome: {new_status}")

    record_ids = sorted(set(
        LedgerPayment.objects.filter(processor_payment_intent_id=payment_intent_id)
        .values_list('record_id', flat=True)
    ))
    return [_apply_outcome(record_id, payment_intent_id, new_status) for record_id in record_ids]
