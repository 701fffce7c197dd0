from __future__ import annotations

from collections import OrderedDict
from decimal import Decimal

from django.utils import timezone

from apps.core.students.models import Family, Student
from apps.core.students.services import billable_students

from .calculator import billable_months, discounted_fee, month_label, period_key, quantize
from .models import LedgerRecord, MonthCharge

ZERO = Decimal('0.00')


def _scope(family: Family | None, student: Student | None):
    if student is not None:
        family = student.family
        students = [student] if student.is_billable else []
    else:
        students = list(billable_students(family))
    return family, students


def _covering_charges(students):
    charges = (
        MonthCharge.objects.filter(
            student__in=students,
            is_void=False,
            line__record__status__in=LedgerRecord.COVERING_STATUSES,
        )
        .select_related('line__record')
    )
    return {(charge.student_id, charge.year, charge.month): charge for charge in charges}


def _group(groups, year, month, student, due, paid):
    key = (year, month)
    group = groups.get(key)
    if group is None:
        group = groups[key] = {
            'year': year,
            'month': month,
            'period': period_key(year, month),
            'label': month_label(year, month),
            'total_amount': ZERO,
            'students': [],
        }
    remaining = quantize(due - paid)
    group['students'].append({
        'student_id': student.pk,
        'name': student.name,
        'due': due,
        'paid': paid,
        'remaining': remaining,
    })
    group['total_amount'] = quantize(group['total_amount'] + remaining)


def unpaid_months(*, family: Family | None = None, student: Student | None = None, as_of=None, descending=False):
    """Group a family's (or one student's) outstanding months by calendar month.

    Months without any covering charge land in ``unpaid``; months with money
    recorded against them but less than the discounted fee land in
    ``partially_paid``. A month settled through an admission payment, or held
    by a record the processor marked paid, is always covered.
    """
    if family is None and student is None:
        raise ValueError('unpaid_months needs a family or a student.')

    as_of = as_of or timezone.localdate()
    family, students = _scope(family, student)
    discount = Family.objects.values_list('discount_percent', flat=True).get(pk=family.pk)
    covered = _covering_charges(students)

    unpaid, partial = OrderedDict(), OrderedDict()
    for current in students:
        due = discounted_fee(current.monthly_fee, discount)
        for year, month in billable_months(current.starting_date, as_of):
            charge = covered.get((current.pk, year, month))
            if charge is None:
                _group(unpaid, year, month, current, due, ZERO)
                continue
            if charge.settled_by_admission or charge.line.record.status == LedgerRecord.STATUS_PAID:
                continue
            if charge.paid <= 0:
                _group(unpaid, year, month, current, due, ZERO)
            elif charge.paid < charge.discounted_fee:
                _group(partial, year, month, current, charge.discounted_fee, charge.paid)

    def ordered(groups):
        return [groups[key] for key in sorted(groups, reverse=descending)]

    unpaid_groups = ordered(unpaid)
    partial_groups = ordered(partial)
    return {
        'unpaid': unpaid_groups,
        'partially_paid': partial_groups,
        'total_due': quantize(
            sum((group['total_amount'] for group in unpaid_groups + partial_groups), ZERO)
        ),
    }
