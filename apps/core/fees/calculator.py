from __future__ import annotations

import calendar
from datetime import date
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.core.exceptions import ValidationError

TWO_PLACES = Decimal('0.01')


def to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    return int((quantize(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value) -> Decimal:
    return quantize(Decimal(int(value)) / 100)


def discounted_fee(base_fee, discount_percent) -> Decimal:
    base = to_decimal(base_fee)
    discount = to_decimal(discount_percent)
    if base < 0:
        raise ValidationError('Monthly fee cannot be negative.')
    if discount < 0 or discount > 100:
        raise ValidationError('Discount must be between 0 and 100.')
    return quantize(base - base * discount / 100)


def month_start(value: date) -> date:
    return value.replace(day=1)


def next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def month_label(year: int, month: int) -> str:
    return f"{calendar.month_name[month]} {year}"


def period_key(year: int, month: int) -> str:
    return f"{year}-{month:02d}"


def first_billable_month(joining_date: date, cutover_date: date | None = None) -> tuple[int, int]:
    cutover_date = cutover_date or settings.FEES_BILLING_CUTOVER_DATE
    start = month_start(max(joining_date, cutover_date))
    return start.year, start.month


def billable_months(joining_date: date, as_of: date, cutover_date: date | None = None) -> list[tuple[int, int]]:
    """Months from max(joining, cutover) through as_of, ascending, both ends inclusive."""
    if joining_date > as_of:
        return []

    year, month = first_billable_month(joining_date, cutover_date)
    end = (as_of.year, as_of.month)
    months = []
    while (year, month) <= end:
        months.append((year, month))
        year, month = next_month(year, month)
    return months
