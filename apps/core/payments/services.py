from __future__ import annotations

import hashlib
import logging

from django.conf import settings
from django.core.exceptions import ValidationError

from apps.core.fees.calculator import quantize, to_minor_units
from apps.core.fees.exceptions import FeeLedgerError
from apps.core.fees.models import LedgerPayment, LedgerRecord
from apps.core.fees.services import allocation_total, apply_processor_outcome, record_monthly_payment
from apps.core.students.models import Family

from .client import PaymentProcessorClient, ProcessorError
from .models import DirectDebitMandate

logger = logging.getLogger(__name__)


def start_mandate_setup(
    *,
    family: Family,
    success_url: str,
    cancel_url: str,
    preferred_payment_date=None,
    client: PaymentProcessorClient | None = None,
):
    """Open a hosted setup session; the mandate row itself is only written by processor events."""
    if preferred_payment_date is not None:
        try:
            preferred_payment_date = int(preferred_payment_date)
        except (TypeError, ValueError):
            raise ValidationError({'preferred_payment_date': 'Preferred payment date must be a day number.'})
        if not 1 <= preferred_payment_date <= 28:
            raise ValidationError({'preferred_payment_date': 'Preferred payment date must be between 1 and 28.'})

    existing = DirectDebitMandate.objects.filter(family=family).first()
    if existing is not None and existing.is_active:
        raise ValidationError('Family already has an active direct debit.')

    client = client or PaymentProcessorClient.from_settings()
    customer = client.ensure_customer(
        customer_id=existing.processor_customer_id if existing else '',
        email=family.email,
        name=family.name,
        metadata={'family_id': str(family.pk)},
    )

    metadata = {'family_id': str(family.pk)}
    if preferred_payment_date:
        metadata['preferred_payment_date'] = str(preferred_payment_date)
    session = client.create_setup_session(
        customer_id=customer['id'],
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
    )
    logger.info('Started mandate setup session %s for family %s', session.get('id'), family.pk)
    return {
        'customer_id': customer['id'],
        'session_id': session.get('id'),
        'url': session.get('url'),
    }


def _charge_idempotency_key(family: Family, allocations) -> str:
    # Stable until another direct debit payment is recorded for the family.
    attempt = LedgerPayment.objects.filter(record__family=family, method=LedgerPayment.METHOD_DIRECT_DEBIT).count()
    rows = sorted(
        f"{int(row['student'])}:{int(row['year'])}-{int(row['month']):02d}:{quantize(row['amount'])}"
        for row in allocations
    )
    digest = hashlib.sha256('|'.join([str(family.pk), str(attempt), *rows]).encode()).hexdigest()
    return f"dd-{family.pk}-{digest[:32]}"


def charge_direct_debit(
    *,
    family: Family,
    allocations,
    initiated_by=None,
    client: PaymentProcessorClient | None = None,
):
    """Collect monthly fees against the family's active mandate.

    The ledger records are committed, carrying the payment intent id, before
    the intent is confirmed so that processor events always find them.
    """
    mandate = DirectDebitMandate.objects.filter(family=family).first()
    if mandate is None or not mandate.is_active:
        raise ValidationError('Family has no active direct debit mandate.')

    total = allocation_total(family, allocations)
    client = client or PaymentProcessorClient.from_settings()

    remote = client.retrieve_mandate(mandate.processor_mandate_id)
    if remote.get('status') != 'active':
        raise ValidationError(
            f"Processor reports mandate {mandate.processor_mandate_id} as {remote.get('status') or 'unknown'}."
        )

    intent = client.create_payment_intent(
        amount_minor=to_minor_units(total),
        currency=settings.FEES_CURRENCY,
        customer_id=mandate.processor_customer_id,
        payment_method_id=mandate.processor_payment_method_id,
        mandate_id=mandate.processor_mandate_id,
        metadata={'family_id': str(family.pk)},
        idempotency_key=_charge_idempotency_key(family, allocations),
    )
    intent_id = intent['id']

    try:
        result = record_monthly_payment(
            family=family,
            allocations=allocations,
            method=LedgerPayment.METHOD_DIRECT_DEBIT,
            awaiting_processor=True,
            processor_payment_intent_id=intent_id,
            recorded_by=initiated_by,
        )
    except (ValidationError, FeeLedgerError):
        try:
            client.cancel_payment_intent(intent_id)
        except ProcessorError:
            logger.exception('Could not cancel unused payment intent %s', intent_id)
        raise

    try:
        client.confirm_payment_intent(intent_id)
    except ProcessorError:
        apply_processor_outcome(payment_intent_id=intent_id, new_status=LedgerRecord.STATUS_FAILED)
        raise

    logger.info('Direct debit %s of %s started for family %s', intent_id, total, family.pk)
    result['payment_intent_id'] = intent_id
    return result
