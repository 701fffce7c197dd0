"""Reconciles payment processor events against mandates and ledger records.

Every handler is safe to replay: ledger transitions are conditional updates
keyed on the payment intent id, and mandate emails are guarded by stored
state on the mandate row.
"""
import logging

from django.db import transaction
from django.utils import timezone

from apps.core.fees.models import LedgerRecord
from apps.core.fees.services import apply_processor_outcome, notify_after_commit, payment_summary
from apps.core.students.models import Family
from apps.operations.communication.models import NotificationLog

from .models import DirectDebitMandate

logger = logging.getLogger(__name__)

INACTIVE_MANDATE_STATUSES = ('inactive', 'revoked')

PAYMENT_OUTCOMES = {
    'payment_intent.succeeded': LedgerRecord.STATUS_PAID,
    'payment_intent.payment_failed': LedgerRecord.STATUS_FAILED,
    'charge.failed': LedgerRecord.STATUS_FAILED,
    'payment_intent.canceled': LedgerRecord.STATUS_CANCELLED,
    'payment_intent.processing': LedgerRecord.STATUS_PENDING,
    'charge.pending': LedgerRecord.STATUS_PENDING,
}


def _event_object(event):
    return (event.get('data') or {}).get('object') or {}


def _metadata(obj):
    return obj.get('metadata') or {}


def _family_for_event(obj):
    family_id = str(_metadata(obj).get('family_id') or '')
    if family_id.isdigit():
        family = Family.objects.filter(pk=int(family_id)).first()
        if family is not None:
            return family

    customer_id = obj.get('customer') or ''
    if customer_id:
        mandate = DirectDebitMandate.objects.select_related('family').filter(
            processor_customer_id=customer_id,
        ).first()
        if mandate is not None:
            return mandate.family
    return None


def _preferred_day(obj):
    value = str(_metadata(obj).get('preferred_payment_date') or '')
    if value.isdigit() and 1 <= int(value) <= 28:
        return int(value)
    return None


def handle_mandate_setup(event):
    obj = _event_object(event)
    family = _family_for_event(obj)
    if family is None:
        logger.warning('Setup event %s references no known family (customer %s)', event.get('id'), obj.get('customer'))
        return 'ignored'

    mandate, _ = DirectDebitMandate.objects.select_for_update().get_or_create(family=family)
    if mandate.is_active:
        logger.info('Family %s already has an active mandate; ignoring setup event %s', family.pk, event.get('id'))
        return 'ignored'

    mandate_id = obj.get('mandate') or ''
    replay = (
        mandate.status == DirectDebitMandate.STATUS_PENDING
        and mandate.setup_date is not None
        and mandate.processor_mandate_id == mandate_id
    )

    mandate.processor_customer_id = obj.get('customer') or mandate.processor_customer_id
    mandate.processor_mandate_id = mandate_id or mandate.processor_mandate_id
    mandate.processor_payment_method_id = obj.get('payment_method') or mandate.processor_payment_method_id
    mandate.preferred_payment_date = _preferred_day(obj) or mandate.preferred_payment_date
    mandate.status = DirectDebitMandate.STATUS_PENDING
    mandate.mandate_status = 'pending'
    mandate.failure_reason = ''
    if not replay:
        mandate.setup_date = timezone.now()
        mandate.success_email_sent_at = None
    mandate.save()

    if replay:
        logger.info('Setup event %s replayed for family %s', event.get('id'), family.pk)
        return 'unchanged'

    logger.info('Mandate %s pending for family %s', mandate.processor_mandate_id, family.pk)
    notify_after_commit(NotificationLog.KIND_MANDATE_PENDING, family, {'parent_name': family.name})
    return 'mandate_pending'


def handle_mandate_updated(event):
    obj = _event_object(event)
    mandate = (
        DirectDebitMandate.objects.select_for_update()
        .select_related('family')
        .filter(processor_mandate_id=obj.get('id') or '')
        .exclude(processor_mandate_id='')
        .first()
    )
    if mandate is None:
        logger.warning('Mandate event %s for unknown mandate %s', event.get('id'), obj.get('id'))
        return 'ignored'

    processor_status = obj.get('status') or ''
    family = mandate.family
    now = timezone.now()

    if processor_status == 'active':
        activated = DirectDebitMandate.objects.filter(
            pk=mandate.pk,
            status=DirectDebitMandate.STATUS_PENDING,
        ).update(status=DirectDebitMandate.STATUS_ACTIVE, mandate_status='active', active_date=now)
        if not activated:
            DirectDebitMandate.objects.filter(pk=mandate.pk).update(mandate_status='active')
            logger.info('Mandate %s is %s; active event %s not applied', mandate.pk, mandate.status, event.get('id'))
            return 'unchanged'

        claimed = DirectDebitMandate.objects.filter(
            pk=mandate.pk,
            success_email_sent_at__isnull=True,
        ).update(success_email_sent_at=now)
        if claimed:
            notify_after_commit(
                NotificationLog.KIND_MANDATE_ACTIVE,
                family,
                {'parent_name': family.name, 'preferred_payment_date': mandate.preferred_payment_date},
            )
        logger.info('Mandate %s active for family %s', mandate.processor_mandate_id, family.pk)
        return 'mandate_active'

    if processor_status in INACTIVE_MANDATE_STATUSES:
        reason = str(obj.get('reason') or (obj.get('payment_method_details') or {}).get('reason') or '')[:255]
        cancelled = DirectDebitMandate.objects.filter(pk=mandate.pk).exclude(
            status=DirectDebitMandate.STATUS_CANCELLED,
        ).update(status=DirectDebitMandate.STATUS_CANCELLED, mandate_status=processor_status, failure_reason=reason)
        if not cancelled:
            return 'unchanged'
        logger.warning('Mandate %s for family %s is %s', mandate.processor_mandate_id, family.pk, processor_status)
        notify_after_commit(
            NotificationLog.KIND_MANDATE_FAILED,
            family,
            {'parent_name': family.name, 'reason': reason},
        )
        return 'mandate_cancelled'

    DirectDebitMandate.objects.filter(pk=mandate.pk).update(mandate_status=processor_status[:40])
    return 'mandate_status_mirrored'


def handle_payment_event(event):
    event_type = event.get('type')
    obj = _event_object(event)
    new_status = PAYMENT_OUTCOMES[event_type]
    intent_id = obj.get('payment_intent') if event_type.startswith('charge.') else obj.get('id')
    if not intent_id:
        logger.warning('Payment event %s carries no payment intent id', event.get('id'))
        return 'ignored'

    outcomes = apply_processor_outcome(payment_intent_id=intent_id, new_status=new_status)
    if not outcomes:
        logger.info('No ledger record for payment intent %s (%s); nothing to do', intent_id, event_type)
        return 'ignored'

    if new_status == LedgerRecord.STATUS_FAILED:
        error = obj.get('last_payment_error') or {}
        logger.warning(
            'Payment intent %s failed for records %s: %s',
            intent_id,
            [record.pk for record, _ in outcomes],
            error.get('message') or obj.get('failure_message') or 'no reason given',
        )

    changed = [record for record, was_changed in outcomes if was_changed]
    if not changed:
        return 'unchanged'

    if new_status == LedgerRecord.STATUS_PAID:
        kind = (
            NotificationLog.KIND_ADMISSION_CONFIRMATION
            if changed[0].is_admission
            else NotificationLog.KIND_PAYMENT_SUCCEEDED
        )
        notify_after_commit(
            kind,
            changed[0].family,
            payment_summary(changed, method=changed[0].method, paid_on=timezone.localdate()),
        )
    return f"record_{new_status}"


EVENT_HANDLERS = {
    'setup_intent.succeeded': handle_mandate_setup,
    'mandate.updated': handle_mandate_updated,
}
EVENT_HANDLERS.update({event_type: handle_payment_event for event_type in PAYMENT_OUTCOMES})


@transaction.atomic
def handle_event(event: dict) -> str:
    event_type = event.get('type') or ''
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info('Ignoring processor event %s of type %s', event.get('id'), event_type or 'unknown')
        return 'ignored'

    logger.info('Handling processor event %s (%s)', event.get('id'), event_type)
    return handler(event)
