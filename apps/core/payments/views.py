import json
import logging

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.core.fees.exceptions import FeeLedgerError, error_response
from apps.core.fees.serializers import serialize_record
from apps.core.fees.views import STAFF_ROLES, ALL_ROLES, parse_allocations, family_for, json_body
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import role_required

from .services import charge_direct_debit, start_mandate_setup
from .signatures import SignatureVerificationError, verify_signature
from .webhooks import handle_event

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def processor_webhook(request):
    payload = request.body
    try:
        verify_signature(
            payload,
            request.META.get('HTTP_STRIPE_SIGNATURE', ''),
            settings.PAYMENT_PROCESSOR_WEBHOOK_SECRET,
            tolerance=settings.PAYMENT_WEBHOOK_TOLERANCE_SECONDS,
        )
    except SignatureVerificationError as exc:
        logger.warning('Rejected processor webhook: %s', exc)
        return JsonResponse({'error': {'code': 'INVALID_SIGNATURE', 'message': str(exc)}}, status=400)

    try:
        event = json.loads(payload)
    except ValueError:
        return JsonResponse({'error': {'code': 'VALIDATION_ERROR', 'message': 'Invalid JSON payload.'}}, status=400)
    if not isinstance(event, dict):
        return JsonResponse({'error': {'code': 'VALIDATION_ERROR', 'message': 'Invalid event payload.'}}, status=400)

    try:
        outcome = handle_event(event)
    except Exception:
        logger.exception('Processor webhook %s (%s) failed', event.get('id'), event.get('type'))
        return JsonResponse({'error': {'code': 'INTERNAL_ERROR', 'message': 'Webhook handling failed.'}}, status=500)

    return JsonResponse({'received': True, 'outcome': outcome})


@login_required
@role_required(STAFF_ROLES)
@require_POST
def direct_debit_charge(request):
    try:
        body = json_body(request)
        family = family_for(request, body.get('family'))
        result = charge_direct_debit(
            family=family,
            allocations=parse_allocations(body),
            initiated_by=request.user,
        )
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    log_audit_event(
        request=request,
        action='payments.direct_debit_started',
        target=family,
        details=f"Intent={result['payment_intent_id']}",
    )
    return JsonResponse(
        {
            'payment_intent_id': result['payment_intent_id'],
            'records': [serialize_record(record) for record in result['records']],
        },
        status=202,
    )


@login_required
@role_required(ALL_ROLES)
@require_POST
def direct_debit_setup(request):
    try:
        body = json_body(request)
        family = family_for(request, body.get('family') or request.user.family_id)
        session = start_mandate_setup(
            family=family,
            success_url=body.get('success_url') or settings.PARENT_PORTAL_URL,
            cancel_url=body.get('cancel_url') or settings.PARENT_PORTAL_URL,
            preferred_payment_date=body.get('preferred_payment_date'),
        )
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    log_audit_event(request=request, action='payments.mandate_setup_started', target=family)
    return JsonResponse(session, status=201)
