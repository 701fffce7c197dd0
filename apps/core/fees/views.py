import json

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.http import require_GET, require_POST

from apps.core.students.models import Family, Student
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import role_required

from .exceptions import FeeLedgerError, LedgerNotFound, error_response
from .models import LedgerRecord
from .outstanding import unpaid_months
from .serializers import serialize_outstanding, serialize_record
from .services import cancel_record, record_payment, verify_on_hold_record

STAFF_ROLES = ('admin', 'accountant')
ALL_ROLES = ('admin', 'accountant', 'parent')


def json_body(request) -> dict:
    try:
        body = json.loads(request.body or b'{}')
    except (TypeError, ValueError):
        raise ValidationError('Request body must be valid JSON.')
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object.')
    return body


def parse_optional_date(value, field):
    if not value:
        return None
    parsed = parse_date(str(value))
    if parsed is None:
        raise ValidationError({field: 'Enter a date in YYYY-MM-DD format.'})
    return parsed


def parse_allocations(body):
    allocations = body.get('allocations')
    if not isinstance(allocations, list) or not all(isinstance(row, dict) for row in allocations):
        raise ValidationError({'allocations': 'Allocations must be a list of objects.'})
    return allocations


def family_for(request, family_id) -> Family:
    if request.user.role == 'parent':
        if str(family_id) != str(request.user.family_id):
            raise LedgerNotFound(f"Family {family_id} not found.")
    try:
        return Family.objects.get(pk=int(family_id))
    except (TypeError, ValueError):
        raise ValidationError({'family': 'Family id must be an integer.'})
    except Family.DoesNotExist:
        raise LedgerNotFound(f"Family {family_id} not found.")


def _record_for(request, pk) -> LedgerRecord:
    queryset = LedgerRecord.objects.select_related('family')
    if request.user.role == 'parent':
        queryset = queryset.for_family(request.user.family_id)
    record = queryset.filter(pk=pk).first()
    if record is None:
        raise LedgerNotFound(f"Ledger record {pk} not found.")
    return record


def _payment_response(result, status=201):
    return JsonResponse(
        {'records': [serialize_record(record) for record in result['records']]},
        status=status,
    )


ON_HOLD_VARIANTS = {
    LedgerRecord.TYPE_ADMISSION: LedgerRecord.TYPE_ADMISSION_ON_HOLD,
    LedgerRecord.TYPE_MONTHLY: LedgerRecord.TYPE_MONTHLY_ON_HOLD,
}


def _payment_type_for(request, payment_type):
    # Money reported by a parent waits for office verification.
    if request.user.role == 'parent':
        return ON_HOLD_VARIANTS.get(payment_type, payment_type)
    return payment_type


def _payment_meta(request, body):
    return {
        'method': body.get('method'),
        'paid_on': parse_optional_date(body.get('date'), 'date'),
        'reference': str(body.get('reference') or ''),
        'recorded_by': request.user,
    }


@login_required
@role_required(ALL_ROLES)
@require_POST
def payment_create(request):
    try:
        body = json_body(request)
        family = family_for(request, body.get('family'))
        result = record_payment(
            family=family,
            payment_type=_payment_type_for(request, body.get('payment_type')),
            allocations=parse_allocations(body),
            **_payment_meta(request, body),
        )
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    for record in result['records']:
        log_audit_event(
            request=request,
            action='fees.payment_recorded',
            target=record,
            details=f"Family={family.pk}, Type={record.payment_type}, Status={record.status}",
        )
    return _payment_response(result)


@login_required
@role_required(ALL_ROLES)
@require_POST
def payment_top_up(request, pk):
    try:
        body = json_body(request)
        record = _record_for(request, pk)
        result = record_payment(
            record=record,
            payment_type=_payment_type_for(request, body.get('payment_type') or record.settled_type),
            allocations=parse_allocations(body),
            **_payment_meta(request, body),
        )
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    log_audit_event(
        request=request,
        action='fees.payment_topped_up',
        target=result['records'][0],
        details=f"Amount={result['payments'][0].amount}",
    )
    return _payment_response(result, status=200)


@login_required
@role_required(STAFF_ROLES)
@require_POST
def record_verify(request, pk):
    try:
        record = verify_on_hold_record(record=_record_for(request, pk), verified_by=request.user)
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    log_audit_event(request=request, action='fees.record_verified', target=record)
    return JsonResponse({'record': serialize_record(record)})


@login_required
@role_required(STAFF_ROLES)
@require_POST
def record_cancel(request, pk):
    try:
        body = json_body(request)
        record = cancel_record(
            record=_record_for(request, pk),
            reason=str(body.get('reason') or ''),
            cancelled_by=request.user,
        )
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    log_audit_event(request=request, action='fees.record_cancelled', target=record, details=record.status_reason)
    return JsonResponse({'record': serialize_record(record)})


@login_required
@role_required(ALL_ROLES)
@require_GET
def record_list(request):
    try:
        family = family_for(request, request.GET.get('family') or request.user.family_id)
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    records = LedgerRecord.objects.for_family(family).select_related('family')
    status = request.GET.get('status')
    if status:
        records = records.filter(status=status)
    return JsonResponse({'records': [serialize_record(record) for record in records]})


@login_required
@role_required(ALL_ROLES)
@require_GET
def record_detail(request, pk):
    try:
        record = _record_for(request, pk)
    except FeeLedgerError as exc:
        return error_response(exc)
    return JsonResponse({'record': serialize_record(record)})


@login_required
@role_required(ALL_ROLES)
@require_GET
def outstanding_months(request):
    try:
        as_of = parse_optional_date(request.GET.get('as_of'), 'as_of') or timezone.localdate()
        descending = request.GET.get('order', 'asc') == 'desc'

        student_id = request.GET.get('student')
        if student_id:
            if not str(student_id).isdigit():
                raise ValidationError({'student': 'Student id must be an integer.'})
            student = Student.objects.select_related('family').filter(pk=int(student_id)).first()
            if student is None:
                raise LedgerNotFound(f"Student {student_id} not found.")
            family_for(request, student.family_id)
            result = unpaid_months(student=student, as_of=as_of, descending=descending)
        else:
            family = family_for(request, request.GET.get('family') or request.user.family_id)
            result = unpaid_months(family=family, as_of=as_of, descending=descending)
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    payload = serialize_outstanding(result)
    payload['as_of'] = as_of.isoformat()
    return JsonResponse(payload)
