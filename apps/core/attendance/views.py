from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_POST

from apps.core.fees.exceptions import FeeLedgerError, LedgerNotFound, error_response
from apps.core.fees.views import STAFF_ROLES, json_body, parse_optional_date
from apps.core.students.models import Student
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import role_required

from .services import mark_attendance_bulk


def _marks_from_body(body):
    rows = body.get('marks')
    if rows is None:
        rows = [{'student': body.get('student'), 'status': body.get('status')}]
    if not isinstance(rows, list) or not rows or not all(isinstance(row, dict) for row in rows):
        raise ValidationError({'marks': 'Marks must be a non-empty list of objects.'})

    student_ids = []
    for row in rows:
        if not str(row.get('student') or '').isdigit():
            raise ValidationError({'student': 'Student id must be an integer.'})
        student_ids.append(int(row['student']))

    students = Student.objects.select_related('family').in_bulk(student_ids)
    missing = [student_id for student_id in student_ids if student_id not in students]
    if missing:
        raise LedgerNotFound(f"Student {missing[0]} not found.")
    return [(students[int(row['student'])], row.get('status')) for row in rows]


@login_required
@role_required(STAFF_ROLES)
@require_POST
def attendance_mark(request):
    try:
        body = json_body(request)
        target_date = parse_optional_date(body.get('date'), 'date') or timezone.localdate()
        results = mark_attendance_bulk(
            marks=_marks_from_body(body),
            date=target_date,
            marked_by=request.user,
        )
    except (ValidationError, FeeLedgerError) as exc:
        return error_response(exc)

    log_audit_event(
        request=request,
        action='attendance.marked',
        details=f"Date={target_date}, Marks={len(results)}",
    )
    return JsonResponse({
        'date': target_date.isoformat(),
        'marks': [
            {
                'student_id': attendance.student_id,
                'status': attendance.status,
                'alert': stage,
            }
            for attendance, stage in results
        ],
    })
