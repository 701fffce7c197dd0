from __future__ import annotations

import logging

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from apps.core.students.models import Student
from apps.operations.communication.models import NotificationLog
from apps.operations.communication.services import send_notification

from .models import AttendanceCounter, StudentAttendance

logger = logging.getLogger(__name__)

STATUSES = {choice[0] for choice in StudentAttendance.STATUS_CHOICES}
STREAK_STATUSES = (StudentAttendance.STATUS_ABSENT, StudentAttendance.STATUS_LATE)


def _thresholds(student: Student) -> dict:
    thresholds = settings.ATTENDANCE_ALERT_THRESHOLDS
    return thresholds.get(student.class_session) or thresholds[Student.SESSION_WEEKDAYS]


def _reset_streak(counter: AttendanceCounter, status: str):
    setattr(counter, f"{status}_count", 0)
    setattr(counter, f"has_{status}_first_alert", False)
    setattr(counter, f"has_{status}_second_alert", False)


def _alert_stage(counter: AttendanceCounter, status: str, thresholds: dict):
    count = getattr(counter, f"{status}_count")
    if count >= thresholds['first'] and not getattr(counter, f"has_{status}_first_alert"):
        return 'first'
    if (
        count >= thresholds['second']
        and getattr(counter, f"has_{status}_first_alert")
        and not getattr(counter, f"has_{status}_second_alert")
    ):
        return 'second'
    return None


def _send_alert(student: Student, status: str, stage: str, count: int):
    family = student.family
    send_notification(
        NotificationLog.KIND_ATTENDANCE_ALERT,
        family.email,
        {
            'parent_name': family.name,
            'student_name': student.name,
            'status': status,
            'stage': stage,
            'count': count,
        },
        family=family,
    )


def update_attendance_counter(student: Student, status: str):
    """Advance the student's absent/late streak and return the alert stage reached, if any."""
    counter, _ = AttendanceCounter.objects.select_for_update().get_or_create(student=student)

    if status == StudentAttendance.STATUS_PRESENT:
        for streak in STREAK_STATUSES:
            _reset_streak(counter, streak)
        counter.last_reset = timezone.now()
        counter.last_status = status
        counter.save()
        return None

    opposite = StudentAttendance.STATUS_LATE if status == StudentAttendance.STATUS_ABSENT else StudentAttendance.STATUS_ABSENT
    if counter.last_status and counter.last_status != status:
        _reset_streak(counter, opposite)

    count = getattr(counter, f"{status}_count") + 1
    setattr(counter, f"{status}_count", count)
    counter.last_status = status

    stage = _alert_stage(counter, status, _thresholds(student))
    if stage:
        setattr(counter, f"has_{status}_{stage}_alert", True)
        transaction.on_commit(lambda: _send_alert(student, status, stage, count), robust=True)
        logger.info('Queued %s %s alert for student %s after %s marks', stage, status, student.pk, count)

    counter.save()
    return stage


@transaction.atomic
def mark_attendance(*, student: Student, date, status: str, marked_by=None):
    """Record one daily mark; returns (attendance, alert_stage).

    Re-marking a day with the same status leaves the streak untouched.
    """
    if status not in STATUSES:
        raise ValidationError({'status': f"Status must be one of {', '.join(sorted(STATUSES))}."})
    if date > timezone.localdate():
        raise ValidationError({'date': 'Attendance cannot be marked for a future date.'})

    attendance = StudentAttendance.objects.select_for_update().filter(student=student, date=date).first()
    if attendance is not None and attendance.status == status:
        return attendance, None

    if attendance is None:
        attendance = StudentAttendance.objects.create(
            student=student,
            date=date,
            status=status,
            marked_by=marked_by,
        )
    else:
        logger.info('Attendance for student %s on %s corrected %s -> %s', student.pk, date, attendance.status, status)
        attendance.status = status
        attendance.marked_by = marked_by
        attendance.save(update_fields=['status', 'marked_by', 'updated_at'])

    stage = update_attendance_counter(student, status)
    return attendance, stage


@transaction.atomic
def mark_attendance_bulk(*, marks, date, marked_by=None):
    """Apply a list of (student, status) marks for one date."""
    results = []
    for student, status in marks:
        results.append(mark_attendance(student=student, date=date, status=status, marked_by=marked_by))
    return results
