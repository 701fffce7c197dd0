from django.core.exceptions import ValidationError
from django.db import transaction

from .models import Family, Student, StudentStatusHistory


def billable_students(family: Family):
    return family.students.filter(status=Student.STATUS_ENROLLED).order_by('name', 'id')


@transaction.atomic
def change_student_status(student: Student, new_status: str, changed_by=None, reason: str = ''):
    allowed_statuses = {choice[0] for choice in Student.STATUS_CHOICES}
    if new_status not in allowed_statuses:
        raise ValidationError('Invalid student status.')

    old_status = student.status
    if old_status == new_status:
        return None

    student.status = new_status
    student.save(update_fields=['status', 'updated_at'])

    return StudentStatusHistory.objects.create(
        student=student,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        reason=reason[:255],
    )
