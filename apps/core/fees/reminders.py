import logging

from django.core.exceptions import ValidationError
from django.utils import timezone

from apps.core.students.models import Family, Student
from apps.operations.communication.models import NotificationLog
from apps.operations.communication.services import send_payment_notification

from .calculator import month_label
from .outstanding import unpaid_months

logger = logging.getLogger(__name__)

REMINDER_DAYS = (10, 20, 29)


def send_fee_reminders(*, reminder_day: int, as_of=None):
    """Email every family with a student who has nothing recorded for the current month."""
    if reminder_day not in REMINDER_DAYS:
        raise ValidationError(f"Reminder day must be one of {', '.join(str(day) for day in REMINDER_DAYS)}.")

    as_of = as_of or timezone.localdate()
    summary = {'sent': 0, 'failed': 0, 'skipped': 0}
    families = Family.objects.filter(students__status=Student.STATUS_ENROLLED).distinct().order_by('id')

    for family in families:
        result = unpaid_months(family=family, as_of=as_of)
        current = [
            group for group in result['unpaid']
            if (group['year'], group['month']) == (as_of.year, as_of.month)
        ]
        if not current:
            partial = [
                group for group in result['partially_paid']
                if (group['year'], group['month']) == (as_of.year, as_of.month)
            ]
            if partial:
                logger.info(
                    'Family %s has part-paid fees for %s; no reminder sent',
                    family.pk,
                    month_label(as_of.year, as_of.month),
                )
            summary['skipped'] += 1
            continue

        names = [row['name'] for row in current[0]['students']]
        log = send_payment_notification(
            NotificationLog.KIND_FEE_REMINDER,
            family,
            {
                'parent_name': family.name,
                'stage': reminder_day,
                'month_label': month_label(as_of.year, as_of.month),
                'students': names,
            },
        )
        if log.status == NotificationLog.STATUS_SENT:
            summary['sent'] += 1
        elif log.status == NotificationLog.STATUS_FAILED:
            summary['failed'] += 1
        else:
            summary['skipped'] += 1

    logger.info(
        'Fee reminders (day %s, %s): %s sent, %s failed, %s skipped',
        reminder_day,
        as_of.isoformat(),
        summary['sent'],
        summary['failed'],
        summary['skipped'],
    )
    return summary
