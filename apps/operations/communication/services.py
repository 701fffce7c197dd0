import logging

from django.conf import settings
from django.core.mail import send_mail

from .models import NotificationLog

logger = logging.getLogger(__name__)

# Reminder day of month -> (subject prefix, opening line)
REMINDER_STAGES = {
    10: ('Fee reminder', 'This is a friendly reminder that this month\'s fees are due.'),
    20: ('Overdue fees', 'This month\'s fees are now overdue.'),
    29: ('Final notice', 'This is a final notice: this month\'s fees remain unpaid.'),
}


def _greeting(payload):
    return f"Dear {payload.get('parent_name') or 'Parent'},"


def _student_lines(payload):
    lines = []
    for student in payload.get('students', []):
        parts = []
        if student.get('admission_fee') is not None:
            parts.append(f"admission fee {student['admission_fee']}")
        for month in student.get('months', []):
            parts.append(f"{month['label']}: {month['paid']}")
        detail = ', '.join(parts) if parts else 'no allocations'
        lines.append(f"- {student['name']}: {detail}")
    return lines


def _payment_body(payload, heading):
    lines = [_greeting(payload), '', heading, '']
    lines.extend(_student_lines(payload))
    lines.extend([
        '',
        f"Total paid: {payload.get('total_paid', '0.00')} {settings.FEES_CURRENCY.upper()}",
        f"Method: {payload.get('method', '')}",
        f"Date: {payload.get('paid_on', '')}",
    ])
    return lines


def _render(kind, payload):
    portal = settings.PARENT_PORTAL_URL

    if kind == NotificationLog.KIND_ADMISSION_CONFIRMATION:
        subject = 'Admission fee payment received'
        lines = _payment_body(payload, 'We have received your admission payment.')
    elif kind == NotificationLog.KIND_MONTHLY_CONFIRMATION:
        subject = 'Monthly fee payment received'
        lines = _payment_body(payload, 'We have received your monthly fee payment.')
    elif kind == NotificationLog.KIND_PAYMENT_ON_HOLD:
        subject = 'Payment received and awaiting verification'
        lines = _payment_body(
            payload,
            'Your payment has been recorded and is on hold until our office verifies it.',
        )
    elif kind == NotificationLog.KIND_PAYMENT_SUCCEEDED:
        subject = 'Direct debit payment confirmed'
        lines = _payment_body(payload, 'Your direct debit payment has been collected successfully.')
    elif kind == NotificationLog.KIND_MANDATE_PENDING:
        subject = 'Direct debit set up: verification in progress'
        lines = [
            _greeting(payload),
            '',
            'Thank you for setting up a direct debit. Your bank is verifying the mandate.',
            'We will email you again once it is active.',
        ]
    elif kind == NotificationLog.KIND_MANDATE_ACTIVE:
        subject = 'Direct debit is now active'
        lines = [
            _greeting(payload),
            '',
            'Your direct debit mandate is active. Monthly fees will be collected automatically.',
        ]
        if payload.get('preferred_payment_date'):
            lines.append(f"Collection day: {payload['preferred_payment_date']} of each month.")
    elif kind == NotificationLog.KIND_MANDATE_FAILED:
        subject = 'Direct debit could not be set up'
        lines = [
            _greeting(payload),
            '',
            'Your direct debit mandate is no longer active.',
            f"Please set it up again from the parent portal: {portal}",
        ]
        if payload.get('reason'):
            lines.append(f"Reason: {payload['reason']}")
    elif kind == NotificationLog.KIND_FEE_REMINDER:
        prefix, opening = REMINDER_STAGES.get(payload.get('stage'), REMINDER_STAGES[10])
        subject = f"{prefix} for {payload.get('month_label', '')}".strip()
        lines = [
            _greeting(payload),
            '',
            opening,
            f"Our records show no payment for {payload.get('month_label', 'this month')} for:",
        ]
        lines.extend(f"- {name}" for name in payload.get('students', []))
        lines.extend(['', f"Please pay through the parent portal: {portal}"])
    elif kind == NotificationLog.KIND_ATTENDANCE_ALERT:
        stage = payload.get('stage', 'first')
        status = payload.get('status', 'absent')
        subject = f"{status.title()} - {stage} reminder for {payload.get('student_name', 'your child')}"
        lines = [
            _greeting(payload),
            '',
            f"{payload.get('student_name', 'Your child')} has been marked {status} "
            f"{payload.get('count', '')} times in a row.",
            'Please contact the office if there is anything we should know.',
        ]
    else:
        raise ValueError(f"Unknown notification kind: {kind}")

    return subject, '\n'.join(lines)


def send_notification(kind, recipient, payload=None, family=None):
    """Send one email and record the attempt.

    Never raises for delivery problems; the outcome is kept in NotificationLog.
    """
    payload = payload or {}
    subject, body = _render(kind, payload)

    if not recipient:
        logger.warning('Notification %s skipped: no recipient (family=%s)', kind, getattr(family, 'pk', None))
        return NotificationLog.objects.create(
            kind=kind,
            family=family,
            subject=subject,
            status=NotificationLog.STATUS_SKIPPED,
            error='Missing recipient address.',
            payload=payload,
        )

    if not settings.NOTIFICATIONS_EMAIL_ENABLED:
        logger.info('Email sending disabled; skipping %s to %s', kind, recipient)
        return NotificationLog.objects.create(
            kind=kind,
            recipient=recipient,
            family=family,
            subject=subject,
            status=NotificationLog.STATUS_SKIPPED,
            payload=payload,
        )

    try:
        send_mail(subject, body, settings.DEFAULT_FROM_EMAIL, [recipient], fail_silently=False)
    except Exception as exc:
        logger.exception('Failed to send %s notification to %s', kind, recipient)
        return NotificationLog.objects.create(
            kind=kind,
            recipient=recipient,
            family=family,
            subject=subject,
            status=NotificationLog.STATUS_FAILED,
            error=str(exc)[:2000],
            payload=payload,
        )

    logger.info('Sent %s notification to %s', kind, recipient)
    return NotificationLog.objects.create(
        kind=kind,
        recipient=recipient,
        family=family,
        subject=subject,
        status=NotificationLog.STATUS_SENT,
        payload=payload,
    )


def send_payment_notification(kind, family, payload):
    return send_notification(kind, family.email, payload, family=family)
