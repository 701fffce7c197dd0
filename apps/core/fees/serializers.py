from .models import LedgerRecord


def _money(value):
    return str(value) if value is not None else None


def serialize_record(record: LedgerRecord) -> dict:
    students = []
    for line in record.student_lines.prefetch_related('months', 'allocations__payment'):
        entry = {
            'student_id': line.student_id,
            'name': line.name,
            'subtotal': _money(line.subtotal),
        }
        if record.is_admission:
            entry['admission_fee'] = _money(line.admission_fee)
            entry['payments'] = [
                {
                    'component': allocation.component,
                    'amount': _money(allocation.amount),
                    'date': allocation.payment.paid_on.isoformat(),
                }
                for allocation in line.allocations.all()
            ]
        entry['months_paid'] = [
            {
                'month': f"{charge.month:02d}",
                'year': charge.year,
                'monthly_fee': _money(charge.monthly_fee),
                'discounted_fee': _money(charge.discounted_fee),
                'paid': _money(charge.paid),
                'settled_by_admission': charge.settled_by_admission,
                'void': charge.is_void,
            }
            for charge in line.months.all()
        ]
        students.append(entry)

    return {
        'id': record.pk,
        'family_id': record.family_id,
        'payment_type': record.payment_type,
        'status': record.status,
        'billing_period': record.billing_period,
        'expected_total': _money(record.expected_total),
        'paid_total': _money(record.paid_total),
        'remaining': _money(record.remaining),
        'method': record.method,
        'version': record.version,
        'students': students,
        'payments': [
            {
                'id': payment.pk,
                'amount': _money(payment.amount),
                'method': payment.method,
                'date': payment.paid_on.isoformat(),
                'confirmation': payment.confirmation,
                'processor_payment_intent_id': payment.processor_payment_intent_id or None,
                'reference': payment.reference,
            }
            for payment in record.payments.all()
        ],
        'timestamp': record.created_at.isoformat(),
        'updated_at': record.updated_at.isoformat(),
    }


def serialize_outstanding(result: dict) -> dict:
    def group(item):
        return {
            'period': item['period'],
            'label': item['label'],
            'total_amount': _money(item['total_amount']),
            'students': [
                {
                    'student_id': row['student_id'],
                    'name': row['name'],
                    'due': _money(row['due']),
                    'paid': _money(row['paid']),
                    'remaining': _money(row['remaining']),
                }
                for row in item['students']
            ],
        }

    return {
        'unpaid': [group(item) for item in result['unpaid']],
        'partially_paid': [group(item) for item in result['partially_paid']],
        'total_due': _money(result['total_due']),
    }
