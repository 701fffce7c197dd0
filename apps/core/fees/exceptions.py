from django.core.exceptions import ValidationError
from django.http import JsonResponse


class FeeLedgerError(Exception):
    code = 'INTERNAL_ERROR'
    status_code = 500
    default_message = 'Unexpected fee ledger error.'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class LedgerNotFound(FeeLedgerError):
    code = 'NOT_FOUND'
    status_code = 404
    default_message = 'Record not found.'


class BillingConflict(FeeLedgerError):
    code = 'CONFLICT'
    status_code = 409
    default_message = 'The record was changed by another request.'


def _validation_message(exc: ValidationError) -> str:
    if hasattr(exc, 'message_dict'):
        return '; '.join(
            f"{field}: {' '.join(messages)}" if field != '__all__' else ' '.join(messages)
            for field, messages in exc.message_dict.items()
        )
    return ' '.join(exc.messages)


def error_response(exc: Exception) -> JsonResponse:
    if isinstance(exc, ValidationError):
        code, status, message = 'VALIDATION_ERROR', 400, _validation_message(exc)
    elif isinstance(exc, FeeLedgerError):
        code, status, message = exc.code, exc.status_code, exc.message
    else:
        code, status, message = 'INTERNAL_ERROR', 500, 'Internal server error.'
    return JsonResponse({'error': {'code': code, 'message': message}}, status=status)
