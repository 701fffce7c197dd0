import hashlib
import hmac
import time


class SignatureVerificationError(Exception):
    pass


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, header: str, secret: str, tolerance: int = 300, now=None) -> int:
    """Check a ``t=<ts>,v1=<hex>`` header; returns the signed timestamp."""
    if not secret:
        raise SignatureVerificationError('Webhook secret is not configured.')
    if not header:
        raise SignatureVerificationError('Missing signature header.')

    timestamp = None
    signatures = []
    for part in header.split(','):
        key, _, value = part.strip().partition('=')
        if key == 't':
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError('Malformed signature timestamp.')
        elif key == 'v1' and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise SignatureVerificationError('Malformed signature header.')

    current = int(now if now is not None else time.time())
    if abs(current - timestamp) > tolerance:
        raise SignatureVerificationError('Signature timestamp outside tolerance.')

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureVerificationError('Signature mismatch.')
    return timestamp
