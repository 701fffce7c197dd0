from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from requests.exceptions import RequestException

from apps.core.fees.exceptions import FeeLedgerError

logger = logging.getLogger(__name__)


class ProcessorError(FeeLedgerError):
    code = 'EXTERNAL_DEPENDENCY_ERROR'
    status_code = 502
    default_message = 'Payment processor request failed.'


class ProcessorResourceMissing(ProcessorError):
    default_message = 'Payment processor resource not found.'


def _flatten(data: Dict[str, Any], prefix: str = '') -> Dict[str, Any]:
    """Encode nested dicts and lists the way the processor's form API expects (a[b][0]=c)."""
    flat = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    flat.update(_flatten(item, item_name))
                else:
                    flat[item_name] = item
        elif isinstance(value, bool):
            flat[name] = 'true' if value else 'false'
        elif value is not None:
            flat[name] = value
    return flat


class PaymentProcessorClient:
    def __init__(
        self,
        api_key: str,
        api_base: str = 'https://api.stripe.com/v1',
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ProcessorError('Payment processor API key is not configured.')
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> 'PaymentProcessorClient':
        return cls(
            api_key=settings.PAYMENT_PROCESSOR_API_KEY,
            api_base=settings.PAYMENT_PROCESSOR_API_BASE,
            timeout=settings.PAYMENT_PROCESSOR_TIMEOUT_SECONDS,
        )

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None,
                 idempotency_key: str = '') -> Dict[str, Any]:
        url = f"{self.api_base}/{path.lstrip('/')}"
        headers = {}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key
        try:
            response = self.session.request(
                method,
                url,
                data=_flatten(data) if data else None,
                auth=(self.api_key, ''),
                headers=headers,
                timeout=self.timeout,
            )
        except RequestException as exc:
            logger.warning('Processor %s %s failed: %s: %s', method, path, type(exc).__name__, exc)
            raise ProcessorError(f"Network error contacting payment processor: {type(exc).__name__}")

        try:
            body = response.json()
        except ValueError:
            raise ProcessorError(f"Processor returned non-JSON response ({response.status_code}).")

        if response.status_code == 404:
            raise ProcessorResourceMissing(body.get('error', {}).get('message') or f"{path} not found.")
        if response.status_code >= 400:
            message = body.get('error', {}).get('message') or response.text[:200]
            logger.warning('Processor %s %s returned %s: %s', method, path, response.status_code, message)
            raise ProcessorError(f"Processor error {response.status_code}: {message}")
        return body

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        customer = self._request('GET', f"customers/{customer_id}")
        if customer.get('deleted'):
            raise ProcessorResourceMissing(f"Customer {customer_id} was deleted.")
        return customer

    def create_customer(self, *, email: str, name: str, metadata: Optional[dict] = None) -> Dict[str, Any]:
        return self._request('POST', 'customers', {'email': email, 'name': name, 'metadata': metadata or {}})

    def ensure_customer(self, *, customer_id: str, email: str, name: str,
                        metadata: Optional[dict] = None) -> Dict[str, Any]:
        """Return the stored customer, or a new one when the processor no longer knows it."""
        if customer_id:
            try:
                return self.retrieve_customer(customer_id)
            except ProcessorResourceMissing:
                logger.info('Processor customer %s not found; creating a new one for %s', customer_id, email)
        return self.create_customer(email=email, name=name, metadata=metadata)

    def retrieve_mandate(self, mandate_id: str) -> Dict[str, Any]:
        return self._request('GET', f"mandates/{mandate_id}")

    def create_setup_session(self, *, customer_id: str, success_url: str, cancel_url: str,
                             metadata: Optional[dict] = None) -> Dict[str, Any]:
        return self._request('POST', 'checkout/sessions', {
            'mode': 'setup',
            'customer': customer_id,
            'payment_method_types': ['bacs_debit'],
            'success_url': success_url,
            'cancel_url': cancel_url,
            'metadata': metadata or {},
            'setup_intent_data': {'metadata': metadata or {}},
        })

    def create_payment_intent(self, *, amount_minor: int, currency: str, customer_id: str,
                              payment_method_id: str, mandate_id: str, metadata: Optional[dict] = None,
                              idempotency_key: str = '') -> Dict[str, Any]:
        return self._request('POST', 'payment_intents', {
            'amount': amount_minor,
            'currency': currency,
            'customer': customer_id,
            'payment_method': payment_method_id,
            'mandate': mandate_id,
            'payment_method_types': ['bacs_debit'],
            'confirm': False,
            'metadata': metadata or {},
        }, idempotency_key=idempotency_key)

    def confirm_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request('POST', f"payment_intents/{payment_intent_id}/confirm")

    def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request('POST', f"payment_intents/{payment_intent_id}/cancel")
