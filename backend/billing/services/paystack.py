"""
Thin HTTP client for the Paystack API.

Calls go through a shared :class:`requests.Session` with a per-request
timeout. Timeouts, connection errors and 5xx/429 responses are retried with
exponential backoff; anything else, or an exhausted retry budget, surfaces as
:class:`~billing.exceptions.ExternalProcessorError`. Calls that create
something on the processor are only retried when the request never left
(connect timeout) or was rate-limited.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, Mapping, Optional

import requests
from django.conf import settings
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from billing.exceptions import ExternalProcessorError
from billing.observability.metrics import PROCESSOR_CALL_COUNT

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"
DEFAULT_TIMEOUT_SECONDS = 8
DEFAULT_MAX_RETRIES = 3


class TransientProcessorError(Exception):
    """A failure worth retrying: timeout, dropped connection, 5xx or 429."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AmbiguousProcessorError(Exception):
    """A non-idempotent call timed out or dropped after the request may have been accepted."""


class PaystackClient:
    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        session: Optional[requests.Session] = None,
        wait=None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else getattr(settings, "PAYSTACK_SECRET_KEY", "")
        self.base_url = (base_url or getattr(settings, "PAYSTACK_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = timeout or getattr(settings, "PAYSTACK_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        self.max_retries = max(1, int(max_retries or getattr(settings, "PAYSTACK_MAX_RETRIES", DEFAULT_MAX_RETRIES)))
        self.session = session or requests.Session()
        self.wait = wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    # Customers

    def create_customer(self, *, email: str, name: str = "", metadata: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/customer",
            operation="create_customer",
            payload={"email": email, "first_name": name, "metadata": dict(metadata or {})},
        )

    def fetch_customer(self, customer_code: str) -> Dict[str, Any]:
        return self._request("GET", f"/customer/{customer_code}", operation="fetch_customer")

    # Payment requests

    def create_payment_request(
        self,
        *,
        customer: str,
        amount: int,
        due_date: Any,
        description: str,
        line_items: Iterable[Mapping[str, Any]] = (),
        currency: str = "ZAR",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        if isinstance(due_date, datetime):
            due_date = due_date.date()
        if isinstance(due_date, date):
            due_date = due_date.isoformat()
        return self._request(
            "POST",
            "/paymentrequest",
            operation="create_payment_request",
            idempotent=False,
            payload={
                "customer": customer,
                "amount": int(amount),
                "due_date": due_date,
                "description": description,
                "line_items": [dict(item) for item in line_items],
                "currency": currency.upper(),
                "metadata": dict(metadata or {}),
            },
        )

    def list_payment_requests(self, *, customer: str) -> Dict[str, Any]:
        return self._request("GET", f"/paymentrequest?customer={customer}", operation="list_payment_requests")

    def fetch_payment_request(self, request_code: str) -> Dict[str, Any]:
        return self._request("GET", f"/paymentrequest/{request_code}", operation="fetch_payment_request")

    def notify_payment_request(self, request_code: str) -> Dict[str, Any]:
        return self._request(
            "POST", f"/paymentrequest/notify/{request_code}", operation="notify_payment_request", idempotent=False
        )

    def archive_payment_request(self, request_code: str) -> Dict[str, Any]:
        return self._request("POST", f"/paymentrequest/archive/{request_code}", operation="archive_payment_request")

    # Subscriptions

    def fetch_subscription(self, subscription_code: str) -> Dict[str, Any]:
        return self._request("GET", f"/subscription/{subscription_code}", operation="fetch_subscription")

    # Transport

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """
        Send one API call and return its ``data``.

        A call that is not ``idempotent`` is retried only when the request
        provably never reached the processor (connect timeout) or was
        rate-limited; a read timeout or 5xx may hide an accepted request.
        """
        if not self.secret_key:
            PROCESSOR_CALL_COUNT.labels(operation=operation, outcome="unconfigured").inc()
            raise ExternalProcessorError(
                "Payment processor is not configured (PAYSTACK_SECRET_KEY is empty).",
                details={"operation": operation},
            )

        url = f"{self.base_url}{path}"
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=self.wait,
            retry=retry_if_exception_type(TransientProcessorError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            response = retrying(self._send, method, url, payload, idempotent)
        except TransientProcessorError as exc:
            PROCESSOR_CALL_COUNT.labels(operation=operation, outcome="exhausted").inc()
            logger.error("Paystack %s failed after %s attempts: %s", operation, self.max_retries, exc)
            raise ExternalProcessorError(
                f"Payment processor unavailable: {exc}",
                details={"operation": operation, "status_code": exc.status_code, "attempts": self.max_retries},
            ) from exc
        except AmbiguousProcessorError as exc:
            PROCESSOR_CALL_COUNT.labels(operation=operation, outcome="unknown").inc()
            logger.error("Paystack %s outcome unknown, not retrying: %s", operation, exc)
            raise ExternalProcessorError(
                f"Payment processor did not confirm {operation}: {exc}",
                details={"operation": operation, "outcome_unknown": True},
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.ok or body.get("status") is False:
            PROCESSOR_CALL_COUNT.labels(operation=operation, outcome="rejected").inc()
            message = body.get("message") or f"Paystack API error: {response.status_code}"
            logger.warning("Paystack %s rejected (%s): %s", operation, response.status_code, message)
            raise ExternalProcessorError(
                message,
                details={"operation": operation, "status_code": response.status_code},
            )

        PROCESSOR_CALL_COUNT.labels(operation=operation, outcome="success").inc()
        data = body.get("data")
        return data if isinstance(data, dict) else {"data": data}

    def _send(
        self, method: str, url: str, payload: Optional[Dict[str, Any]], idempotent: bool = True
    ) -> requests.Response:
        try:
            response = self.session.request(
                method,
                url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.ConnectTimeout as exc:
            raise TransientProcessorError(str(exc) or exc.__class__.__name__) from exc
        except (requests.Timeout, requests.ConnectionError) as exc:
            if not idempotent:
                raise AmbiguousProcessorError(str(exc) or exc.__class__.__name__) from exc
            raise TransientProcessorError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code == 429 or (idempotent and response.status_code >= 500):
            raise TransientProcessorError(
                f"Paystack returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response


_client: Optional[PaystackClient] = None


def get_processor_client() -> PaystackClient:
    global _client
    if _client is None:
        _client = PaystackClient()
    return _client


def set_processor_client(client: Optional[PaystackClient]) -> None:
    global _client
    _client = client


__all__ = [
    "PaystackClient",
    "TransientProcessorError",
    "get_processor_client",
    "set_processor_client",
]
