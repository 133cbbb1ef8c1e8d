"""Billing error taxonomy and the DRF exception handler that renders it."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from billing.observability.metrics import BILLING_REQUEST_COUNT

logger = logging.getLogger(__name__)


class BillingError(RuntimeError):
    """Base error for billing operations; carries its HTTP mapping."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or str(self.args[0])
        self.details = details or {}


class ValidationError(BillingError):
    """Missing or malformed input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(BillingError):
    """Requested billing resource does not exist."""

    status_code = 404
    code = "not_found"


class AuthorizationError(BillingError):
    """Caller is not allowed to perform the operation."""

    status_code = 403
    code = "forbidden"


class SignatureVerificationError(AuthorizationError):
    """Webhook signature did not match the payload."""

    status_code = 401
    code = "invalid_signature"


class InvalidStateError(BillingError):
    """Requested transition is not allowed from the current state."""

    status_code = 400
    code = "invalid_state"


class ExternalProcessorError(BillingError):
    """Payment processor call failed or timed out after retries."""

    status_code = 502
    code = "processor_error"


class ConcurrencyConflict(BillingError):
    """Optimistic-lock mismatch persisted beyond the retry budget."""

    status_code = 409
    code = "concurrency_conflict"


class DuplicatePeriodError(BillingError):
    """An invoice already exists for the requested organization and period."""

    status_code = 200
    code = "duplicate_period"

    def __init__(self, message: str = "", *, invoice=None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.invoice = invoice


class JobAlreadyRunError(BillingError):
    """Job run for this period was already claimed or completed."""

    status_code = 200
    code = "job_already_run"

    def __init__(self, message: str = "", *, job_run=None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.job_run = job_run


class CatalogConfigurationError(BillingError):
    """Plan or usage pricing configuration in settings is malformed."""

    status_code = 500
    code = "catalog_misconfigured"


def billing_exception_handler(exc, context):
    """Render :class:`BillingError` as ``{code, message, details}``; defer the rest to DRF."""

    view = context.get("view")
    endpoint = getattr(view, "endpoint_label", None) or (view.__class__.__name__ if view else "unknown")
    request = context.get("request")
    method = getattr(request, "method", "") or ""

    if isinstance(exc, BillingError):
        if exc.status_code >= 500:
            logger.error("Billing request failed at %s: %s", endpoint, exc)
        else:
            logger.info("Billing request rejected at %s: %s (%s)", endpoint, exc.code, exc.message)
        BILLING_REQUEST_COUNT.labels(endpoint=endpoint, method=method, status=str(exc.status_code)).inc()
        payload = {"code": exc.code, "message": exc.message, "details": exc.details}
        return Response(payload, status=exc.status_code)

    response = drf_exception_handler(exc, context)
    if response is not None:
        BILLING_REQUEST_COUNT.labels(endpoint=endpoint, method=method, status=str(response.status_code)).inc()
    return response


__all__ = [
    "AuthorizationError",
    "BillingError",
    "CatalogConfigurationError",
    "ConcurrencyConflict",
    "DuplicatePeriodError",
    "ExternalProcessorError",
    "InvalidStateError",
    "JobAlreadyRunError",
    "NotFoundError",
    "SignatureVerificationError",
    "ValidationError",
    "billing_exception_handler",
]
