"""Shared request accounting and payload helpers for billing API views."""
from __future__ import annotations

from typing import Any, Dict, Optional, Type

from rest_framework import serializers
from rest_framework.response import Response

from billing.exceptions import ValidationError
from billing.observability.logging import log_billing_event
from billing.observability.metrics import BILLING_REQUEST_COUNT, BILLING_REQUEST_LATENCY


class BillingMetricsMixin:
    endpoint_label: str = "billing"

    def dispatch(self, request, *args, **kwargs):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method=request.method).time():
            return super().dispatch(request, *args, **kwargs)

    def _record_request(self, status: int) -> None:
        BILLING_REQUEST_COUNT.labels(
            endpoint=self.endpoint_label,
            method=self.request.method,
            status=str(status),
        ).inc()

    def _success_response(
        self,
        payload,
        *,
        status: int = 200,
        organization_id: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self._record_request(status)
        if message:
            log_billing_event(
                message=message,
                organization_id=organization_id,
                actor=self._actor(),
                request_id=self._request_id(),
            )
        return Response(payload, status=status)

    def _error_response(
        self,
        *,
        status: int,
        code: str,
        message: str,
        details: Optional[dict] = None,
        organization_id: Optional[str] = None,
    ):
        self._record_request(status)
        log_billing_event(
            message=message,
            organization_id=organization_id,
            extra={"code": code, "details": details or {}},
        )
        payload = {"code": code, "message": message, "details": details or {}}
        return Response(payload, status=status)

    @staticmethod
    def _validated(serializer_class: Type[serializers.Serializer], data: Any) -> Dict[str, Any]:
        serializer = serializer_class(data=data)
        if not serializer.is_valid():
            raise ValidationError("Invalid request payload.", details=serializer.errors)
        return serializer.validated_data

    def _actor(self) -> str:
        user = getattr(self.request, "user", None)
        if user is not None and getattr(user, "is_authenticated", False):
            return f"user:{user.pk}"
        return ""

    def _request_id(self) -> str:
        return self.request.headers.get("X-Request-ID", "")
