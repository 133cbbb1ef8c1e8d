"""Payment processor webhook endpoint."""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.views import APIView

from billing.exceptions import SignatureVerificationError
from billing.services.webhook_reconciler import WebhookReconciler, WebhookResult, verify, webhook_secret
from billing.tasks import process_payment_event_async
from billing.views.base import BillingMetricsMixin

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class PaymentWebhookView(BillingMetricsMixin, APIView):
    """Verify and apply processor events; anything past the signature check answers 200."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]
    endpoint_label = "webhooks.payments"

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        raw_body = request.body
        signature = request.headers.get("x-paystack-signature", "")
        if not verify(raw_body, signature, webhook_secret()):
            logger.warning("Payment webhook signature verification failed.")
            raise SignatureVerificationError("Invalid signature.")

        payload = self._decode_payload(raw_body)
        if payload is None:
            logger.error("Unable to decode payment webhook payload.")
            return self._success_response({"received": True, "status": WebhookResult.REJECTED})

        if getattr(settings, "BILLING_WEBHOOK_ASYNC", False):
            try:
                process_payment_event_async.delay(payload)
            except Exception:
                logger.exception("Could not queue payment event %s; processing it inline.", payload.get("event"))
            else:
                logger.info("Queued payment event %s for processing.", payload.get("event"))
                return self._success_response({"received": True, "status": "queued"})

        try:
            result = WebhookReconciler().handle(payload)
        except Exception:
            logger.exception("Payment webhook processing error for event %s.", payload.get("event"))
            return self._success_response({"received": True, "status": WebhookResult.REJECTED})

        return self._success_response({"received": True, "status": result.status})

    @staticmethod
    def _decode_payload(body: bytes) -> Optional[Any]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        return payload if isinstance(payload, dict) else None
