"""Usage tracking endpoint backed by the in-process meter."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from billing.exceptions import AuthorizationError
from billing.permissions import check_organization_billing_access
from billing.serializers import UsageTrackSerializer
from billing.services.usage_meter import get_usage_meter
from billing.views.base import BillingMetricsMixin


class UsageTrackView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]
    endpoint_label = "billing.track"

    def get(self, request):
        return self._success_response({"buffer_size": get_usage_meter().buffer_size()})

    def post(self, request):
        data = self._validated(UsageTrackSerializer, request.data)
        organization = check_organization_billing_access(request.user, data["organization_id"])

        meter = get_usage_meter()
        meter.track(
            organization.pk,
            data["event_type"],
            data["quantity"],
            metadata=data.get("metadata") or {},
            user_id=data.get("user_id") or request.user.pk,
        )
        return self._success_response(
            {"tracked": True, "event_type": data["event_type"], "buffer_size": meter.buffer_size()},
        )

    def put(self, request):
        if not request.user.is_staff:
            raise AuthorizationError("Only staff can force a usage flush.")
        result = get_usage_meter().flush()
        return self._success_response(result.as_dict(), message="billing.usage.flush_forced")
