"""Subscription read, preview, plan change, cancellation and reactivation endpoints."""
from __future__ import annotations

import logging

from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from billing.permissions import check_organization_billing_access
from billing.serializers import (
    CancellationSerializer,
    OrganizationScopedSerializer,
    PlanChangeSerializer,
    PlanPreviewSerializer,
    SubscriptionSerializer,
)
from billing.services.subscription_ledger import SubscriptionLedger
from billing.views.base import BillingMetricsMixin

logger = logging.getLogger(__name__)


class SubscriptionBaseView(BillingMetricsMixin, APIView):
    permission_classes = [IsAuthenticated]

    def get_ledger(self) -> SubscriptionLedger:
        return SubscriptionLedger()


class CurrentSubscriptionView(SubscriptionBaseView):
    endpoint_label = "subscriptions.current"

    def get(self, request):
        data = self._validated(OrganizationScopedSerializer, request.query_params)
        organization = check_organization_billing_access(request.user, data["organization_id"])
        subscription = self.get_ledger().get_current(organization.pk)
        return self._success_response(SubscriptionSerializer(subscription).data)


class SubscriptionPreviewView(SubscriptionBaseView):
    endpoint_label = "subscriptions.preview"

    def post(self, request):
        data = self._validated(PlanPreviewSerializer, request.data)
        organization = check_organization_billing_access(request.user, data["organization_id"])
        preview = self.get_ledger().preview(organization.pk, data["plan_id"], data.get("billing_interval"))
        return self._success_response(preview.as_dict())


class SubscriptionChangeView(SubscriptionBaseView):
    endpoint_label = "subscriptions.change"

    def post(self, request):
        data = self._validated(PlanChangeSerializer, request.data)
        organization = check_organization_billing_access(request.user, data["organization_id"])
        subscription = self.get_ledger().apply_plan_change(
            organization.pk,
            data["plan_id"],
            preview=data.get("preview"),
            billing_interval=data.get("billing_interval"),
            actor=self._actor(),
            request_id=self._request_id(),
        )
        return self._success_response(
            SubscriptionSerializer(subscription).data,
            organization_id=str(organization.pk),
            message="billing.subscription.change_requested",
        )


class SubscriptionCancelView(SubscriptionBaseView):
    endpoint_label = "subscriptions.cancel"

    def post(self, request):
        data = self._validated(CancellationSerializer, request.data)
        organization = check_organization_billing_access(request.user, data["organization_id"])
        subscription = self.get_ledger().schedule_cancellation(
            organization.pk,
            data["reason"],
            data.get("feedback"),
            other_reason=data.get("other_reason", ""),
            would_recommend=data.get("would_recommend"),
            willing_to_stay_with_discount=data.get("willing_to_stay_with_discount", False),
            actor=self._actor(),
            request_id=self._request_id(),
        )
        return self._success_response(
            SubscriptionSerializer(subscription).data,
            organization_id=str(organization.pk),
            message="billing.subscription.cancel_requested",
        )


class SubscriptionReactivateView(SubscriptionBaseView):
    endpoint_label = "subscriptions.reactivate"

    def post(self, request):
        data = self._validated(OrganizationScopedSerializer, request.data)
        organization = check_organization_billing_access(request.user, data["organization_id"])
        subscription = self.get_ledger().reactivate(
            organization.pk,
            actor=self._actor(),
            request_id=self._request_id(),
        )
        return self._success_response(
            SubscriptionSerializer(subscription).data,
            organization_id=str(organization.pk),
            message="billing.subscription.reactivate_requested",
        )
