"""Invoice list, generation, status and action endpoints."""
from __future__ import annotations

import logging

from rest_framework.generics import GenericAPIView
from rest_framework.permissions import IsAuthenticated

from billing.exceptions import DuplicatePeriodError, NotFoundError, ValidationError
from billing.filters import InvoiceFilter
from billing.models import Invoice
from billing.pagination import BoundedPageNumberPagination
from billing.permissions import check_organization_billing_access, managed_organizations
from billing.serializers import (
    InvoiceActionSerializer,
    InvoiceGenerateSerializer,
    InvoiceSerializer,
    InvoiceStatusSerializer,
)
from billing.services.invoice_generator import InvoiceGenerator
from billing.views.base import BillingMetricsMixin

logger = logging.getLogger(__name__)

TRUTHY = ("1", "true", "yes")


class InvoiceListView(BillingMetricsMixin, GenericAPIView):
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = InvoiceFilter
    ordering_fields = ("period_start", "due_date", "total", "created_at")
    ordering = ("-period_start", "-created_at")
    endpoint_label = "billing.invoices"

    def get_queryset(self):
        queryset = Invoice.objects.select_related("organization")
        organization_id = self.request.query_params.get("organization_id")
        if organization_id:
            organization = check_organization_billing_access(self.request.user, organization_id)
            self.request.organization = organization
            return queryset.filter(organization=organization)
        return queryset.filter(organization__in=managed_organizations(self.request.user))

    def get(self, request):
        queryset = self.filter_queryset(self.get_queryset())
        page = self.paginate_queryset(queryset)
        response = self.get_paginated_response(self.get_serializer(page, many=True).data)

        include_stats = request.query_params.get("include_stats", "").lower() in TRUTHY
        organization = getattr(request, "organization", None)
        if include_stats:
            if organization is None:
                raise ValidationError("include_stats requires organization_id.")
            response.data["stats"] = InvoiceGenerator().invoice_stats(organization.pk)
        self._record_request(response.status_code)
        return response

    def post(self, request):
        data = self._validated(InvoiceGenerateSerializer, request.data)
        organization = check_organization_billing_access(request.user, data["organization_id"])
        try:
            invoice = InvoiceGenerator().generate(
                organization.pk,
                data.get("period_start"),
                data.get("period_end"),
                actor=self._actor(),
            )
        except DuplicatePeriodError as exc:
            payload = InvoiceSerializer(exc.invoice).data
            payload["duplicate"] = True
            return self._success_response(payload, status=200)
        return self._success_response(
            InvoiceSerializer(invoice).data,
            status=201,
            organization_id=str(organization.pk),
            message="billing.invoice.generate_requested",
        )


class InvoiceDetailView(BillingMetricsMixin, GenericAPIView):
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated]
    endpoint_label = "billing.invoice"

    def get_invoice(self, pk) -> Invoice:
        invoice = Invoice.objects.select_related("organization").filter(pk=pk).first()
        if invoice is None:
            raise NotFoundError("Invoice not found.", details={"invoice_id": str(pk)})
        check_organization_billing_access(self.request.user, invoice.organization_id)
        return invoice

    def get(self, request, pk):
        return self._success_response(InvoiceSerializer(self.get_invoice(pk)).data)

    def patch(self, request, pk):
        invoice = self.get_invoice(pk)
        data = self._validated(InvoiceStatusSerializer, request.data)
        updated = InvoiceGenerator().update_status(invoice.pk, data["status"], data.get("cause", ""), actor=self._actor())
        return self._success_response(
            InvoiceSerializer(updated).data,
            organization_id=str(invoice.organization_id),
            message="billing.invoice.status_update_requested",
        )

    def post(self, request, pk):
        invoice = self.get_invoice(pk)
        action = self._validated(InvoiceActionSerializer, request.data)["action"]
        generator = InvoiceGenerator()
        if action == "sync":
            outcome = generator.sync_status(invoice.pk, actor=self._actor())
            payload = {"action": action, **outcome}
        elif action == "submit":
            payload = {"action": action, "invoice": InvoiceSerializer(generator.submit(invoice.pk, actor=self._actor())).data}
        else:
            payload = {
                "action": action,
                "invoice": InvoiceSerializer(generator.send_reminder(invoice.pk, actor=self._actor())).data,
            }
        return self._success_response(payload, organization_id=str(invoice.organization_id), message=f"billing.invoice.{action}")
