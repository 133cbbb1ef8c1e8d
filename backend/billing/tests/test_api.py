import hashlib
import hmac
import json

import pytest
from rest_framework.test import APIClient

from billing.models import BillingJobRun, Invoice, Subscription, UsageRecord, WebhookEventRecord
from billing.services.subscription_ledger import SubscriptionLedger
from billing.services.usage_meter import UsageMeter, set_usage_meter

WEBHOOK_SECRET = "whsec_test"
JOBS_SECRET = "cron-secret"


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def owner_client(api_client, user):
    api_client.force_authenticate(user)
    return api_client


@pytest.fixture
def meter():
    meter = UsageMeter(auto_flush=False)
    set_usage_meter(meter)
    return meter


@pytest.fixture
def subscription(organization):
    return SubscriptionLedger().start_subscription(organization.pk, "ai-assistant")


@pytest.fixture
def webhook_settings(settings):
    settings.PAYSTACK_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.BILLING_WEBHOOK_ASYNC = False
    return settings


def post_webhook(client, payload, secret=WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return client.post(
        "/api/webhooks/payments/",
        data=body,
        content_type="application/json",
        HTTP_X_PAYSTACK_SIGNATURE=signature,
    )


# Webhooks


@pytest.mark.django_db
def test_webhook_rejects_bad_signature(api_client, webhook_settings):
    response = post_webhook(api_client, {"event": "charge.success", "data": {"reference": "T1"}}, secret="forged")

    assert response.status_code == 401
    assert response.data["code"] == "invalid_signature"
    assert not WebhookEventRecord.objects.exists()


@pytest.mark.django_db
def test_webhook_applies_signed_event(api_client, webhook_settings, subscription):
    Subscription.objects.filter(pk=subscription.pk).update(external_subscription_ref="SUB_1")
    payload = {"event": "subscription.not_renew", "data": {"subscription_code": "SUB_1"}}

    first = post_webhook(api_client, payload)
    second = post_webhook(api_client, payload)

    assert first.status_code == 200
    assert first.data == {"received": True, "status": "applied"}
    assert second.data["status"] == "already_processed"
    assert Subscription.objects.get(pk=subscription.pk).cancel_at_period_end is True


@pytest.mark.django_db
def test_webhook_acknowledges_undecodable_body(api_client, webhook_settings):
    body = b"not json"
    signature = hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha512).hexdigest()

    response = api_client.post(
        "/api/webhooks/payments/", data=body, content_type="application/json", HTTP_X_PAYSTACK_SIGNATURE=signature
    )

    assert response.status_code == 200
    assert response.data["status"] == "rejected"


# Usage


@pytest.mark.django_db
def test_track_usage_buffers_event(owner_client, organization, meter):
    response = owner_client.post(
        "/api/billing/track/",
        {"organization_id": str(organization.pk), "event_type": "ai_message", "metadata": {"token_count": 40}},
        format="json",
    )

    assert response.status_code == 200
    assert response.data["tracked"] is True
    assert meter.buffer_size() == 2


@pytest.mark.django_db
def test_track_usage_requires_billing_access(api_client, other_user, organization, meter):
    api_client.force_authenticate(other_user)

    response = api_client.post(
        "/api/billing/track/",
        {"organization_id": str(organization.pk), "event_type": "ai_message"},
        format="json",
    )

    assert response.status_code == 403
    assert response.data["code"] == "forbidden"
    assert meter.buffer_size() == 0


@pytest.mark.django_db
def test_track_usage_validates_event_type(owner_client, organization, meter):
    response = owner_client.post(
        "/api/billing/track/",
        {"organization_id": str(organization.pk), "event_type": "fax_sent"},
        format="json",
    )

    assert response.status_code == 400
    assert response.data["code"] == "validation_error"
    assert "event_type" in response.data["details"]


@pytest.mark.django_db
def test_force_flush_is_staff_only(api_client, user, staff_user, organization, meter):
    meter.track(organization.pk, "receipt_processed", 2)

    api_client.force_authenticate(user)
    assert api_client.put("/api/billing/track/").status_code == 403

    api_client.force_authenticate(staff_user)
    response = api_client.put("/api/billing/track/")

    assert response.status_code == 200
    assert response.data == {"flushed": 1, "failed": 0, "remaining": 0}
    assert UsageRecord.objects.filter(organization=organization).count() == 1


# Subscriptions


@pytest.mark.django_db
def test_subscription_endpoints_require_authentication(api_client, organization):
    response = api_client.get("/api/subscriptions/current/", {"organization_id": str(organization.pk)})

    assert response.status_code in (401, 403)


@pytest.mark.django_db
def test_current_subscription(owner_client, organization):
    assert owner_client.get("/api/subscriptions/current/", {"organization_id": str(organization.pk)}).status_code == 404

    SubscriptionLedger().start_subscription(organization.pk, "bundle")
    response = owner_client.get("/api/subscriptions/current/", {"organization_id": str(organization.pk)})

    assert response.status_code == 200
    assert response.data["plan_id"] == "bundle"
    assert response.data["plan"]["name"] == "Complete Bundle"


@pytest.mark.django_db
def test_preview_then_change_plan(owner_client, organization, subscription):
    preview = owner_client.post(
        "/api/subscriptions/preview/",
        {"organization_id": str(organization.pk), "plan_id": "bundle"},
        format="json",
    )

    assert preview.status_code == 200
    assert preview.data["is_upgrade"] is True
    assert preview.data["proration_amount"] == preview.data["charge"] - preview.data["credit"]

    changed = owner_client.post(
        "/api/subscriptions/change/",
        {"organization_id": str(organization.pk), "plan_id": "bundle", "preview": preview.data},
        format="json",
    )

    assert changed.status_code == 200
    assert changed.data["plan_id"] == "bundle"
    assert changed.data["version"] == 2


@pytest.mark.django_db
def test_change_to_unknown_plan_is_rejected(owner_client, organization, subscription):
    response = owner_client.post(
        "/api/subscriptions/change/",
        {"organization_id": str(organization.pk), "plan_id": "platinum"},
        format="json",
    )

    assert response.status_code == 400
    assert "plan_id" in response.data["details"]


@pytest.mark.django_db
def test_cancel_and_reactivate(owner_client, organization, subscription):
    invalid = owner_client.post(
        "/api/subscriptions/cancel/",
        {"organization_id": str(organization.pk), "reason": "other"},
        format="json",
    )
    assert invalid.status_code == 400

    canceled = owner_client.post(
        "/api/subscriptions/cancel/",
        {"organization_id": str(organization.pk), "reason": "missing_features", "feedback": "Need exports"},
        format="json",
    )
    assert canceled.status_code == 200
    assert canceled.data["cancel_at_period_end"] is True
    assert canceled.data["status"] == "active"

    reactivated = owner_client.post(
        "/api/subscriptions/reactivate/", {"organization_id": str(organization.pk)}, format="json"
    )
    assert reactivated.status_code == 200
    assert reactivated.data["cancel_at_period_end"] is False

    again = owner_client.post("/api/subscriptions/reactivate/", {"organization_id": str(organization.pk)}, format="json")
    assert again.status_code == 400
    assert again.data["code"] == "invalid_state"


# Invoices


@pytest.mark.django_db
def test_generate_invoice_is_idempotent_per_period(owner_client, organization, subscription):
    created = owner_client.post("/api/billing/invoices/", {"organization_id": str(organization.pk)}, format="json")
    duplicate = owner_client.post("/api/billing/invoices/", {"organization_id": str(organization.pk)}, format="json")

    assert created.status_code == 201
    assert created.data["total"] == 49900
    assert created.data["status"] == "draft"
    assert duplicate.status_code == 200
    assert duplicate.data["duplicate"] is True
    assert duplicate.data["id"] == created.data["id"]


@pytest.mark.django_db
def test_list_invoices_with_stats(owner_client, other_user, organization, subscription):
    owner_client.post("/api/billing/invoices/", {"organization_id": str(organization.pk)}, format="json")

    response = owner_client.get(
        "/api/billing/invoices/", {"organization_id": str(organization.pk), "include_stats": "true", "status": "draft"}
    )

    assert response.status_code == 200
    assert response.data["count"] == 1
    assert response.data["stats"]["total_pending"] == 49900
    assert response.data["stats"]["invoice_count"] == 1

    outsider = APIClient()
    outsider.force_authenticate(other_user)
    assert outsider.get("/api/billing/invoices/").data["count"] == 0
    assert outsider.get("/api/billing/invoices/", {"organization_id": str(organization.pk)}).status_code == 403


@pytest.mark.django_db
def test_include_stats_needs_organization(owner_client, organization):
    response = owner_client.get("/api/billing/invoices/", {"include_stats": "1"})

    assert response.status_code == 400


@pytest.mark.django_db
def test_invoice_detail_status_updates(owner_client, other_user, organization, subscription):
    created = owner_client.post("/api/billing/invoices/", {"organization_id": str(organization.pk)}, format="json")
    url = f"/api/billing/invoices/{created.data['id']}/"

    assert owner_client.get(url).data["billing_period"] == created.data["billing_period"]

    outsider = APIClient()
    outsider.force_authenticate(other_user)
    assert outsider.get(url).status_code == 403

    cancelled = owner_client.patch(url, {"status": "cancelled", "cause": "duplicate order"}, format="json")
    assert cancelled.status_code == 200
    assert cancelled.data["status"] == "cancelled"

    reopened = owner_client.patch(url, {"status": "pending"}, format="json")
    assert reopened.status_code == 400
    assert reopened.data["code"] == "invalid_state"


@pytest.mark.django_db
def test_invoice_actions(owner_client, organization, subscription, processor):
    created = owner_client.post("/api/billing/invoices/", {"organization_id": str(organization.pk)}, format="json")
    url = f"/api/billing/invoices/{created.data['id']}/"

    not_submitted = owner_client.post(url, {"action": "sync"}, format="json")
    assert not_submitted.data == {"action": "sync", "changed": False, "status": "draft", "reason": "not_submitted"}

    submitted = owner_client.post(url, {"action": "submit"}, format="json")
    assert submitted.status_code == 200
    assert submitted.data["invoice"]["status"] == "pending"

    reminded = owner_client.post(url, {"action": "remind"}, format="json")
    assert reminded.data["invoice"]["reminder_sent_at"] is not None
    assert Invoice.objects.get(pk=created.data["id"]).reminder_sent_at is not None


@pytest.mark.django_db
def test_unknown_invoice_returns_404(owner_client):
    response = owner_client.get("/api/billing/invoices/00000000-0000-0000-0000-000000000000/")

    assert response.status_code == 404
    assert response.data["code"] == "not_found"


# Jobs


@pytest.mark.django_db
def test_job_trigger_requires_bearer_secret(api_client, settings):
    settings.BILLING_JOBS_SECRET = JOBS_SECRET

    missing = api_client.post("/api/billing/jobs/", {"job": "aggregate_usage"}, format="json")
    wrong = api_client.post(
        "/api/billing/jobs/", {"job": "aggregate_usage"}, format="json", HTTP_AUTHORIZATION="Bearer guess"
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.data["code"] == "unauthorized"


@pytest.mark.django_db
def test_job_trigger_runs_once_per_period(api_client, settings):
    settings.BILLING_JOBS_SECRET = JOBS_SECRET
    auth = {"HTTP_AUTHORIZATION": f"Bearer {JOBS_SECRET}"}
    body = {"job": "aggregate_usage", "billing_period": "2024-01-01"}

    first = api_client.post("/api/billing/jobs/", body, format="json", **auth)
    second = api_client.post("/api/billing/jobs/", body, format="json", **auth)

    assert first.status_code == 200
    assert first.data["status"] == "completed"
    assert first.data["period_key"] == "2024-01-01"
    assert second.status_code == 200
    assert second.data["skipped"] is True
    assert second.data["job_run"]["status"] == "completed"

    listing = api_client.get("/api/billing/jobs/", {"job_name": "aggregate_usage"})
    assert len(listing.data["jobs"]) == 7
    assert [run["period_key"] for run in listing.data["recent_runs"]] == ["2024-01-01"]


@pytest.mark.django_db
def test_job_trigger_rejects_bad_period(api_client, settings):
    settings.BILLING_JOBS_SECRET = JOBS_SECRET

    response = api_client.post(
        "/api/billing/jobs/",
        {"job": "monthly_billing", "billing_period": "March"},
        format="json",
        HTTP_AUTHORIZATION=f"Bearer {JOBS_SECRET}",
    )

    assert response.status_code == 400
    assert response.data["code"] == "validation_error"


@pytest.mark.django_db
def test_job_trigger_runs_everything_due(api_client, settings, meter):
    settings.BILLING_JOBS_SECRET = JOBS_SECRET

    response = api_client.post(
        "/api/billing/jobs/", {"job": "scheduled"}, format="json", HTTP_AUTHORIZATION=f"Bearer {JOBS_SECRET}"
    )

    assert response.status_code == 200
    assert response.data["job_name"] == "scheduled"
    assert response.data["results"]
    assert all(result["status"] == "completed" for result in response.data["results"])
    assert BillingJobRun.objects.count() == len(response.data["results"])


# Webhook robustness


class UnreachableBroker:
    def delay(self, payload):
        raise ConnectionError("broker unreachable")


@pytest.mark.django_db
def test_webhook_processes_inline_when_queue_is_down(api_client, webhook_settings, subscription, monkeypatch):
    webhook_settings.BILLING_WEBHOOK_ASYNC = True
    monkeypatch.setattr("billing.views.webhooks.process_payment_event_async", UnreachableBroker())
    Subscription.objects.filter(pk=subscription.pk).update(external_subscription_ref="SUB_1")

    response = post_webhook(api_client, {"event": "subscription.not_renew", "data": {"subscription_code": "SUB_1"}})

    assert response.status_code == 200
    assert response.data == {"received": True, "status": "applied"}
    assert Subscription.objects.get(pk=subscription.pk).cancel_at_period_end is True


@pytest.mark.django_db
def test_webhook_rejects_non_ascii_signature(api_client, webhook_settings):
    response = api_client.post(
        "/api/webhooks/payments/",
        data=b"{}",
        content_type="application/json",
        HTTP_X_PAYSTACK_SIGNATURE="é" * 128,
    )

    assert response.status_code == 401
    assert response.data["code"] == "invalid_signature"
