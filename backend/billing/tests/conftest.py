from datetime import datetime, timezone as dt_timezone

import pytest

from organizations.models import Organization

from billing.clock import FixedClock
from billing.exceptions import ExternalProcessorError
from billing.services.invoice_generator import InvoiceGenerator
from billing.services.paystack import set_processor_client
from billing.services.subscription_ledger import SubscriptionLedger
from billing.services.usage_meter import set_usage_meter


class FakeProcessor:
    """Stands in for the Paystack client; records every call it receives."""

    def __init__(self):
        self.calls = []
        self.payment_requests = {}
        self.subscriptions = {}
        self.failing_organizations = set()
        self.notify_failures = 0
        self.created_requests = []
        self.lose_next_create_response = False
        self._counter = 0

    def _next(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def create_customer(self, *, email, name="", metadata=None):
        self.calls.append(("create_customer", email))
        organization_id = (metadata or {}).get("organization_id")
        if organization_id in self.failing_organizations:
            raise ExternalProcessorError("Payment processor unavailable: HTTP 503")
        return {"customer_code": self._next("CUS"), "email": email}

    def create_payment_request(self, *, customer, amount, due_date, description, line_items=(), currency="ZAR", metadata=None):
        self.calls.append(("create_payment_request", customer, amount))
        request_code = self._next("PRQ")
        created = {
            "request_code": request_code,
            "pdf_url": f"https://paystack.test/{request_code}.pdf",
            "amount": amount,
            "customer": customer,
            "metadata": dict(metadata or {}),
        }
        self.created_requests.append(created)
        if self.lose_next_create_response:
            self.lose_next_create_response = False
            raise ExternalProcessorError("Payment processor did not confirm create_payment_request: read timed out")
        return created

    def list_payment_requests(self, *, customer):
        self.calls.append(("list_payment_requests", customer))
        return {"data": [request for request in self.created_requests if request["customer"] == customer]}

    def fetch_payment_request(self, request_code):
        self.calls.append(("fetch_payment_request", request_code))
        return self.payment_requests.get(request_code, {"status": "pending", "paid": False})

    def notify_payment_request(self, request_code):
        self.calls.append(("notify_payment_request", request_code))
        if self.notify_failures:
            self.notify_failures -= 1
            raise ExternalProcessorError("Payment processor unavailable: HTTP 503")
        return {}

    def archive_payment_request(self, request_code):
        self.calls.append(("archive_payment_request", request_code))
        return {}

    def fetch_subscription(self, subscription_code):
        self.calls.append(("fetch_subscription", subscription_code))
        return self.subscriptions.get(subscription_code, {"status": "active"})

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def overdue_reminder(self, invoice):
        self.sent.append(("overdue_reminder", invoice.pk))

    def trial_ending(self, subscription, days_left):
        self.sent.append(("trial_ending", subscription.pk, days_left))

    def trial_expired(self, subscription):
        self.sent.append(("trial_expired", subscription.pk))

    def payment_failed(self, subscription, reason=None):
        self.sent.append(("payment_failed", subscription.pk, reason))


@pytest.fixture(autouse=True)
def reset_billing_singletons():
    set_usage_meter(None)
    set_processor_client(None)
    yield
    set_usage_meter(None)
    set_processor_client(None)


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username="owner", email="owner@example.com", password="password123")


@pytest.fixture
def other_user(django_user_model):
    return django_user_model.objects.create_user(username="mallory", email="mallory@example.com", password="password123")


@pytest.fixture
def staff_user(django_user_model):
    return django_user_model.objects.create_user(
        username="ops", email="ops@example.com", password="password123", is_staff=True
    )


@pytest.fixture
def organization(user):
    return Organization.objects.create(name="Acme Trading", owner=user, billing_email="billing@acme.test")


@pytest.fixture
def second_organization(other_user):
    return Organization.objects.create(name="Globex", owner=other_user)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 10, 12, 0, tzinfo=dt_timezone.utc))


@pytest.fixture
def processor():
    fake = FakeProcessor()
    set_processor_client(fake)
    return fake


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger(clock):
    return SubscriptionLedger(clock=clock)


@pytest.fixture
def invoices(clock, processor, notifier):
    return InvoiceGenerator(clock=clock, client=processor, notifier=notifier)
