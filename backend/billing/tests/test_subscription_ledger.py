from datetime import timedelta

import pytest
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import F

from billing.exceptions import ConcurrencyConflict, InvalidStateError, NotFoundError, ValidationError
from billing.models import BillingAuditLog, CancellationSurvey, PendingCharge, Subscription
from billing.services.subscription_ledger import Cause, SubscriptionLedger, check_transition

Status = Subscription.Status


@pytest.mark.django_db
def test_free_plan_starts_trialing_until_trial_end(ledger, organization, clock):
    subscription = ledger.start_subscription(organization.pk, "free")

    assert subscription.status == Status.TRIALING
    assert subscription.amount == 0
    assert subscription.trial_start == clock.now()
    assert subscription.trial_end == clock.now() + timedelta(days=14)
    assert subscription.current_period_end == subscription.trial_end
    assert BillingAuditLog.objects.filter(subscription=subscription, event_type="billing.subscription.created").exists()


@pytest.mark.django_db
def test_paid_plan_starts_active_for_thirty_days(ledger, organization, clock):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")

    assert subscription.status == Status.ACTIVE
    assert subscription.amount == 49900
    assert subscription.current_period_start == clock.now()
    assert subscription.current_period_end == clock.now() + timedelta(days=30)
    assert subscription.version == 1


@pytest.mark.django_db
def test_only_one_open_subscription_per_organization(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")

    with pytest.raises(InvalidStateError):
        ledger.start_subscription(organization.pk, "bundle")


@pytest.mark.django_db
def test_get_current_errors(ledger, organization):
    with pytest.raises(NotFoundError):
        ledger.get_current(organization.pk)
    with pytest.raises(ValidationError):
        ledger.get_current("not-a-uuid")


@pytest.mark.django_db
def test_preview_mid_cycle_upgrade(ledger, organization, clock):
    ledger.start_subscription(organization.pk, "ai-assistant")
    clock.advance(days=15)

    preview = ledger.preview(organization.pk, "bundle")

    assert preview.days_remaining == 15
    assert preview.credit == 24950
    assert preview.charge == 44950
    assert preview.proration_amount == 20000
    assert preview.is_upgrade is True
    assert preview.effective_date == clock.now()
    assert Subscription.objects.get(organization=organization).plan_id == "ai-assistant"


@pytest.mark.django_db
def test_preview_of_current_plan_is_rejected(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")

    with pytest.raises(ValidationError):
        ledger.preview(organization.pk, "ai-assistant")


@pytest.mark.django_db
def test_upgrade_applies_immediately_and_queues_proration(ledger, organization, clock):
    ledger.start_subscription(organization.pk, "ai-assistant")
    clock.advance(days=15)

    subscription = ledger.apply_plan_change(organization.pk, "bundle", actor="user:1")

    assert subscription.plan_id == "bundle"
    assert subscription.amount == 89900
    assert subscription.version == 2
    charge = PendingCharge.objects.get(subscription=subscription)
    assert charge.amount == 20000
    assert charge.status == PendingCharge.Status.PENDING
    assert charge.idempotency_key == f"subscription:{subscription.pk}:upgrade:bundle:v2"
    assert BillingAuditLog.objects.filter(subscription=subscription, event_type="billing.subscription.upgrade").exists()


@pytest.mark.django_db
def test_stale_client_preview_is_recomputed(ledger, organization, clock):
    ledger.start_subscription(organization.pk, "ai-assistant")
    preview = ledger.preview(organization.pk, "bundle").as_dict()
    clock.advance(days=20)

    ledger.apply_plan_change(organization.pk, "bundle", preview=preview)

    assert PendingCharge.objects.get().amount == 13334


@pytest.mark.django_db
def test_preview_for_another_plan_is_rejected(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")
    preview = ledger.preview(organization.pk, "bundle")

    with pytest.raises(ValidationError):
        ledger.apply_plan_change(organization.pk, "receipt-assistant", preview=preview)


@pytest.mark.django_db
def test_downgrade_waits_for_period_end(ledger, organization, clock):
    started = ledger.start_subscription(organization.pk, "bundle")

    scheduled = ledger.apply_plan_change(organization.pk, "ai-assistant")

    assert scheduled.plan_id == "bundle"
    assert scheduled.pending_plan_id == "ai-assistant"
    assert not PendingCharge.objects.exists()

    clock.advance(days=31)
    rolled = ledger.rollover(scheduled.pk)

    assert rolled.plan_id == "ai-assistant"
    assert rolled.amount == 49900
    assert rolled.pending_plan_id == ""
    assert rolled.current_period_start == started.current_period_end
    assert rolled.current_period_end == started.current_period_end + timedelta(days=30)


@pytest.mark.django_db
def test_plan_change_without_subscription_starts_one(ledger, organization):
    subscription = ledger.apply_plan_change(organization.pk, "whatsapp-assistant")

    assert subscription.status == Status.ACTIVE
    assert subscription.plan_id == "whatsapp-assistant"


@pytest.mark.django_db
def test_upgrade_out_of_trial_activates(ledger, organization):
    ledger.start_subscription(organization.pk, "free")

    subscription = ledger.apply_plan_change(organization.pk, "ai-assistant")

    assert subscription.status == Status.ACTIVE
    assert subscription.trial_end is not None


@pytest.mark.django_db
def test_schedule_cancellation_keeps_status_and_records_survey(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")

    subscription = ledger.schedule_cancellation(organization.pk, "too_expensive", "Pricey", would_recommend=6)

    assert subscription.status == Status.ACTIVE
    assert subscription.cancel_at_period_end is True
    assert subscription.canceled_at is not None
    survey = CancellationSurvey.objects.get(subscription=subscription)
    assert survey.reason == "too_expensive"
    assert survey.would_recommend == 6

    again = ledger.cancel_at_period_end(subscription.pk)
    assert again.version == subscription.version


@pytest.mark.django_db
def test_schedule_cancellation_validates_reason(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")

    with pytest.raises(ValidationError):
        ledger.schedule_cancellation(organization.pk, "bored")


@pytest.mark.django_db
def test_reactivate_clears_scheduled_cancellation(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")
    ledger.schedule_cancellation(organization.pk, "not_using")

    subscription = ledger.reactivate(organization.pk)

    assert subscription.cancel_at_period_end is False
    assert subscription.canceled_at is None
    assert subscription.status == Status.ACTIVE


@pytest.mark.django_db
def test_reactivate_requires_scheduled_cancellation(ledger, organization):
    ledger.start_subscription(organization.pk, "ai-assistant")

    with pytest.raises(InvalidStateError):
        ledger.reactivate(organization.pk)


@pytest.mark.django_db
def test_rollover_cancels_at_period_end_and_blocks_reactivation(ledger, organization, clock):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")
    ledger.schedule_cancellation(organization.pk, "business_closed")

    assert ledger.rollover(subscription.pk).status == Status.ACTIVE

    clock.advance(days=30)
    canceled = ledger.rollover(subscription.pk)

    assert canceled.status == Status.CANCELED
    with pytest.raises(InvalidStateError):
        ledger.reactivate(organization.pk)


@pytest.mark.django_db
def test_transition_table_rejects_unlisted_moves(ledger, organization, clock):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")

    with pytest.raises(InvalidStateError):
        ledger.transition(organization.pk, Status.TRIALING, Cause.PROCESSOR_SYNC)
    with pytest.raises(InvalidStateError):
        ledger.transition(organization.pk, Status.PAST_DUE, Cause.EXPLICIT_CANCEL)

    moved = ledger.transition(organization.pk, Status.PAST_DUE, Cause.PAYMENT_FAILED)
    assert moved.status == Status.PAST_DUE

    subscription.status = Status.CANCELED
    with pytest.raises(InvalidStateError):
        check_transition(subscription, Status.PAST_DUE, Cause.PAYMENT_FAILED, clock.now())


@pytest.mark.django_db
def test_repeated_payment_failures_cancel_after_retry_budget(ledger, organization):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")

    first = ledger.record_payment_failure(subscription.pk)
    second = ledger.record_payment_failure(subscription.pk)
    third = ledger.record_payment_failure(subscription.pk)

    assert (first.status, first.payment_failure_count) == (Status.PAST_DUE, 1)
    assert (second.status, second.payment_failure_count) == (Status.PAST_DUE, 2)
    assert third.status == Status.CANCELED
    assert ledger.record_payment_failure(subscription.pk).version == third.version


@pytest.mark.django_db
def test_advance_period_recovers_past_due(ledger, organization, clock):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")
    ledger.record_payment_failure(subscription.pk)
    clock.advance(days=29)

    advanced = ledger.advance_period(subscription.pk)

    assert advanced.status == Status.ACTIVE
    assert advanced.payment_failure_count == 0
    assert advanced.current_period_start == subscription.current_period_end
    assert advanced.current_period_end == subscription.current_period_end + timedelta(days=30)


@pytest.mark.django_db
def test_expired_trial_is_canceled_by_default(ledger, organization, clock):
    subscription = ledger.start_subscription(organization.pk, "free")

    assert ledger.expire_trial(subscription.pk).status == Status.TRIALING

    clock.advance(days=15)
    expired = ledger.expire_trial(subscription.pk)

    assert expired.status == Status.CANCELED
    assert expired.canceled_at == clock.now()


@pytest.mark.django_db
def test_expired_trial_status_is_configurable(ledger, organization, clock, settings):
    settings.BILLING_TRIAL_EXPIRY_STATUS = "past_due"
    subscription = ledger.start_subscription(organization.pk, "free")
    clock.advance(days=15)

    assert ledger.expire_trial(subscription.pk).status == Status.PAST_DUE


@pytest.mark.django_db
def test_version_conflict_is_retried_with_a_fresh_read(ledger, organization):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")
    seen_versions = []

    def mutate(current):
        seen_versions.append(current.version)
        if len(seen_versions) == 1:
            Subscription.objects.filter(pk=current.pk).update(version=F("version") + 1)
        return {"payment_failure_count": 1}

    updated = ledger._apply_changes(subscription.pk, mutate, event_type="billing.test")

    assert seen_versions == [1, 2]
    assert updated.version == 3
    assert updated.payment_failure_count == 1


@pytest.mark.django_db
def test_persistent_conflict_raises(organization, clock):
    ledger = SubscriptionLedger(clock=clock, max_retries=2)
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")

    def mutate(current):
        Subscription.objects.filter(pk=current.pk).update(version=F("version") + 1)
        return {"payment_failure_count": 1}

    with pytest.raises(ConcurrencyConflict):
        ledger._apply_changes(subscription.pk, mutate, event_type="billing.test")
    assert Subscription.objects.get(pk=subscription.pk).payment_failure_count == 0


@pytest.mark.django_db
def test_subscriptions_are_never_deleted(ledger, organization):
    subscription = ledger.start_subscription(organization.pk, "ai-assistant")

    with pytest.raises(DjangoValidationError):
        subscription.delete()
    assert Subscription.objects.filter(pk=subscription.pk).exists()
