from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest

from billing.models import BillingAuditLog, TenantSubscription, TokenTransaction
from billing.services.consumption import authorize
from billing.services.subscription_lifecycle import (
    SubscriptionLifecycleError,
    cancel_subscription,
    get_balance_summary,
    grant_bonus_tokens,
    purchase_tokens,
    start_subscription,
)
from billing.services.token_ledger import IdempotencyConflict

NOW = datetime(2026, 5, 10, 9, 30, tzinfo=dt_timezone.utc)


@pytest.mark.django_db
def test_start_subscription_grants_first_allocation(tenant, plan):
    subscription = start_subscription(tenant, plan, now=NOW)

    assert subscription.token_balance == 1000
    assert subscription.current_period_start == NOW
    assert subscription.current_period_end == datetime(2026, 6, 10, 9, 30, tzinfo=dt_timezone.utc)
    allocation = TokenTransaction.objects.get(subscription=subscription)
    assert allocation.type == TokenTransaction.TransactionType.ALLOCATION
    assert allocation.metadata["reason"] == "initial"
    assert BillingAuditLog.objects.filter(tenant=tenant, event_type="token_subscription.created").exists()


@pytest.mark.django_db
def test_start_subscription_with_trial(tenant, plan):
    subscription = start_subscription(tenant, plan, trial_days=14, now=NOW)

    assert subscription.status == TenantSubscription.Status.TRIALING
    assert subscription.trial_ends_at == NOW + timedelta(days=14)


@pytest.mark.django_db
def test_start_subscription_rejects_second_live_subscription(tenant, plan):
    start_subscription(tenant, plan, now=NOW)

    with pytest.raises(SubscriptionLifecycleError):
        start_subscription(tenant, plan, now=NOW)


@pytest.mark.django_db
def test_reactivation_keeps_ledger_and_adds_allocation(tenant, plan):
    start_subscription(tenant, plan, now=NOW)
    cancel_subscription(tenant.pk, at_period_end=False, now=NOW + timedelta(days=1))

    subscription = start_subscription(tenant, plan, now=NOW + timedelta(days=40))

    assert subscription.status == TenantSubscription.Status.ACTIVE
    assert subscription.token_balance == 2000
    assert TokenTransaction.objects.filter(subscription=subscription).count() == 2
    assert BillingAuditLog.objects.filter(tenant=tenant, event_type="token_subscription.reactivated").exists()


@pytest.mark.django_db
def test_cancel_at_period_end_only_marks_subscription(tenant, plan):
    start_subscription(tenant, plan, now=NOW)

    subscription = cancel_subscription(tenant.pk, now=NOW)

    assert subscription.cancel_at_period_end is True
    assert subscription.status == TenantSubscription.Status.ACTIVE


@pytest.mark.django_db
def test_purchase_tokens_records_refill_priced_at_overage_rate(tenant, plan):
    start_subscription(tenant, plan, now=NOW)

    result = purchase_tokens(tenant.pk, 5000, idempotency_key="order-1", payment_reference="pi_1")
    replay = purchase_tokens(tenant.pk, 5000, idempotency_key="order-1", payment_reference="pi_1")

    assert result.created is True
    assert replay.created is False
    assert result.transaction.type == TokenTransaction.TransactionType.REFILL
    assert result.transaction.metadata["amount"] == "50.00"
    assert result.transaction.balance_after == 6000
    assert result.transaction.idempotency_key == "purchase:order-1"

    with pytest.raises(IdempotencyConflict):
        purchase_tokens(tenant.pk, 10, idempotency_key="order-1")


@pytest.mark.django_db
def test_grant_bonus_tokens(tenant, plan):
    start_subscription(tenant, plan, now=NOW)

    result = grant_bonus_tokens(tenant.pk, 250, reason="Onboarding credit", granted_by="support")

    assert result.transaction.type == TokenTransaction.TransactionType.BONUS
    assert result.subscription.token_balance == 1250


@pytest.mark.django_db
def test_balance_summary_reports_usage_and_overage(make_plan, make_subscription, pricing):
    plan = make_plan("test-summary", allow_overage=True, overage_token_cost=Decimal("0.0090"))
    subscription = make_subscription(balance=20, plan=plan, now=NOW - timedelta(days=10))
    authorize(subscription.tenant_id, pricing.action_type)

    summary = get_balance_summary(subscription.tenant_id, now=NOW)

    assert summary.token_balance == -10
    assert summary.is_in_overage is True
    assert summary.overage_tokens == 10
    assert summary.overage_cost == Decimal("0.09")
    assert summary.tokens_used_this_period == 30
    assert summary.usage_percentage == Decimal("3.00")
    assert summary.days_until_refill == 20
