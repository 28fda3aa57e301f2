from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal

import pytest

from billing.models import BillingAuditLog, BillingCharge, TenantSubscription, TokenTransaction
from billing.services.plan_change import PlanChangeError, calculate_proration, change_plan
from billing.services.token_ledger import replay_ledger

NOW = datetime(2026, 6, 16, 12, 0, tzinfo=dt_timezone.utc)


@pytest.fixture
def plans(make_plan):
    return {
        "starter": make_plan("test-starter", monthly_tokens=50000, monthly_price=Decimal("100.00")),
        "pro": make_plan(
            "test-pro",
            monthly_tokens=100000,
            monthly_price=Decimal("200.00"),
            annual_tokens=1_320_000,
            annual_price=Decimal("2160.00"),
            allow_overage=True,
            overage_token_cost=Decimal("0.0080"),
        ),
    }


@pytest.fixture
def mid_period_subscription(plans, make_subscription):
    return make_subscription(
        balance=12345,
        plan=plans["starter"],
        current_period_start=NOW - timedelta(days=15),
        current_period_end=NOW + timedelta(days=15),
    )


def test_calculate_proration_half_period():
    quote = calculate_proration(
        old_tokens=50000,
        new_tokens=100000,
        old_price=Decimal("100.00"),
        new_price=Decimal("200.00"),
        period_start=NOW - timedelta(days=15),
        period_end=NOW + timedelta(days=15),
        now=NOW,
    )

    assert quote.days_in_period == 30
    assert quote.days_remaining == 15
    assert quote.token_adjustment == 25000
    assert quote.prorated_price_difference == Decimal("50.00")


def test_calculate_proration_counts_partial_days_as_whole():
    quote = calculate_proration(
        old_tokens=3000,
        new_tokens=6000,
        old_price=0,
        new_price=30,
        period_start=NOW - timedelta(days=15, hours=12),
        period_end=NOW + timedelta(days=14, hours=12),
        now=NOW,
    )

    assert quote.days_remaining == 15
    assert quote.token_adjustment == 1500


def test_calculate_proration_never_grants_negative_tokens():
    quote = calculate_proration(
        old_tokens=100000,
        new_tokens=50000,
        old_price=200,
        new_price=100,
        period_start=NOW - timedelta(days=10),
        period_end=NOW + timedelta(days=20),
        now=NOW,
    )

    assert quote.token_adjustment == 0
    assert quote.prorated_price_difference == Decimal("-66.67")


@pytest.mark.django_db
def test_upgrade_credits_prorated_tokens_and_keeps_balance(mid_period_subscription, plans):
    result = change_plan(mid_period_subscription.tenant_id, "test-pro", now=NOW, actor="tests")

    subscription = TenantSubscription.objects.get(pk=mid_period_subscription.pk)
    assert result.token_adjustment == 25000
    assert result.new_balance == subscription.token_balance == 12345 + 25000
    assert subscription.plan == plans["pro"]
    assert subscription.monthly_allocation == 100000
    assert subscription.allow_overage is True
    assert subscription.overage_token_cost == Decimal("0.0080")

    adjustment = TokenTransaction.objects.get(
        subscription=subscription, type=TokenTransaction.TransactionType.PLAN_ADJUSTMENT
    )
    assert adjustment.tokens == 25000
    assert adjustment.metadata["from_plan"] == "test-starter"
    assert adjustment.metadata["days_remaining"] == 15

    charge = BillingCharge.objects.get(subscription=subscription)
    assert charge.kind == BillingCharge.Kind.PLAN_PRORATION
    assert charge.amount == Decimal("50.00")
    assert charge.token_transaction == adjustment
    assert BillingAuditLog.objects.filter(tenant_id=subscription.tenant_id, event_type="token_plan.changed").exists()
    assert replay_ledger(subscription).consistent


@pytest.mark.django_db
def test_downgrade_keeps_balance_and_records_credit(mid_period_subscription, plans, make_plan):
    make_plan("test-lite", monthly_tokens=20000, monthly_price=Decimal("40.00"))

    result = change_plan(mid_period_subscription.tenant_id, "test-lite", now=NOW)

    subscription = TenantSubscription.objects.get(pk=mid_period_subscription.pk)
    assert result.token_adjustment == 0
    assert result.transaction is None
    assert subscription.token_balance == 12345
    assert subscription.monthly_allocation == 20000
    assert result.charge.amount == Decimal("-30.00")


@pytest.mark.django_db
def test_switch_to_annual_interval_uses_monthly_slice(mid_period_subscription, plans):
    result = change_plan(mid_period_subscription.tenant_id, "test-pro", billing_interval="year", now=NOW)

    subscription = TenantSubscription.objects.get(pk=mid_period_subscription.pk)
    assert subscription.billing_interval == TenantSubscription.BillingInterval.YEAR
    assert subscription.monthly_allocation == 110000
    assert result.token_adjustment == 30000
    assert result.prorated_price_difference == Decimal("40.00")


@pytest.mark.django_db
def test_change_to_current_plan_is_rejected(mid_period_subscription):
    with pytest.raises(PlanChangeError):
        change_plan(mid_period_subscription.tenant_id, "test-starter", now=NOW)


@pytest.mark.django_db
def test_change_to_unknown_plan_is_rejected(mid_period_subscription):
    with pytest.raises(PlanChangeError):
        change_plan(mid_period_subscription.tenant_id, "test-does-not-exist", now=NOW)


@pytest.mark.django_db
def test_change_on_canceled_subscription_is_rejected(mid_period_subscription, plans):
    TenantSubscription.objects.filter(pk=mid_period_subscription.pk).update(
        status=TenantSubscription.Status.CANCELED
    )

    with pytest.raises(PlanChangeError):
        change_plan(mid_period_subscription.tenant_id, "test-pro", now=NOW)
