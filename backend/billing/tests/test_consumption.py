import threading
from decimal import Decimal

import pytest
from django.db import connection

from billing.models import BillingCharge, TenantSubscription, TokenTransaction
from billing.services import consumption, token_ledger
from billing.services.consumption import (
    SubscriptionInactive,
    authorize,
    can_perform_action,
    quote_action,
    require_tokens,
)
from billing.services.pricing_catalog import UnknownActionType
from billing.services.token_ledger import (
    InsufficientBalance,
    LedgerFrozen,
    SubscriptionNotFound,
    debit,
    replay_ledger,
)


def _consume_rows(subscription):
    return TokenTransaction.objects.filter(
        subscription=subscription, type=TokenTransaction.TransactionType.CONSUME
    )


@pytest.mark.django_db
def test_authorize_debits_when_balance_covers_cost(make_subscription, pricing):
    subscription = make_subscription(balance=100)

    result = authorize(subscription.tenant_id, pricing.action_type, action_id="proposal-1")

    assert result.allowed is True
    assert (result.balance_before, result.balance_after) == (100, 70)
    assert result.overage_tokens == 0
    row = _consume_rows(subscription).get()
    assert row.tokens == -30
    assert row.pricing == pricing
    assert row.action_id == "proposal-1"
    assert row.metadata["pricing_version"] == pricing.version
    subscription.refresh_from_db()
    assert subscription.token_balance == 70
    assert subscription.tokens_used_this_period == 30


@pytest.mark.django_db
def test_authorize_denies_without_side_effects(make_subscription, pricing):
    subscription = make_subscription(balance=20)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is False
    assert result.reason == "insufficient_balance"
    assert (result.balance_before, result.balance_after) == (20, 20)
    assert not _consume_rows(subscription).exists()
    subscription.refresh_from_db()
    assert subscription.token_balance == 20
    assert subscription.ledger_sequence == 1


@pytest.mark.django_db
def test_authorize_with_overage_goes_negative_and_bills_shortfall(make_plan, make_subscription, pricing):
    overage_plan = make_plan("test-overage", allow_overage=True, overage_token_cost=Decimal("0.01"))
    subscription = make_subscription(balance=20, plan=overage_plan)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is True
    assert result.balance_after == -10
    assert result.overage_tokens == 10
    assert _consume_rows(subscription).count() == 1
    charge = BillingCharge.objects.get(subscription=subscription)
    assert charge.kind == BillingCharge.Kind.OVERAGE
    assert charge.amount == Decimal("0.10")
    assert charge.tokens == 10
    assert charge.token_transaction == result.transaction
    assert charge.status == BillingCharge.Status.PENDING
    assert result.overage_charge == charge
    assert not TokenTransaction.objects.filter(type=TokenTransaction.TransactionType.OVERAGE_CHARGE).exists()


@pytest.mark.django_db
def test_overage_limit_bounds_negative_balance(make_plan, make_subscription, pricing):
    capped = make_plan("test-capped", allow_overage=True, overage_token_limit=5)
    subscription = make_subscription(balance=20, plan=capped)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is False
    assert not BillingCharge.objects.exists()


@pytest.mark.django_db
def test_sequential_authorizations_approve_floor_of_balance_over_cost(make_subscription, pricing):
    subscription = make_subscription(balance=100)

    outcomes = [authorize(subscription.tenant_id, pricing.action_type).allowed for _ in range(5)]

    assert outcomes.count(True) == 3
    subscription.refresh_from_db()
    assert subscription.token_balance == 10
    assert replay_ledger(subscription).consistent


@pytest.mark.django_db
def test_unknown_action_type_fails_closed(make_subscription):
    subscription = make_subscription(balance=100)

    with pytest.raises(UnknownActionType):
        authorize(subscription.tenant_id, "test_missing_action")

    subscription.refresh_from_db()
    assert subscription.token_balance == 100


@pytest.mark.django_db
def test_zero_cost_action_is_allowed_without_ledger_row(make_subscription, make_pricing):
    make_pricing("test_free_preview", token_cost=0)
    subscription = make_subscription(balance=5)

    result = authorize(subscription.tenant_id, "test_free_preview")

    assert result.allowed is True
    assert not _consume_rows(subscription).exists()


@pytest.mark.django_db
def test_missing_subscription_raises(tenant, pricing):
    with pytest.raises(SubscriptionNotFound):
        authorize(tenant.pk, pricing.action_type)


@pytest.mark.django_db
def test_canceled_subscription_cannot_consume(make_subscription, pricing):
    subscription = make_subscription(balance=100, status=TenantSubscription.Status.CANCELED)

    with pytest.raises(SubscriptionInactive):
        authorize(subscription.tenant_id, pricing.action_type)


@pytest.mark.django_db
def test_trialing_subscription_can_consume(make_subscription, pricing):
    subscription = make_subscription(balance=100, status=TenantSubscription.Status.TRIALING)

    assert authorize(subscription.tenant_id, pricing.action_type).allowed is True


@pytest.mark.django_db
def test_frozen_ledger_refuses_debits(make_subscription, pricing):
    subscription = make_subscription(balance=100, debits_frozen=True)

    with pytest.raises(LedgerFrozen):
        authorize(subscription.tenant_id, pricing.action_type)


@pytest.mark.django_db
def test_idempotency_key_replays_consumption(make_subscription, pricing):
    subscription = make_subscription(balance=40)

    first = authorize(subscription.tenant_id, pricing.action_type, idempotency_key="proposal-9:generate")
    second = authorize(subscription.tenant_id, pricing.action_type, idempotency_key="proposal-9:generate")

    assert first.allowed and second.allowed
    assert second.replayed is True
    assert second.transaction.pk == first.transaction.pk
    assert _consume_rows(subscription).count() == 1
    subscription.refresh_from_db()
    assert subscription.token_balance == 10


@pytest.mark.django_db
def test_same_idempotency_key_is_independent_per_tenant(make_subscription, other_tenant, pricing):
    ours = make_subscription(balance=100)
    theirs = make_subscription(balance=100, tenant=other_tenant)

    first = authorize(ours.tenant_id, pricing.action_type, idempotency_key="proposal-1:generate")
    second = authorize(theirs.tenant_id, pricing.action_type, idempotency_key="proposal-1:generate")

    assert first.allowed and second.allowed
    assert second.replayed is False
    assert _consume_rows(ours).count() == 1
    assert _consume_rows(theirs).count() == 1
    assert _consume_rows(theirs).get().idempotency_key == "consume:proposal-1:generate"
    theirs.refresh_from_db()
    assert theirs.token_balance == 70


@pytest.mark.django_db
def test_floor_comes_from_locked_row_not_snapshot(make_plan, make_subscription, pricing, monkeypatch):
    overage_plan = make_plan("test-overage-snapshot", allow_overage=True)
    subscription = make_subscription(balance=20, plan=overage_plan)
    snapshot = TenantSubscription.objects.select_related("plan").get(pk=subscription.pk)
    TenantSubscription.objects.filter(pk=subscription.pk).update(allow_overage=False)
    monkeypatch.setattr(consumption, "_get_subscription", lambda tenant_id: snapshot)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is False
    assert result.reason == "insufficient_balance"
    assert result.balance_before == 20
    assert not _consume_rows(subscription).exists()
    assert not BillingCharge.objects.exists()


@pytest.mark.django_db
def test_overage_enabled_after_snapshot_is_honoured(make_subscription, pricing, monkeypatch):
    subscription = make_subscription(balance=20)
    snapshot = TenantSubscription.objects.select_related("plan").get(pk=subscription.pk)
    TenantSubscription.objects.filter(pk=subscription.pk).update(allow_overage=True, overage_token_limit=None)
    monkeypatch.setattr(consumption, "_get_subscription", lambda tenant_id: snapshot)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is True
    assert result.balance_after == -10
    assert BillingCharge.objects.get(subscription=subscription).tokens == 10


@pytest.mark.django_db
def test_conflict_is_retried_against_fresh_state(make_subscription, pricing, monkeypatch):
    subscription = make_subscription(balance=100)
    stale = TenantSubscription.objects.get(pk=subscription.pk)
    debit(subscription, 10)

    real_lock = token_ledger._lock_subscription
    calls = []

    def lock_once_stale(subscription_id):
        calls.append(subscription_id)
        return stale if len(calls) == 1 else real_lock(subscription_id)

    monkeypatch.setattr(token_ledger, "_lock_subscription", lock_once_stale)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is True
    assert (result.balance_before, result.balance_after) == (90, 60)
    assert len(calls) == 2


@pytest.mark.django_db
def test_persistent_conflict_is_denied_after_bounded_retry(make_subscription, pricing, monkeypatch, settings):
    settings.BILLING_DEBIT_MAX_ATTEMPTS = 2
    subscription = make_subscription(balance=100)
    stale = TenantSubscription.objects.get(pk=subscription.pk)
    debit(subscription, 10)
    monkeypatch.setattr(token_ledger, "_lock_subscription", lambda subscription_id: stale)

    result = authorize(subscription.tenant_id, pricing.action_type)

    assert result.allowed is False
    assert result.reason == "concurrent_conflict"
    assert _consume_rows(subscription).count() == 1
    subscription.refresh_from_db()
    assert subscription.ledger_sequence == 2
    assert subscription.token_balance == 90


@pytest.mark.django_db
def test_quote_action_previews_without_debiting(make_plan, make_subscription, pricing):
    overage_plan = make_plan("test-quote", allow_overage=True, overage_token_cost=Decimal("0.009"))
    subscription = make_subscription(balance=10, plan=overage_plan)

    quote = quote_action(subscription.tenant_id, pricing.action_type)

    assert quote.allowed is True
    assert quote.overage_tokens == 20
    assert quote.estimated_overage_charge == Decimal("0.1800")
    assert can_perform_action(subscription.tenant_id, pricing.action_type) is True
    subscription.refresh_from_db()
    assert subscription.token_balance == 10


@pytest.mark.django_db
def test_require_tokens_raises_on_denial(make_subscription, pricing):
    subscription = make_subscription(balance=10)

    with pytest.raises(InsufficientBalance):
        require_tokens(subscription.tenant_id, pricing.action_type)


@pytest.mark.postgres
@pytest.mark.skipif(connection.vendor != "postgresql", reason="needs row-level locking across connections")
@pytest.mark.django_db(transaction=True)
def test_concurrent_authorizations_never_overdraft(make_subscription, make_pricing):
    make_pricing("test_race", token_cost=30)
    subscription = make_subscription(balance=100)
    barrier = threading.Barrier(8)
    outcomes = []

    def worker():
        try:
            barrier.wait()
            outcomes.append(authorize(subscription.tenant_id, "test_race").allowed)
        finally:
            connection.close()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    subscription.refresh_from_db()
    assert outcomes.count(True) == 3
    assert subscription.token_balance == 10
    assert replay_ledger(subscription).consistent
