import pytest
from django.core.exceptions import ValidationError

from billing.models import BillingAuditLog, TenantSubscription, TokenTransaction
from billing.services import token_ledger
from billing.services.token_ledger import (
    ConcurrentDebitConflict,
    IdempotencyConflict,
    InsufficientBalance,
    LedgerFrozen,
    LedgerReplayMismatch,
    apply_delta,
    credit,
    debit,
    replay_ledger,
    unfreeze_ledger,
    verify_ledger,
)
from billing.services.transaction_metadata import AllocationMetadata, BonusMetadata

TransactionType = TokenTransaction.TransactionType


@pytest.mark.django_db
def test_credit_and_debit_append_chained_rows(make_subscription):
    subscription = make_subscription()

    credit(subscription, 500, TransactionType.REFILL)
    result = debit(subscription, 120, description="Manual debit")

    subscription.refresh_from_db()
    assert subscription.token_balance == 380
    assert subscription.ledger_sequence == 2
    assert subscription.tokens_used_this_period == 120
    assert subscription.lifetime_tokens_used == 120

    rows = list(TokenTransaction.objects.filter(subscription=subscription).order_by("sequence"))
    assert [(row.sequence, row.tokens, row.balance_before, row.balance_after) for row in rows] == [
        (1, 500, 0, 500),
        (2, -120, 500, 380),
    ]
    assert result.created is True
    assert result.subscription.token_balance == 380


@pytest.mark.django_db
def test_debit_below_floor_raises_and_writes_nothing(make_subscription):
    subscription = make_subscription(balance=50)

    with pytest.raises(InsufficientBalance) as exc:
        debit(subscription, 60)

    assert exc.value.balance == 50
    assert exc.value.required == 60
    subscription.refresh_from_db()
    assert subscription.token_balance == 50
    assert TokenTransaction.objects.filter(subscription=subscription).count() == 1


@pytest.mark.django_db
def test_unbounded_debit_may_go_negative(make_subscription):
    subscription = make_subscription(balance=10)

    debit(subscription, 25, floor=None)

    subscription.refresh_from_db()
    assert subscription.token_balance == -15


@pytest.mark.parametrize(
    "delta,transaction_type",
    [
        (0, TransactionType.BONUS),
        (10, TransactionType.CONSUME),
        (-10, TransactionType.ALLOCATION),
    ],
)
@pytest.mark.django_db
def test_apply_delta_rejects_invalid_sign(make_subscription, delta, transaction_type):
    subscription = make_subscription()

    with pytest.raises(ValueError):
        apply_delta(subscription, delta, transaction_type)


@pytest.mark.django_db
def test_metadata_must_match_transaction_type(make_subscription):
    subscription = make_subscription()

    with pytest.raises(TypeError):
        apply_delta(
            subscription,
            10,
            TransactionType.BONUS,
            metadata=AllocationMetadata(plan="x", period_start="", period_end=""),
        )


@pytest.mark.django_db
def test_idempotency_key_replays_the_original_row(make_subscription):
    subscription = make_subscription()

    first = credit(subscription, 100, TransactionType.BONUS, idempotency_key="grant-1")
    second = credit(subscription, 100, TransactionType.BONUS, idempotency_key="grant-1")

    subscription.refresh_from_db()
    assert subscription.token_balance == 100
    assert first.created is True
    assert second.created is False
    assert second.transaction.pk == first.transaction.pk


@pytest.mark.django_db
def test_idempotency_keys_are_scoped_to_the_subscription(make_subscription, other_tenant):
    ours = make_subscription()
    theirs = make_subscription(tenant=other_tenant)

    first = credit(ours, 100, TransactionType.BONUS, idempotency_key="grant-1")
    second = credit(theirs, 100, TransactionType.BONUS, idempotency_key="grant-1")

    assert first.created is True
    assert second.created is True
    assert second.transaction.subscription_id == theirs.pk
    theirs.refresh_from_db()
    assert theirs.token_balance == 100


@pytest.mark.django_db
def test_idempotency_key_reuse_with_different_amount_conflicts(make_subscription):
    subscription = make_subscription()
    credit(subscription, 100, TransactionType.BONUS, idempotency_key="grant-2")

    with pytest.raises(IdempotencyConflict):
        credit(subscription, 200, TransactionType.BONUS, idempotency_key="grant-2")


@pytest.mark.django_db
def test_transactions_are_immutable(make_subscription):
    subscription = make_subscription(balance=10)
    row = TokenTransaction.objects.get(subscription=subscription)

    row.description = "edited"
    with pytest.raises(ValidationError):
        row.save()
    with pytest.raises(ValidationError):
        row.delete()


@pytest.mark.django_db
def test_stale_read_raises_concurrent_conflict(make_subscription, monkeypatch):
    subscription = make_subscription(balance=100)
    stale = TenantSubscription.objects.get(pk=subscription.pk)
    debit(subscription, 30)

    monkeypatch.setattr(token_ledger, "_lock_subscription", lambda subscription_id: stale)

    with pytest.raises(ConcurrentDebitConflict):
        debit(subscription, 30)

    subscription.refresh_from_db()
    assert subscription.token_balance == 70
    assert subscription.ledger_sequence == 2


@pytest.mark.django_db
def test_replay_matches_stored_balance(make_subscription):
    subscription = make_subscription(balance=300)
    debit(subscription, 100)
    credit(subscription, 40, TransactionType.REFILL)

    replay = replay_ledger(subscription)

    assert replay.consistent is True
    assert replay.computed_balance == replay.stored_balance == 240
    assert replay.transaction_count == 3


@pytest.mark.django_db
def test_verify_ledger_freezes_debits_on_mismatch(make_subscription):
    subscription = make_subscription(balance=100)
    TenantSubscription.objects.filter(pk=subscription.pk).update(token_balance=999)

    with pytest.raises(LedgerReplayMismatch) as exc:
        verify_ledger(subscription, actor="tests")

    assert exc.value.replay.computed_balance == 100
    subscription.refresh_from_db()
    assert subscription.debits_frozen is True
    assert BillingAuditLog.objects.filter(tenant=subscription.tenant, event_type="token_ledger.frozen").exists()

    with pytest.raises(LedgerFrozen):
        debit(subscription, 1)

    # Credits still land while frozen.
    credit(subscription, 5, TransactionType.BONUS, metadata=BonusMetadata(reason="goodwill"))


@pytest.mark.django_db
def test_verify_ledger_without_freeze_only_reports(make_subscription):
    subscription = make_subscription(balance=100)
    TenantSubscription.objects.filter(pk=subscription.pk).update(token_balance=90)

    with pytest.raises(LedgerReplayMismatch):
        verify_ledger(subscription, freeze=False)

    subscription.refresh_from_db()
    assert subscription.debits_frozen is False


@pytest.mark.django_db
def test_unfreeze_requires_consistent_ledger_unless_forced(make_subscription):
    subscription = make_subscription(balance=100)
    TenantSubscription.objects.filter(pk=subscription.pk).update(token_balance=50)
    with pytest.raises(LedgerReplayMismatch):
        verify_ledger(subscription)

    with pytest.raises(LedgerReplayMismatch):
        unfreeze_ledger(subscription.pk, actor="tests")

    TenantSubscription.objects.filter(pk=subscription.pk).update(token_balance=100)
    replay = unfreeze_ledger(subscription.pk, actor="tests")

    subscription.refresh_from_db()
    assert replay.consistent is True
    assert subscription.debits_frozen is False
    assert subscription.frozen_reason == ""
