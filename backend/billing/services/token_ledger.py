"""Token ledger: the only writer of a subscription's token balance.

Every mutation runs in one atomic unit that locks the subscription row,
performs a conditional update guarded by the balance and ledger sequence it
read, and appends the matching ``TokenTransaction``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from billing.models import BillingAuditLog, TenantSubscription, TokenPricing, TokenTransaction
from billing.observability.logging import log_billing_event
from billing.observability.metrics import LEDGER_MISMATCH_COUNT, TOKEN_DEBIT_CONFLICT_COUNT
from billing.services.transaction_metadata import SCHEMA_VERSION, TransactionMetadata, build_metadata

logger = logging.getLogger(__name__)

TransactionType = TokenTransaction.TransactionType

USAGE_TYPES = frozenset({TransactionType.CONSUME})
LIFETIME_USAGE_TYPES = frozenset({TransactionType.CONSUME, TransactionType.OVERAGE_CHARGE})
DEBIT_TYPES = frozenset({TransactionType.CONSUME, TransactionType.OVERAGE_CHARGE})
CREDIT_TYPES = frozenset({TransactionType.ALLOCATION, TransactionType.REFILL, TransactionType.BONUS})


class LedgerError(Exception):
    """Base exception type for ledger issues."""


class SubscriptionNotFound(LedgerError):
    """Raised when the target subscription cannot be located."""


class IdempotencyConflict(LedgerError):
    """Raised when an existing transaction conflicts with the requested mutation."""


class InsufficientBalance(LedgerError):
    """Raised when a debit would take the balance below the allowed floor."""

    def __init__(self, message: str, *, balance: Optional[int] = None, required: Optional[int] = None):
        self.balance = balance
        self.required = required
        super().__init__(message)


class ConcurrentDebitConflict(LedgerError):
    """Raised when the conditional update found the balance changed since it was read."""


class LedgerFrozen(LedgerError):
    """Raised when debiting a subscription whose ledger failed verification."""


class LedgerReplayMismatch(LedgerError):
    """Raised when the transaction fold disagrees with the stored balance."""

    def __init__(self, replay: "LedgerReplay"):
        self.replay = replay
        super().__init__(
            f"Ledger replay mismatch for subscription {replay.subscription_id}: "
            f"stored={replay.stored_balance} computed={replay.computed_balance} "
            f"chain_intact={replay.chain_intact}"
        )


@dataclass(frozen=True)
class LedgerOperationResult:
    subscription: TenantSubscription
    transaction: TokenTransaction
    created: bool


@dataclass(frozen=True)
class LedgerReplay:
    subscription_id: str
    stored_balance: int
    computed_balance: int
    transaction_count: int
    chain_intact: bool
    first_break_sequence: Optional[int] = None

    @property
    def consistent(self) -> bool:
        return self.chain_intact and self.stored_balance == self.computed_balance


def apply_delta(
    subscription,
    delta: int,
    transaction_type: str,
    *,
    action_type: str = "",
    pricing: Optional[TokenPricing] = None,
    action_id: str = "",
    description: str = "",
    metadata: Optional[TransactionMetadata] = None,
    idempotency_key: Optional[str] = None,
    floor: Optional[int] = None,
    use_debit_floor: bool = False,
) -> LedgerOperationResult:
    """Apply a signed token delta to a subscription and append the ledger row.

    ``floor`` bounds debits: the balance left behind must stay at or above it.
    ``None`` leaves the debit unbounded. With ``use_debit_floor`` the bound is
    read from the locked subscription's overage policy instead. Balances are
    never clamped.
    """

    transaction_type = TransactionType(transaction_type)
    if delta == 0:
        raise ValueError("Delta must be non-zero for ledger operations.")
    if transaction_type in DEBIT_TYPES and delta > 0:
        raise ValueError(f"'{transaction_type}' transactions must debit tokens.")
    if transaction_type in CREDIT_TYPES and delta < 0:
        raise ValueError(f"'{transaction_type}' transactions must credit tokens.")

    payload = build_metadata(transaction_type, metadata)
    subscription_id = subscription.pk if isinstance(subscription, TenantSubscription) else subscription

    with transaction.atomic():
        locked = _lock_subscription(subscription_id)

        existing = _locate_existing_transaction(locked, idempotency_key)
        if existing:
            _validate_existing(existing, delta, transaction_type)
            return LedgerOperationResult(subscription=locked, transaction=existing, created=False)

        if delta < 0 and locked.debits_frozen:
            raise LedgerFrozen(
                f"Debits are frozen for tenant {locked.tenant_id} pending ledger reconciliation."
            )

        if use_debit_floor:
            floor = locked.debit_floor

        balance_before = locked.token_balance
        balance_after = balance_before + delta
        if delta < 0 and floor is not None and balance_after < floor:
            raise InsufficientBalance(
                "Token balance is insufficient for the requested debit.",
                balance=balance_before,
                required=-delta,
            )

        seen_sequence = locked.ledger_sequence
        usage = -delta if delta < 0 and transaction_type in USAGE_TYPES else 0
        lifetime_usage = -delta if delta < 0 and transaction_type in LIFETIME_USAGE_TYPES else 0

        guard = Q(pk=locked.pk, token_balance=balance_before, ledger_sequence=seen_sequence)
        if delta < 0 and floor is not None:
            guard &= Q(token_balance__gte=floor - delta)

        now = timezone.now()
        updated = TenantSubscription.objects.filter(guard).update(
            token_balance=F("token_balance") + delta,
            ledger_sequence=F("ledger_sequence") + 1,
            tokens_used_this_period=F("tokens_used_this_period") + usage,
            lifetime_tokens_used=F("lifetime_tokens_used") + lifetime_usage,
            updated_at=now,
        )
        if updated != 1:
            TOKEN_DEBIT_CONFLICT_COUNT.inc()
            raise ConcurrentDebitConflict(
                f"Balance of tenant {locked.tenant_id} changed since it was read."
            )

        ledger_row = TokenTransaction.objects.create(
            tenant_id=locked.tenant_id,
            subscription=locked,
            sequence=seen_sequence + 1,
            type=transaction_type,
            tokens=delta,
            balance_before=balance_before,
            balance_after=balance_after,
            action_type=action_type or "",
            pricing=pricing,
            action_id=action_id or "",
            description=description or "",
            metadata=payload,
            metadata_version=SCHEMA_VERSION,
            idempotency_key=idempotency_key or None,
        )

        locked.token_balance = balance_after
        locked.ledger_sequence = seen_sequence + 1
        locked.tokens_used_this_period += usage
        locked.lifetime_tokens_used += lifetime_usage
        locked.updated_at = now

    return LedgerOperationResult(subscription=locked, transaction=ledger_row, created=True)


def credit(
    subscription,
    amount: int,
    transaction_type: str,
    *,
    description: str = "",
    metadata: Optional[TransactionMetadata] = None,
    idempotency_key: Optional[str] = None,
) -> LedgerOperationResult:
    """Credit tokens to a subscription."""

    if amount <= 0:
        raise ValueError("Amount must be a positive integer for credits.")
    return apply_delta(
        subscription,
        amount,
        transaction_type,
        description=description,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


def debit(
    subscription,
    amount: int,
    transaction_type: str = TransactionType.CONSUME,
    *,
    description: str = "",
    metadata: Optional[TransactionMetadata] = None,
    idempotency_key: Optional[str] = None,
    floor: Optional[int] = 0,
) -> LedgerOperationResult:
    """Debit tokens from a subscription; by default the balance may not go negative."""

    if amount <= 0:
        raise ValueError("Amount must be a positive integer for debits.")
    return apply_delta(
        subscription,
        -amount,
        transaction_type,
        description=description,
        metadata=metadata,
        idempotency_key=idempotency_key,
        floor=floor,
    )


def replay_ledger(subscription) -> LedgerReplay:
    """Fold every transaction of a subscription in sequence order."""

    subscription_id = subscription.pk if isinstance(subscription, TenantSubscription) else subscription
    stored_balance = (
        TenantSubscription.objects.filter(pk=subscription_id)
        .values_list("token_balance", flat=True)
        .first()
    )
    if stored_balance is None:
        raise SubscriptionNotFound(f"Subscription {subscription_id} does not exist.")

    rows = (
        TokenTransaction.objects.filter(subscription_id=subscription_id)
        .order_by("sequence")
        .values_list("sequence", "tokens", "balance_before", "balance_after")
    )

    computed = 0
    count = 0
    previous_after = 0
    first_break = None
    for sequence, tokens, balance_before, balance_after in rows.iterator():
        count += 1
        in_order = sequence == count and balance_before == previous_after
        if first_break is None and (not in_order or balance_after != balance_before + tokens):
            first_break = sequence
        computed += tokens
        previous_after = balance_after

    return LedgerReplay(
        subscription_id=str(subscription_id),
        stored_balance=stored_balance,
        computed_balance=computed,
        transaction_count=count,
        chain_intact=first_break is None,
        first_break_sequence=first_break,
    )


def verify_ledger(subscription, *, freeze: bool = True, actor: str = "system") -> LedgerReplay:
    """Replay the ledger and halt debits for the tenant when it does not add up."""

    replay = replay_ledger(subscription)
    if replay.consistent:
        return replay

    LEDGER_MISMATCH_COUNT.inc()
    subscription_id = replay.subscription_id
    tenant_id = (
        TenantSubscription.objects.filter(pk=subscription_id).values_list("tenant_id", flat=True).first()
    )
    logger.error(
        "Ledger replay mismatch for tenant %s: stored=%s computed=%s chain_intact=%s first_break=%s",
        tenant_id,
        replay.stored_balance,
        replay.computed_balance,
        replay.chain_intact,
        replay.first_break_sequence,
    )
    if freeze:
        freeze_ledger(subscription_id, reason=str(LedgerReplayMismatch(replay)), actor=actor, replay=replay)
    raise LedgerReplayMismatch(replay)


def freeze_ledger(subscription_id, *, reason: str, actor: str = "system",
                  replay: Optional[LedgerReplay] = None) -> None:
    now = timezone.now()
    with transaction.atomic():
        locked = _lock_subscription(subscription_id)
        TenantSubscription.objects.filter(pk=locked.pk).update(
            debits_frozen=True,
            frozen_reason=reason,
            frozen_at=now,
            updated_at=now,
        )
        BillingAuditLog.objects.create(
            tenant_id=locked.tenant_id,
            event_type="token_ledger.frozen",
            actor=actor,
            details={
                "subscription_id": str(locked.pk),
                "reason": reason,
                "stored_balance": replay.stored_balance if replay else locked.token_balance,
                "computed_balance": replay.computed_balance if replay else None,
                "first_break_sequence": replay.first_break_sequence if replay else None,
            },
        )
    log_billing_event(
        message="token_ledger.frozen",
        tenant_id=str(locked.tenant_id),
        actor=actor,
        extra={"reason": reason},
        level=logging.ERROR,
    )


def unfreeze_ledger(subscription_id, *, actor: str, force: bool = False) -> LedgerReplay:
    """Resume debits after reconciliation; refuses while the ledger still mismatches."""

    replay = replay_ledger(subscription_id)
    if not replay.consistent and not force:
        raise LedgerReplayMismatch(replay)

    with transaction.atomic():
        locked = _lock_subscription(subscription_id)
        TenantSubscription.objects.filter(pk=locked.pk).update(
            debits_frozen=False,
            frozen_reason="",
            frozen_at=None,
            updated_at=timezone.now(),
        )
        BillingAuditLog.objects.create(
            tenant_id=locked.tenant_id,
            event_type="token_ledger.unfrozen",
            actor=actor,
            details={
                "subscription_id": str(locked.pk),
                "forced": force,
                "stored_balance": replay.stored_balance,
                "computed_balance": replay.computed_balance,
            },
        )
    logger.warning("Token ledger debits resumed for tenant %s by %s", locked.tenant_id, actor)
    return replay


def _lock_subscription(subscription_id) -> TenantSubscription:
    try:
        return TenantSubscription.objects.select_for_update().get(pk=subscription_id)
    except TenantSubscription.DoesNotExist as exc:
        raise SubscriptionNotFound(f"Subscription {subscription_id} does not exist.") from exc


def _locate_existing_transaction(
    subscription: TenantSubscription, idempotency_key: Optional[str]
) -> Optional[TokenTransaction]:
    if not idempotency_key:
        return None
    return TokenTransaction.objects.filter(subscription=subscription, idempotency_key=idempotency_key).first()


def _validate_existing(existing: TokenTransaction, delta: int, transaction_type: str) -> None:
    if existing.type != transaction_type:
        raise IdempotencyConflict("Existing transaction type does not match the request.")
    if existing.tokens != delta:
        raise IdempotencyConflict("Existing transaction amount does not match the request.")


__all__ = [
    "ConcurrentDebitConflict",
    "IdempotencyConflict",
    "InsufficientBalance",
    "LedgerError",
    "LedgerFrozen",
    "LedgerOperationResult",
    "LedgerReplay",
    "LedgerReplayMismatch",
    "SubscriptionNotFound",
    "apply_delta",
    "credit",
    "debit",
    "freeze_ledger",
    "replay_ledger",
    "unfreeze_ledger",
    "verify_ledger",
]
