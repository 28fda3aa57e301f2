"""Consumption authorizer called by feature modules before a metered action.

``authorize`` resolves the action's cost, then debits it with the ledger's
conditional update. A denial writes nothing: no transaction row, no balance
change.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings
from django.db import transaction

from billing.models import BillingCharge, TenantSubscription, TokenTransaction
from billing.observability.metrics import TOKEN_AUTHORIZATION_COUNT, TOKEN_AUTHORIZATION_LATENCY
from billing.services.invoicing import schedule_charge_submission
from billing.services.overage import overage_charge, overage_tokens, record_overage_charge
from billing.services.pricing_catalog import get_active_pricing
from billing.services.token_ledger import (
    ConcurrentDebitConflict,
    InsufficientBalance,
    SubscriptionNotFound,
    apply_delta,
)
from billing.services.transaction_metadata import ConsumeMetadata

logger = logging.getLogger(__name__)

DENIED_INSUFFICIENT_BALANCE = "insufficient_balance"
DENIED_CONCURRENT_CONFLICT = "concurrent_conflict"
DENIED_SUBSCRIPTION_INACTIVE = "subscription_inactive"
DENIED_LEDGER_FROZEN = "ledger_frozen"


class ConsumptionError(Exception):
    """Base exception type for authorization issues."""


class SubscriptionInactive(ConsumptionError):
    """Raised when the tenant's subscription is not in a consumable state."""


@dataclass(frozen=True)
class AuthorizationResult:
    allowed: bool
    action_type: str
    cost: int
    balance_before: int
    balance_after: int
    reason: str = ""
    transaction: Optional[TokenTransaction] = None
    overage_tokens: int = 0
    overage_charge: Optional[BillingCharge] = None
    replayed: bool = False


@dataclass(frozen=True)
class ActionQuote:
    action_type: str
    cost: int
    balance: int
    allowed: bool
    reason: str = ""
    overage_tokens: int = 0
    estimated_overage_charge: Decimal = Decimal("0")


def authorize(
    tenant_id,
    action_type: str,
    *,
    action_id: str = "",
    description: str = "",
    context: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> AuthorizationResult:
    """Decide whether ``tenant_id`` may run ``action_type`` and debit it if so.

    Raises ``UnknownActionType`` when the catalog has no active price,
    ``SubscriptionNotFound`` and ``SubscriptionInactive`` when the tenant
    cannot consume, and ``LedgerFrozen`` while debits are halted.
    """

    with TOKEN_AUTHORIZATION_LATENCY.time():
        result = _authorize(
            tenant_id,
            action_type,
            action_id=action_id,
            description=description,
            context=context,
            idempotency_key=idempotency_key,
        )

    if not result.allowed:
        outcome = "conflict" if result.reason == DENIED_CONCURRENT_CONFLICT else "denied"
    elif result.overage_tokens:
        outcome = "overage"
    else:
        outcome = "allowed"
    TOKEN_AUTHORIZATION_COUNT.labels(outcome=outcome).inc()
    return result


def _authorize(tenant_id, action_type, *, action_id, description, context, idempotency_key) -> AuthorizationResult:
    pricing = get_active_pricing(action_type)
    cost = pricing.token_cost
    subscription = _get_subscription(tenant_id)
    if not subscription.is_consumable:
        raise SubscriptionInactive(
            f"Subscription for tenant {tenant_id} is {subscription.status}; token consumption is disabled."
        )

    if cost == 0:
        return AuthorizationResult(
            allowed=True,
            action_type=action_type,
            cost=0,
            balance_before=subscription.token_balance,
            balance_after=subscription.token_balance,
        )

    max_attempts = max(1, int(getattr(settings, "BILLING_DEBIT_MAX_ATTEMPTS", 2)))
    metadata = ConsumeMetadata(pricing_version=pricing.version, unit_cost=cost, context=context or {})

    ledger_key = consume_idempotency_key(idempotency_key)

    attempt = 0
    while True:
        attempt += 1
        try:
            with transaction.atomic():
                ledger = apply_delta(
                    subscription,
                    -cost,
                    TokenTransaction.TransactionType.CONSUME,
                    action_type=action_type,
                    pricing=pricing,
                    action_id=action_id,
                    description=description or pricing.display_name,
                    metadata=metadata,
                    idempotency_key=ledger_key,
                    use_debit_floor=True,
                )
                ledger_row = ledger.transaction
                tokens_over = overage_tokens(ledger_row.balance_before, -ledger_row.tokens)
                if ledger.created:
                    charge = record_overage_charge(ledger.subscription, tokens_over, ledger_row)
                else:
                    charge = BillingCharge.objects.filter(
                        token_transaction=ledger_row, kind=BillingCharge.Kind.OVERAGE
                    ).first()
                if charge is not None and ledger.created:
                    schedule_charge_submission(charge)
        except InsufficientBalance as exc:
            balance_now = exc.balance if exc.balance is not None else subscription.token_balance
            return _denied(action_type, cost, balance_now, DENIED_INSUFFICIENT_BALANCE)
        except ConcurrentDebitConflict:
            logger.info(
                "Concurrent debit conflict for tenant %s on %s (attempt %s/%s)",
                tenant_id,
                action_type,
                attempt,
                max_attempts,
            )
            subscription = _get_subscription(tenant_id)
            if attempt >= max_attempts:
                return _denied(action_type, cost, subscription.token_balance, DENIED_CONCURRENT_CONFLICT)
            continue

        return AuthorizationResult(
            allowed=True,
            action_type=action_type,
            cost=cost,
            balance_before=ledger_row.balance_before,
            balance_after=ledger_row.balance_after,
            transaction=ledger_row,
            overage_tokens=tokens_over,
            overage_charge=charge,
            replayed=not ledger.created,
        )


def consume_idempotency_key(idempotency_key: Optional[str]) -> Optional[str]:
    """Namespace caller keys so they never collide with keys the engine writes itself."""
    return f"consume:{idempotency_key}" if idempotency_key else None


def require_tokens(tenant_id, action_type: str, **kwargs) -> AuthorizationResult:
    """Authorize and raise ``InsufficientBalance`` when the action is denied."""

    result = authorize(tenant_id, action_type, **kwargs)
    if not result.allowed:
        raise InsufficientBalance(
            f"Insufficient tokens for {action_type}: requires {result.cost}, balance is {result.balance_before}.",
            balance=result.balance_before,
            required=result.cost,
        )
    return result


def quote_action(tenant_id, action_type: str) -> ActionQuote:
    """Side-effect-free preview of what ``authorize`` would decide right now."""

    cost = get_active_pricing(action_type).token_cost
    subscription = _get_subscription(tenant_id)
    balance = subscription.token_balance

    if not subscription.is_consumable:
        return ActionQuote(action_type, cost, balance, False, DENIED_SUBSCRIPTION_INACTIVE)
    if subscription.debits_frozen and cost:
        return ActionQuote(action_type, cost, balance, False, DENIED_LEDGER_FROZEN)

    floor = subscription.debit_floor
    if cost and floor is not None and balance - cost < floor:
        return ActionQuote(action_type, cost, balance, False, DENIED_INSUFFICIENT_BALANCE)

    tokens_over = overage_tokens(balance, cost)
    return ActionQuote(
        action_type=action_type,
        cost=cost,
        balance=balance,
        allowed=True,
        overage_tokens=tokens_over,
        estimated_overage_charge=overage_charge(tokens_over, subscription.overage_token_cost),
    )


def can_perform_action(tenant_id, action_type: str) -> bool:
    return quote_action(tenant_id, action_type).allowed


def _denied(action_type: str, cost: int, balance: int, reason: str) -> AuthorizationResult:
    return AuthorizationResult(
        allowed=False,
        action_type=action_type,
        cost=cost,
        balance_before=balance,
        balance_after=balance,
        reason=reason,
    )


def _get_subscription(tenant_id) -> TenantSubscription:
    try:
        return TenantSubscription.objects.select_related("plan").get(tenant_id=tenant_id)
    except TenantSubscription.DoesNotExist as exc:
        raise SubscriptionNotFound(f"Tenant {tenant_id} has no token subscription.") from exc


__all__ = [
    "ActionQuote",
    "AuthorizationResult",
    "ConsumptionError",
    "SubscriptionInactive",
    "authorize",
    "can_perform_action",
    "consume_idempotency_key",
    "quote_action",
    "require_tokens",
]
