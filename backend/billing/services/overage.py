"""Overage billing: price tokens consumed below a zero balance."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from billing.models import BillingCharge, TenantSubscription, TokenTransaction

FOUR_PLACES = Decimal("0.0001")


def overage_charge(tokens_over_budget: int, overage_token_cost) -> Decimal:
    """Monetary amount owed for ``tokens_over_budget`` at the plan's per-token rate."""

    if tokens_over_budget < 0:
        raise ValueError("Tokens over budget cannot be negative.")
    rate = Decimal(str(overage_token_cost))
    if rate < 0:
        raise ValueError("Overage token cost cannot be negative.")
    return (Decimal(tokens_over_budget) * rate).quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


def overage_tokens(balance_before: int, cost: int) -> int:
    """Portion of a debit of ``cost`` that lands below zero."""

    if cost <= 0:
        return 0
    covered = max(balance_before, 0)
    return min(cost, max(0, cost - covered))


def record_overage_charge(
    subscription: TenantSubscription,
    tokens: int,
    ledger_row: TokenTransaction,
) -> Optional[BillingCharge]:
    """Create the overage billing event for a debit; call inside the debit's atomic block."""

    if tokens <= 0:
        return None
    amount = overage_charge(tokens, subscription.overage_token_cost)
    charge, _ = BillingCharge.objects.get_or_create(
        idempotency_key=f"overage:{ledger_row.pk}",
        defaults={
            "tenant_id": subscription.tenant_id,
            "subscription": subscription,
            "kind": BillingCharge.Kind.OVERAGE,
            "amount": amount,
            "currency": subscription.plan.currency,
            "tokens": tokens,
            "unit_rate": subscription.overage_token_cost,
            "token_transaction": ledger_row,
            "description": f"Token overage: {tokens} tokens for {ledger_row.action_type or 'usage'}",
        },
    )
    return charge


__all__ = ["overage_charge", "overage_tokens", "record_overage_charge"]
