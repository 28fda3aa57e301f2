"""Token subscription lifecycle: signup, cancellation, top-ups and balance views."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.db import transaction
from django.utils import timezone

from billing.models import BillingAuditLog, SubscriptionPlan, TenantSubscription, TokenTransaction
from billing.observability.logging import log_billing_event
from billing.services.overage import overage_charge
from billing.services.rollover import add_months
from billing.services.token_ledger import LedgerOperationResult, SubscriptionNotFound, apply_delta
from billing.services.transaction_metadata import AllocationMetadata, BonusMetadata, RefillMetadata
from tenants.models import Tenant

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


class SubscriptionLifecycleError(RuntimeError):
    """Base error for subscription lifecycle operations."""


@dataclass(frozen=True)
class BalanceSummary:
    tenant_id: str
    plan: str
    plan_display_name: str
    status: str
    billing_interval: str
    token_balance: int
    monthly_allocation: int
    tokens_used_this_period: int
    lifetime_tokens_used: int
    usage_percentage: Decimal
    current_period_start: datetime
    current_period_end: datetime
    days_until_refill: int
    is_trialing: bool
    trial_ends_at: Optional[datetime]
    cancel_at_period_end: bool
    allow_overage: bool
    is_in_overage: bool
    overage_tokens: int
    overage_token_cost: Decimal
    overage_cost: Decimal
    debits_frozen: bool


def start_subscription(
    tenant: Tenant,
    plan: SubscriptionPlan,
    *,
    billing_interval: str = TenantSubscription.BillingInterval.MONTH,
    trial_days: int = 0,
    now: Optional[datetime] = None,
    actor: str = "system",
) -> TenantSubscription:
    """Create the tenant's subscription, or reactivate a retired one, and grant the first allocation.

    A reactivated subscription keeps its ledger and balance; the new
    allocation is added on top.
    """

    now = now or timezone.now()
    if billing_interval not in TenantSubscription.BillingInterval.values:
        raise SubscriptionLifecycleError(f"Unsupported billing interval '{billing_interval}'.")
    if not plan.is_active:
        raise SubscriptionLifecycleError(f"Plan '{plan.name}' is not available.")

    allocation = plan.allocation_for(billing_interval)
    fields = {
        "plan": plan,
        "status": TenantSubscription.Status.TRIALING if trial_days else TenantSubscription.Status.ACTIVE,
        "billing_interval": billing_interval,
        "monthly_allocation": allocation,
        "tokens_used_this_period": 0,
        "current_period_start": now,
        "current_period_end": add_months(now, 1),
        "overage_token_cost": plan.overage_token_cost,
        "allow_overage": plan.allow_overage,
        "overage_token_limit": plan.overage_token_limit,
        "trial_ends_at": now + timedelta(days=trial_days) if trial_days else None,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "last_rollover_period_end": None,
    }

    with transaction.atomic():
        existing = TenantSubscription.objects.select_for_update().filter(tenant=tenant).first()
        if existing is not None and existing.status != TenantSubscription.Status.CANCELED:
            raise SubscriptionLifecycleError(f"Tenant {tenant.pk} already has a live subscription.")

        if existing is not None:
            TenantSubscription.objects.filter(pk=existing.pk).update(updated_at=now, **fields)
            subscription = TenantSubscription.objects.get(pk=existing.pk)
            reason = "reactivation"
        else:
            subscription = TenantSubscription.objects.create(tenant=tenant, token_balance=0, **fields)
            reason = "initial"

        if allocation > 0:
            ledger = apply_delta(
                subscription,
                allocation,
                TokenTransaction.TransactionType.ALLOCATION,
                description=f"{plan.display_name} allocation for period starting {now:%Y-%m-%d}",
                metadata=AllocationMetadata(
                    plan=plan.name,
                    period_start=subscription.current_period_start.isoformat(),
                    period_end=subscription.current_period_end.isoformat(),
                    reason=reason,
                ),
                idempotency_key=f"{reason}:{subscription.pk}:{now.isoformat()}",
            )
            subscription = ledger.subscription

        BillingAuditLog.objects.create(
            tenant=tenant,
            event_type=f"token_subscription.{'reactivated' if existing else 'created'}",
            actor=actor,
            details={
                "plan": plan.name,
                "billing_interval": billing_interval,
                "allocation": allocation,
                "trial_days": trial_days,
            },
        )

    log_billing_event(
        message="token_subscription.started",
        tenant_id=str(tenant.pk),
        actor=actor,
        extra={"plan": plan.name, "allocation": allocation, "reason": reason},
    )
    return subscription


def cancel_subscription(
    tenant_id,
    *,
    at_period_end: bool = True,
    now: Optional[datetime] = None,
    actor: str = "system",
) -> TenantSubscription:
    """Soft-retire a subscription; rows and ledger are kept."""

    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock_subscription(tenant_id)
        if subscription.status == TenantSubscription.Status.CANCELED:
            return subscription

        if at_period_end:
            TenantSubscription.objects.filter(pk=subscription.pk).update(
                cancel_at_period_end=True, updated_at=now
            )
        else:
            TenantSubscription.objects.filter(pk=subscription.pk).update(
                status=TenantSubscription.Status.CANCELED,
                canceled_at=now,
                updated_at=now,
            )

        BillingAuditLog.objects.create(
            tenant_id=subscription.tenant_id,
            event_type="token_subscription.cancel_requested" if at_period_end else "token_subscription.retired",
            actor=actor,
            details={"at_period_end": at_period_end, "balance": subscription.token_balance},
        )
        subscription.refresh_from_db()

    logger.info(
        "Token subscription for tenant %s canceled (at_period_end=%s) by %s", tenant_id, at_period_end, actor
    )
    return subscription


def purchase_tokens(
    tenant_id,
    tokens: int,
    *,
    idempotency_key: str,
    payment_reference: str = "",
    actor: str = "system",
) -> LedgerOperationResult:
    """Record a paid top-up as a ``refill`` transaction priced at the plan's overage rate.

    The caller's key is stored as ``purchase:<key>`` so it cannot collide with
    keys the engine writes for allocations.
    """

    if tokens <= 0:
        raise ValueError("Token purchases must be a positive number of tokens.")
    if not idempotency_key:
        raise ValueError("Idempotency key is required for token purchases.")

    subscription = _get_subscription(tenant_id)
    amount = overage_charge(tokens, subscription.overage_token_cost).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    result = apply_delta(
        subscription,
        tokens,
        TokenTransaction.TransactionType.REFILL,
        description=f"Purchased {tokens} tokens",
        metadata=RefillMetadata(
            source="purchase",
            payment_reference=payment_reference,
            amount=str(amount),
            currency=subscription.plan.currency,
        ),
        idempotency_key=f"purchase:{idempotency_key}",
    )
    if result.created:
        log_billing_event(
            message="token_purchase.recorded",
            tenant_id=str(tenant_id),
            actor=actor,
            extra={"tokens": tokens, "amount": str(amount), "payment_reference": payment_reference},
        )
    return result


def grant_bonus_tokens(
    tenant_id,
    tokens: int,
    *,
    reason: str,
    granted_by: str = "",
    idempotency_key: Optional[str] = None,
) -> LedgerOperationResult:
    if tokens <= 0:
        raise ValueError("Bonus grants must be a positive number of tokens.")

    subscription = _get_subscription(tenant_id)
    return apply_delta(
        subscription,
        tokens,
        TokenTransaction.TransactionType.BONUS,
        description=reason,
        metadata=BonusMetadata(reason=reason, granted_by=granted_by),
        idempotency_key=f"bonus:{idempotency_key}" if idempotency_key else None,
    )


def get_balance_summary(tenant_id, *, now: Optional[datetime] = None) -> BalanceSummary:
    now = now or timezone.now()
    subscription = _get_subscription(tenant_id)

    allocation = subscription.monthly_allocation
    used = subscription.tokens_used_this_period
    usage_percentage = (
        (Decimal(used) * 100 / Decimal(allocation)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        if allocation
        else Decimal("0.00")
    )
    days_until_refill = max(0, math.ceil((subscription.current_period_end - now) / timedelta(days=1)))
    overage_tokens = max(0, -subscription.token_balance)

    return BalanceSummary(
        tenant_id=str(subscription.tenant_id),
        plan=subscription.plan.name,
        plan_display_name=subscription.plan.display_name,
        status=subscription.status,
        billing_interval=subscription.billing_interval,
        token_balance=subscription.token_balance,
        monthly_allocation=allocation,
        tokens_used_this_period=used,
        lifetime_tokens_used=subscription.lifetime_tokens_used,
        usage_percentage=usage_percentage,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        days_until_refill=days_until_refill,
        is_trialing=subscription.is_trialing,
        trial_ends_at=subscription.trial_ends_at,
        cancel_at_period_end=subscription.cancel_at_period_end,
        allow_overage=subscription.allow_overage,
        is_in_overage=subscription.token_balance < 0,
        overage_tokens=overage_tokens,
        overage_token_cost=subscription.overage_token_cost,
        overage_cost=overage_charge(overage_tokens, subscription.overage_token_cost).quantize(
            TWO_PLACES, rounding=ROUND_HALF_UP
        ),
        debits_frozen=subscription.debits_frozen,
    )


def _get_subscription(tenant_id) -> TenantSubscription:
    try:
        return TenantSubscription.objects.select_related("plan").get(tenant_id=tenant_id)
    except TenantSubscription.DoesNotExist as exc:
        raise SubscriptionNotFound(f"Tenant {tenant_id} has no token subscription.") from exc


def _lock_subscription(tenant_id) -> TenantSubscription:
    try:
        return TenantSubscription.objects.select_for_update().get(tenant_id=tenant_id)
    except TenantSubscription.DoesNotExist as exc:
        raise SubscriptionNotFound(f"Tenant {tenant_id} has no token subscription.") from exc


__all__ = [
    "BalanceSummary",
    "SubscriptionLifecycleError",
    "cancel_subscription",
    "get_balance_summary",
    "grant_bonus_tokens",
    "purchase_tokens",
    "start_subscription",
]
