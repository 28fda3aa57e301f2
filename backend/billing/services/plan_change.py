"""Mid-period plan changes with pro-rated token and price adjustments.

A plan change never resets the balance. Upgrades receive the pro-rated
difference in allocation as a ``plan_adjustment`` credit; the pro-rated price
difference (negative for a credit) is handed to invoicing as a charge.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from django.db import transaction
from django.utils import timezone

from billing.models import (
    BillingAuditLog,
    BillingCharge,
    SubscriptionPlan,
    TenantSubscription,
    TokenTransaction,
)
from billing.observability.logging import log_billing_event
from billing.services.invoicing import schedule_charge_submission
from billing.services.token_ledger import SubscriptionNotFound, apply_delta
from billing.services.transaction_metadata import PlanAdjustmentMetadata

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
ONE_DAY = timedelta(days=1)


class PlanChangeError(RuntimeError):
    """Raised when a plan change request cannot be applied."""


@dataclass(frozen=True)
class ProrationQuote:
    days_remaining: int
    days_in_period: int
    token_adjustment: int
    prorated_price_difference: Decimal


@dataclass(frozen=True)
class PlanChangeResult:
    subscription: TenantSubscription
    from_plan: SubscriptionPlan
    to_plan: SubscriptionPlan
    token_adjustment: int
    prorated_price_difference: Decimal
    new_balance: int
    days_remaining: int
    days_in_period: int
    transaction: Optional[TokenTransaction] = None
    charge: Optional[BillingCharge] = None


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta / ONE_DAY)


def calculate_proration(
    *,
    old_tokens: int,
    new_tokens: int,
    old_price,
    new_price,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> ProrationQuote:
    """Pro-rate the allocation and price difference over the rest of the period.

    Partial days count as whole days. Token adjustments are only granted in
    the direction of an upgrade; downgrades keep the existing balance and
    receive no negative adjustment.
    """

    days_in_period = max(1, _ceil_days(period_end - period_start))
    days_remaining = min(days_in_period, max(0, _ceil_days(period_end - now)))
    fraction = Decimal(days_remaining) / Decimal(days_in_period)

    raw_tokens = Decimal(new_tokens - old_tokens) * fraction
    token_adjustment = max(0, int(raw_tokens.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    price_difference = (Decimal(str(new_price)) - Decimal(str(old_price))) * fraction
    return ProrationQuote(
        days_remaining=days_remaining,
        days_in_period=days_in_period,
        token_adjustment=token_adjustment,
        prorated_price_difference=price_difference.quantize(TWO_PLACES, rounding=ROUND_HALF_UP),
    )


def change_plan(
    tenant_id,
    new_plan_name: str,
    *,
    billing_interval: Optional[str] = None,
    now: Optional[datetime] = None,
    actor: str = "system",
    request_id: str = "",
) -> PlanChangeResult:
    """Switch a tenant to ``new_plan_name`` immediately."""

    now = now or timezone.now()

    try:
        new_plan = SubscriptionPlan.objects.get(name=new_plan_name)
    except SubscriptionPlan.DoesNotExist as exc:
        raise PlanChangeError(f"Plan '{new_plan_name}' does not exist.") from exc
    if not new_plan.is_active:
        raise PlanChangeError(f"Plan '{new_plan_name}' is not available.")

    with transaction.atomic():
        try:
            subscription = (
                TenantSubscription.objects.select_for_update()
                .select_related("plan")
                .get(tenant_id=tenant_id)
            )
        except TenantSubscription.DoesNotExist as exc:
            raise SubscriptionNotFound(f"Tenant {tenant_id} has no token subscription.") from exc

        if subscription.status == TenantSubscription.Status.CANCELED:
            raise PlanChangeError("Canceled subscriptions cannot change plans.")

        interval = billing_interval or subscription.billing_interval
        if interval not in TenantSubscription.BillingInterval.values:
            raise PlanChangeError(f"Unsupported billing interval '{interval}'.")
        if subscription.plan_id == new_plan.pk and interval == subscription.billing_interval:
            raise PlanChangeError(f"Tenant is already on plan '{new_plan.name}'.")

        old_plan = subscription.plan
        new_allocation = new_plan.allocation_for(interval)
        quote = calculate_proration(
            old_tokens=subscription.monthly_allocation,
            new_tokens=new_allocation,
            old_price=old_plan.price_for(subscription.billing_interval),
            new_price=new_plan.price_for(interval),
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            now=now,
        )

        TenantSubscription.objects.filter(pk=subscription.pk).update(
            plan=new_plan,
            billing_interval=interval,
            monthly_allocation=new_allocation,
            overage_token_cost=new_plan.overage_token_cost,
            allow_overage=new_plan.allow_overage,
            overage_token_limit=new_plan.overage_token_limit,
            updated_at=now,
        )

        ledger_row = None
        if quote.token_adjustment > 0:
            ledger = apply_delta(
                subscription,
                quote.token_adjustment,
                TokenTransaction.TransactionType.PLAN_ADJUSTMENT,
                description=f"Plan change {old_plan.name} -> {new_plan.name} ({quote.days_remaining}/{quote.days_in_period} days)",
                metadata=PlanAdjustmentMetadata(
                    from_plan=old_plan.name,
                    to_plan=new_plan.name,
                    days_remaining=quote.days_remaining,
                    days_in_period=quote.days_in_period,
                    prorated_price_difference=str(quote.prorated_price_difference),
                ),
            )
            ledger_row = ledger.transaction

        charge = None
        if quote.prorated_price_difference != 0:
            charge = BillingCharge.objects.create(
                tenant_id=subscription.tenant_id,
                subscription=subscription,
                kind=BillingCharge.Kind.PLAN_PRORATION,
                amount=quote.prorated_price_difference,
                currency=new_plan.currency,
                tokens=quote.token_adjustment,
                token_transaction=ledger_row,
                description=f"Plan change {old_plan.display_name} to {new_plan.display_name}, "
                            f"{quote.days_remaining} of {quote.days_in_period} days",
                idempotency_key=f"plan_proration:{subscription.pk}:{uuid.uuid4().hex}",
            )
            schedule_charge_submission(charge)

        subscription.refresh_from_db()

        BillingAuditLog.objects.create(
            tenant_id=subscription.tenant_id,
            event_type="token_plan.changed",
            actor=actor,
            request_id=request_id,
            details={
                "from_plan": old_plan.name,
                "to_plan": new_plan.name,
                "billing_interval": interval,
                "days_remaining": quote.days_remaining,
                "days_in_period": quote.days_in_period,
                "token_adjustment": quote.token_adjustment,
                "prorated_price_difference": str(quote.prorated_price_difference),
                "balance_after": subscription.token_balance,
            },
        )

    log_billing_event(
        message="token_plan.changed",
        request_id=request_id,
        tenant_id=str(subscription.tenant_id),
        actor=actor,
        extra={
            "from_plan": old_plan.name,
            "to_plan": new_plan.name,
            "token_adjustment": quote.token_adjustment,
        },
    )
    return PlanChangeResult(
        subscription=subscription,
        from_plan=old_plan,
        to_plan=new_plan,
        token_adjustment=quote.token_adjustment,
        prorated_price_difference=quote.prorated_price_difference,
        new_balance=subscription.token_balance,
        days_remaining=quote.days_remaining,
        days_in_period=quote.days_in_period,
        transaction=ledger_row,
        charge=charge,
    )


__all__ = [
    "PlanChangeError",
    "PlanChangeResult",
    "ProrationQuote",
    "calculate_proration",
    "change_plan",
]
