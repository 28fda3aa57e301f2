"""Period rollover scheduler for token subscriptions.

At each period boundary the plan allocation is credited on top of the
existing balance (unused tokens roll over indefinitely), the usage counter
is reset and the period advances by one month. Each boundary is applied at
most once per tenant.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.models import BillingAuditLog, TenantSubscription, TokenTransaction
from billing.observability.logging import log_billing_event
from billing.observability.metrics import TOKEN_ROLLOVER_COUNT
from billing.services.token_ledger import LedgerError, SubscriptionNotFound, apply_delta
from billing.services.transaction_metadata import AllocationMetadata

logger = logging.getLogger(__name__)


class RolloverError(Exception):
    """Base exception type for rollover issues."""


class PeriodRolloverAlreadyApplied(RolloverError):
    """Raised when the requested boundary has already been rolled over."""


class RolloverNotDue(RolloverError):
    """Raised when the current period has not ended yet."""


@dataclass(frozen=True)
class RolloverResult:
    subscription: TenantSubscription
    boundary: datetime
    allocation: int
    transaction: Optional[TokenTransaction]
    retired: bool = False


def add_months(value: datetime, months: int, *, anchor_day: Optional[int] = None) -> datetime:
    """Shift ``value`` by whole calendar months, clamping the day to the month's end."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor_day or value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_period_end(period_start: datetime, period_end: datetime) -> datetime:
    # Anchor on the later day of the two bounds so month-end periods stay on month end.
    return add_months(period_end, 1, anchor_day=max(period_start.day, period_end.day))


def rollover_subscription(
    subscription_id,
    *,
    boundary: Optional[datetime] = None,
    now: Optional[datetime] = None,
    actor: str = "system",
) -> RolloverResult:
    """Roll one subscription over its current period boundary.

    Passing ``boundary`` pins the rollover to a specific period end so a
    retried job cannot roll a later period by accident.
    """

    now = now or timezone.now()

    with transaction.atomic():
        try:
            subscription = (
                TenantSubscription.objects.select_for_update()
                .select_related("plan")
                .get(pk=subscription_id)
            )
        except TenantSubscription.DoesNotExist as exc:
            raise SubscriptionNotFound(f"Subscription {subscription_id} does not exist.") from exc

        period_end = subscription.current_period_end
        if boundary is not None and period_end != boundary:
            raise PeriodRolloverAlreadyApplied(
                f"Boundary {boundary.isoformat()} for tenant {subscription.tenant_id} was already rolled over."
            )
        if subscription.last_rollover_period_end == period_end:
            raise PeriodRolloverAlreadyApplied(
                f"Boundary {period_end.isoformat()} for tenant {subscription.tenant_id} was already rolled over."
            )
        if period_end > now:
            raise RolloverNotDue(
                f"Period for tenant {subscription.tenant_id} ends at {period_end.isoformat()}."
            )

        if subscription.cancel_at_period_end:
            return _retire(subscription, period_end, now, actor)

        allocation = subscription.monthly_allocation
        new_start = period_end
        new_end = next_period_end(subscription.current_period_start, period_end)

        ledger_row = None
        if allocation > 0:
            ledger = apply_delta(
                subscription,
                allocation,
                TokenTransaction.TransactionType.ALLOCATION,
                description=f"{subscription.plan.display_name} allocation for period starting {new_start:%Y-%m-%d}",
                metadata=AllocationMetadata(
                    plan=subscription.plan.name,
                    period_start=new_start.isoformat(),
                    period_end=new_end.isoformat(),
                    reason="rollover",
                ),
                idempotency_key=f"rollover:{subscription.tenant_id}:{period_end.isoformat()}",
            )
            ledger_row = ledger.transaction
            subscription = ledger.subscription

        TenantSubscription.objects.filter(pk=subscription.pk).update(
            tokens_used_this_period=0,
            current_period_start=new_start,
            current_period_end=new_end,
            last_rollover_period_end=period_end,
            updated_at=now,
        )
        subscription.tokens_used_this_period = 0
        subscription.current_period_start = new_start
        subscription.current_period_end = new_end
        subscription.last_rollover_period_end = period_end

        BillingAuditLog.objects.create(
            tenant_id=subscription.tenant_id,
            event_type="token_period.rolled_over",
            actor=actor,
            details={
                "boundary": period_end.isoformat(),
                "allocation": allocation,
                "balance_after": subscription.token_balance,
                "next_period_end": new_end.isoformat(),
            },
        )

    TOKEN_ROLLOVER_COUNT.labels(outcome="rolled_over").inc()
    log_billing_event(
        message="token_period.rolled_over",
        tenant_id=str(subscription.tenant_id),
        actor=actor,
        extra={"boundary": period_end.isoformat(), "allocation": allocation},
    )
    return RolloverResult(
        subscription=subscription,
        boundary=period_end,
        allocation=allocation,
        transaction=ledger_row,
    )


def _retire(subscription: TenantSubscription, boundary: datetime, now: datetime, actor: str) -> RolloverResult:
    TenantSubscription.objects.filter(pk=subscription.pk).update(
        status=TenantSubscription.Status.CANCELED,
        canceled_at=now,
        last_rollover_period_end=boundary,
        updated_at=now,
    )
    subscription.status = TenantSubscription.Status.CANCELED
    subscription.canceled_at = now
    subscription.last_rollover_period_end = boundary

    BillingAuditLog.objects.create(
        tenant_id=subscription.tenant_id,
        event_type="token_subscription.retired",
        actor=actor,
        details={"boundary": boundary.isoformat(), "balance": subscription.token_balance},
    )
    TOKEN_ROLLOVER_COUNT.labels(outcome="retired").inc()
    logger.info("Retired token subscription for tenant %s at %s", subscription.tenant_id, boundary.isoformat())
    return RolloverResult(
        subscription=subscription,
        boundary=boundary,
        allocation=0,
        transaction=None,
        retired=True,
    )


def run_rollover_tick(now: Optional[datetime] = None, *, batch_size: Optional[int] = None) -> Dict[str, int]:
    """Roll over every due subscription, catching up missed boundaries one at a time."""

    now = now or timezone.now()
    batch_size = batch_size or int(getattr(settings, "BILLING_ROLLOVER_BATCH_SIZE", 500))

    due_ids = list(
        TenantSubscription.objects.filter(
            status__in=TenantSubscription.CONSUMABLE_STATUSES,
            current_period_end__lte=now,
        )
        .order_by("current_period_end")
        .values_list("pk", flat=True)[:batch_size]
    )

    stats = {"processed": 0, "rolled_over": 0, "retired": 0, "skipped": 0, "failed": 0}
    for subscription_id in due_ids:
        stats["processed"] += 1
        while True:
            try:
                result = rollover_subscription(subscription_id, now=now, actor="scheduler")
            except RolloverNotDue:
                break
            except PeriodRolloverAlreadyApplied as exc:
                stats["skipped"] += 1
                TOKEN_ROLLOVER_COUNT.labels(outcome="already_applied").inc()
                logger.info("%s", exc)
                break
            except (LedgerError, DatabaseError) as exc:
                stats["failed"] += 1
                TOKEN_ROLLOVER_COUNT.labels(outcome="failed").inc()
                logger.warning("Rollover failed for subscription %s: %s", subscription_id, exc)
                break

            if result.retired:
                stats["retired"] += 1
                break
            stats["rolled_over"] += 1

    if due_ids:
        logger.info("Token rollover tick finished: %s", stats)
    return stats


def expire_trials(now: Optional[datetime] = None) -> Dict[str, int]:
    """Convert trialing subscriptions whose trial has ended into active ones."""

    now = now or timezone.now()
    expired = TenantSubscription.objects.filter(
        status=TenantSubscription.Status.TRIALING,
        trial_ends_at__isnull=False,
        trial_ends_at__lte=now,
    )

    stats = {"converted": 0}
    for subscription in expired.only("pk", "tenant_id", "trial_ends_at"):
        with transaction.atomic():
            updated = TenantSubscription.objects.filter(
                pk=subscription.pk, status=TenantSubscription.Status.TRIALING
            ).update(status=TenantSubscription.Status.ACTIVE, updated_at=now)
            if not updated:
                continue
            BillingAuditLog.objects.create(
                tenant_id=subscription.tenant_id,
                event_type="token_subscription.trial_ended",
                actor="scheduler",
                details={"trial_ends_at": subscription.trial_ends_at.isoformat()},
            )
        stats["converted"] += 1
        logger.info("Trial ended for tenant %s; subscription is now active", subscription.tenant_id)
    return stats


def manual_rollover(tenant_id, *, now: Optional[datetime] = None, actor: str = "admin") -> Optional[RolloverResult]:
    """Roll a single tenant over if its period has ended; returns ``None`` when not due."""

    subscription_id = (
        TenantSubscription.objects.filter(tenant_id=tenant_id).values_list("pk", flat=True).first()
    )
    if subscription_id is None:
        raise SubscriptionNotFound(f"Tenant {tenant_id} has no token subscription.")
    try:
        return rollover_subscription(subscription_id, now=now, actor=actor)
    except RolloverNotDue:
        return None


__all__ = [
    "PeriodRolloverAlreadyApplied",
    "RolloverError",
    "RolloverNotDue",
    "RolloverResult",
    "add_months",
    "expire_trials",
    "manual_rollover",
    "next_period_end",
    "rollover_subscription",
    "run_rollover_tick",
]
