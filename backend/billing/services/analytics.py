"""Read-only usage reporting over the token ledger."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from django.db.models import Count, Sum
from django.utils import timezone

from billing.models import TokenPricing, TokenTransaction

PERIOD_WINDOWS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}
TOP_ACTIONS_LIMIT = 10


@dataclass(frozen=True)
class CategoryUsage:
    category: str
    tokens: int
    actions: int
    percentage: Decimal


@dataclass(frozen=True)
class ActionUsage:
    action_type: str
    tokens: int
    actions: int


@dataclass(frozen=True)
class UsageAnalytics:
    tenant_id: str
    period: str
    start: datetime
    end: datetime
    total_tokens: int
    total_actions: int
    by_category: List[CategoryUsage]
    top_actions: List[ActionUsage]


def usage_analytics(tenant_id, period: str = "month", *, now: Optional[datetime] = None) -> UsageAnalytics:
    """Token consumption in the trailing ``period`` window, grouped by catalog category."""

    if period not in PERIOD_WINDOWS:
        raise ValueError(f"Unsupported analytics period '{period}'.")

    end = now or timezone.now()
    start = end - PERIOD_WINDOWS[period]
    consumed = TokenTransaction.objects.filter(
        tenant_id=tenant_id,
        type=TokenTransaction.TransactionType.CONSUME,
        created_at__gte=start,
        created_at__lte=end,
    )

    category_rows = (
        consumed.values("pricing__category")
        .annotate(tokens=Sum("tokens"), actions=Count("id"))
        .order_by("tokens")
    )
    totals = [(row["pricing__category"] or TokenPricing.Category.OTHER, -row["tokens"], row["actions"])
              for row in category_rows]
    total_tokens = sum(tokens for _, tokens, _ in totals)
    total_actions = sum(actions for _, _, actions in totals)

    by_category = [
        CategoryUsage(
            category=category,
            tokens=tokens,
            actions=actions,
            percentage=_percentage(tokens, total_tokens),
        )
        for category, tokens, actions in totals
    ]

    action_rows = (
        consumed.values("action_type")
        .annotate(tokens=Sum("tokens"), actions=Count("id"))
        .order_by("tokens", "action_type")[:TOP_ACTIONS_LIMIT]
    )
    top_actions = [
        ActionUsage(action_type=row["action_type"], tokens=-row["tokens"], actions=row["actions"])
        for row in action_rows
    ]

    return UsageAnalytics(
        tenant_id=str(tenant_id),
        period=period,
        start=start,
        end=end,
        total_tokens=total_tokens,
        total_actions=total_actions,
        by_category=by_category,
        top_actions=top_actions,
    )


def _percentage(part: int, whole: int) -> Decimal:
    if not whole:
        return Decimal("0.00")
    return (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


__all__ = ["ActionUsage", "CategoryUsage", "UsageAnalytics", "usage_analytics"]
