"""Pricing catalog lookups for metered actions.

Costs are read on every authorization, so active entries are cached per
action type and invalidated whenever a catalog row is saved.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from django.conf import settings
from django.core.cache import cache
from django.db import transaction

from billing.models import TokenPricing

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "billing.token_pricing.active"
DEFAULT_CACHE_TTL_SECONDS = 300


class PricingCatalogError(Exception):
    """Base exception type for catalog issues."""


class UnknownActionType(PricingCatalogError):
    """Raised when an action type has no active catalog entry."""

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"No active token pricing for action type '{action_type}'.")


def _cache_key(action_type: str) -> str:
    return f"{CACHE_KEY_PREFIX}.{action_type}"


def _cache_ttl() -> int:
    return int(getattr(settings, "BILLING_PRICING_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS))


def invalidate_pricing_cache(action_type: str) -> None:
    cache.delete(_cache_key(action_type))


def get_active_pricing(action_type: str) -> TokenPricing:
    """Return the active catalog entry for ``action_type``; fails closed when absent."""

    if not action_type:
        raise UnknownActionType(action_type)

    key = _cache_key(action_type)
    cached = cache.get(key)
    if cached is not None:
        return cached

    pricing = TokenPricing.objects.filter(action_type=action_type, is_active=True).first()
    if pricing is None:
        logger.warning("Pricing lookup miss for action type %s", action_type)
        raise UnknownActionType(action_type)

    cache.set(key, pricing, _cache_ttl())
    return pricing


def get_action_cost(action_type: str) -> int:
    return get_active_pricing(action_type).token_cost


def list_pricing(category: Optional[str] = None) -> List[TokenPricing]:
    queryset = TokenPricing.objects.filter(is_active=True)
    if category:
        queryset = queryset.filter(category=category)
    return list(queryset.order_by("category", "token_cost", "action_type"))


def publish_price(
    action_type: str,
    token_cost: int,
    *,
    display_name: Optional[str] = None,
    category: Optional[str] = None,
    description: Optional[str] = None,
) -> TokenPricing:
    """Publish ``token_cost`` as the new active version of ``action_type``.

    The previous version, if any, is deactivated but kept so that existing
    transactions still reference the price they were charged.
    """

    if token_cost < 0:
        raise ValueError("Token cost must be zero or positive.")

    with transaction.atomic():
        current = (
            TokenPricing.objects.select_for_update()
            .filter(action_type=action_type, is_active=True)
            .first()
        )
        if current is not None and current.token_cost == token_cost and (
            display_name is None or display_name == current.display_name
        ) and (category is None or category == current.category):
            return current

        latest = TokenPricing.objects.filter(action_type=action_type).order_by("-version").first()
        next_version = (latest.version + 1) if latest else 1

        if current is not None:
            current.is_active = False
            current.save(update_fields=["is_active", "updated_at"])

        template = current or latest
        pricing = TokenPricing.objects.create(
            action_type=action_type,
            version=next_version,
            token_cost=token_cost,
            display_name=display_name or (template.display_name if template else action_type),
            category=category or (template.category if template else TokenPricing.Category.OTHER),
            description=description if description is not None else (template.description if template else ""),
            is_active=True,
        )

    logger.info(
        "Published token pricing %s v%s at %s tokens", action_type, pricing.version, token_cost
    )
    return pricing


def deactivate(action_type: str) -> bool:
    """Soft-delete the active entry; returns ``False`` when nothing was active."""

    pricing = TokenPricing.objects.filter(action_type=action_type, is_active=True).first()
    if pricing is None:
        return False
    pricing.delete()
    logger.info("Deactivated token pricing %s v%s", action_type, pricing.version)
    return True


__all__ = [
    "PricingCatalogError",
    "UnknownActionType",
    "deactivate",
    "get_action_cost",
    "get_active_pricing",
    "invalidate_pricing_cache",
    "list_pricing",
    "publish_price",
]
