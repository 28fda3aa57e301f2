"""Expose commonly used token economy services."""

from .consumption import AuthorizationResult, SubscriptionInactive, authorize, can_perform_action, quote_action
from .plan_change import PlanChangeError, PlanChangeResult, change_plan
from .pricing_catalog import UnknownActionType, get_action_cost, get_active_pricing
from .token_ledger import (
    ConcurrentDebitConflict,
    InsufficientBalance,
    LedgerFrozen,
    LedgerReplayMismatch,
    SubscriptionNotFound,
    apply_delta,
)
