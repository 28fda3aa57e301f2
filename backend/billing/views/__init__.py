"""Token economy API views."""

from .plans import ActionCostView, PlanChangeView, SubscriptionPlanListView, TokenPricingListView
from .tokens import (
    TokenBalanceView,
    TokenCheckView,
    TokenConsumeView,
    TokenPurchaseView,
    TokenUsageAnalyticsView,
)
from .transactions import BillingChargeViewSet, TokenTransactionViewSet
