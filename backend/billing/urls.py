"""URL routes for token economy endpoints."""
from django.urls import path

from .views import (
    ActionCostView,
    BillingChargeViewSet,
    PlanChangeView,
    SubscriptionPlanListView,
    TokenBalanceView,
    TokenCheckView,
    TokenConsumeView,
    TokenPricingListView,
    TokenPurchaseView,
    TokenTransactionViewSet,
    TokenUsageAnalyticsView,
)

app_name = "billing"

TENANT_TOKENS = "tenants/<uuid:tenant_id>/tokens/"

urlpatterns = [
    path("pricing/", TokenPricingListView.as_view(), name="token-pricing"),
    path("pricing/<str:action_type>/cost/", ActionCostView.as_view(), name="token-action-cost"),
    path("plans/", SubscriptionPlanListView.as_view(), name="subscription-plans"),
    path(f"{TENANT_TOKENS}balance/", TokenBalanceView.as_view(), name="tenant-token-balance"),
    path(
        f"{TENANT_TOKENS}transactions/",
        TokenTransactionViewSet.as_view({"get": "list"}),
        name="tenant-token-transactions",
    ),
    path(
        f"{TENANT_TOKENS}transactions/<uuid:pk>/",
        TokenTransactionViewSet.as_view({"get": "retrieve"}),
        name="tenant-token-transaction-detail",
    ),
    path(f"{TENANT_TOKENS}analytics/", TokenUsageAnalyticsView.as_view(), name="tenant-token-analytics"),
    path(f"{TENANT_TOKENS}check/", TokenCheckView.as_view(), name="tenant-token-check"),
    path(f"{TENANT_TOKENS}consume/", TokenConsumeView.as_view(), name="tenant-token-consume"),
    path(f"{TENANT_TOKENS}purchase/", TokenPurchaseView.as_view(), name="tenant-token-purchase"),
    path(f"{TENANT_TOKENS}change-plan/", PlanChangeView.as_view(), name="tenant-token-change-plan"),
    path(
        f"{TENANT_TOKENS}charges/",
        BillingChargeViewSet.as_view({"get": "list"}),
        name="tenant-billing-charges",
    ),
]
