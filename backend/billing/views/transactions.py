"""API endpoints exposing the token ledger and billing charges of a tenant."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.filters import BillingChargeFilter, TokenTransactionFilter
from billing.models import BillingCharge, TokenTransaction
from billing.pagination import BoundedPageNumberPagination, LedgerPageNumberPagination
from billing.permissions import BillingPermissionLevel, check_tenant_billing_permission
from billing.serializers import BillingChargeSerializer, TokenTransactionSerializer


class TokenTransactionViewSet(ReadOnlyModelViewSet):
    serializer_class = TokenTransactionSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = LedgerPageNumberPagination
    filterset_class = TokenTransactionFilter
    ordering_fields = ("created_at", "sequence", "tokens")
    ordering = ("-sequence",)

    def get_queryset(self):
        tenant, _ = check_tenant_billing_permission(
            self.request.user,
            self.kwargs["tenant_id"],
            BillingPermissionLevel.VIEW_BILLING,
        )
        return TokenTransaction.objects.filter(tenant=tenant).order_by("-sequence")


class BillingChargeViewSet(ReadOnlyModelViewSet):
    serializer_class = BillingChargeSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = BillingChargeFilter
    ordering_fields = ("created_at", "amount")
    ordering = ("-created_at",)

    def get_queryset(self):
        tenant, _ = check_tenant_billing_permission(
            self.request.user,
            self.kwargs["tenant_id"],
            BillingPermissionLevel.VIEW_BILLING,
        )
        return BillingCharge.objects.filter(tenant=tenant).order_by("-created_at")
