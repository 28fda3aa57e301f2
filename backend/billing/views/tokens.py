"""Tenant-scoped token endpoints: balance, quotes, consumption, purchases and analytics."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.observability.metrics import BILLING_REQUEST_COUNT
from billing.permissions import BillingPermissionLevel, check_tenant_billing_permission
from billing.serializers import (
    ActionQuoteSerializer,
    ActionRequestSerializer,
    AuthorizationResultSerializer,
    BalanceSummarySerializer,
    ConsumeRequestSerializer,
    TokenPurchaseSerializer,
    UsageAnalyticsSerializer,
)
from billing.services.analytics import PERIOD_WINDOWS, usage_analytics
from billing.services.consumption import authorize, quote_action
from billing.services.subscription_lifecycle import get_balance_summary, purchase_tokens
from billing.views.errors import SERVICE_ERRORS, service_error_response

logger = logging.getLogger(__name__)


def _actor(request) -> str:
    return f"user:{request.user.pk}"


class TokenBalanceView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, tenant_id):
        check_tenant_billing_permission(request.user, tenant_id, BillingPermissionLevel.VIEW_BASIC)
        try:
            summary = get_balance_summary(tenant_id)
        except SERVICE_ERRORS as exc:
            return service_error_response(exc)
        return Response(BalanceSummarySerializer(summary).data)


class TokenUsageAnalyticsView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, tenant_id):
        check_tenant_billing_permission(request.user, tenant_id, BillingPermissionLevel.VIEW_BILLING)
        period = request.query_params.get("period", "month")
        if period not in PERIOD_WINDOWS:
            return Response(
                {"detail": f"period must be one of: {', '.join(PERIOD_WINDOWS)}"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        return Response(UsageAnalyticsSerializer(usage_analytics(tenant_id, period)).data)


class TokenCheckView(APIView):
    """Preview whether an action would be authorized; never debits."""

    permission_classes = [IsAuthenticated]

    def post(self, request, tenant_id):
        check_tenant_billing_permission(request.user, tenant_id, BillingPermissionLevel.VIEW_BASIC)
        serializer = ActionRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            quote = quote_action(tenant_id, serializer.validated_data["action_type"])
        except SERVICE_ERRORS as exc:
            return service_error_response(exc)
        return Response(ActionQuoteSerializer(quote).data)


class TokenConsumeView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, tenant_id):
        _, permissions = check_tenant_billing_permission(
            request.user, tenant_id, BillingPermissionLevel.VIEW_BASIC
        )
        if not permissions.has_permission("can_consume_tokens"):
            return Response(
                {"detail": "You do not have permission to consume tokens"},
                status=status.HTTP_403_FORBIDDEN,
            )

        serializer = ConsumeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            result = authorize(
                tenant_id,
                data["action_type"],
                action_id=data["action_id"],
                description=data["description"],
                context=data["context"],
                idempotency_key=data.get("idempotency_key"),
            )
        except SERVICE_ERRORS as exc:
            return service_error_response(exc)

        http_status = status.HTTP_200_OK if result.allowed else status.HTTP_402_PAYMENT_REQUIRED
        BILLING_REQUEST_COUNT.labels(endpoint="token_consume", method="POST", status=str(http_status)).inc()
        return Response(AuthorizationResultSerializer(result).data, status=http_status)


class TokenPurchaseView(APIView):
    """Record a paid top-up; payment collection happens upstream."""

    permission_classes = [IsAuthenticated]

    def post(self, request, tenant_id):
        check_tenant_billing_permission(request.user, tenant_id, BillingPermissionLevel.MANAGE_TOKENS)
        serializer = TokenPurchaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        try:
            result = purchase_tokens(
                tenant_id,
                data["tokens"],
                idempotency_key=data["idempotency_key"],
                payment_reference=data["payment_reference"],
                actor=_actor(request),
            )
        except SERVICE_ERRORS as exc:
            return service_error_response(exc)

        http_status = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
        BILLING_REQUEST_COUNT.labels(endpoint="token_purchase", method="POST", status=str(http_status)).inc()
        return Response(
            {
                "transaction_id": str(result.transaction.pk),
                "tokens": result.transaction.tokens,
                "balance": result.transaction.balance_after,
                "replayed": not result.created,
            },
            status=http_status,
        )
