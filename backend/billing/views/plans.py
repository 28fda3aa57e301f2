"""Catalog listings and plan changes."""
from __future__ import annotations

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.models import SubscriptionPlan, TokenPricing
from billing.observability.metrics import BILLING_REQUEST_COUNT
from billing.permissions import BillingPermissionLevel, check_tenant_billing_permission
from billing.serializers import (
    PlanChangeRequestSerializer,
    PlanChangeResultSerializer,
    SubscriptionPlanSerializer,
    TokenPricingSerializer,
)
from billing.services.plan_change import change_plan
from billing.services.pricing_catalog import get_active_pricing, list_pricing
from billing.views.errors import SERVICE_ERRORS, service_error_response


class TokenPricingListView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        category = request.query_params.get("category") or None
        if category and category not in TokenPricing.Category.values:
            return Response({"detail": f"Unknown category '{category}'."}, status=status.HTTP_400_BAD_REQUEST)
        return Response(TokenPricingSerializer(list_pricing(category), many=True).data)


class ActionCostView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, action_type):
        try:
            pricing = get_active_pricing(action_type)
        except SERVICE_ERRORS as exc:
            return service_error_response(exc)
        return Response({"action_type": pricing.action_type, "version": pricing.version, "cost": pricing.token_cost})


class SubscriptionPlanListView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        plans = SubscriptionPlan.objects.filter(is_active=True)
        return Response(SubscriptionPlanSerializer(plans, many=True).data)


class PlanChangeView(APIView):
    """Switch the tenant's plan immediately with pro-rated adjustments."""

    permission_classes = [IsAuthenticated]

    def post(self, request, tenant_id):
        check_tenant_billing_permission(request.user, tenant_id, BillingPermissionLevel.MANAGE_BILLING)
        serializer = PlanChangeRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            result = change_plan(
                tenant_id,
                serializer.validated_data["plan"],
                billing_interval=serializer.validated_data.get("billing_interval"),
                actor=f"user:{request.user.pk}",
                request_id=request.headers.get("X-Request-ID", ""),
            )
        except SERVICE_ERRORS as exc:
            return service_error_response(exc)

        BILLING_REQUEST_COUNT.labels(endpoint="token_plan_change", method="POST", status="200").inc()
        return Response(PlanChangeResultSerializer(result).data)
