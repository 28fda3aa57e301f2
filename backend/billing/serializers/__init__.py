"""DRF serializers for the token economy API (balances, ledger, consumption, plan changes)."""
from __future__ import annotations

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.models import BillingCharge, SubscriptionPlan, TenantSubscription, TokenPricing, TokenTransaction

TOKEN_PURCHASE_MAX_TOKENS = 1_000_000
# Leaves room for the namespace prefix within the 255-character column.
IDEMPOTENCY_KEY_MAX_LENGTH = 200


class TokenPricingSerializer(serializers.ModelSerializer):
    class Meta:
        model = TokenPricing
        fields = (
            "action_type",
            "version",
            "display_name",
            "description",
            "category",
            "token_cost",
        )
        read_only_fields = fields


class SubscriptionPlanSerializer(serializers.ModelSerializer):
    monthly_price = serializers.DecimalField(max_digits=10, decimal_places=2, coerce_to_string=True)
    annual_price = serializers.DecimalField(max_digits=10, decimal_places=2, coerce_to_string=True)
    overage_token_cost = serializers.DecimalField(max_digits=10, decimal_places=4, coerce_to_string=True)

    class Meta:
        model = SubscriptionPlan
        fields = (
            "id",
            "name",
            "display_name",
            "description",
            "monthly_price",
            "annual_price",
            "monthly_tokens",
            "annual_tokens",
            "currency",
            "overage_token_cost",
            "allow_overage",
            "overage_token_limit",
            "features",
        )
        read_only_fields = fields


class TokenTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = TokenTransaction
        fields = (
            "id",
            "sequence",
            "type",
            "tokens",
            "balance_before",
            "balance_after",
            "action_type",
            "action_id",
            "description",
            "metadata",
            "metadata_version",
            "created_at",
        )
        read_only_fields = fields


class BillingChargeSerializer(serializers.ModelSerializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=4, coerce_to_string=True)

    class Meta:
        model = BillingCharge
        fields = (
            "id",
            "kind",
            "status",
            "amount",
            "currency",
            "tokens",
            "unit_rate",
            "description",
            "attempts",
            "external_reference",
            "failure_reason",
            "submitted_at",
            "created_at",
        )
        read_only_fields = fields


class BalanceSummarySerializer(serializers.Serializer):
    """Serializes ``billing.services.subscription_lifecycle.BalanceSummary``."""

    tenant_id = serializers.CharField()
    plan = serializers.CharField()
    plan_display_name = serializers.CharField()
    status = serializers.CharField()
    billing_interval = serializers.CharField()
    token_balance = serializers.IntegerField()
    monthly_allocation = serializers.IntegerField()
    tokens_used_this_period = serializers.IntegerField()
    lifetime_tokens_used = serializers.IntegerField()
    usage_percentage = serializers.DecimalField(max_digits=7, decimal_places=2)
    current_period_start = serializers.DateTimeField()
    current_period_end = serializers.DateTimeField()
    days_until_refill = serializers.IntegerField()
    is_trialing = serializers.BooleanField()
    trial_ends_at = serializers.DateTimeField(allow_null=True)
    cancel_at_period_end = serializers.BooleanField()
    allow_overage = serializers.BooleanField()
    is_in_overage = serializers.BooleanField()
    overage_tokens = serializers.IntegerField()
    overage_token_cost = serializers.DecimalField(max_digits=10, decimal_places=4)
    overage_cost = serializers.DecimalField(max_digits=12, decimal_places=2)
    debits_frozen = serializers.BooleanField()


class CategoryUsageSerializer(serializers.Serializer):
    category = serializers.CharField()
    tokens = serializers.IntegerField()
    actions = serializers.IntegerField()
    percentage = serializers.DecimalField(max_digits=5, decimal_places=2)


class ActionUsageSerializer(serializers.Serializer):
    action_type = serializers.CharField()
    tokens = serializers.IntegerField()
    actions = serializers.IntegerField()


class UsageAnalyticsSerializer(serializers.Serializer):
    period = serializers.CharField()
    start = serializers.DateTimeField()
    end = serializers.DateTimeField()
    total_tokens = serializers.IntegerField()
    total_actions = serializers.IntegerField()
    by_category = CategoryUsageSerializer(many=True)
    top_actions = ActionUsageSerializer(many=True)


class ActionQuoteSerializer(serializers.Serializer):
    action_type = serializers.CharField()
    cost = serializers.IntegerField()
    balance = serializers.IntegerField()
    allowed = serializers.BooleanField()
    reason = serializers.CharField(allow_blank=True)
    overage_tokens = serializers.IntegerField()
    estimated_overage_charge = serializers.DecimalField(max_digits=12, decimal_places=4)


class ActionRequestSerializer(serializers.Serializer):
    action_type = serializers.CharField(max_length=100)


class ConsumeRequestSerializer(ActionRequestSerializer):
    action_id = serializers.CharField(required=False, allow_blank=True, max_length=255, default="")
    description = serializers.CharField(required=False, allow_blank=True, default="")
    context = serializers.DictField(required=False, default=dict)
    idempotency_key = serializers.CharField(required=False, allow_blank=False, max_length=IDEMPOTENCY_KEY_MAX_LENGTH)


class AuthorizationResultSerializer(serializers.Serializer):
    allowed = serializers.BooleanField()
    action_type = serializers.CharField()
    cost = serializers.IntegerField()
    balance_before = serializers.IntegerField()
    balance_after = serializers.IntegerField()
    reason = serializers.CharField(allow_blank=True)
    overage_tokens = serializers.IntegerField()
    replayed = serializers.BooleanField()
    transaction_id = serializers.SerializerMethodField()
    overage_charge_id = serializers.SerializerMethodField()

    def get_transaction_id(self, obj):
        return str(obj.transaction.pk) if obj.transaction is not None else None

    def get_overage_charge_id(self, obj):
        return str(obj.overage_charge.pk) if obj.overage_charge is not None else None


class PlanChangeRequestSerializer(serializers.Serializer):
    plan = serializers.SlugField(max_length=100)
    billing_interval = serializers.ChoiceField(
        choices=TenantSubscription.BillingInterval.choices,
        required=False,
    )

    def validate_plan(self, value: str) -> str:
        if not SubscriptionPlan.objects.filter(name=value, is_active=True).exists():
            raise serializers.ValidationError(_("Unknown or unavailable plan."))
        return value


class PlanChangeResultSerializer(serializers.Serializer):
    from_plan = serializers.CharField(source="from_plan.name")
    to_plan = serializers.CharField(source="to_plan.name")
    billing_interval = serializers.CharField(source="subscription.billing_interval")
    token_adjustment = serializers.IntegerField()
    prorated_price_difference = serializers.DecimalField(max_digits=12, decimal_places=2)
    new_balance = serializers.IntegerField()
    monthly_allocation = serializers.IntegerField(source="subscription.monthly_allocation")
    days_remaining = serializers.IntegerField()
    days_in_period = serializers.IntegerField()
    charge_id = serializers.SerializerMethodField()

    def get_charge_id(self, obj):
        return str(obj.charge.pk) if obj.charge is not None else None


class TokenPurchaseSerializer(serializers.Serializer):
    tokens = serializers.IntegerField(min_value=1, max_value=TOKEN_PURCHASE_MAX_TOKENS)
    idempotency_key = serializers.CharField(max_length=IDEMPOTENCY_KEY_MAX_LENGTH)
    payment_reference = serializers.CharField(required=False, allow_blank=True, max_length=255, default="")
