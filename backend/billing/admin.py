from django.contrib import admin, messages
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    BillingAuditLog,
    BillingCharge,
    SubscriptionPlan,
    TenantSubscription,
    TokenPricing,
    TokenTransaction,
)
from .services.invoicing import schedule_charge_submission
from .services.rollover import manual_rollover
from .services.token_ledger import LedgerReplayMismatch, unfreeze_ledger, verify_ledger


def _admin_actor(request) -> str:
    return f"admin:{request.user.pk}"


@admin.register(TokenPricing)
class TokenPricingAdmin(admin.ModelAdmin):
    """Versioned action prices; publish a new version rather than editing costs."""

    list_display = ("action_type", "version", "category", "token_cost", "is_active", "updated_at")
    search_fields = ("action_type", "display_name")
    list_filter = ("category", "is_active")
    ordering = ("action_type", "-version")

    def get_readonly_fields(self, request, obj=None):
        if obj is not None and obj.transactions.exists():
            return ("action_type", "version", "token_cost", "created_at", "updated_at")
        return ("created_at", "updated_at")


@admin.register(SubscriptionPlan)
class SubscriptionPlanAdmin(admin.ModelAdmin):
    list_display = (
        "name",
        "display_name",
        "monthly_price",
        "monthly_tokens",
        "overage_token_cost",
        "allow_overage",
        "is_active",
    )
    search_fields = ("name", "display_name")
    list_filter = ("is_active", "allow_overage")
    ordering = ("sort_order", "monthly_price")

    fieldsets = (
        ("Plan", {"fields": ("name", "display_name", "description", "is_active", "sort_order", "features")}),
        ("Pricing", {"fields": ("currency", "monthly_price", "annual_price")}),
        ("Tokens", {"fields": ("monthly_tokens", "annual_tokens")}),
        ("Overage", {"fields": ("overage_token_cost", "allow_overage", "overage_token_limit")}),
    )

    def get_readonly_fields(self, request, obj=None):
        if obj is not None:
            return SubscriptionPlan.IMMUTABLE_FIELDS
        return ()


@admin.register(TenantSubscription)
class TenantSubscriptionAdmin(admin.ModelAdmin):
    """Balances are ledger-owned and shown read-only."""

    list_display = (
        "tenant_link",
        "plan",
        "status",
        "token_balance",
        "tokens_used_this_period",
        "current_period_end",
        "debits_frozen",
    )
    search_fields = ("tenant__name", "tenant__slug", "id")
    list_filter = ("status", "billing_interval", "debits_frozen", "plan")
    list_select_related = ("tenant", "plan")
    readonly_fields = (
        "token_balance",
        "tokens_used_this_period",
        "lifetime_tokens_used",
        "ledger_sequence",
        "last_rollover_period_end",
        "debits_frozen",
        "frozen_reason",
        "frozen_at",
        "created_at",
        "updated_at",
    )
    raw_id_fields = ("tenant",)
    actions = ("verify_ledgers", "unfreeze_ledgers", "rollover_due_periods")

    @admin.display(description="Tenant")
    def tenant_link(self, obj):
        url = reverse("admin:tenants_tenant_change", args=[obj.tenant_id])
        return format_html('<a href="{}">{}</a>', url, obj.tenant)

    @admin.action(description="Verify ledger and freeze on mismatch")
    def verify_ledgers(self, request, queryset):
        mismatched = 0
        for subscription in queryset:
            try:
                verify_ledger(subscription, actor=_admin_actor(request))
            except LedgerReplayMismatch:
                mismatched += 1
        level = messages.ERROR if mismatched else messages.SUCCESS
        self.message_user(request, f"Verified {queryset.count()} ledger(s); {mismatched} mismatched.", level)

    @admin.action(description="Resume debits after reconciliation")
    def unfreeze_ledgers(self, request, queryset):
        for subscription in queryset.filter(debits_frozen=True):
            try:
                unfreeze_ledger(subscription.pk, actor=_admin_actor(request))
            except LedgerReplayMismatch as exc:
                self.message_user(request, str(exc), messages.ERROR)

    @admin.action(description="Roll over ended periods")
    def rollover_due_periods(self, request, queryset):
        rolled = 0
        for subscription in queryset:
            if manual_rollover(subscription.tenant_id, actor=_admin_actor(request)) is not None:
                rolled += 1
        self.message_user(request, f"Rolled over {rolled} subscription(s).")

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(TokenTransaction)
class TokenTransactionAdmin(admin.ModelAdmin):
    """Read-only audit trail for token movements."""

    list_display = (
        "id",
        "tenant",
        "sequence",
        "type",
        "tokens",
        "balance_after",
        "action_type",
        "created_at",
    )
    search_fields = ("id", "tenant__name", "action_type", "action_id", "idempotency_key")
    list_filter = ("type", "created_at")
    ordering = ("-created_at",)
    list_select_related = ("tenant",)

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BillingCharge)
class BillingChargeAdmin(admin.ModelAdmin):
    list_display = ("id", "tenant", "kind", "amount", "currency", "status", "attempts", "created_at")
    search_fields = ("id", "tenant__name", "external_reference", "idempotency_key")
    list_filter = ("kind", "status", "created_at")
    list_select_related = ("tenant",)
    readonly_fields = (
        "tenant",
        "subscription",
        "kind",
        "amount",
        "currency",
        "tokens",
        "unit_rate",
        "token_transaction",
        "idempotency_key",
        "attempts",
        "external_reference",
        "submitted_at",
        "created_at",
        "updated_at",
    )
    actions = ("resubmit_charges",)

    @admin.action(description="Resubmit to invoicing provider")
    def resubmit_charges(self, request, queryset):
        retryable = queryset.filter(status__in=(BillingCharge.Status.PENDING, BillingCharge.Status.FAILED))
        for charge in retryable:
            schedule_charge_submission(charge)
        self.message_user(request, f"Queued {retryable.count()} charge(s) for submission.")

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(BillingAuditLog)
class BillingAuditLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "tenant", "event_type", "actor", "request_id")
    search_fields = ("tenant__name", "event_type", "actor", "request_id")
    list_filter = ("event_type", "created_at")
    list_select_related = ("tenant",)

    def get_readonly_fields(self, request, obj=None):
        return [field.name for field in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
