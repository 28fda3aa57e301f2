"""
Django admin configuration for tenants and their memberships.
"""

from django.contrib import admin

from .models import Membership, Tenant


class MembershipInline(admin.TabularInline):
    """Inline admin for managing tenant memberships from the tenant page."""
    model = Membership
    extra = 0
    fields = ['user', 'role', 'is_active', 'assigned_at']
    readonly_fields = ['assigned_at']
    raw_id_fields = ['user']

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('user')


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ['name', 'slug', 'owner', 'is_active', 'billing_attention_required', 'created_at']
    list_filter = ['is_active', 'billing_attention_required']
    search_fields = ['name', 'slug', 'owner__username', 'stripe_customer_id']
    readonly_fields = ['id', 'created_at', 'updated_at', 'billing_attention_at']
    raw_id_fields = ['owner']
    inlines = [MembershipInline]
    actions = ['clear_billing_attention']

    @admin.action(description="Clear billing attention flag")
    def clear_billing_attention(self, request, queryset):
        for tenant in queryset:
            tenant.clear_billing_attention()
        self.message_user(request, f"Cleared billing attention on {queryset.count()} tenant(s).")


@admin.register(Membership)
class MembershipAdmin(admin.ModelAdmin):
    list_display = ['user', 'tenant', 'role', 'is_active', 'assigned_at']
    list_filter = ['role', 'is_active']
    search_fields = ['user__username', 'tenant__name']
    raw_id_fields = ['user', 'tenant']
