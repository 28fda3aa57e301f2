import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone


class Tenant(models.Model):
    """
    Tenant model - the agency account that owns a token subscription.

    Every metered action, ledger row and billing charge is scoped to a tenant.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the tenant"
    )
    name = models.CharField(
        max_length=200,
        help_text="Agency display name"
    )
    slug = models.SlugField(
        max_length=100,
        unique=True,
        help_text="URL-safe unique handle for the tenant"
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='owned_tenants',
        help_text="User who created the tenant - has all billing permissions"
    )
    stripe_customer_id = models.CharField(
        max_length=200,
        blank=True,
        default='',
        help_text="Stripe customer that receives invoice items for this tenant"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether the tenant can use the platform"
    )

    # Raised when a charge could not be handed to the invoicing provider
    billing_attention_required = models.BooleanField(
        default=False,
        help_text="Set when a billing charge failed and needs manual collection"
    )
    billing_attention_reason = models.TextField(
        blank=True,
        default='',
        help_text="Latest reason the tenant was flagged for manual billing follow-up"
    )
    billing_attention_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the tenant was last flagged for billing follow-up"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'tenants_tenant'
        verbose_name = 'Tenant'
        verbose_name_plural = 'Tenants'
        ordering = ['name']
        indexes = [
            models.Index(fields=['billing_attention_required'], name='tenant_billing_attention_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.slug})"

    def flag_billing_attention(self, reason: str) -> None:
        """Mark the tenant for manual collection without touching other fields."""
        now = timezone.now()
        Tenant.objects.filter(pk=self.pk).update(
            billing_attention_required=True,
            billing_attention_reason=reason[:2000],
            billing_attention_at=now,
            updated_at=now,
        )
        self.billing_attention_required = True
        self.billing_attention_reason = reason[:2000]
        self.billing_attention_at = now

    def clear_billing_attention(self) -> None:
        Tenant.objects.filter(pk=self.pk).update(
            billing_attention_required=False,
            billing_attention_reason='',
            billing_attention_at=None,
            updated_at=timezone.now(),
        )
        self.billing_attention_required = False
        self.billing_attention_reason = ''
        self.billing_attention_at = None


class Membership(models.Model):
    """
    Membership model - user/tenant relationship with a role.

    The role drives the billing permission levels exposed by the billing API.
    """

    ROLE_CHOICES = [
        ('owner', 'Owner'),  # Full control including billing
        ('admin', 'Administrator'),  # Everything except plan changes
        ('member', 'Member'),  # Can run metered actions
        ('viewer', 'Viewer'),  # Read-only access
    ]

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.CASCADE,
        related_name='memberships',
        help_text="The tenant this membership belongs to"
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='tenant_memberships',
        help_text="The user who is a member of the tenant"
    )
    role = models.CharField(
        max_length=20,
        choices=ROLE_CHOICES,
        help_text="Role determining user permissions within the tenant"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether this membership is currently active"
    )
    custom_permissions = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-member permission overrides, e.g. {\"can_view_billing\": true}"
    )
    assigned_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'tenants_membership'
        verbose_name = 'Tenant Membership'
        verbose_name_plural = 'Tenant Memberships'
        unique_together = ['tenant', 'user']
        ordering = ['-assigned_at']
        indexes = [
            models.Index(fields=['tenant', 'role', 'is_active'], name='membership_tenant_role_idx'),
        ]

    def __str__(self):
        return f"{self.user} - {self.tenant.name} ({self.role})"

    def has_permission(self, permission_name: str) -> bool:
        """
        Check if the member holds a billing permission.

        Role defaults apply first; ``custom_permissions`` overrides win.
        """
        role_permissions = {
            'owner': True,
            'admin': permission_name != 'can_manage_billing',
            'member': permission_name in ['can_consume_tokens'],
            'viewer': False,
        }
        allowed = role_permissions.get(self.role, False)

        if permission_name in (self.custom_permissions or {}):
            allowed = bool(self.custom_permissions[permission_name])

        return allowed
