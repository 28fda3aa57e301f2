"""
Token billing permissions, checked per tenant.

Four levels:
1. VIEW_BASIC: balance, quotes and consumption (membership required)
2. VIEW_BILLING: transaction history, analytics and charges
3. MANAGE_TOKENS: token purchases
4. MANAGE_BILLING: plan changes
"""
import logging
from enum import Enum
from typing import Optional

from django.contrib.auth import get_user_model
from django.http import Http404
from rest_framework.exceptions import NotAuthenticated, PermissionDenied

from tenants.models import Membership, Tenant

logger = logging.getLogger(__name__)
User = get_user_model()


class BillingPermissionLevel(Enum):
    VIEW_BASIC = "view_basic"
    VIEW_BILLING = "view_billing"
    MANAGE_TOKENS = "manage_tokens"
    MANAGE_BILLING = "manage_billing"


PERMISSION_BY_LEVEL = {
    BillingPermissionLevel.VIEW_BASIC: None,
    BillingPermissionLevel.VIEW_BILLING: "can_view_billing",
    BillingPermissionLevel.MANAGE_TOKENS: "can_update_token_balance",
    BillingPermissionLevel.MANAGE_BILLING: "can_manage_billing",
}

# Staff accounts may read any tenant for support purposes.
STAFF_READ_LEVELS = (BillingPermissionLevel.VIEW_BASIC, BillingPermissionLevel.VIEW_BILLING)

PERMISSION_DESCRIPTIONS = {
    "can_view_billing": "view billing information",
    "can_update_token_balance": "purchase tokens",
    "can_manage_billing": "manage billing and plans",
}


class TenantBillingPermissions:
    """Resolves a user's billing rights inside one tenant."""

    def __init__(self, user: User, tenant: Tenant):
        self.user = user
        self.tenant = tenant
        self._membership = None

    @property
    def membership(self) -> Optional[Membership]:
        if self._membership is None:
            self._membership = (
                Membership.objects.filter(tenant=self.tenant, user=self.user, is_active=True).first() or False
            )
        return self._membership or None

    def is_member(self) -> bool:
        return self.membership is not None

    def is_owner(self) -> bool:
        return self.tenant.owner_id == self.user.pk

    def has_permission(self, permission_name: str) -> bool:
        if self.is_owner():
            return True
        membership = self.membership
        if not membership:
            return False
        return membership.has_permission(permission_name)

    def check_permission(self, level: BillingPermissionLevel) -> None:
        """
        Raises:
            NotAuthenticated: anonymous user
            PermissionDenied: not a member, or the level's permission is missing
        """
        if not self.user or not self.user.is_authenticated:
            raise NotAuthenticated("User not logged in")

        if self.user.is_staff and level in STAFF_READ_LEVELS:
            return

        if not self.is_owner() and not self.is_member():
            raise PermissionDenied("You are not a member of this tenant")

        required_permission = PERMISSION_BY_LEVEL[level]
        if required_permission and not self.has_permission(required_permission):
            description = PERMISSION_DESCRIPTIONS.get(required_permission, required_permission)
            raise PermissionDenied(f"You do not have permission to {description}")

        logger.debug(
            "Permission granted: user %s has %s permission for tenant %s",
            self.user.pk,
            level.value,
            self.tenant.pk,
        )


def check_tenant_billing_permission(
    user: User,
    tenant_id,
    level: BillingPermissionLevel,
) -> tuple[Tenant, TenantBillingPermissions]:
    """
    Load the tenant and check ``level`` for ``user``.

    Raises:
        Http404: tenant does not exist or is inactive
        NotAuthenticated / PermissionDenied: see ``check_permission``
    """
    tenant = Tenant.objects.filter(pk=tenant_id, is_active=True).first()
    if tenant is None:
        raise Http404("Tenant does not exist")

    permissions = TenantBillingPermissions(user, tenant)
    permissions.check_permission(level)
    return tenant, permissions
