import pytest
from django.contrib.auth import get_user_model

from tenants.models import Membership, Tenant


@pytest.fixture
def other_user():
    return get_user_model().objects.create_user(username="bob", email="bob@example.com", password="pass1234")


@pytest.mark.django_db
@pytest.mark.parametrize(
    "role, permission, expected",
    [
        ("owner", "can_manage_billing", True),
        ("admin", "can_manage_billing", False),
        ("admin", "can_update_token_balance", True),
        ("member", "can_consume_tokens", True),
        ("member", "can_view_billing", False),
        ("viewer", "can_consume_tokens", False),
    ],
)
def test_role_defaults(tenant, other_user, role, permission, expected):
    membership = Membership.objects.create(tenant=tenant, user=other_user, role=role)

    assert membership.has_permission(permission) is expected


@pytest.mark.django_db
def test_custom_permissions_override_role_defaults(tenant, other_user):
    membership = Membership.objects.create(
        tenant=tenant,
        user=other_user,
        role="member",
        custom_permissions={"can_view_billing": True, "can_consume_tokens": False},
    )

    assert membership.has_permission("can_view_billing") is True
    assert membership.has_permission("can_consume_tokens") is False


@pytest.mark.django_db
def test_billing_attention_flag_round_trip(tenant):
    tenant.flag_billing_attention("Card declined")

    stored = Tenant.objects.get(pk=tenant.pk)
    assert stored.billing_attention_required is True
    assert stored.billing_attention_reason == "Card declined"
    assert stored.billing_attention_at is not None

    tenant.clear_billing_attention()

    stored.refresh_from_db()
    assert stored.billing_attention_required is False
    assert stored.billing_attention_at is None
