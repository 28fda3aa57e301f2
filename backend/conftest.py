from decimal import Decimal

import pytest
from django.core.cache import cache
from django.utils import timezone

from billing.models import SubscriptionPlan, TenantSubscription, TokenPricing, TokenTransaction
from billing.services.rollover import add_months
from billing.services.token_ledger import apply_delta
from billing.services.transaction_metadata import BonusMetadata
from tenants.models import Membership, Tenant


@pytest.fixture(autouse=True)
def _clear_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(
        username="alice",
        email="alice@example.com",
        password="pass1234",
    )


@pytest.fixture
def tenant(user):
    tenant = Tenant.objects.create(name="Acme Agency", slug="acme-agency", owner=user)
    Membership.objects.create(tenant=tenant, user=user, role="owner")
    return tenant


@pytest.fixture
def other_tenant(django_user_model):
    owner = django_user_model.objects.create_user(
        username="oscar",
        email="oscar@example.com",
        password="pass1234",
    )
    tenant = Tenant.objects.create(name="Globex Partners", slug="globex-partners", owner=owner)
    Membership.objects.create(tenant=tenant, user=owner, role="owner")
    return tenant


@pytest.fixture
def make_plan():
    def _make(name="test-growth", **fields):
        values = {
            "display_name": name.replace("-", " ").title(),
            "monthly_price": Decimal("100.00"),
            "monthly_tokens": 1000,
            "overage_token_cost": Decimal("0.0100"),
            "allow_overage": False,
        }
        values.update(fields)
        return SubscriptionPlan.objects.create(name=name, **values)

    return _make


@pytest.fixture
def plan(make_plan):
    return make_plan()


@pytest.fixture
def make_pricing():
    def _make(action_type="test_proposal_draft", token_cost=30, **fields):
        values = {
            "display_name": action_type.replace("_", " ").capitalize(),
            "category": TokenPricing.Category.PROPOSAL,
        }
        values.update(fields)
        return TokenPricing.objects.create(action_type=action_type, token_cost=token_cost, **values)

    return _make


@pytest.fixture
def pricing(make_pricing):
    return make_pricing()


@pytest.fixture
def make_subscription(tenant, plan):
    """Create a subscription whose opening balance is recorded in the ledger."""

    def _make(*, balance=0, plan=plan, tenant=tenant, now=None, **fields):
        now = now or timezone.now()
        values = {
            "plan": plan,
            "status": TenantSubscription.Status.ACTIVE,
            "billing_interval": TenantSubscription.BillingInterval.MONTH,
            "monthly_allocation": plan.monthly_tokens,
            "current_period_start": now,
            "current_period_end": add_months(now, 1),
            "overage_token_cost": plan.overage_token_cost,
            "allow_overage": plan.allow_overage,
            "overage_token_limit": plan.overage_token_limit,
        }
        values.update(fields)
        subscription = TenantSubscription.objects.create(tenant=tenant, **values)
        if balance:
            apply_delta(
                subscription,
                balance,
                TokenTransaction.TransactionType.BONUS,
                description="Opening balance",
                metadata=BonusMetadata(reason="opening balance", granted_by="tests"),
            )
            subscription.refresh_from_db()
        return subscription

    return _make
