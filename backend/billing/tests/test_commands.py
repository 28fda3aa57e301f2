from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import CommandError, call_command
from django.utils import timezone

from billing.models import SubscriptionPlan, TenantSubscription, TokenPricing, TokenTransaction
from billing.services.pricing_catalog import deactivate


def _run(*args):
    out = StringIO()
    call_command(*args, stdout=out)
    return out.getvalue()


@pytest.mark.django_db
def test_setup_token_catalog_is_idempotent():
    _run("setup_token_catalog")
    output = _run("setup_token_catalog")

    assert set(SubscriptionPlan.objects.values_list("name", flat=True)) >= {
        "professional",
        "advanced",
        "enterprise",
        "ultimate",
    }
    assert TokenPricing.objects.filter(action_type="proposal_generation", is_active=True).count() == 1
    assert "already exists" in output


@pytest.mark.django_db
def test_setup_token_catalog_update_publishes_changed_costs():
    _run("setup_token_catalog")
    TokenPricing.objects.filter(action_type="export_pdf", is_active=True).update(token_cost=99)

    output = _run("setup_token_catalog", "--update")

    active = TokenPricing.objects.get(action_type="export_pdf", is_active=True)
    assert active.token_cost == 10
    assert active.version == 2
    assert "pricing:export_pdf" in output


@pytest.mark.django_db
def test_setup_token_catalog_leaves_retired_actions_unpriced():
    _run("setup_token_catalog")
    deactivate("client_update")

    _run("setup_token_catalog", "--update")

    assert not TokenPricing.objects.filter(action_type="client_update", is_active=True).exists()


@pytest.mark.django_db
def test_run_token_rollover_for_single_tenant(make_subscription):
    subscription = make_subscription(
        current_period_start=timezone.now() - timedelta(days=31),
        current_period_end=timezone.now() - timedelta(minutes=5),
    )

    output = _run("run_token_rollover", "--tenant", str(subscription.tenant_id))

    subscription.refresh_from_db()
    assert "Granted 1000 tokens" in output
    assert subscription.token_balance == 1000


@pytest.mark.django_db
def test_run_token_rollover_reports_not_due(make_subscription):
    subscription = make_subscription()

    output = _run("run_token_rollover", "--tenant", str(subscription.tenant_id))

    assert "not due" in output
    assert not TokenTransaction.objects.filter(subscription=subscription).exists()


@pytest.mark.django_db
def test_verify_token_ledgers_freezes_and_unfreezes(make_subscription):
    subscription = make_subscription(balance=300)
    TenantSubscription.objects.filter(pk=subscription.pk).update(token_balance=250)

    output = _run("verify_token_ledgers")

    subscription.refresh_from_db()
    assert "1 mismatched" in output
    assert subscription.debits_frozen is True

    with pytest.raises(CommandError):
        _run("verify_token_ledgers", "--tenant", str(subscription.tenant_id), "--unfreeze")

    TenantSubscription.objects.filter(pk=subscription.pk).update(token_balance=300)
    output = _run("verify_token_ledgers", "--tenant", str(subscription.tenant_id), "--unfreeze")

    subscription.refresh_from_db()
    assert "Debits resumed" in output
    assert subscription.debits_frozen is False


@pytest.mark.django_db
def test_unfreeze_requires_tenant():
    with pytest.raises(CommandError):
        call_command("verify_token_ledgers", "--unfreeze", stdout=StringIO())
