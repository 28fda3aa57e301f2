from decimal import Decimal

import pytest
import stripe

from billing.models import BillingAuditLog, BillingCharge, TenantSubscription
from billing.services.consumption import authorize
from billing.services.invoicing import (
    BaseInvoicingGateway,
    InvoicingChargeFailed,
    StripeInvoicingGateway,
    get_invoicing_gateway,
    submit_charge,
    to_minor_units,
)
from billing.services.overage import overage_charge, overage_tokens


class RecordingGateway(BaseInvoicingGateway):
    def __init__(self):
        self.submitted = []

    def submit(self, charge):
        self.submitted.append(charge.pk)
        return f"ii_{len(self.submitted)}"


class DecliningGateway(BaseInvoicingGateway):
    def submit(self, charge):
        raise InvoicingChargeFailed("Your card was declined.")


@pytest.fixture
def overage_charge_row(make_plan, make_subscription, pricing):
    plan = make_plan("test-overage-billing", allow_overage=True, overage_token_cost=Decimal("0.01"))
    subscription = make_subscription(balance=20, plan=plan)
    result = authorize(subscription.tenant_id, pricing.action_type)
    return result.overage_charge


@pytest.mark.parametrize(
    "tokens,rate,expected",
    [
        (10, "0.01", Decimal("0.1000")),
        (0, "0.009", Decimal("0.0000")),
        (35000, "0.009", Decimal("315.0000")),
        (7, "0.00005", Decimal("0.0004")),
    ],
)
def test_overage_charge_multiplies_tokens_by_rate(tokens, rate, expected):
    assert overage_charge(tokens, rate) == expected


def test_overage_charge_rejects_negative_input():
    with pytest.raises(ValueError):
        overage_charge(-1, "0.01")


@pytest.mark.parametrize(
    "balance_before,cost,expected",
    [
        (100, 30, 0),
        (20, 30, 10),
        (0, 30, 30),
        (-50, 30, 30),
        (30, 30, 0),
    ],
)
def test_overage_tokens_counts_only_the_part_below_zero(balance_before, cost, expected):
    assert overage_tokens(balance_before, cost) == expected


def test_to_minor_units_rounds_half_up():
    assert to_minor_units(Decimal("0.1000")) == 10
    assert to_minor_units(Decimal("0.005")) == 1
    assert to_minor_units(Decimal("-30.00")) == -3000


@pytest.mark.django_db
def test_submit_charge_marks_submitted(overage_charge_row):
    gateway = RecordingGateway()

    charge = submit_charge(overage_charge_row.pk, gateway=gateway)

    assert charge.status == BillingCharge.Status.SUBMITTED
    assert charge.external_reference == "ii_1"
    assert charge.attempts == 1
    assert charge.submitted_at is not None

    again = submit_charge(overage_charge_row.pk, gateway=gateway)
    assert again.status == BillingCharge.Status.SUBMITTED
    assert gateway.submitted == [overage_charge_row.pk]


@pytest.mark.django_db
def test_failed_charge_flags_tenant_and_keeps_tokens(overage_charge_row):
    charge = submit_charge(overage_charge_row.pk, gateway=DecliningGateway())

    assert charge.status == BillingCharge.Status.FAILED
    assert charge.failure_reason == "Your card was declined."
    tenant = charge.tenant
    tenant.refresh_from_db()
    assert tenant.billing_attention_required is True
    assert str(charge.pk) in tenant.billing_attention_reason
    assert BillingAuditLog.objects.filter(tenant=tenant, event_type="billing_charge.failed").exists()

    subscription = TenantSubscription.objects.get(tenant=tenant)
    assert subscription.token_balance == -10


@pytest.mark.django_db
def test_sub_cent_charge_is_skipped(overage_charge_row):
    BillingCharge.objects.filter(pk=overage_charge_row.pk).update(amount=Decimal("0.0040"))
    gateway = RecordingGateway()

    charge = submit_charge(overage_charge_row.pk, gateway=gateway)

    assert charge.status == BillingCharge.Status.SKIPPED
    assert gateway.submitted == []


@pytest.mark.django_db
def test_stripe_gateway_posts_invoice_item(overage_charge_row, monkeypatch, settings):
    settings.STRIPE_SECRET_KEY = "sk_test_token_economy"
    tenant = overage_charge_row.tenant
    tenant.stripe_customer_id = "cus_123"
    tenant.save(update_fields=["stripe_customer_id"])
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "ii_stripe_1"}

    monkeypatch.setattr(stripe.InvoiceItem, "create", fake_create)

    reference = StripeInvoicingGateway().submit(BillingCharge.objects.get(pk=overage_charge_row.pk))

    assert reference == "ii_stripe_1"
    assert calls[0]["customer"] == "cus_123"
    assert calls[0]["amount"] == 10
    assert calls[0]["idempotency_key"] == overage_charge_row.idempotency_key


@pytest.mark.django_db
def test_stripe_gateway_wraps_provider_errors(overage_charge_row, monkeypatch, settings):
    settings.STRIPE_SECRET_KEY = "sk_test_token_economy"
    tenant = overage_charge_row.tenant
    tenant.stripe_customer_id = "cus_123"
    tenant.save(update_fields=["stripe_customer_id"])

    def failing_create(**kwargs):
        raise stripe.StripeError("No such customer")

    monkeypatch.setattr(stripe.InvoiceItem, "create", failing_create)

    with pytest.raises(InvoicingChargeFailed):
        StripeInvoicingGateway().submit(BillingCharge.objects.get(pk=overage_charge_row.pk))


@pytest.mark.django_db
def test_stripe_gateway_requires_customer(overage_charge_row):
    with pytest.raises(InvoicingChargeFailed):
        StripeInvoicingGateway().submit(overage_charge_row)


def test_gateway_is_loaded_from_settings(settings):
    settings.BILLING_INVOICING_GATEWAY = "billing.tests.test_overage_invoicing.RecordingGateway"

    assert isinstance(get_invoicing_gateway(), RecordingGateway)
