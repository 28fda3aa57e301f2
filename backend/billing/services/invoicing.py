"""Hand-off of computed billing charges to the external invoicing provider.

Token movements are never rolled back when a charge fails; the charge is
marked failed and the tenant is flagged for manual collection instead.
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import stripe
from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.module_loading import import_string
from kombu.exceptions import OperationalError as BrokerUnavailable

from billing.models import BillingAuditLog, BillingCharge
from billing.observability.logging import log_billing_event
from billing.observability.metrics import INVOICING_FAILURE_COUNT

logger = logging.getLogger(__name__)

MAX_SUBMISSION_ATTEMPTS = 3


class InvoicingChargeFailed(RuntimeError):
    """Raised when the invoicing provider does not accept a charge."""


class BaseInvoicingGateway:
    """Interface of the invoicing collaborator; returns the provider reference."""

    def submit(self, charge: BillingCharge) -> str:
        raise NotImplementedError


class StripeInvoicingGateway(BaseInvoicingGateway):
    """Posts charges as pending Stripe invoice items on the tenant's customer."""

    def _configure(self) -> None:
        secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
        if not secret_key:
            raise InvoicingChargeFailed("STRIPE_SECRET_KEY is not configured.")
        stripe.api_key = secret_key
        api_version = getattr(settings, "STRIPE_API_VERSION", None)
        if api_version:
            stripe.api_version = api_version

    def submit(self, charge: BillingCharge) -> str:
        customer_id = charge.tenant.stripe_customer_id
        if not customer_id:
            raise InvoicingChargeFailed(f"Tenant {charge.tenant_id} has no Stripe customer.")

        self._configure()
        try:
            item = stripe.InvoiceItem.create(
                customer=customer_id,
                amount=to_minor_units(charge.amount),
                currency=charge.currency,
                description=charge.description or charge.get_kind_display(),
                metadata={
                    "charge_id": str(charge.pk),
                    "tenant_id": str(charge.tenant_id),
                    "kind": charge.kind,
                    "tokens": str(charge.tokens),
                },
                idempotency_key=charge.idempotency_key,
            )
        except stripe.StripeError as exc:
            raise InvoicingChargeFailed(str(exc)) from exc
        return item["id"]


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def get_invoicing_gateway() -> BaseInvoicingGateway:
    path = getattr(settings, "BILLING_INVOICING_GATEWAY", "billing.services.invoicing.StripeInvoicingGateway")
    return import_string(path)()


def schedule_charge_submission(charge: BillingCharge) -> None:
    """Queue submission of ``charge`` once the surrounding transaction commits."""

    charge_id = str(charge.pk)
    transaction.on_commit(lambda: enqueue_charge_submission(charge_id))


def enqueue_charge_submission(charge_id: str) -> None:
    from billing.tasks import submit_billing_charge

    try:
        submit_billing_charge.delay(charge_id)
    except BrokerUnavailable:
        logger.warning(
            "Could not enqueue billing charge %s; it stays pending for the periodic sweep.", charge_id
        )


def submit_charge(charge_id, gateway: Optional[BaseInvoicingGateway] = None) -> BillingCharge:
    """Submit one charge; failures mark it failed and flag the tenant."""

    with transaction.atomic():
        charge = BillingCharge.objects.select_for_update().select_related("tenant").get(pk=charge_id)
        if charge.status in (BillingCharge.Status.SUBMITTED, BillingCharge.Status.SKIPPED):
            return charge
        charge.attempts += 1
        charge.save(update_fields=["attempts", "updated_at"])

    if to_minor_units(charge.amount) == 0:
        charge.status = BillingCharge.Status.SKIPPED
        charge.failure_reason = ""
        charge.save(update_fields=["status", "failure_reason", "updated_at"])
        logger.info("Skipped zero-value billing charge %s for tenant %s", charge.pk, charge.tenant_id)
        return charge

    gateway = gateway or get_invoicing_gateway()
    try:
        reference = gateway.submit(charge)
    except InvoicingChargeFailed as exc:
        _mark_failed(charge, str(exc))
        return charge

    charge.status = BillingCharge.Status.SUBMITTED
    charge.external_reference = reference or ""
    charge.failure_reason = ""
    charge.submitted_at = timezone.now()
    charge.save(update_fields=["status", "external_reference", "failure_reason", "submitted_at", "updated_at"])
    log_billing_event(
        message="billing_charge.submitted",
        tenant_id=str(charge.tenant_id),
        extra={"charge_id": str(charge.pk), "kind": charge.kind, "amount": str(charge.amount)},
    )
    return charge


def _mark_failed(charge: BillingCharge, reason: str) -> None:
    charge.status = BillingCharge.Status.FAILED
    charge.failure_reason = reason
    charge.save(update_fields=["status", "failure_reason", "updated_at"])

    charge.tenant.flag_billing_attention(
        f"Billing charge {charge.pk} ({charge.kind}, {charge.amount} {charge.currency.upper()}) failed: {reason}"
    )
    BillingAuditLog.objects.create(
        tenant_id=charge.tenant_id,
        event_type="billing_charge.failed",
        actor="system",
        details={
            "charge_id": str(charge.pk),
            "kind": charge.kind,
            "amount": str(charge.amount),
            "attempts": charge.attempts,
            "reason": reason,
        },
    )
    INVOICING_FAILURE_COUNT.labels(kind=charge.kind).inc()
    log_billing_event(
        message="billing_charge.failed",
        tenant_id=str(charge.tenant_id),
        extra={"charge_id": str(charge.pk), "reason": reason, "attempts": charge.attempts},
        level=logging.WARNING,
    )


__all__ = [
    "BaseInvoicingGateway",
    "InvoicingChargeFailed",
    "MAX_SUBMISSION_ATTEMPTS",
    "StripeInvoicingGateway",
    "enqueue_charge_submission",
    "get_invoicing_gateway",
    "schedule_charge_submission",
    "submit_charge",
    "to_minor_units",
]
