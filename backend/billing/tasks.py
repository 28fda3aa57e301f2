"""Celery tasks for the token economy: rollovers, trials, invoicing and ledger checks."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from celery import shared_task
from django.db.models import Q
from django.utils import timezone

from billing.models import BillingCharge, TenantSubscription
from billing.services import rollover as rollover_services
from billing.services.invoicing import MAX_SUBMISSION_ATTEMPTS, submit_charge
from billing.services.token_ledger import LedgerReplayMismatch, verify_ledger

logger = logging.getLogger(__name__)


@shared_task(queue="billing")
def run_period_rollovers(batch_size: Optional[int] = None) -> Dict[str, int]:
    """Grant the next period's allocation to every subscription whose period has ended."""

    return rollover_services.run_rollover_tick(timezone.now(), batch_size=batch_size)


@shared_task(queue="billing")
def expire_trials() -> Dict[str, int]:
    return rollover_services.expire_trials(timezone.now())


@shared_task(queue="billing")
def submit_billing_charge(charge_id: str) -> Dict[str, str]:
    charge = submit_charge(charge_id)
    return {"charge_id": str(charge.pk), "status": charge.status}


@shared_task(queue="billing")
def submit_pending_billing_charges() -> Dict[str, int]:
    """Sweep charges that were never enqueued or failed with attempts left."""

    retryable = BillingCharge.objects.filter(
        Q(status=BillingCharge.Status.PENDING)
        | Q(status=BillingCharge.Status.FAILED, attempts__lt=MAX_SUBMISSION_ATTEMPTS)
    ).order_by("created_at")

    stats = {"processed": 0, "submitted": 0, "failed": 0, "skipped": 0}
    for charge_id in retryable.values_list("pk", flat=True):
        stats["processed"] += 1
        charge = submit_charge(charge_id)
        if charge.status == BillingCharge.Status.SUBMITTED:
            stats["submitted"] += 1
        elif charge.status == BillingCharge.Status.SKIPPED:
            stats["skipped"] += 1
        else:
            stats["failed"] += 1

    if stats["processed"]:
        logger.info("Billing charge sweep finished: %s", stats)
    return stats


@shared_task(queue="maintenance")
def verify_token_ledgers(freeze: bool = True) -> Dict[str, int]:
    """Replay every unfrozen ledger and freeze the ones whose balance does not add up."""

    stats = {"checked": 0, "consistent": 0, "mismatched": 0}
    subscription_ids = TenantSubscription.objects.filter(debits_frozen=False).values_list("pk", flat=True)
    for subscription_id in subscription_ids.iterator():
        stats["checked"] += 1
        try:
            verify_ledger(subscription_id, freeze=freeze, actor="celery.verify_token_ledgers")
        except LedgerReplayMismatch:
            stats["mismatched"] += 1
            continue
        stats["consistent"] += 1

    if stats["mismatched"]:
        logger.error("Token ledger verification found %s mismatched ledger(s)", stats["mismatched"])
    else:
        logger.info("Token ledger verification finished: %s", stats)
    return stats
