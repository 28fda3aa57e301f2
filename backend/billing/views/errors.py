"""Maps token economy service errors onto API responses."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.response import Response

from billing.services.consumption import SubscriptionInactive
from billing.services.plan_change import PlanChangeError
from billing.services.pricing_catalog import UnknownActionType
from billing.services.token_ledger import IdempotencyConflict, LedgerFrozen, SubscriptionNotFound

logger = logging.getLogger(__name__)

SERVICE_ERRORS = (
    UnknownActionType,
    SubscriptionNotFound,
    SubscriptionInactive,
    LedgerFrozen,
    IdempotencyConflict,
    PlanChangeError,
)

ERROR_STATUS = (
    (UnknownActionType, status.HTTP_400_BAD_REQUEST, "unknown_action_type"),
    (SubscriptionNotFound, status.HTTP_404_NOT_FOUND, "subscription_not_found"),
    (SubscriptionInactive, status.HTTP_409_CONFLICT, "subscription_inactive"),
    (LedgerFrozen, status.HTTP_409_CONFLICT, "ledger_frozen"),
    (IdempotencyConflict, status.HTTP_409_CONFLICT, "idempotency_conflict"),
    (PlanChangeError, status.HTTP_400_BAD_REQUEST, "plan_change_rejected"),
)


def service_error_response(exc: Exception) -> Response:
    for error_type, http_status, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            logger.info("Token billing request rejected (%s): %s", code, exc)
            return Response({"detail": str(exc), "code": code}, status=http_status)
    raise exc
