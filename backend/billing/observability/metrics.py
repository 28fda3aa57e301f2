"""Prometheus metrics helpers for the token economy."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

BILLING_REQUEST_COUNT = Counter(
    "billing_request_total",
    "Number of billing API requests",
    labelnames=("endpoint", "method", "status"),
)

TOKEN_AUTHORIZATION_COUNT = Counter(
    "billing_token_authorization_total",
    "Consumption authorization decisions",
    labelnames=("outcome",),
)

TOKEN_AUTHORIZATION_LATENCY = Histogram(
    "billing_token_authorization_duration_seconds",
    "Latency of consumption authorization",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1),
)

TOKEN_DEBIT_CONFLICT_COUNT = Counter(
    "billing_token_debit_conflict_total",
    "Conditional debits that found the balance changed since it was read",
)

TOKEN_ROLLOVER_COUNT = Counter(
    "billing_token_rollover_total",
    "Period rollover attempts",
    labelnames=("outcome",),
)

INVOICING_FAILURE_COUNT = Counter(
    "billing_invoicing_failure_total",
    "Billing charges the invoicing provider rejected",
    labelnames=("kind",),
)

LEDGER_MISMATCH_COUNT = Counter(
    "billing_ledger_mismatch_total",
    "Ledger replays whose fold disagreed with the stored balance",
)
