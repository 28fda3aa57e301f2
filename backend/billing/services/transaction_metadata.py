"""Typed, versioned metadata payloads stored alongside token transactions."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional, Union

from billing.models import TokenTransaction

SCHEMA_VERSION = 1

TransactionType = TokenTransaction.TransactionType


@dataclass(frozen=True)
class ConsumeMetadata:
    pricing_version: int
    unit_cost: int
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AllocationMetadata:
    plan: str
    period_start: str
    period_end: str
    reason: str = "rollover"


@dataclass(frozen=True)
class RefillMetadata:
    source: str
    payment_reference: str = ""
    amount: str = ""
    currency: str = ""


@dataclass(frozen=True)
class BonusMetadata:
    reason: str
    granted_by: str = ""


# Reserved for the overage_charge type; the authorizer bills overage as a BillingCharge.
@dataclass(frozen=True)
class OverageMetadata:
    reason: str
    charge_reference: str = ""


@dataclass(frozen=True)
class PlanAdjustmentMetadata:
    from_plan: str
    to_plan: str
    days_remaining: int
    days_in_period: int
    prorated_price_difference: str


TransactionMetadata = Union[
    ConsumeMetadata,
    AllocationMetadata,
    RefillMetadata,
    BonusMetadata,
    OverageMetadata,
    PlanAdjustmentMetadata,
]

METADATA_TYPES = {
    TransactionType.CONSUME: ConsumeMetadata,
    TransactionType.ALLOCATION: AllocationMetadata,
    TransactionType.REFILL: RefillMetadata,
    TransactionType.BONUS: BonusMetadata,
    TransactionType.OVERAGE_CHARGE: OverageMetadata,
    TransactionType.PLAN_ADJUSTMENT: PlanAdjustmentMetadata,
}


def build_metadata(transaction_type: str, payload: Optional[TransactionMetadata]) -> Dict[str, Any]:
    """Serialise ``payload`` for storage, rejecting a payload of the wrong kind."""

    if payload is None:
        return {}
    expected = METADATA_TYPES[TransactionType(transaction_type)]
    if not isinstance(payload, expected):
        raise TypeError(
            f"{type(payload).__name__} cannot describe a '{transaction_type}' transaction; expected {expected.__name__}."
        )
    data = asdict(payload)
    data["kind"] = str(transaction_type)
    return data


def parse_metadata(transaction: TokenTransaction) -> Optional[TransactionMetadata]:
    """Restore the typed payload of a stored transaction."""

    if not transaction.metadata:
        return None
    payload_type = METADATA_TYPES[TransactionType(transaction.type)]
    known = {item.name for item in fields(payload_type)}
    values = {key: value for key, value in transaction.metadata.items() if key in known}
    return payload_type(**values)


__all__ = [
    "AllocationMetadata",
    "BonusMetadata",
    "ConsumeMetadata",
    "OverageMetadata",
    "PlanAdjustmentMetadata",
    "RefillMetadata",
    "SCHEMA_VERSION",
    "TransactionMetadata",
    "build_metadata",
    "parse_metadata",
]
