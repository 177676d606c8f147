from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from common.models import CollectionState, OutcomeStatus


@dataclass(frozen=True)
class PaymentEvent:
    tenant_id: str
    external_reference: str
    amount_minor: int
    payer_phone: str
    occurred_at: datetime
    account_reference: Optional[str] = None
    payer_name: Optional[str] = None
    source: str = "mpesa"
    transaction_type: Optional[str] = None
    business_short_code: Optional[str] = None
    # исходное тело уведомления, только для аудита
    raw_data: Optional[dict[str, Any]] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class CollectionRecord:
    id: str
    tenant_id: str
    amount_minor: int
    driver_id: str
    vehicle_id: str
    recorded_at: datetime
    business_date: Optional[date] = None
    payment_method: str = "mpesa"
    state: CollectionState = CollectionState.open
    matched_payment_ref: Optional[str] = None
    flagged_by_payment_ref: Optional[str] = None


@dataclass(frozen=True)
class ScoreResult:
    collection: CollectionRecord
    value: float
    breakdown: dict[str, float] = field(default_factory=dict)

    @property
    def collection_id(self) -> str:
        return self.collection.id


@dataclass(frozen=True)
class ReconciliationOutcome:
    payment_ref: str
    tenant_id: str
    status: OutcomeStatus
    decided_at: datetime
    policy_version: str
    collection_ref: Optional[str] = None
    score: float = 0.0
    reason: str = ""
    candidate_refs: tuple[str, ...] = ()

    @property
    def is_final(self) -> bool:
        return self.status is not OutcomeStatus.error

    def as_dict(self) -> dict[str, Any]:
        return {
            "payment_ref": self.payment_ref,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "collection_ref": self.collection_ref,
            "score": self.score,
            "reason": self.reason,
            "candidate_refs": list(self.candidate_refs),
            "policy_version": self.policy_version,
            "decided_at": self.decided_at.isoformat(),
        }


@dataclass(frozen=True)
class UnsettledPayment:
    event: PaymentEvent
    attempts: int
    last_attempt_at: Optional[datetime]
