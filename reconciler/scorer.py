from __future__ import annotations

import math
from datetime import timedelta
from typing import Iterable, Optional

from reconciler.config import AMOUNT_WEIGHT, IDENTITY_WEIGHT, TIME_WEIGHT, MatchPolicy
from reconciler.stores import DriverDirectory, bounded
from reconciler.types import CollectionRecord, PaymentEvent, ScoreResult

SCORE_PRECISION = 6
UNKNOWN_IDENTITY = 0.5


def amount_tolerance(amount_minor: int, policy: MatchPolicy) -> int:
    by_percent = math.ceil(amount_minor * policy.amount_tolerance_percent / 100)
    return max(by_percent, policy.amount_tolerance_floor_minor)


def amount_signal(event_amount: int, expected_amount: int, policy: MatchPolicy) -> float:
    diff = abs(event_amount - expected_amount)
    if diff == 0:
        return 1.0
    tolerance = amount_tolerance(event_amount, policy)
    if diff >= tolerance:
        return 0.0
    return 1.0 - diff / tolerance


def identity_signal(driver_id: str, payer_driver_ids: Optional[frozenset[str]]) -> float:
    # номер не найден в справочнике: не штрафуем и не поощряем
    if not payer_driver_ids:
        return UNKNOWN_IDENTITY
    return 1.0 if driver_id in payer_driver_ids else 0.0


def time_signal(delta: timedelta, policy: MatchPolicy) -> float:
    """delta = recorded_at - occurred_at; negative when the collection was recorded first."""
    edge = policy.window_before if delta < timedelta(0) else policy.window_after
    distance = abs(delta)
    if distance == timedelta(0):
        return 1.0
    if edge <= timedelta(0) or distance >= edge:
        return 0.0
    return 1.0 - distance / edge


class MatchScorer:
    def __init__(self, directory: DriverDirectory, *, lookup_timeout_seconds: float) -> None:
        self._directory = directory
        self._timeout = lookup_timeout_seconds

    def score(
        self,
        event: PaymentEvent,
        candidate: CollectionRecord,
        policy: MatchPolicy,
        payer_driver_ids: Optional[frozenset[str]] = None,
    ) -> ScoreResult:
        breakdown = {
            "amount": amount_signal(event.amount_minor, candidate.amount_minor, policy),
            "identity": identity_signal(candidate.driver_id, payer_driver_ids),
            "time": time_signal(candidate.recorded_at - event.occurred_at, policy),
        }
        value = (
            AMOUNT_WEIGHT * breakdown["amount"]
            + IDENTITY_WEIGHT * breakdown["identity"]
            + TIME_WEIGHT * breakdown["time"]
        )
        return ScoreResult(
            collection=candidate,
            value=round(min(max(value, 0.0), 1.0), SCORE_PRECISION),
            breakdown={k: round(v, SCORE_PRECISION) for k, v in breakdown.items()},
        )

    async def score_all(
        self,
        event: PaymentEvent,
        candidates: Iterable[CollectionRecord],
        policy: MatchPolicy,
    ) -> list[ScoreResult]:
        candidates = list(candidates)
        if not candidates:
            return []

        payer_driver_ids = await bounded(
            self._directory.drivers_for_phone(event.tenant_id, event.payer_phone),
            timeout=self._timeout,
            what="driver lookup",
        )
        return [self.score(event, c, policy, frozenset(payer_driver_ids)) for c in candidates]
