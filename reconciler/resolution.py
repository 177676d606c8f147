from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from common.logger import Logger
from common.models import OutcomeStatus
from reconciler.config import MatchPolicy
from reconciler.errors import ConcurrentClaimLost
from reconciler.scorer import SCORE_PRECISION
from reconciler.stores import CollectionStore, bounded
from reconciler.types import PaymentEvent, ReconciliationOutcome, ScoreResult


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Decision:
    status: OutcomeStatus
    reason: str
    best: Optional[ScoreResult] = None
    contenders: tuple[ScoreResult, ...] = ()


def rank(scores: Iterable[ScoreResult]) -> list[ScoreResult]:
    # равные баллы упорядочиваем по id, чтобы результат не зависел от порядка выборки
    return sorted(scores, key=lambda s: (-s.value, s.collection_id))


class ResolutionEngine:
    def __init__(
        self,
        collections: CollectionStore,
        *,
        lookup_timeout_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._collections = collections
        self._timeout = lookup_timeout_seconds
        self._clock = clock

    @staticmethod
    def decide(scores: Iterable[ScoreResult], policy: MatchPolicy) -> Decision:
        ranked = rank(scores)
        if not ranked:
            return Decision(OutcomeStatus.not_matched, "no open collections in window")

        best = ranked[0]
        second = ranked[1].value if len(ranked) > 1 else 0.0

        if best.value < policy.accept_threshold:
            return Decision(
                OutcomeStatus.not_matched,
                f"best score {best.value:.3f} below threshold {policy.accept_threshold:.3f}",
                best=best,
            )

        floor = policy.accept_threshold - policy.ambiguity_margin
        gap = round(best.value - second, SCORE_PRECISION)
        tied = len(ranked) > 1 and second == best.value
        if tied or (gap < policy.ambiguity_margin and second >= floor):
            contenders = tuple(
                s
                for s in ranked
                if s.value == best.value
                or (s.value >= floor and round(best.value - s.value, SCORE_PRECISION) < policy.ambiguity_margin)
            )
            return Decision(
                OutcomeStatus.ambiguous,
                f"{len(contenders)} candidates within {policy.ambiguity_margin:.3f} of best score {best.value:.3f}",
                best=best,
                contenders=contenders,
            )

        return Decision(
            OutcomeStatus.matched,
            f"score {best.value:.3f}, runner-up {second:.3f}",
            best=best,
        )

    async def resolve(
        self,
        event: PaymentEvent,
        scores: Iterable[ScoreResult],
        policy: MatchPolicy,
    ) -> ReconciliationOutcome:
        remaining = list(scores)
        lost: list[str] = []

        while True:
            decision = self.decide(remaining, policy)
            reason = decision.reason
            if lost:
                reason += f"; lost concurrent claims on {', '.join(lost)}"

            if decision.status is OutcomeStatus.matched:
                try:
                    await self._claim(event, decision.best)
                except ConcurrentClaimLost as exc:
                    Logger.warning(
                        "Claim lost: payment=%s collection=%s, re-evaluating",
                        event.external_reference,
                        exc.collection_id,
                    )
                    lost.append(exc.collection_id)
                    remaining = [s for s in remaining if s.collection_id != exc.collection_id]
                    continue
                return self._outcome(event, decision, policy, reason)

            if decision.status is OutcomeStatus.ambiguous:
                await self._flag(event, decision)

            return self._outcome(event, decision, policy, reason)

    async def _claim(self, event: PaymentEvent, best: ScoreResult) -> None:
        claimed = await bounded(
            self._collections.claim(
                event.tenant_id,
                best.collection_id,
                payment_ref=event.external_reference,
                reconciled_at=self._clock(),
            ),
            timeout=self._timeout,
            what="collection claim",
        )
        if not claimed:
            raise ConcurrentClaimLost(best.collection_id)

    async def _flag(self, event: PaymentEvent, decision: Decision) -> None:
        ids = [s.collection_id for s in decision.contenders]
        flagged = await bounded(
            self._collections.flag_ambiguous(
                event.tenant_id,
                ids,
                payment_ref=event.external_reference,
                note=f"needs review: payment {event.external_reference} matches {len(ids)} collections",
            ),
            timeout=self._timeout,
            what="ambiguity flag",
        )
        Logger.warning(
            "Ambiguous payment=%s candidates=%s flagged=%d",
            event.external_reference,
            ",".join(ids),
            flagged,
        )

    def _outcome(
        self,
        event: PaymentEvent,
        decision: Decision,
        policy: MatchPolicy,
        reason: str,
    ) -> ReconciliationOutcome:
        matched = decision.status is OutcomeStatus.matched
        return ReconciliationOutcome(
            payment_ref=event.external_reference,
            tenant_id=event.tenant_id,
            status=decision.status,
            decided_at=self._clock(),
            policy_version=policy.version,
            collection_ref=decision.best.collection_id if matched else None,
            score=decision.best.value if decision.best is not None else 0.0,
            reason=reason,
            candidate_refs=tuple(s.collection_id for s in decision.contenders),
        )
