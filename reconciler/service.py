from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from common.logger import Logger
from common.models import OutcomeStatus
from reconciler.config import MatchPolicy
from reconciler.errors import DuplicateOutcome, InvalidInput
from reconciler.ledger import ReconciliationLedger
from reconciler.resolution import ResolutionEngine, utc_now
from reconciler.scorer import MatchScorer
from reconciler.selector import CandidateSelector
from reconciler.stores import CollectionStore, DriverDirectory, LedgerStore, bounded
from reconciler.types import PaymentEvent, ReconciliationOutcome


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def validate_event(event: PaymentEvent) -> None:
    if not event.tenant_id:
        raise InvalidInput("payment event has no tenant")
    if not event.external_reference:
        raise InvalidInput("payment event has no external reference")
    if not isinstance(event.amount_minor, int) or event.amount_minor <= 0:
        raise InvalidInput(f"amount must be a positive number of minor units, got {event.amount_minor!r}")
    if not event.payer_phone:
        raise InvalidInput("payment event has no payer phone")
    if event.occurred_at is None or event.occurred_at.tzinfo is None:
        raise InvalidInput("occurred_at must be timezone-aware")


class ReconciliationService:
    def __init__(
        self,
        *,
        collections: CollectionStore,
        selector: CandidateSelector,
        scorer: MatchScorer,
        resolution: ResolutionEngine,
        ledger: ReconciliationLedger,
        policy: MatchPolicy,
        tenant_policies: Optional[dict[str, MatchPolicy]] = None,
        lookup_timeout_seconds: float = 5.0,
        retry_interval_seconds: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._collections = collections
        self._selector = selector
        self._scorer = scorer
        self._resolution = resolution
        self._ledger = ledger
        self._policy = policy
        self._tenant_policies = dict(tenant_policies or {})
        self._timeout = lookup_timeout_seconds
        self._retry_interval_seconds = retry_interval_seconds
        self._clock = clock
        self._locks = KeyedLocks()

    @classmethod
    def build(
        cls,
        *,
        collections: CollectionStore,
        directory: DriverDirectory,
        ledger_store: LedgerStore,
        policy: MatchPolicy,
        tenant_policies: Optional[dict[str, MatchPolicy]] = None,
        lookup_timeout_seconds: float = 5.0,
        retry_interval_seconds: int = 30,
        retry_base_delay_seconds: int = 30,
        retry_max_delay_seconds: int = 3600,
        retry_max_attempts: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ) -> ReconciliationService:
        return cls(
            collections=collections,
            selector=CandidateSelector(collections, lookup_timeout_seconds=lookup_timeout_seconds),
            scorer=MatchScorer(directory, lookup_timeout_seconds=lookup_timeout_seconds),
            resolution=ResolutionEngine(collections, lookup_timeout_seconds=lookup_timeout_seconds, clock=clock),
            ledger=ReconciliationLedger(
                ledger_store,
                retry_base_delay_seconds=retry_base_delay_seconds,
                retry_max_delay_seconds=retry_max_delay_seconds,
                retry_max_attempts=retry_max_attempts,
            ),
            policy=policy,
            tenant_policies=tenant_policies,
            lookup_timeout_seconds=lookup_timeout_seconds,
            retry_interval_seconds=retry_interval_seconds,
            clock=clock,
        )

    @property
    def ledger(self) -> ReconciliationLedger:
        return self._ledger

    def policy_for(self, tenant_id: str) -> MatchPolicy:
        return self._tenant_policies.get(tenant_id, self._policy)

    async def process(self, event: PaymentEvent) -> ReconciliationOutcome:
        """
        Reconcile one payment event. Raises only InvalidInput; every other
        failure comes back as an ``error`` outcome.
        """
        validate_event(event)
        policy = self.policy_for(event.tenant_id)

        with Logger.payment(event.external_reference):
            return await self._process(event, policy)

    async def _process(self, event: PaymentEvent, policy: MatchPolicy) -> ReconciliationOutcome:
        async with self._locks.hold(event.external_reference):
            try:
                prior = await self._ledger.prior_outcome(event.external_reference)
            except Exception as exc:
                Logger.exception("Ledger lookup failed: payment=%s", event.external_reference)
                return self._error(event, policy, exc)
            if prior is not None:
                Logger.info(
                    "Replay: payment=%s already %s",
                    event.external_reference,
                    prior.status.value,
                )
                return prior

            try:
                outcome = await self._run(event, policy)
            except Exception as exc:
                Logger.exception("Reconciliation failed: payment=%s", event.external_reference)
                outcome = self._error(event, policy, exc)

            return await self._record(event, outcome)

    async def _run(self, event: PaymentEvent, policy: MatchPolicy) -> ReconciliationOutcome:
        await self._ledger.remember(event)

        recovered = await self._recover(event, policy)
        if recovered is not None:
            return recovered

        candidates = await self._selector.select_candidates(event, policy)
        scores = await self._scorer.score_all(event, candidates, policy)
        return await self._resolution.resolve(event, scores, policy)

    async def _recover(self, event: PaymentEvent, policy: MatchPolicy) -> Optional[ReconciliationOutcome]:
        """
        Rebuild the outcome of an earlier attempt that changed collection state
        but never reached the ledger (crash, failed append, timed-out write).
        """
        # прошлый запуск успел занять запись, но не записал исход
        already = await bounded(
            self._collections.matched_to(event.tenant_id, event.external_reference),
            timeout=self._timeout,
            what="claim recovery lookup",
        )
        if already is not None:
            return ReconciliationOutcome(
                payment_ref=event.external_reference,
                tenant_id=event.tenant_id,
                status=OutcomeStatus.matched,
                decided_at=self._clock(),
                policy_version=policy.version,
                collection_ref=already.id,
                reason="recovered claim from an interrupted attempt",
            )

        # или успел пометить кандидатов как ambiguous
        flagged = await bounded(
            self._collections.flagged_for(event.tenant_id, event.external_reference),
            timeout=self._timeout,
            what="ambiguity recovery lookup",
        )
        if flagged:
            ids = tuple(sorted(c.id for c in flagged))
            Logger.warning("Recovered ambiguity flag: payment=%s candidates=%s", event.external_reference, ",".join(ids))
            return ReconciliationOutcome(
                payment_ref=event.external_reference,
                tenant_id=event.tenant_id,
                status=OutcomeStatus.ambiguous,
                decided_at=self._clock(),
                policy_version=policy.version,
                reason=f"recovered ambiguity flag on {len(ids)} collections from an interrupted attempt",
                candidate_refs=ids,
            )
        return None

    async def _record(self, event: PaymentEvent, outcome: ReconciliationOutcome) -> ReconciliationOutcome:
        try:
            await self._ledger.record(outcome)
        except DuplicateOutcome:
            try:
                prior = await self._ledger.prior_outcome(event.external_reference)
            except Exception:
                Logger.exception("Ledger lookup failed: payment=%s", event.external_reference)
                prior = None
            if prior is not None:
                Logger.info("Concurrent attempt settled payment=%s first", event.external_reference)
                return prior
            Logger.warning("Duplicate outcome without a prior record: payment=%s", event.external_reference)
        except Exception:
            Logger.exception("Ledger append failed: payment=%s", event.external_reference)

        Logger.info(
            "Payment %s: %s collection=%s score=%.3f (%s)",
            event.external_reference,
            outcome.status.value,
            outcome.collection_ref,
            outcome.score,
            outcome.reason,
        )
        return outcome

    def _error(self, event: PaymentEvent, policy: MatchPolicy, exc: Exception) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            payment_ref=event.external_reference,
            tenant_id=event.tenant_id,
            status=OutcomeStatus.error,
            decided_at=self._clock(),
            policy_version=policy.version,
            reason=f"{type(exc).__name__}: {exc}",
        )

    async def history(self, external_reference: str) -> list[ReconciliationOutcome]:
        return await self._ledger.history(external_reference)

    async def retry_pending(self, *, limit: int = 100) -> int:
        due = await self._ledger.due_for_retry(self._clock(), limit=limit)
        settled = 0
        for event in due:
            try:
                outcome = await self.process(event)
            except InvalidInput:
                Logger.exception("Stored payment %s is invalid, skipping", event.external_reference)
                continue
            if outcome.is_final:
                settled += 1
        if due:
            Logger.info("Retried %d payment(s), %d settled", len(due), settled)
        return settled

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        while stop_event is None or not stop_event.is_set():
            try:
                await self.retry_pending()
            except Exception:
                Logger.exception("Retry loop failed")
            if stop_event is None:
                await asyncio.sleep(self._retry_interval_seconds)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._retry_interval_seconds)
                except asyncio.TimeoutError:
                    pass
