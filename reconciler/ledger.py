from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from reconciler.stores import LedgerStore
from reconciler.types import PaymentEvent, ReconciliationOutcome


class ReconciliationLedger:
    """
    Append-only audit trail of reconciliation attempts, keyed by the payment's
    external reference.

    Only non-``error`` outcomes count as processed; ``error`` attempts stay in
    the trail but never block a retry.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        retry_base_delay_seconds: int = 30,
        retry_max_delay_seconds: int = 3600,
        retry_max_attempts: int = 8,
    ) -> None:
        self._store = store
        self._base_delay = timedelta(seconds=retry_base_delay_seconds)
        self._max_delay = timedelta(seconds=retry_max_delay_seconds)
        self._max_attempts = retry_max_attempts

    async def remember(self, event: PaymentEvent) -> None:
        await self._store.save_event(event)

    async def record(self, outcome: ReconciliationOutcome) -> None:
        await self._store.append(outcome)

    async def prior_outcome(self, external_reference: str) -> Optional[ReconciliationOutcome]:
        return await self._store.settled(external_reference)

    async def is_processed(self, external_reference: str) -> bool:
        return await self.prior_outcome(external_reference) is not None

    async def history(self, external_reference: str) -> list[ReconciliationOutcome]:
        return await self._store.history(external_reference)

    def retry_delay(self, attempts: int) -> timedelta:
        if attempts <= 1:
            return self._base_delay
        return min(self._base_delay * (2 ** (attempts - 1)), self._max_delay)

    async def due_for_retry(self, now: datetime, *, limit: int = 100) -> list[PaymentEvent]:
        due = []
        for item in await self._store.unsettled(limit, max_attempts=self._max_attempts):
            # без единой попытки: событие сохранено, но исход так и не записан
            if item.attempts and item.last_attempt_at is not None:
                if item.last_attempt_at + self.retry_delay(item.attempts) > now:
                    continue
            due.append(item.event)
        return due
