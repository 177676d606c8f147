from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from common.models import CollectionState, OutcomeStatus
from reconciler.errors import DuplicateOutcome, PaymentAlreadyApplied
from reconciler.types import (
    CollectionRecord,
    PaymentEvent,
    ReconciliationOutcome,
    UnsettledPayment,
)


class InMemoryCollectionStore:
    """Collection store kept in a dict. Used by tests and by embedders without a database."""

    def __init__(self, records: Iterable[CollectionRecord] = ()) -> None:
        self._records: dict[str, CollectionRecord] = {r.id: r for r in records}
        self.notes: dict[str, str] = {}
        self.claims: list[tuple[str, str]] = []

    def add(self, record: CollectionRecord) -> None:
        self._records[record.id] = record

    def get(self, collection_id: str) -> CollectionRecord:
        return self._records[collection_id]

    async def open_in_window(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        methods: Iterable[str],
    ) -> list[CollectionRecord]:
        allowed = set(methods)
        found = [
            r
            for r in self._records.values()
            if r.tenant_id == tenant_id
            and r.state is CollectionState.open
            and r.payment_method in allowed
            and start <= r.recorded_at <= end
        ]
        return sorted(found, key=lambda r: (r.recorded_at, r.id))

    async def claim(
        self,
        tenant_id: str,
        collection_id: str,
        *,
        payment_ref: str,
        reconciled_at: datetime,
    ) -> bool:
        record = self._records.get(collection_id)
        if record is None or record.tenant_id != tenant_id or record.state is not CollectionState.open:
            return False
        if any(r.matched_payment_ref == payment_ref for r in self._records.values()):
            raise PaymentAlreadyApplied(payment_ref)
        self._records[collection_id] = replace(
            record,
            state=CollectionState.matched,
            matched_payment_ref=payment_ref,
        )
        self.claims.append((collection_id, payment_ref))
        return True

    async def flag_ambiguous(
        self,
        tenant_id: str,
        collection_ids: Iterable[str],
        *,
        payment_ref: str,
        note: str,
    ) -> int:
        flagged = 0
        for cid in collection_ids:
            record = self._records.get(cid)
            if record is None or record.tenant_id != tenant_id or record.state is not CollectionState.open:
                continue
            self._records[cid] = replace(
                record,
                state=CollectionState.ambiguous,
                flagged_by_payment_ref=payment_ref,
            )
            self.notes[cid] = note
            flagged += 1
        return flagged

    async def matched_to(self, tenant_id: str, payment_ref: str) -> Optional[CollectionRecord]:
        for record in self._records.values():
            if record.tenant_id == tenant_id and record.matched_payment_ref == payment_ref:
                return record
        return None

    async def flagged_for(self, tenant_id: str, payment_ref: str) -> list[CollectionRecord]:
        return sorted(
            (
                r
                for r in self._records.values()
                if r.tenant_id == tenant_id
                and r.flagged_by_payment_ref == payment_ref
                and r.state is CollectionState.ambiguous
            ),
            key=lambda r: r.id,
        )


class InMemoryDriverDirectory:
    def __init__(self, phones: dict[tuple[str, str], str] | None = None) -> None:
        # (tenant_id, driver_id) -> нормализованный номер
        self._phones = dict(phones or {})

    def add(self, tenant_id: str, driver_id: str, phone: str) -> None:
        self._phones[(tenant_id, driver_id)] = phone

    async def drivers_for_phone(self, tenant_id: str, phone: str) -> frozenset[str]:
        return frozenset(
            driver_id
            for (tenant, driver_id), on_file in self._phones.items()
            if tenant == tenant_id and on_file == phone
        )


class InMemoryLedgerStore:
    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._clock = clock
        self.events: dict[str, PaymentEvent] = {}
        self.received_at: dict[str, datetime] = {}
        self.outcomes: list[ReconciliationOutcome] = []

    async def save_event(self, event: PaymentEvent) -> None:
        if event.external_reference in self.events:
            return
        self.events[event.external_reference] = event
        self.received_at[event.external_reference] = self._clock()

    async def append(self, outcome: ReconciliationOutcome) -> None:
        if outcome.is_final and await self.settled(outcome.payment_ref) is not None:
            raise DuplicateOutcome(outcome.payment_ref)
        self.outcomes.append(outcome)

    async def settled(self, payment_ref: str) -> Optional[ReconciliationOutcome]:
        for outcome in self.outcomes:
            if outcome.payment_ref == payment_ref and outcome.is_final:
                return outcome
        return None

    async def history(self, payment_ref: str) -> list[ReconciliationOutcome]:
        return sorted(
            (o for o in self.outcomes if o.payment_ref == payment_ref),
            key=lambda o: o.decided_at,
        )

    async def unsettled(self, limit: int, *, max_attempts: int) -> list[UnsettledPayment]:
        out = []
        for ref, event in self.events.items():
            history = await self.history(ref)
            if any(o.is_final for o in history):
                continue
            errors = [o for o in history if o.status is OutcomeStatus.error]
            if len(errors) >= max_attempts:
                continue
            last_at = errors[-1].decided_at if errors else self.received_at[ref]
            out.append(UnsettledPayment(event=event, attempts=len(errors), last_attempt_at=last_at))
            if len(out) >= limit:
                break
        return out
