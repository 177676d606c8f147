from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Iterable, Optional, Protocol, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.db import db_call
from common.models import Collection, Payment, ReconciliationLog
from reconciler.errors import (
    DuplicateOutcome,
    InvalidInput,
    LookupTimeout,
    LookupUnavailable,
    PaymentAlreadyApplied,
)
from reconciler.phones import normalize_phone
from reconciler.types import (
    CollectionRecord,
    PaymentEvent,
    ReconciliationOutcome,
    UnsettledPayment,
)

T = TypeVar("T")


class CollectionStore(Protocol):
    async def open_in_window(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        methods: Iterable[str],
    ) -> list[CollectionRecord]:
        ...

    async def claim(
        self,
        tenant_id: str,
        collection_id: str,
        *,
        payment_ref: str,
        reconciled_at: datetime,
    ) -> bool:
        ...

    async def flag_ambiguous(
        self,
        tenant_id: str,
        collection_ids: Iterable[str],
        *,
        payment_ref: str,
        note: str,
    ) -> int:
        ...

    async def matched_to(self, tenant_id: str, payment_ref: str) -> Optional[CollectionRecord]:
        ...

    async def flagged_for(self, tenant_id: str, payment_ref: str) -> list[CollectionRecord]:
        """Collections still ``ambiguous`` because of ``payment_ref``."""
        ...


class DriverDirectory(Protocol):
    async def drivers_for_phone(self, tenant_id: str, phone: str) -> frozenset[str]:
        """Driver ids owning ``phone`` in the tenant; empty when the phone is unknown."""
        ...


class LedgerStore(Protocol):
    async def save_event(self, event: PaymentEvent) -> None:
        ...

    async def append(self, outcome: ReconciliationOutcome) -> None:
        ...

    async def settled(self, payment_ref: str) -> Optional[ReconciliationOutcome]:
        ...

    async def history(self, payment_ref: str) -> list[ReconciliationOutcome]:
        ...

    async def unsettled(self, limit: int, *, max_attempts: int) -> list[UnsettledPayment]:
        ...


async def bounded(aw: Awaitable[T], *, timeout: float, what: str) -> T:
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise LookupTimeout(f"{what} timed out after {timeout:g}s") from exc


def as_utc(value: datetime) -> datetime:
    # sqlite отдаёт naive datetime, в базе всё хранится в UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def collection_from_row(row: Collection) -> CollectionRecord:
    return CollectionRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        amount_minor=int(row.amount_minor),
        driver_id=row.driver_id,
        vehicle_id=row.vehicle_id,
        recorded_at=as_utc(row.recorded_at),
        business_date=row.business_date,
        payment_method=row.payment_method,
        state=row.reconciliation_state,
        matched_payment_ref=row.matched_payment_ref,
        flagged_by_payment_ref=row.flagged_by_payment_ref,
    )


def event_from_row(row: Payment) -> PaymentEvent:
    return PaymentEvent(
        tenant_id=row.tenant_id,
        external_reference=row.external_reference,
        amount_minor=int(row.amount_minor),
        payer_phone=row.payer_phone,
        occurred_at=as_utc(row.occurred_at),
        account_reference=row.account_reference,
        payer_name=row.payer_name,
        source=row.source,
        transaction_type=row.transaction_type,
        business_short_code=row.business_short_code,
        raw_data=row.raw_data,
    )


def outcome_from_row(row: ReconciliationLog) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        payment_ref=row.payment_ref,
        tenant_id=row.tenant_id,
        status=row.status,
        decided_at=as_utc(row.decided_at),
        policy_version=row.policy_version,
        collection_ref=row.collection_ref,
        score=float(row.score),
        reason=row.reason,
        candidate_refs=tuple(row.candidate_refs or ()),
    )


class SqlCollectionStore:
    async def open_in_window(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        methods: Iterable[str],
    ) -> list[CollectionRecord]:
        start, end = as_utc(start), as_utc(end)
        try:
            rows = await db_call(
                lambda db: db.collections.open_in_window(tenant_id, start, end, list(methods))
            )
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"collection store: {exc}") from exc
        return [collection_from_row(r) for r in rows]

    async def claim(
        self,
        tenant_id: str,
        collection_id: str,
        *,
        payment_ref: str,
        reconciled_at: datetime,
    ) -> bool:
        try:
            return await db_call(
                lambda db: db.collections.claim(tenant_id, collection_id, payment_ref, as_utc(reconciled_at))
            )
        except IntegrityError as exc:
            raise PaymentAlreadyApplied(payment_ref) from exc
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"collection store: {exc}") from exc

    async def flag_ambiguous(
        self,
        tenant_id: str,
        collection_ids: Iterable[str],
        *,
        payment_ref: str,
        note: str,
    ) -> int:
        ids = list(collection_ids)
        try:
            return await db_call(lambda db: db.collections.flag_ambiguous(tenant_id, ids, payment_ref, note))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"collection store: {exc}") from exc

    async def matched_to(self, tenant_id: str, payment_ref: str) -> Optional[CollectionRecord]:
        try:
            row = await db_call(lambda db: db.collections.by_payment_ref(tenant_id, payment_ref))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"collection store: {exc}") from exc
        return collection_from_row(row) if row is not None else None

    async def flagged_for(self, tenant_id: str, payment_ref: str) -> list[CollectionRecord]:
        try:
            rows = await db_call(lambda db: db.collections.flagged_by(tenant_id, payment_ref))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"collection store: {exc}") from exc
        return [collection_from_row(r) for r in rows]


class SqlDriverDirectory:
    def __init__(self, *, default_country_code: str = "254") -> None:
        self._country_code = default_country_code

    async def drivers_for_phone(self, tenant_id: str, phone: str) -> frozenset[str]:
        try:
            drivers = await db_call(lambda db: db.drivers.active_for_tenant(tenant_id))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"driver directory: {exc}") from exc

        owners = set()
        for driver in drivers:
            try:
                on_file = normalize_phone(driver.phone, self._country_code)
            except InvalidInput:
                continue
            if on_file == phone:
                owners.add(driver.id)
        return frozenset(owners)


class SqlLedgerStore:
    async def save_event(self, event: PaymentEvent) -> None:
        payment = Payment(
            external_reference=event.external_reference,
            tenant_id=event.tenant_id,
            source=event.source,
            amount_minor=event.amount_minor,
            payer_phone=event.payer_phone,
            occurred_at=as_utc(event.occurred_at),
            account_reference=event.account_reference,
            payer_name=event.payer_name,
            transaction_type=event.transaction_type,
            business_short_code=event.business_short_code,
            raw_data=event.raw_data,
        )
        try:
            await db_call(lambda db: db.payments.add_if_absent(payment))
        except IntegrityError:
            # параллельная доставка того же уведомления уже сохранила событие
            return
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"ledger store: {exc}") from exc

    async def append(self, outcome: ReconciliationOutcome) -> None:
        log = ReconciliationLog(
            payment_ref=outcome.payment_ref,
            tenant_id=outcome.tenant_id,
            collection_ref=outcome.collection_ref,
            status=outcome.status,
            score=outcome.score,
            reason=outcome.reason,
            candidate_refs=list(outcome.candidate_refs),
            policy_version=outcome.policy_version,
            decided_at=as_utc(outcome.decided_at),
        )
        try:
            await db_call(lambda db: db.outcomes.append(log))
        except IntegrityError as exc:
            raise DuplicateOutcome(outcome.payment_ref) from exc
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"ledger store: {exc}") from exc

    async def settled(self, payment_ref: str) -> Optional[ReconciliationOutcome]:
        try:
            row = await db_call(lambda db: db.outcomes.settled(payment_ref))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"ledger store: {exc}") from exc
        return outcome_from_row(row) if row is not None else None

    async def history(self, payment_ref: str) -> list[ReconciliationOutcome]:
        try:
            rows = await db_call(lambda db: db.outcomes.history(payment_ref))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"ledger store: {exc}") from exc
        return [outcome_from_row(r) for r in rows]

    async def unsettled(self, limit: int, *, max_attempts: int) -> list[UnsettledPayment]:
        try:
            rows = await db_call(lambda db: db.outcomes.unsettled(limit, max_attempts))
        except SQLAlchemyError as exc:
            raise LookupUnavailable(f"ledger store: {exc}") from exc

        out = []
        for payment, attempts, last_at in rows:
            if last_at is None:
                last_at = payment.created_at
            out.append(
                UnsettledPayment(
                    event=event_from_row(payment),
                    attempts=attempts,
                    last_attempt_at=as_utc(last_at) if last_at is not None else None,
                )
            )
        return out
