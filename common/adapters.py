from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from common.models import (
    Collection,
    CollectionState,
    Driver,
    OutcomeStatus,
    Payment,
    ReconciliationLog,
)


class CollectionsAdapter:
    def __init__(self, session: AsyncSession):
        self.s = session

    async def open_in_window(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        methods: Iterable[str],
    ) -> list[Collection]:
        stmt = (
            select(Collection)
            .where(
                Collection.tenant_id == tenant_id,
                Collection.reconciliation_state == CollectionState.open,
                Collection.recorded_at >= start,
                Collection.recorded_at <= end,
                Collection.payment_method.in_(list(methods)),
            )
            .order_by(Collection.recorded_at.asc(), Collection.id.asc())
        )
        res = await self.s.execute(stmt)
        return list(res.scalars().all())

    async def claim(
        self,
        tenant_id: str,
        collection_id: str,
        payment_ref: str,
        reconciled_at: datetime,
    ) -> bool:
        # compare-and-swap: обновится только пока запись ещё open
        stmt = (
            update(Collection)
            .where(
                Collection.id == collection_id,
                Collection.tenant_id == tenant_id,
                Collection.reconciliation_state == CollectionState.open,
            )
            .values(
                reconciliation_state=CollectionState.matched,
                matched_payment_ref=payment_ref,
                mpesa_receipt=payment_ref,
                reconciled_at=reconciled_at,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.s.execute(stmt)
        await self.s.flush()
        return (res.rowcount or 0) > 0

    async def flag_ambiguous(
        self,
        tenant_id: str,
        collection_ids: Iterable[str],
        payment_ref: str,
        note: str,
    ) -> int:
        ids = list(collection_ids)
        if not ids:
            return 0
        stmt = (
            update(Collection)
            .where(
                Collection.id.in_(ids),
                Collection.tenant_id == tenant_id,
                Collection.reconciliation_state == CollectionState.open,
            )
            .values(
                reconciliation_state=CollectionState.ambiguous,
                flagged_by_payment_ref=payment_ref,
                notes=note,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.s.execute(stmt)
        await self.s.flush()
        return int(res.rowcount or 0)

    async def by_payment_ref(self, tenant_id: str, payment_ref: str) -> Optional[Collection]:
        res = await self.s.execute(
            select(Collection).where(
                Collection.tenant_id == tenant_id,
                Collection.matched_payment_ref == payment_ref,
            )
        )
        return res.scalar_one_or_none()

    async def flagged_by(self, tenant_id: str, payment_ref: str) -> list[Collection]:
        res = await self.s.execute(
            select(Collection)
            .where(
                Collection.tenant_id == tenant_id,
                Collection.flagged_by_payment_ref == payment_ref,
                Collection.reconciliation_state == CollectionState.ambiguous,
            )
            .order_by(Collection.id.asc())
        )
        return list(res.scalars().all())


class DriversAdapter:
    def __init__(self, session: AsyncSession):
        self.s = session

    async def active_for_tenant(self, tenant_id: str) -> list[Driver]:
        res = await self.s.execute(
            select(Driver).where(Driver.tenant_id == tenant_id, Driver.is_active.is_(True))
        )
        return list(res.scalars().all())


class PaymentsAdapter:
    def __init__(self, session: AsyncSession):
        self.s = session

    async def by_ref(self, external_reference: str) -> Optional[Payment]:
        res = await self.s.execute(
            select(Payment).where(Payment.external_reference == external_reference)
        )
        return res.scalar_one_or_none()

    async def add_if_absent(self, payment: Payment) -> Payment:
        existing = await self.by_ref(payment.external_reference)
        if existing:
            return existing
        self.s.add(payment)
        await self.s.flush()
        return payment


class OutcomesAdapter:
    def __init__(self, session: AsyncSession):
        self.s = session

    async def append(self, log: ReconciliationLog) -> ReconciliationLog:
        self.s.add(log)
        await self.s.flush()
        return log

    async def settled(self, payment_ref: str) -> Optional[ReconciliationLog]:
        res = await self.s.execute(
            select(ReconciliationLog)
            .where(
                ReconciliationLog.payment_ref == payment_ref,
                ReconciliationLog.status != OutcomeStatus.error,
            )
            .limit(1)
        )
        return res.scalar_one_or_none()

    async def history(self, payment_ref: str) -> list[ReconciliationLog]:
        res = await self.s.execute(
            select(ReconciliationLog)
            .where(ReconciliationLog.payment_ref == payment_ref)
            .order_by(ReconciliationLog.decided_at.asc())
        )
        return list(res.scalars().all())

    async def unsettled(self, limit: int, max_attempts: int) -> list[tuple[Payment, int, Optional[datetime]]]:
        """
        Платежи без финального исхода: только error-попытки или ни одной.
        """
        settled_refs = select(ReconciliationLog.payment_ref).where(
            ReconciliationLog.status != OutcomeStatus.error
        )
        errors = (
            select(
                ReconciliationLog.payment_ref.label("payment_ref"),
                func.count().label("attempts"),
                func.max(ReconciliationLog.decided_at).label("last_at"),
            )
            .where(ReconciliationLog.status == OutcomeStatus.error)
            .group_by(ReconciliationLog.payment_ref)
            .subquery()
        )
        stmt = (
            select(Payment, errors.c.attempts, errors.c.last_at)
            .outerjoin(errors, errors.c.payment_ref == Payment.external_reference)
            .where(
                Payment.external_reference.not_in(settled_refs),
                func.coalesce(errors.c.attempts, 0) < max_attempts,
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        res = await self.s.execute(stmt)
        return [(payment, int(attempts or 0), last_at) for payment, attempts, last_at in res.all()]


class DbAdapters:
    def __init__(self, session: AsyncSession):
        self.collections = CollectionsAdapter(session)
        self.drivers = DriversAdapter(session)
        self.payments = PaymentsAdapter(session)
        self.outcomes = OutcomesAdapter(session)
        self._s = session

    async def commit(self) -> None:
        await self._s.commit()

    async def rollback(self) -> None:
        await self._s.rollback()

    async def close(self) -> None:
        await self._s.close()
