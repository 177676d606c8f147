import enum
import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    Index,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class CollectionState(str, enum.Enum):
    open = "open"
    matched = "matched"
    ambiguous = "ambiguous"

    @property
    def label(self) -> str:
        return _STATE_LABELS[self]


_STATE_LABELS = {
    CollectionState.open: "Pending",
    CollectionState.matched: "Reconciled",
    CollectionState.ambiguous: "Needs Review",
}


class OutcomeStatus(str, enum.Enum):
    matched = "matched"
    not_matched = "not_matched"
    ambiguous = "ambiguous"
    error = "error"


def _str_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # varchar + CHECK вместо нативного типа: одинаково работает в postgres и sqlite
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        values_callable=lambda e: [m.value for m in e],
    )


class Driver(SQLModel, table=True):
    """Read-only here: rows are owned by the fleet CRUD layer."""

    __tablename__ = "drivers"

    id: str = Field(default_factory=_new_id, sa_column=Column(String(64), primary_key=True))
    tenant_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    full_name: str = Field(sa_column=Column(String(128), nullable=False))
    phone: str = Field(sa_column=Column(String(32), nullable=False))
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("true")),
    )

    created_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), nullable=False),
    )


class Collection(SQLModel, table=True):
    __tablename__ = "collections"
    __table_args__ = (
        Index("ix_collections_open_window", "tenant_id", "reconciliation_state", "recorded_at"),
    )

    id: str = Field(default_factory=_new_id, sa_column=Column(String(64), primary_key=True))
    tenant_id: str = Field(sa_column=Column(String(64), nullable=False))
    vehicle_id: str = Field(sa_column=Column(String(64), nullable=False))
    driver_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))

    business_date: date = Field(sa_column=Column(Date, nullable=False))
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

    # minor units (cents)
    amount_minor: int = Field(sa_column=Column(BigInteger, nullable=False))
    payment_method: str = Field(
        default="mpesa",
        sa_column=Column(String(16), nullable=False, server_default="mpesa"),
    )  # cash / mpesa / pochi
    mpesa_receipt: Optional[str] = Field(default=None, sa_column=Column(String(64)))

    reconciliation_state: CollectionState = Field(
        default=CollectionState.open,
        sa_column=Column(
            _str_enum(CollectionState, "collection_state"),
            nullable=False,
            server_default=CollectionState.open.value,
        ),
    )
    # один платёж закрывает не больше одной выручки
    matched_payment_ref: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), unique=True, nullable=True),
    )
    # платёж, из-за которого запись ушла в ambiguous; нужен для восстановления исхода
    flagged_by_payment_ref: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True),
    )
    reconciled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), nullable=False),
    )
    updated_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    )


class Payment(SQLModel, table=True):
    __tablename__ = "payment_events"

    id: str = Field(default_factory=_new_id, sa_column=Column(String(64), primary_key=True))

    external_reference: str = Field(sa_column=Column(String(64), unique=True, nullable=False))
    tenant_id: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    source: str = Field(default="mpesa", sa_column=Column(String(32), nullable=False))

    amount_minor: int = Field(sa_column=Column(BigInteger, nullable=False))
    payer_phone: str = Field(sa_column=Column(String(32), nullable=False))
    occurred_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    account_reference: Optional[str] = Field(default=None, sa_column=Column(String(64)))
    payer_name: Optional[str] = Field(default=None, sa_column=Column(String(128)))
    transaction_type: Optional[str] = Field(default=None, sa_column=Column(String(32)))
    business_short_code: Optional[str] = Field(default=None, sa_column=Column(String(16)))
    raw_data: Optional[dict] = Field(default=None, sa_column=Column(JsonColumn, nullable=True))

    created_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True),
    )

    def __repr__(self) -> str:
        return (
            f"Payment(ref={self.external_reference!r}, tenant={self.tenant_id!r}, "
            f"amount_minor={self.amount_minor}, occurred_at={self.occurred_at!r})"
        )


class ReconciliationLog(SQLModel, table=True):
    __tablename__ = "reconciliation_outcomes"
    __table_args__ = (
        # append-only; не-error исход по ссылке платежа может быть только один
        Index(
            "uq_reconciliation_outcomes_settled",
            "payment_ref",
            unique=True,
            postgresql_where=text("status <> 'error'"),
            sqlite_where=text("status <> 'error'"),
        ),
    )

    id: str = Field(default_factory=_new_id, sa_column=Column(String(64), primary_key=True))

    payment_ref: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    tenant_id: str = Field(sa_column=Column(String(64), nullable=False))
    collection_ref: Optional[str] = Field(default=None, sa_column=Column(String(64)))
    status: OutcomeStatus = Field(
        sa_column=Column(_str_enum(OutcomeStatus, "outcome_status"), nullable=False)
    )
    score: float = Field(default=0.0, sa_column=Column(Float, nullable=False))
    reason: str = Field(default="", sa_column=Column(Text, nullable=False))
    candidate_refs: list = Field(default_factory=list, sa_column=Column(JsonColumn, nullable=False))
    policy_version: str = Field(sa_column=Column(String(16), nullable=False))
    decided_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
