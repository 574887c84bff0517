"""SQLAlchemy 2.0 ORM models for the Service Escrow engine.

Two tables:
    1. payments        One row per escrow transaction.
    2. payment_events  Append-only audit log of every engine mutation.

Design decisions:
    - UUIDs as primary keys.
    - Numeric(12, 2) for money (no floating point rounding errors).
    - JSON columns (JSONB on PostgreSQL) for the fee snapshot and audit context.
    - CHECK constraints on status and amount bounds at DB level.
    - ``version`` is the mapper's version counter: every UPDATE is
      conditional on the version that was read, so a lost race fails
      with StaleDataError instead of overwriting.
    - payment_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from service_escrow.domain.enums import PaymentStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. payments
# ---------------------------------------------------------------------------
class Payment(Base):
    """An escrow payment for one order between a client and a provider."""

    __tablename__ = "payments"

    # --- Primary Key ---
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Order ---
    order_ref: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Reference of the order (reply) this payment settles",
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Financials ---
    service_amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="Price of the service; the most the provider can receive",
    )
    protection_fee: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0.00"),
        comment="Platform-retained surcharge, never transferred",
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        comment="service_amount + protection_fee, charged to the client",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ron")
    transferred_amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0.00"),
    )
    refunded_amount: Mapped[Decimal] = mapped_column(
        Money,
        nullable=False,
        default=Decimal("0.00"),
    )
    fee_collected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    protection_fee_details: Mapped[dict | None] = mapped_column(
        JSONType,
        nullable=True,
        default=None,
        comment="Snapshot of the fee calculation used at intent creation",
    )

    # --- Status (guarded by PaymentStateMachine) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
    )

    # --- Parties ---
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Gateway references ---
    destination_account_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Provider's connected gateway account",
    )
    external_intent_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # --- Downstream ---
    service_task_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # --- Timestamps ---
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    # --- Optimistic concurrency ---
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # --- Table Constraints & Indexes ---
    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'ESCROWED', 'RELEASED', "
            "'FAILED', 'CANCELLED', 'REFUNDED', 'DISPUTED')",
            name="ck_payment_valid_status",
        ),
        CheckConstraint("service_amount > 0", name="ck_payment_positive_service"),
        CheckConstraint("protection_fee >= 0", name="ck_payment_fee_non_negative"),
        CheckConstraint(
            "transferred_amount >= 0 AND transferred_amount <= service_amount",
            name="ck_payment_transfer_bounds",
        ),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= total_amount",
            name="ck_payment_refund_bounds",
        ),
        Index("idx_payment_order_ref", "order_ref"),
        Index("idx_payment_status", "status"),
        Index("idx_payment_charge", "external_charge_id"),
        Index("idx_payment_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment id={self.id} status={self.status} "
            f"total={self.total_amount} {self.currency}>"
        )


# ---------------------------------------------------------------------------
# 2. payment_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class PaymentEvent(Base):
    """Immutable audit record of an engine mutation on a payment.

    This table is APPEND-ONLY. Money-movement rows carry the amounts and
    gateway ids needed for manual reconciliation.
    """

    __tablename__ = "payment_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="EventType enum value (e.g., PAYMENT_CAPTURED, ESCROW_RELEASED)",
    )
    old_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="Payment status before this event (null for creation)",
    )
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Who triggered this event (user id, webhook, or SYSTEM)",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
        comment="Amounts, gateway ids and reasons",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("idx_event_payment", "payment_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
event.listen(Payment, "before_update", _set_updated_at)
