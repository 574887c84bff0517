"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select

from service_escrow.infrastructure.database.orm_models import Payment, PaymentEvent

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from service_escrow.domain.enums import EventType, PaymentStatus


class PaymentRepository:
    """Data access for escrow payments.

    Lookups accept ``for_update=True`` to take a row lock (SELECT ... FOR
    UPDATE) for the rest of the caller's transaction. Back ends without
    row locks ignore it and rely on the version counter instead.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, payment: Payment) -> Payment:
        """Insert a new payment."""
        self._session.add(payment)
        await self._session.flush()
        return payment

    async def save(self, payment: Payment) -> Payment:
        """Flush pending changes; raises StaleDataError on a lost race."""
        await self._session.flush()
        return payment

    async def get_by_id(
        self, payment_id: uuid.UUID, for_update: bool = False
    ) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_intent_id(
        self, intent_id: str, for_update: bool = False
    ) -> Payment | None:
        stmt = select(Payment).where(Payment.external_intent_id == intent_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_charge_id(
        self, charge_id: str, for_update: bool = False
    ) -> Payment | None:
        stmt = select(Payment).where(Payment.external_charge_id == charge_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def get_latest_for_order(self, order_ref: str) -> Payment | None:
        """Fetch the most recently created payment for an order."""
        result = await self._session.execute(
            select(Payment)
            .where(Payment.order_ref == order_ref)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_created_between(
        self, start: datetime, end: datetime
    ) -> list[Payment]:
        """Fetch payments created in ``[start, end]``, oldest first."""
        result = await self._session.execute(
            select(Payment)
            .where(Payment.created_at >= start, Payment.created_at <= end)
            .order_by(Payment.created_at.asc())
        )
        return list(result.scalars().all())


class PaymentEventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        payment_id: uuid.UUID,
        event_type: EventType,
        old_status: PaymentStatus | None,
        new_status: PaymentStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> PaymentEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = PaymentEvent(
            payment_id=payment_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_payment(self, payment_id: uuid.UUID) -> list[PaymentEvent]:
        """Fetch all events for a payment in chronological order."""
        result = await self._session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.created_at.asc())
        )
        return list(result.scalars().all())
