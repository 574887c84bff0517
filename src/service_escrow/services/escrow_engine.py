"""Escrow Engine: intent creation, capture, release, refund, cancellation.

This is the application layer that coordinates between:
    - Domain state machine (the only place transitions are validated)
    - Payment rules (preconditions and derived amounts)
    - The payment gateway (external side effects)
    - Repositories (data access) and the audit event log
    - Outbound events (order confirmation, tasks, notifications)

Every mutating operation follows the same shape:

    1. Read the payment and check the precondition (fail fast, no side effects).
    2. Call the gateway under a deadline. A timeout or error means no mutation.
    3. Open a transaction, re-read the payment under a row lock, re-check the
       precondition, validate the status change and write. The version
       column turns a lost race on lock-less back ends into a Conflict.
    4. After commit, publish best-effort outbound events.

Both the REST routes and webhook ingestion call into this engine, so the
same validator guards every status write. Public methods return a
``ServiceResult``; no exception escapes them.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm.exc import StaleDataError

from service_escrow.domain.collaborators import Notification
from service_escrow.domain.enums import (
    ErrorKind,
    EventType,
    GatewayIntentStatus,
    PaymentStatus,
)
from service_escrow.domain.exceptions import (
    ConcurrentUpdateError,
    DuplicatePaymentError,
    EscrowError,
    GatewayError,
    GatewayTimeoutError,
    InvalidAmountError,
    PayeeAccountNotFoundError,
    PaymentNotCancellableError,
    PaymentNotConfirmedError,
    PaymentNotFoundError,
    PaymentNotRefundableError,
    PaymentNotReleasableError,
    PersistenceError,
)
from service_escrow.domain.fees import (
    ProtectionFeeConfig,
    calculate_payment_breakdown,
)
from service_escrow.domain.metadata import IntentMetadata
from service_escrow.domain.money import ZERO, amounts_equal, to_minor_units, to_money
from service_escrow.domain.payment_rules import (
    DEFAULT_REFUND_WINDOW,
    can_be_cancelled,
    can_be_refunded,
    can_be_released,
    check_invariants,
    escrowed_amount,
    is_fully_processed,
    is_in_escrow,
    max_refundable,
    platform_revenue,
    provider_earnings,
    releasable_amount,
    status_description,
    validate_amounts,
)
from service_escrow.domain.policy import WEBHOOK_ACTOR, Actor, authorize
from service_escrow.domain.state_machine import (
    allowed_targets,
    can_transition,
    validate_transition,
)
from service_escrow.infrastructure.database.orm_models import Payment, PaymentEvent
from service_escrow.infrastructure.database.repositories import (
    PaymentEventRepository,
    PaymentRepository,
)
from service_escrow.logging_config import get_logger
from service_escrow.services.outbound_events import OutboundEvent, OutboundEventBus
from service_escrow.services.results import ServiceResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from service_escrow.domain.collaborators import (
        NotificationSink,
        OrderConfirmer,
        PayeeAccountResolver,
        ServiceTaskCreator,
    )
    from service_escrow.domain.gateway_protocol import PaymentGateway

logger = get_logger(__name__)

SYSTEM_ACTOR = Actor.system()

# Statuses after which a new intent for the same order and amounts is allowed
RETRYABLE_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})


# ---------------------------------------------------------------------------
# Result payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntentCreated:
    """What the client needs to complete payment, plus the echoed amounts."""

    payment_id: uuid.UUID
    intent_id: str
    client_secret: str
    destination_account_id: str
    service_amount: Decimal
    protection_fee: Decimal
    total_amount: Decimal
    currency: str
    fee_details: dict[str, Any] | None = None


@dataclass(frozen=True)
class PaymentStatusView:
    payment_id: uuid.UUID
    order_ref: str
    status: PaymentStatus
    status_description: str
    currency: str
    service_amount: Decimal
    protection_fee: Decimal
    total_amount: Decimal
    transferred_amount: Decimal
    refunded_amount: Decimal
    escrowed_amount: Decimal
    max_refundable: Decimal
    releasable_amount: Decimal
    platform_revenue: Decimal
    provider_earnings: Decimal
    is_in_escrow: bool
    can_be_released: bool
    can_be_refunded: bool
    can_be_cancelled: bool
    is_fully_processed: bool
    fee_collected: bool
    paid_at: datetime | None
    escrow_released_at: datetime | None
    refunded_at: datetime | None
    cancelled_at: datetime | None
    service_task_id: uuid.UUID | None
    allowed_transitions: list[str] = field(default_factory=list)
    fee_details: dict[str, Any] | None = None


class EscrowEngine:
    """Owns every status transition and amount invariant of a payment."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        payee_resolver: PayeeAccountResolver,
        order_confirmer: OrderConfirmer,
        task_creator: ServiceTaskCreator,
        notifier: NotificationSink,
        event_bus: OutboundEventBus | None = None,
        fee_config: ProtectionFeeConfig | None = None,
        default_currency: str = "ron",
        gateway_timeout: float = 15.0,
        refund_window: timedelta = DEFAULT_REFUND_WINDOW,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._payee_resolver = payee_resolver
        self._order_confirmer = order_confirmer
        self._task_creator = task_creator
        self._notifier = notifier
        self._event_bus = event_bus or OutboundEventBus()
        self._fee_config = fee_config or ProtectionFeeConfig()
        self._default_currency = default_currency.lower()
        self._gateway_timeout = gateway_timeout
        self._refund_window = refund_window
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def fee_config(self) -> ProtectionFeeConfig:
        return self._fee_config

    @property
    def event_bus(self) -> OutboundEventBus:
        return self._event_bus

    # ------------------------------------------------------------------
    # Intent creation
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        order_ref: str,
        service_amount: Decimal,
        protection_fee: Decimal | None = None,
        total_amount: Decimal | None = None,
        currency: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ServiceResult[IntentCreated]:
        """Open a gateway intent for an order and record a PENDING payment."""
        return await self._guarded(
            "create_payment_intent",
            order_ref,
            lambda: self._create_payment_intent(
                order_ref,
                service_amount,
                protection_fee,
                total_amount,
                currency,
                description,
                metadata,
                timeout,
            ),
        )

    async def _create_payment_intent(
        self,
        order_ref: str,
        service_amount: Decimal,
        protection_fee: Decimal | None,
        total_amount: Decimal | None,
        currency: str | None,
        description: str | None,
        metadata: dict[str, Any] | None,
        timeout: float | None,
    ) -> IntentCreated:
        # 1. Amounts: derive fee and total when the caller left them out
        service = to_money(service_amount)
        fee_details: dict[str, Any] | None = None
        if not protection_fee or not total_amount:
            breakdown = calculate_payment_breakdown(service, self._fee_config)
            fee, total = breakdown.protection_fee, breakdown.total_amount
            fee_details = breakdown.calculation.to_dict()
        else:
            fee, total = to_money(protection_fee), to_money(total_amount)
        validate_amounts(service, fee, total)

        # 2. Duplicate guard: same amounts as the order's latest live payment.
        # A FAILED or CANCELLED attempt never blocks paying the order again.
        async with self._session_factory() as session:
            latest = await PaymentRepository(session).get_latest_for_order(order_ref)
        if (
            latest is not None
            and PaymentStatus.from_stored(latest.status) not in RETRYABLE_STATUSES
            and amounts_equal(latest.service_amount, service)
            and amounts_equal(latest.total_amount, total)
        ):
            raise DuplicatePaymentError(order_ref)

        # 3. Payee account
        parties = await self._with_deadline(
            "resolve_payee", self._payee_resolver.resolve(order_ref), timeout
        )
        if not parties.destination_account_id:
            raise PayeeAccountNotFoundError(order_ref)

        intent_metadata = IntentMetadata.build(
            **{
                **(metadata or {}),
                "order_ref": order_ref,
                "destination_account_id": parties.destination_account_id,
                "service_amount": service,
                "protection_fee": fee,
                "client_id": parties.client_id,
                "provider_id": parties.provider_id,
            }
        )

        # 4. Gateway intent for the total
        payment_id = uuid.uuid4()
        payment_currency = (currency or self._default_currency).lower()
        handle = await self._with_deadline(
            "create_intent",
            self._gateway.create_intent(
                amount_minor=to_minor_units(total),
                currency=payment_currency,
                destination_account_id=parties.destination_account_id,
                metadata=intent_metadata.to_gateway(),
                description=description,
                idempotency_key=f"intent:{payment_id}",
            ),
            timeout,
        )

        # 5. Persist; on failure cancel the intent we just opened
        try:
            async with self._session_factory() as session, session.begin():
                payment = Payment(
                    id=payment_id,
                    order_ref=order_ref,
                    description=description,
                    service_amount=service,
                    protection_fee=fee,
                    total_amount=total,
                    currency=payment_currency,
                    transferred_amount=ZERO,
                    refunded_amount=ZERO,
                    fee_collected=False,
                    protection_fee_details=fee_details,
                    status=PaymentStatus.PENDING.value,
                    client_id=parties.client_id,
                    provider_id=parties.provider_id,
                    destination_account_id=parties.destination_account_id,
                    external_intent_id=handle.intent_id,
                )
                check_invariants(payment)
                await PaymentRepository(session).create(payment)
                await PaymentEventRepository(session).record(
                    payment_id=payment.id,
                    event_type=EventType.PAYMENT_CREATED,
                    old_status=None,
                    new_status=PaymentStatus.PENDING,
                    actor=parties.client_id or SYSTEM_ACTOR.actor_id,
                    metadata={
                        "intent_id": handle.intent_id,
                        "service_amount": str(service),
                        "protection_fee": str(fee),
                        "total_amount": str(total),
                    },
                )
        except Exception as exc:
            logger.error(
                "payment.persist_failed",
                order_ref=order_ref,
                intent_id=handle.intent_id,
                total_amount=str(total),
                error=str(exc),
            )
            await self._compensate_intent(handle.intent_id, timeout)
            raise PersistenceError(
                f"Could not record payment for order {order_ref}; intent cancelled"
            ) from exc

        logger.info(
            "payment.intent_created",
            payment_id=str(payment_id),
            order_ref=order_ref,
            intent_id=handle.intent_id,
            total_amount=str(total),
        )
        return IntentCreated(
            payment_id=payment_id,
            intent_id=handle.intent_id,
            client_secret=handle.client_secret,
            destination_account_id=parties.destination_account_id,
            service_amount=service,
            protection_fee=fee,
            total_amount=total,
            currency=payment_currency,
            fee_details=fee_details,
        )

    async def _compensate_intent(self, intent_id: str, timeout: float | None) -> None:
        try:
            await self._with_deadline(
                "cancel_intent", self._gateway.cancel_intent(intent_id), timeout
            )
        except Exception as exc:
            logger.error(
                "payment.compensation_failed",
                intent_id=intent_id,
                error=str(exc),
            )
            return
        logger.warning("payment.intent_compensated", intent_id=intent_id)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        intent_id: str,
        actor: Actor = SYSTEM_ACTOR,
        timeout: float | None = None,
    ) -> ServiceResult[Payment]:
        """Move a payment into escrow once the gateway reports success.

        Confirming an already escrowed payment returns it unchanged.
        """
        return await self._guarded(
            "confirm_payment",
            intent_id,
            lambda: self._confirm_payment(intent_id, actor, timeout),
        )

    async def _confirm_payment(
        self, intent_id: str, actor: Actor, timeout: float | None
    ) -> Payment:
        payment = await self._load_by_intent(intent_id)
        if PaymentStatus.from_stored(payment.status) is PaymentStatus.ESCROWED:
            return payment
        validate_transition(payment.status, PaymentStatus.ESCROWED)

        snapshot = await self._with_deadline(
            "fetch_intent", self._gateway.fetch_intent(intent_id), timeout
        )
        if snapshot.status != GatewayIntentStatus.SUCCEEDED:
            self._notify(
                payment,
                payment.client_id,
                "payment_failed",
                payment.total_amount,
                {"gateway_status": snapshot.status},
            )
            raise PaymentNotConfirmedError(intent_id, snapshot.status)

        try:
            payment, captured = await self._write_capture(intent_id, actor, snapshot.charge_id)
        except StaleDataError:
            # Another confirm or webhook delivery captured first
            payment = await self._load_by_intent(intent_id)
            if PaymentStatus.from_stored(payment.status) is not PaymentStatus.ESCROWED:
                raise
            logger.info(
                "payment.capture_already_recorded",
                payment_id=str(payment.id),
                intent_id=intent_id,
            )
            captured = False

        if captured:
            logger.info(
                "payment.captured",
                payment_id=str(payment.id),
                intent_id=intent_id,
                charge_id=snapshot.charge_id,
            )
            self._after_capture(payment)
        return payment

    async def _write_capture(
        self, intent_id: str, actor: Actor, charge_id: str | None
    ) -> tuple[Payment, bool]:
        async with self._session_factory() as session, session.begin():
            repo = PaymentRepository(session)
            locked = await repo.get_by_intent_id(intent_id, for_update=True)
            if locked is None:
                raise PaymentNotFoundError(intent_id)
            old_status = PaymentStatus.from_stored(locked.status)
            if old_status is PaymentStatus.ESCROWED:
                return locked, False
            locked.status = validate_transition(old_status, PaymentStatus.ESCROWED).value
            locked.paid_at = self._clock()
            locked.fee_collected = True
            locked.external_charge_id = charge_id
            check_invariants(locked)
            await repo.save(locked)
            await PaymentEventRepository(session).record(
                payment_id=locked.id,
                event_type=EventType.PAYMENT_CAPTURED,
                old_status=old_status,
                new_status=PaymentStatus.ESCROWED,
                actor=actor.actor_id,
                metadata={
                    "charge_id": charge_id,
                    "total_amount": str(locked.total_amount),
                },
            )
        return locked, True

    def _after_capture(self, payment: Payment) -> None:
        """Publish the best-effort side effects of a successful capture."""
        payment_id = str(payment.id)
        self._event_bus.publish(
            OutboundEvent("payment.captured.confirm_order", payment_id),
            lambda: self._order_confirmer.confirm_order(payment.order_ref, payment.id),
        )
        self._event_bus.publish(
            OutboundEvent("payment.captured.create_task", payment_id),
            lambda: self._create_and_link_task(payment.id, payment.order_ref),
        )
        self._notify(payment, payment.client_id, "payment_captured", payment.total_amount)
        self._notify(payment, payment.provider_id, "payment_escrowed", payment.service_amount)

    async def _create_and_link_task(self, payment_id: uuid.UUID, order_ref: str) -> None:
        task_id = await self._task_creator.create_task(order_ref, payment_id)
        async with self._session_factory() as session, session.begin():
            repo = PaymentRepository(session)
            payment = await repo.get_by_id(payment_id, for_update=True)
            if payment is None:
                raise PaymentNotFoundError(str(payment_id))
            payment.service_task_id = task_id
            await repo.save(payment)
            status = PaymentStatus.from_stored(payment.status)
            await PaymentEventRepository(session).record(
                payment_id=payment_id,
                event_type=EventType.SERVICE_TASK_LINKED,
                old_status=status,
                new_status=status,
                metadata={"service_task_id": str(task_id)},
            )
        logger.info("payment.task_linked", payment_id=str(payment_id), task_id=str(task_id))

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_payment(
        self,
        payment_id: uuid.UUID,
        actor: Actor = SYSTEM_ACTOR,
        reason: str | None = None,
        custom_amount: Decimal | None = None,
        timeout: float | None = None,
    ) -> ServiceResult[Payment]:
        """Transfer escrowed funds (the service amount by default) to the provider."""
        return await self._guarded(
            "release_payment",
            str(payment_id),
            lambda: self._release_payment(payment_id, actor, reason, custom_amount, timeout),
        )

    async def _release_payment(
        self,
        payment_id: uuid.UUID,
        actor: Actor,
        reason: str | None,
        custom_amount: Decimal | None,
        timeout: float | None,
    ) -> Payment:
        authorize("release_payment", actor)
        payment = await self._load(payment_id)
        if not can_be_released(payment):
            raise PaymentNotReleasableError(str(payment_id), payment.status)

        amount = to_money(custom_amount) if custom_amount is not None else payment.service_amount
        if amount <= 0 or amount > payment.service_amount:
            raise InvalidAmountError(
                f"Release amount must be in (0, {payment.service_amount}], got {amount}"
            )

        receipt = await self._with_deadline(
            "transfer",
            self._gateway.transfer(
                destination_account_id=payment.destination_account_id,
                amount_minor=to_minor_units(amount),
                currency=payment.currency,
                description=f"Escrow release for order {payment.order_ref}",
                metadata={
                    "payment_id": str(payment.id),
                    "payment_intent_id": payment.external_intent_id,
                    "transfer_reason": reason or "service_completed",
                },
                idempotency_key=f"transfer:{payment.id}",
            ),
            timeout,
        )

        reconciliation = {
            "payment_id": str(payment_id),
            "transfer_id": receipt.transfer_id,
            "amount": str(amount),
            "destination_account_id": payment.destination_account_id,
        }
        async with self._money_write("release", reconciliation) as session:
            repo = PaymentRepository(session)
            locked = await self._locked(repo, payment_id)
            if not can_be_released(locked):
                raise PaymentNotReleasableError(str(payment_id), locked.status)
            old_status = PaymentStatus.from_stored(locked.status)
            locked.status = validate_transition(old_status, PaymentStatus.RELEASED).value
            locked.escrow_released_at = self._clock()
            locked.transferred_amount = amount
            locked.external_transfer_id = receipt.transfer_id
            check_invariants(locked)
            await repo.save(locked)
            await PaymentEventRepository(session).record(
                payment_id=locked.id,
                event_type=EventType.ESCROW_RELEASED,
                old_status=old_status,
                new_status=PaymentStatus.RELEASED,
                actor=actor.actor_id,
                metadata={**reconciliation, "reason": reason},
            )
            payment = locked

        logger.info("payment.released", **reconciliation)
        self._notify(payment, payment.provider_id, "escrow_released", amount)
        self._notify(payment, payment.client_id, "escrow_released_to_provider", amount)
        return payment

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund_payment(
        self,
        payment_id: uuid.UUID,
        actor: Actor = SYSTEM_ACTOR,
        amount: Decimal | None = None,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> ServiceResult[Payment]:
        """Refund part or all of the remaining captured amount to the client."""
        return await self._guarded(
            "refund_payment",
            str(payment_id),
            lambda: self._refund_payment(payment_id, actor, amount, reason, timeout),
        )

    async def _refund_payment(
        self,
        payment_id: uuid.UUID,
        actor: Actor,
        amount: Decimal | None,
        reason: str | None,
        timeout: float | None,
    ) -> Payment:
        authorize("refund_payment", actor)
        payment = await self._load(payment_id)
        now = self._clock()
        if not can_be_refunded(payment, now=now, window=self._refund_window):
            raise PaymentNotRefundableError(str(payment_id), payment.status)

        refunded_before = to_money(payment.refunded_amount)
        remaining = to_money(payment.total_amount - refunded_before)
        refund_amount = to_money(amount) if amount is not None else remaining
        if refund_amount <= 0 or refund_amount > remaining:
            raise InvalidAmountError(
                f"Refund amount must be in (0, {remaining}], got {refund_amount}"
            )

        receipt = await self._with_deadline(
            "refund",
            self._gateway.refund(
                intent_id=payment.external_intent_id,
                amount_minor=to_minor_units(refund_amount),
                reason=reason,
                metadata={"payment_id": str(payment.id)},
                idempotency_key=f"refund:{payment.id}:{to_minor_units(refunded_before)}",
            ),
            timeout,
        )

        reconciliation = {
            "payment_id": str(payment_id),
            "refund_id": receipt.refund_id,
            "amount": str(refund_amount),
            "refunded_before": str(refunded_before),
        }
        async with self._money_write("refund", reconciliation) as session:
            repo = PaymentRepository(session)
            locked = await self._locked(repo, payment_id)
            if not can_be_refunded(locked, now=now, window=self._refund_window):
                raise PaymentNotRefundableError(str(payment_id), locked.status)
            if to_money(locked.refunded_amount) != refunded_before:
                raise ConcurrentUpdateError(str(payment_id))

            old_status = PaymentStatus.from_stored(locked.status)
            new_status = old_status
            locked.refunded_amount = to_money(refunded_before + refund_amount)
            locked.refunded_at = now
            locked.external_refund_id = receipt.refund_id
            fully_refunded = locked.refunded_amount >= locked.total_amount
            if fully_refunded:
                new_status = validate_transition(old_status, PaymentStatus.REFUNDED)
                locked.status = new_status.value
            check_invariants(locked)
            await repo.save(locked)
            await PaymentEventRepository(session).record(
                payment_id=locked.id,
                event_type=EventType.FULL_REFUND if fully_refunded else EventType.PARTIAL_REFUND,
                old_status=old_status,
                new_status=new_status,
                actor=actor.actor_id,
                metadata={**reconciliation, "reason": reason},
            )
            payment = locked

        logger.info("payment.refunded", fully_refunded=fully_refunded, **reconciliation)
        self._notify(
            payment, payment.client_id, "payment_refunded", refund_amount, {"reason": reason}
        )
        return payment

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_payment(
        self,
        payment_id: uuid.UUID,
        actor: Actor = SYSTEM_ACTOR,
        timeout: float | None = None,
    ) -> ServiceResult[Payment]:
        """Cancel a payment that has not been captured yet."""
        return await self._guarded(
            "cancel_payment",
            str(payment_id),
            lambda: self._cancel_payment(payment_id, actor, timeout),
        )

    async def _cancel_payment(
        self, payment_id: uuid.UUID, actor: Actor, timeout: float | None
    ) -> Payment:
        authorize("cancel_payment", actor)
        payment = await self._load(payment_id)
        if not can_be_cancelled(payment):
            raise PaymentNotCancellableError(str(payment_id), payment.status)

        await self._with_deadline(
            "cancel_intent", self._gateway.cancel_intent(payment.external_intent_id), timeout
        )

        reconciliation = {"payment_id": str(payment_id), "intent_id": payment.external_intent_id}
        async with self._money_write("cancel", reconciliation) as session:
            repo = PaymentRepository(session)
            locked = await self._locked(repo, payment_id)
            old_status = PaymentStatus.from_stored(locked.status)
            locked.status = validate_transition(old_status, PaymentStatus.CANCELLED).value
            locked.cancelled_at = self._clock()
            await repo.save(locked)
            await PaymentEventRepository(session).record(
                payment_id=locked.id,
                event_type=EventType.PAYMENT_CANCELLED,
                old_status=old_status,
                new_status=PaymentStatus.CANCELLED,
                actor=actor.actor_id,
                metadata=reconciliation,
            )
            payment = locked

        logger.info("payment.cancelled", **reconciliation)
        return payment

    # ------------------------------------------------------------------
    # Webhook entry points
    # ------------------------------------------------------------------

    async def record_intent_succeeded(self, intent_id: str) -> ServiceResult[Payment]:
        """Capture on ``payment_intent.succeeded``; a re-delivery is a no-op."""

        async def run() -> Payment:
            payment = await self._load_by_intent(intent_id)
            status = PaymentStatus.from_stored(payment.status)
            if status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                logger.info(
                    "webhook.capture_skipped",
                    payment_id=str(payment.id),
                    status=status.value,
                )
                return payment
            return await self._confirm_payment(intent_id, WEBHOOK_ACTOR, None)

        return await self._guarded("record_intent_succeeded", intent_id, run)

    async def record_intent_processing(self, intent_id: str) -> ServiceResult[Payment]:
        return await self._guarded(
            "record_intent_processing",
            intent_id,
            lambda: self._apply_webhook_transition(
                intent_id=intent_id,
                target=PaymentStatus.PROCESSING,
                event_type=EventType.PAYMENT_PROCESSING,
            ),
        )

    async def record_intent_failed(
        self, intent_id: str, reason: str | None = None
    ) -> ServiceResult[Payment]:
        """Mark a payment FAILED unless it already moved past the pending states."""

        def mutate(payment: Payment) -> None:
            payment.cancelled_at = self._clock()

        result = await self._guarded(
            "record_intent_failed",
            intent_id,
            lambda: self._apply_webhook_transition(
                intent_id=intent_id,
                target=PaymentStatus.FAILED,
                event_type=EventType.PAYMENT_FAILED,
                mutate=mutate,
                metadata={"reason": reason},
            ),
        )
        if result.success and result.data is not None:
            payment = result.data
            if PaymentStatus.from_stored(payment.status) is PaymentStatus.FAILED:
                self._notify(
                    payment,
                    payment.client_id,
                    "payment_failed",
                    payment.total_amount,
                    {"reason": reason},
                )
        return result

    async def record_intent_cancelled(self, intent_id: str) -> ServiceResult[Payment]:
        """Mirror a gateway-side cancellation locally (no gateway call)."""

        def mutate(payment: Payment) -> None:
            payment.cancelled_at = self._clock()

        return await self._guarded(
            "record_intent_cancelled",
            intent_id,
            lambda: self._apply_webhook_transition(
                intent_id=intent_id,
                target=PaymentStatus.CANCELLED,
                event_type=EventType.PAYMENT_CANCELLED,
                mutate=mutate,
            ),
        )

    async def record_dispute(
        self,
        charge_id: str,
        dispute_id: str | None = None,
        amount_minor: int | None = None,
        reason: str | None = None,
    ) -> ServiceResult[Payment]:
        """Mark the payment behind ``charge_id`` DISPUTED when the table allows it."""
        return await self._guarded(
            "record_dispute",
            charge_id,
            lambda: self._apply_webhook_transition(
                charge_id=charge_id,
                target=PaymentStatus.DISPUTED,
                event_type=EventType.DISPUTE_OPENED,
                metadata={
                    "dispute_id": dispute_id,
                    "amount_minor": amount_minor,
                    "reason": reason,
                },
            ),
        )

    async def _apply_webhook_transition(
        self,
        target: PaymentStatus,
        event_type: EventType,
        intent_id: str | None = None,
        charge_id: str | None = None,
        mutate: Callable[[Payment], None] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Payment:
        """Apply a purely local status change reported by the gateway.

        A change the transition table does not allow (duplicate or
        out-of-order delivery) leaves the payment untouched and succeeds.
        When a concurrent writer wins the race the change is re-evaluated
        once against the committed status.
        """
        try:
            return await self._write_webhook_transition(
                target, event_type, intent_id, charge_id, mutate, metadata
            )
        except StaleDataError:
            logger.info(
                "webhook.transition_retried",
                reference=intent_id or charge_id,
                target=target.value,
            )
            return await self._write_webhook_transition(
                target, event_type, intent_id, charge_id, mutate, metadata
            )

    async def _write_webhook_transition(
        self,
        target: PaymentStatus,
        event_type: EventType,
        intent_id: str | None,
        charge_id: str | None,
        mutate: Callable[[Payment], None] | None,
        metadata: dict[str, Any] | None,
    ) -> Payment:
        reference = intent_id or charge_id or ""
        async with self._session_factory() as session, session.begin():
            repo = PaymentRepository(session)
            if intent_id is not None:
                payment = await repo.get_by_intent_id(intent_id, for_update=True)
            else:
                payment = await repo.get_by_charge_id(reference, for_update=True)
            if payment is None:
                raise PaymentNotFoundError(reference)

            old_status = PaymentStatus.from_stored(payment.status)
            if not can_transition(old_status, target):
                logger.info(
                    "webhook.transition_skipped",
                    payment_id=str(payment.id),
                    status=old_status.value,
                    target=target.value,
                )
                return payment

            payment.status = validate_transition(old_status, target).value
            if mutate is not None:
                mutate(payment)
            await repo.save(payment)
            await PaymentEventRepository(session).record(
                payment_id=payment.id,
                event_type=event_type,
                old_status=old_status,
                new_status=target,
                actor=WEBHOOK_ACTOR.actor_id,
                metadata={"reference": reference, **(metadata or {})},
            )

        logger.info(
            "payment.status_changed",
            payment_id=str(payment.id),
            old_status=old_status.value,
            new_status=target.value,
            source="webhook",
        )
        return payment

    # ------------------------------------------------------------------
    # Read endpoints
    # ------------------------------------------------------------------

    async def get_payment_status(self, payment_id: uuid.UUID) -> ServiceResult[PaymentStatusView]:
        async def run() -> PaymentStatusView:
            return self.describe(await self._load(payment_id))

        return await self._guarded("get_payment_status", str(payment_id), run)

    async def get_payment_events(self, payment_id: uuid.UUID) -> ServiceResult[list[PaymentEvent]]:
        async def run() -> list[PaymentEvent]:
            async with self._session_factory() as session:
                if await PaymentRepository(session).get_by_id(payment_id) is None:
                    raise PaymentNotFoundError(str(payment_id))
                return await PaymentEventRepository(session).get_by_payment(payment_id)

        return await self._guarded("get_payment_events", str(payment_id), run)

    def describe(self, payment: Payment) -> PaymentStatusView:
        """Project a payment into its status view with all derived values."""
        now = self._clock()
        return PaymentStatusView(
            payment_id=payment.id,
            order_ref=payment.order_ref,
            status=PaymentStatus.from_stored(payment.status),
            status_description=status_description(payment.status),
            currency=payment.currency,
            service_amount=to_money(payment.service_amount),
            protection_fee=to_money(payment.protection_fee),
            total_amount=to_money(payment.total_amount),
            transferred_amount=to_money(payment.transferred_amount),
            refunded_amount=to_money(payment.refunded_amount),
            escrowed_amount=escrowed_amount(payment),
            max_refundable=max_refundable(payment, now=now, window=self._refund_window),
            releasable_amount=releasable_amount(payment),
            platform_revenue=platform_revenue(payment),
            provider_earnings=provider_earnings(payment),
            is_in_escrow=is_in_escrow(payment),
            can_be_released=can_be_released(payment),
            can_be_refunded=can_be_refunded(payment, now=now, window=self._refund_window),
            can_be_cancelled=can_be_cancelled(payment),
            is_fully_processed=is_fully_processed(payment),
            fee_collected=payment.fee_collected,
            paid_at=payment.paid_at,
            escrow_released_at=payment.escrow_released_at,
            refunded_at=payment.refunded_at,
            cancelled_at=payment.cancelled_at,
            service_task_id=payment.service_task_id,
            allowed_transitions=[s.value for s in allowed_targets(payment.status)],
            fee_details=payment.protection_fee_details,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        operation: str,
        reference: str,
        run: Callable[[], Awaitable[Any]],
    ) -> ServiceResult[Any]:
        """Run an operation and convert every failure into a ServiceResult."""
        try:
            data = await run()
        except EscrowError as exc:
            log = logger.warning if exc.kind is not ErrorKind.TECHNICAL_ERROR else logger.error
            log(
                "escrow.operation_failed",
                operation=operation,
                reference=reference,
                code=exc.code,
                error=exc.message,
            )
            return ServiceResult.from_error(exc)
        except StaleDataError:
            logger.warning("escrow.concurrent_update", operation=operation, reference=reference)
            return ServiceResult.from_error(ConcurrentUpdateError(reference))
        except Exception as exc:
            logger.exception(
                "escrow.unexpected_error",
                operation=operation,
                reference=reference,
                error=str(exc),
            )
            return ServiceResult.fail(
                f"Unexpected error during {operation}",
                "TECHNICAL_ERROR",
                ErrorKind.TECHNICAL_ERROR,
            )
        return ServiceResult.ok(data)

    async def _with_deadline(
        self, operation: str, call: Awaitable[Any], timeout: float | None
    ) -> Any:
        """Await an external call under a deadline; never assume success."""
        deadline = timeout if timeout is not None else self._gateway_timeout
        try:
            return await asyncio.wait_for(call, deadline)
        except TimeoutError:
            logger.error("gateway.timeout", operation=operation, timeout=deadline)
            raise GatewayTimeoutError(operation, deadline) from None
        except EscrowError:
            raise
        except Exception as exc:
            raise GatewayError(f"{operation} failed: {exc}") from exc

    def _money_write(self, operation: str, reconciliation: dict[str, Any]) -> _MoneyWrite:
        return _MoneyWrite(self._session_factory, operation, reconciliation)

    async def _load(self, payment_id: uuid.UUID) -> Payment:
        async with self._session_factory() as session:
            payment = await PaymentRepository(session).get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    async def _load_by_intent(self, intent_id: str) -> Payment:
        async with self._session_factory() as session:
            payment = await PaymentRepository(session).get_by_intent_id(intent_id)
        if payment is None:
            raise PaymentNotFoundError(intent_id)
        return payment

    @staticmethod
    async def _locked(repo: PaymentRepository, payment_id: uuid.UUID) -> Payment:
        payment = await repo.get_by_id(payment_id, for_update=True)
        if payment is None:
            raise PaymentNotFoundError(str(payment_id))
        return payment

    def _notify(
        self,
        payment: Payment,
        recipient_id: str | None,
        kind: str,
        amount: Decimal | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if not recipient_id:
            return
        notification = Notification(
            recipient_id=recipient_id,
            kind=kind,
            payment_id=str(payment.id),
            amount=amount,
            details=details or {},
        )
        self._event_bus.publish(
            OutboundEvent(f"notify.{kind}", str(payment.id), {"recipient_id": recipient_id}),
            lambda: self._notifier.send(notification),
        )


class _MoneyWrite:
    """Transaction for the local write that follows a successful gateway call.

    The money already moved, so any failure here is logged with the amounts
    and gateway ids for manual reconciliation before it propagates.
    Domain errors keep their kind; anything else becomes PERSISTENCE_FAILED.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        operation: str,
        reconciliation: dict[str, Any],
    ) -> None:
        self._session_factory = session_factory
        self._operation = operation
        self._reconciliation = reconciliation
        self._session: AsyncSession | None = None

    async def __aenter__(self) -> AsyncSession:
        self._session = self._session_factory()
        return self._session

    async def __aexit__(self, exc_type, exc, tb) -> bool:  # noqa: ANN001
        session = self._session
        assert session is not None
        try:
            if exc is None:
                try:
                    await session.commit()
                except Exception as commit_exc:
                    exc = commit_exc
                    await session.rollback()
            else:
                await session.rollback()
        finally:
            await session.close()

        if exc is None:
            return False

        logger.error(
            "payment.reconciliation_required",
            operation=self._operation,
            error=str(exc),
            **self._reconciliation,
        )
        if isinstance(exc, EscrowError):
            raise exc
        if isinstance(exc, StaleDataError):
            raise ConcurrentUpdateError(self._reconciliation["payment_id"]) from exc
        raise PersistenceError(
            f"{self._operation} succeeded at the gateway but could not be recorded"
        ) from exc
