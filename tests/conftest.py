"""Shared test fixtures for the Service Escrow test suite.

Provides:
    - An in-memory aiosqlite database with the schema created, plus a
      file-backed one for tests that need truly separate connections
    - FakeGateway / FakePlatform doubles that record every call
    - A controllable clock and a ready-made EscrowEngine
    - Helpers that drive a payment into a given state
"""

from __future__ import annotations

import asyncio
import itertools
import json
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from service_escrow.domain.collaborators import Notification, OrderParties
from service_escrow.domain.enums import ActorRole
from service_escrow.domain.exceptions import (
    GatewayError,
    MalformedWebhookError,
    PayeeAccountNotFoundError,
    PlatformServiceError,
    WebhookSignatureError,
)
from service_escrow.domain.fees import ProtectionFeeConfig
from service_escrow.domain.gateway_protocol import (
    IntentHandle,
    IntentSnapshot,
    RefundReceipt,
    TransferReceipt,
)
from service_escrow.domain.policy import Actor
from service_escrow.infrastructure.database.engine import build_session_factory
from service_escrow.infrastructure.database.orm_models import Base, Payment
from service_escrow.services.escrow_engine import EscrowEngine
from service_escrow.services.outbound_events import OutboundEventBus

VALID_SIGNATURE = "t=1,v1=valid"

ADMIN = Actor("admin-1", ActorRole.ADMIN)
CLIENT = Actor("client-1", ActorRole.CLIENT)
PROVIDER = Actor("provider-1", ActorRole.PROVIDER)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 10, 19, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway:
    """In-memory PaymentGateway.

    Records every call in ``calls``. Set ``failures[operation]`` to an
    exception to make that operation raise, or ``delays[operation]`` to a
    number of seconds to make it hang. Transfers and refunds are
    de-duplicated by idempotency key, like the real gateway.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.intent_status = "succeeded"
        self.intents: dict[str, dict[str, Any]] = {}
        self.cancelled: list[str] = []
        self._transfers: dict[str, TransferReceipt] = {}
        self._refunds: dict[str, RefundReceipt] = {}
        self._ids = itertools.count(1)

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    async def _enter(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if operation in self.delays:
            await asyncio.sleep(self.delays[operation])
        if operation in self.failures:
            raise self.failures[operation]

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        destination_account_id: str,
        metadata: dict[str, str],
        description: str | None,
        idempotency_key: str,
    ) -> IntentHandle:
        await self._enter(
            "create_intent",
            amount_minor=amount_minor,
            currency=currency,
            destination_account_id=destination_account_id,
            metadata=metadata,
            description=description,
            idempotency_key=idempotency_key,
        )
        intent_id = f"pi_{next(self._ids)}"
        self.intents[intent_id] = {"amount": amount_minor, "metadata": metadata}
        return IntentHandle(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    async def fetch_intent(self, intent_id: str) -> IntentSnapshot:
        await self._enter("fetch_intent", intent_id=intent_id)
        return IntentSnapshot(
            intent_id=intent_id,
            status=self.intent_status,
            charge_id=f"ch_{intent_id}",
            amount_minor=self.intents.get(intent_id, {}).get("amount"),
        )

    async def cancel_intent(self, intent_id: str) -> None:
        await self._enter("cancel_intent", intent_id=intent_id)
        self.cancelled.append(intent_id)

    async def transfer(
        self,
        destination_account_id: str,
        amount_minor: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> TransferReceipt:
        await self._enter(
            "transfer",
            destination_account_id=destination_account_id,
            amount_minor=amount_minor,
            currency=currency,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        if idempotency_key not in self._transfers:
            self._transfers[idempotency_key] = TransferReceipt(
                transfer_id=f"tr_{next(self._ids)}",
                amount_minor=amount_minor,
                destination_account_id=destination_account_id,
            )
        return self._transfers[idempotency_key]

    async def refund(
        self,
        intent_id: str,
        amount_minor: int,
        reason: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> RefundReceipt:
        await self._enter(
            "refund",
            intent_id=intent_id,
            amount_minor=amount_minor,
            reason=reason,
            idempotency_key=idempotency_key,
        )
        if idempotency_key not in self._refunds:
            self._refunds[idempotency_key] = RefundReceipt(
                refund_id=f"re_{next(self._ids)}", amount_minor=amount_minor
            )
        return self._refunds[idempotency_key]

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError()
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise MalformedWebhookError("Webhook body is not JSON") from exc
        if not isinstance(body, dict):
            raise MalformedWebhookError("Webhook body must be a JSON object")
        return body

    @property
    def unique_transfers(self) -> int:
        return len(self._transfers)


class FakePlatform:
    """Implements all four platform collaborator protocols in memory."""

    def __init__(self) -> None:
        self.parties: dict[str, OrderParties] = {}
        self.default_account: str | None = "acct_provider"
        self.confirmed: list[tuple[str, uuid.UUID]] = []
        self.tasks: list[tuple[str, uuid.UUID]] = []
        self.notifications: list[Notification] = []
        self.fail_confirm = False
        self.fail_tasks = False

    async def resolve(self, order_ref: str) -> OrderParties:
        if order_ref in self.parties:
            return self.parties[order_ref]
        if order_ref.startswith("missing"):
            raise PayeeAccountNotFoundError(order_ref)
        return OrderParties(
            order_ref=order_ref,
            client_id="client-1",
            provider_id="provider-1",
            destination_account_id=self.default_account,
        )

    async def confirm_order(self, order_ref: str, payment_id: uuid.UUID) -> None:
        if self.fail_confirm:
            raise PlatformServiceError("confirm_order", "HTTP 500")
        self.confirmed.append((order_ref, payment_id))

    async def create_task(self, order_ref: str, payment_id: uuid.UUID) -> uuid.UUID:
        if self.fail_tasks:
            raise PlatformServiceError("create_task", "HTTP 503")
        self.tasks.append((order_ref, payment_id))
        return uuid.uuid5(uuid.NAMESPACE_URL, f"task/{payment_id}")

    async def send(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def notification_kinds(self) -> list[str]:
        return [n.kind for n in self.notifications]


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def file_db_engine(tmp_path):
    """File-backed SQLite database; every session gets its own connection."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def file_session_factory(file_db_engine):
    return build_session_factory(file_db_engine)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fee_config() -> ProtectionFeeConfig:
    return ProtectionFeeConfig()


def build_engine(session_factory, gateway, platform, clock, fee_config) -> EscrowEngine:
    return EscrowEngine(
        session_factory=session_factory,
        gateway=gateway,
        payee_resolver=platform,
        order_confirmer=platform,
        task_creator=platform,
        notifier=platform,
        event_bus=OutboundEventBus(),
        fee_config=fee_config,
        gateway_timeout=0.5,
        clock=clock,
    )


@pytest.fixture
def engine(session_factory, gateway, platform, clock, fee_config) -> EscrowEngine:
    return build_engine(session_factory, gateway, platform, clock, fee_config)


@pytest.fixture
def file_backed_engine(
    file_session_factory, gateway, platform, clock, fee_config
) -> EscrowEngine:
    return build_engine(file_session_factory, gateway, platform, clock, fee_config)


# ---------------------------------------------------------------------------
# State helpers
# ---------------------------------------------------------------------------


async def create_pending(
    engine: EscrowEngine,
    order_ref: str = "order-1",
    service_amount: str = "100.00",
) -> uuid.UUID:
    """Open an intent and return the new payment's id."""
    result = await engine.create_payment_intent(order_ref, Decimal(service_amount))
    assert result.success, result.error
    return result.data.payment_id


async def create_escrowed(
    engine: EscrowEngine,
    order_ref: str = "order-1",
    service_amount: str = "100.00",
) -> Payment:
    """Open an intent, capture it and wait for the post-capture events."""
    created = await engine.create_payment_intent(order_ref, Decimal(service_amount))
    assert created.success, created.error
    confirmed = await engine.confirm_payment(created.data.intent_id)
    assert confirmed.success, confirmed.error
    await engine.event_bus.drain()
    return confirmed.data


async def load_payment(session_factory, payment_id: uuid.UUID) -> Payment:
    async with session_factory() as session:
        payment = await session.get(Payment, payment_id)
    assert payment is not None
    return payment


@pytest.fixture
def gateway_error() -> GatewayError:
    return GatewayError("card_declined", gateway_code="card_declined")
