"""Tests for the EscrowEngine against an in-memory database and fake gateway."""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal

import pytest
from conftest import (
    ADMIN,
    CLIENT,
    PROVIDER,
    create_escrowed,
    create_pending,
    load_payment,
)
from sqlalchemy.orm.exc import StaleDataError

from service_escrow.domain.enums import ErrorKind
from service_escrow.domain.exceptions import InsufficientPlatformFundsError
from service_escrow.domain.gateway_protocol import IntentHandle
from service_escrow.domain.payment_rules import check_invariants
from service_escrow.infrastructure.database.repositories import PaymentRepository


async def _event_types(engine, payment_id: uuid.UUID) -> list[str]:
    result = await engine.get_payment_events(payment_id)
    assert result.success
    return [e.event_type for e in result.data]


# ---------------------------------------------------------------------------
# create_payment_intent
# ---------------------------------------------------------------------------


class TestCreatePaymentIntent:
    @pytest.mark.asyncio
    async def test_derives_fee_and_opens_intent(self, engine, gateway, session_factory) -> None:
        result = await engine.create_payment_intent("order-1", Decimal("100.00"))

        assert result.success
        created = result.data
        assert created.protection_fee == Decimal("10.00")
        assert created.total_amount == Decimal("110.00")
        assert created.client_secret == f"{created.intent_id}_secret"
        assert created.destination_account_id == "acct_provider"
        assert created.fee_details["final_fee"] == "10.00"

        (call,) = gateway.calls_to("create_intent")
        assert call["amount_minor"] == 11000
        assert call["currency"] == "ron"
        assert call["idempotency_key"] == f"intent:{created.payment_id}"
        assert call["metadata"]["order_ref"] == "order-1"
        assert call["metadata"]["client_id"] == "client-1"

        payment = await load_payment(session_factory, created.payment_id)
        assert payment.status == "PENDING"
        assert payment.external_intent_id == created.intent_id
        assert payment.protection_fee_details["justification"] == "10% of service amount"
        assert payment.version == 1
        assert await _event_types(engine, created.payment_id) == ["PAYMENT_CREATED"]

    @pytest.mark.asyncio
    async def test_minimum_fee_applied(self, engine) -> None:
        result = await engine.create_payment_intent("order-1", Decimal("40"))
        assert result.data.protection_fee == Decimal("5.00")
        assert result.data.total_amount == Decimal("45.00")
        assert "minimum 5.00 applied" in result.data.fee_details["justification"]

    @pytest.mark.asyncio
    async def test_explicit_amounts_are_kept(self, engine) -> None:
        result = await engine.create_payment_intent(
            "order-1", Decimal("100"), Decimal("7.50"), Decimal("107.50")
        )
        assert result.success
        assert result.data.protection_fee == Decimal("7.50")
        assert result.data.fee_details is None

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_conflict(self, engine, gateway) -> None:
        result = await engine.create_payment_intent(
            "order-1", Decimal("100"), Decimal("10"), Decimal("115")
        )
        assert result.error_kind is ErrorKind.CONFLICT
        assert result.error_code == "AMOUNT_MISMATCH"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_non_positive_service_is_invalid(self, engine, gateway) -> None:
        result = await engine.create_payment_intent("order-1", Decimal("0"))
        assert result.error_kind is ErrorKind.INVALID
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_amounts_for_same_order(self, engine, gateway) -> None:
        await create_pending(engine, "order-1")

        duplicate = await engine.create_payment_intent("order-1", Decimal("100.00"))
        assert duplicate.error_kind is ErrorKind.CONFLICT
        assert duplicate.error_code == "DUPLICATE_PAYMENT"

        different = await engine.create_payment_intent("order-1", Decimal("120.00"))
        assert different.success
        assert len(gateway.calls_to("create_intent")) == 2

    @pytest.mark.asyncio
    async def test_same_amounts_allowed_after_failure(self, engine, session_factory) -> None:
        payment_id = await create_pending(engine, "order-9")
        intent_id = (await load_payment(session_factory, payment_id)).external_intent_id
        await engine.record_intent_failed(intent_id, reason="card_declined")

        retry = await engine.create_payment_intent("order-9", Decimal("100.00"))

        assert retry.success, retry.error
        assert retry.data.payment_id != payment_id

    @pytest.mark.asyncio
    async def test_same_amounts_allowed_after_cancel(self, engine) -> None:
        payment_id = await create_pending(engine, "order-9")
        cancelled = await engine.cancel_payment(payment_id, actor=CLIENT)
        assert cancelled.success

        retry = await engine.create_payment_intent("order-9", Decimal("100.00"))

        assert retry.success, retry.error

    @pytest.mark.asyncio
    async def test_escrowed_payment_still_blocks_duplicate(self, engine) -> None:
        await create_escrowed(engine, "order-9")
        duplicate = await engine.create_payment_intent("order-9", Decimal("100.00"))
        assert duplicate.error_code == "DUPLICATE_PAYMENT"

    @pytest.mark.asyncio
    async def test_missing_payee_account(self, engine, platform, gateway) -> None:
        platform.default_account = None
        result = await engine.create_payment_intent("order-1", Decimal("100"))
        assert result.error_kind is ErrorKind.NOT_FOUND
        assert result.error_code == "PAYEE_ACCOUNT_NOT_FOUND"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_metadata_key_is_invalid(self, engine, gateway) -> None:
        result = await engine.create_payment_intent(
            "order-1", Decimal("100"), metadata={"customer_email": "a@b.c"}
        )
        assert result.error_kind is ErrorKind.INVALID
        assert result.error_code == "INVALID_METADATA"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_gateway_timeout_leaves_no_record(
        self, engine, gateway, session_factory
    ) -> None:
        gateway.delays["create_intent"] = 1.0
        result = await engine.create_payment_intent("order-1", Decimal("100"), timeout=0.05)

        assert result.error_kind is ErrorKind.TECHNICAL_ERROR
        assert result.error_code == "GATEWAY_TIMEOUT"
        del gateway.delays["create_intent"]
        retry = await engine.create_payment_intent("order-1", Decimal("100"))
        assert retry.success

    @pytest.mark.asyncio
    async def test_persistence_failure_cancels_the_intent(
        self, engine, gateway, monkeypatch
    ) -> None:
        async def same_intent(**kwargs) -> IntentHandle:
            gateway.calls.append(("create_intent", kwargs))
            return IntentHandle(intent_id="pi_same", client_secret="secret")

        monkeypatch.setattr(gateway, "create_intent", same_intent)
        first = await engine.create_payment_intent("order-1", Decimal("100"))
        assert first.success

        # Unique intent id collides on insert
        second = await engine.create_payment_intent("order-2", Decimal("100"))
        assert second.error_kind is ErrorKind.TECHNICAL_ERROR
        assert second.error_code == "PERSISTENCE_FAILED"
        assert gateway.cancelled == ["pi_same"]


# ---------------------------------------------------------------------------
# confirm_payment
# ---------------------------------------------------------------------------


class TestConfirmPayment:
    @pytest.mark.asyncio
    async def test_capture_moves_to_escrow(self, engine, platform, clock) -> None:
        payment = await create_escrowed(engine)

        assert payment.status == "ESCROWED"
        assert payment.paid_at == clock.now
        assert payment.fee_collected is True
        assert payment.external_charge_id == f"ch_{payment.external_intent_id}"
        check_invariants(payment)

        assert platform.confirmed == [("order-1", payment.id)]
        assert platform.tasks == [("order-1", payment.id)]
        kinds = platform.notification_kinds()
        assert "payment_captured" in kinds
        assert "payment_escrowed" in kinds

    @pytest.mark.asyncio
    async def test_task_id_is_linked(self, engine, session_factory) -> None:
        payment = await create_escrowed(engine)

        stored = await load_payment(session_factory, payment.id)
        assert stored.service_task_id == uuid.uuid5(uuid.NAMESPACE_URL, f"task/{payment.id}")
        assert await _event_types(engine, payment.id) == [
            "PAYMENT_CREATED",
            "PAYMENT_CAPTURED",
            "SERVICE_TASK_LINKED",
        ]

    @pytest.mark.asyncio
    async def test_second_confirm_is_a_no_op(self, engine, platform) -> None:
        payment = await create_escrowed(engine)

        again = await engine.confirm_payment(payment.external_intent_id)
        await engine.event_bus.drain()

        assert again.success
        assert again.data.status == "ESCROWED"
        assert len(platform.tasks) == 1

    @pytest.mark.asyncio
    async def test_unsuccessful_intent(self, engine, gateway, platform, session_factory) -> None:
        payment_id = await create_pending(engine)
        payment = await load_payment(session_factory, payment_id)
        gateway.intent_status = "requires_payment_method"

        result = await engine.confirm_payment(payment.external_intent_id)
        await engine.event_bus.drain()

        assert result.error_kind is ErrorKind.TECHNICAL_ERROR
        assert result.error_code == "PAYMENT_NOT_CONFIRMED"
        assert (await load_payment(session_factory, payment_id)).status == "PENDING"
        assert platform.notification_kinds() == ["payment_failed"]
        assert platform.tasks == []

    @pytest.mark.asyncio
    async def test_unknown_intent(self, engine) -> None:
        result = await engine.confirm_payment("pi_missing")
        assert result.error_kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_downstream_failures_do_not_roll_back(
        self, engine, platform, session_factory
    ) -> None:
        platform.fail_confirm = True
        platform.fail_tasks = True

        payment = await create_escrowed(engine)

        stored = await load_payment(session_factory, payment.id)
        assert stored.status == "ESCROWED"
        assert stored.service_task_id is None
        assert "payment_captured" in platform.notification_kinds()

    @pytest.mark.asyncio
    async def test_cannot_capture_cancelled(self, engine, gateway, session_factory) -> None:
        payment_id = await create_pending(engine)
        await engine.cancel_payment(payment_id, actor=CLIENT)
        payment = await load_payment(session_factory, payment_id)

        result = await engine.confirm_payment(payment.external_intent_id)

        assert result.error_kind is ErrorKind.CANNOT_UPDATE
        assert gateway.calls_to("fetch_intent") == []


# ---------------------------------------------------------------------------
# release_payment
# ---------------------------------------------------------------------------


class TestReleasePayment:
    @pytest.mark.asyncio
    async def test_release_service_amount(self, engine, gateway, clock) -> None:
        payment = await create_escrowed(engine)

        result = await engine.release_payment(payment.id, actor=CLIENT, reason="done")

        assert result.success
        released = result.data
        assert released.status == "RELEASED"
        assert released.transferred_amount == Decimal("100.00")
        assert released.escrow_released_at == clock.now
        check_invariants(released)

        (call,) = gateway.calls_to("transfer")
        assert call["amount_minor"] == 10000
        assert call["destination_account_id"] == "acct_provider"
        assert call["idempotency_key"] == f"transfer:{payment.id}"
        assert call["metadata"]["transfer_reason"] == "done"

        status = (await engine.get_payment_status(payment.id)).data
        assert status.platform_revenue == Decimal("10.00")
        assert status.can_be_released is False
        assert status.max_refundable == Decimal("110.00")
        assert status.provider_earnings == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_double_release(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)

        first = await engine.release_payment(payment.id, actor=CLIENT)
        second = await engine.release_payment(payment.id, actor=CLIENT)

        assert first.success
        assert second.error_kind is ErrorKind.CANNOT_UPDATE
        assert second.error_code == "PAYMENT_NOT_RELEASABLE"
        assert len(gateway.calls_to("transfer")) == 1

    @pytest.mark.asyncio
    async def test_custom_amount(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)

        result = await engine.release_payment(
            payment.id, actor=ADMIN, custom_amount=Decimal("60")
        )

        assert result.data.transferred_amount == Decimal("60.00")
        assert gateway.calls_to("transfer")[0]["amount_minor"] == 6000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "100.01"])
    async def test_amount_out_of_range(self, engine, gateway, amount: str) -> None:
        payment = await create_escrowed(engine)

        result = await engine.release_payment(
            payment.id, actor=CLIENT, custom_amount=Decimal(amount)
        )

        assert result.error_kind is ErrorKind.INVALID
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_provider_may_not_release(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)

        result = await engine.release_payment(payment.id, actor=PROVIDER)

        assert result.error_kind is ErrorKind.FORBIDDEN
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_pending_is_not_releasable(self, engine, gateway) -> None:
        payment_id = await create_pending(engine)
        result = await engine.release_payment(payment_id, actor=CLIENT)
        assert result.error_kind is ErrorKind.CANNOT_UPDATE
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_unknown_payment(self, engine) -> None:
        result = await engine.release_payment(uuid.uuid4(), actor=CLIENT)
        assert result.error_kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_insufficient_platform_funds(self, engine, gateway, session_factory) -> None:
        payment = await create_escrowed(engine)
        gateway.failures["transfer"] = InsufficientPlatformFundsError()

        result = await engine.release_payment(payment.id, actor=CLIENT)

        assert result.error_kind is ErrorKind.TECHNICAL_ERROR
        assert result.error_code == "INSUFFICIENT_PLATFORM_FUNDS"
        stored = await load_payment(session_factory, payment.id)
        assert stored.status == "ESCROWED"
        assert stored.transferred_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_transfer_timeout_leaves_payment_unchanged(
        self, engine, gateway, session_factory
    ) -> None:
        payment = await create_escrowed(engine)
        gateway.delays["transfer"] = 1.0

        result = await engine.release_payment(payment.id, actor=CLIENT, timeout=0.05)

        assert result.error_code == "GATEWAY_TIMEOUT"
        stored = await load_payment(session_factory, payment.id)
        assert stored.status == "ESCROWED"
        assert stored.external_transfer_id is None

    @pytest.mark.asyncio
    async def test_unexpected_gateway_exception_is_technical(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)
        gateway.failures["transfer"] = RuntimeError("socket closed")

        result = await engine.release_payment(payment.id, actor=CLIENT)

        assert result.error_kind is ErrorKind.TECHNICAL_ERROR
        assert result.error_code == "GATEWAY_ERROR"


# ---------------------------------------------------------------------------
# refund_payment
# ---------------------------------------------------------------------------


class TestRefundPayment:
    @pytest.mark.asyncio
    async def test_full_refund(self, engine, gateway, platform) -> None:
        payment = await create_escrowed(engine)

        result = await engine.refund_payment(payment.id, actor=ADMIN, reason="no show")
        await engine.event_bus.drain()

        assert result.success
        assert result.data.status == "REFUNDED"
        assert result.data.refunded_amount == Decimal("110.00")
        check_invariants(result.data)
        (call,) = gateway.calls_to("refund")
        assert call["amount_minor"] == 11000
        assert call["intent_id"] == payment.external_intent_id

        status = (await engine.get_payment_status(payment.id)).data
        assert status.max_refundable == Decimal("0.00")
        assert status.platform_revenue == Decimal("0.00")
        assert (await _event_types(engine, payment.id))[-1] == "FULL_REFUND"
        assert "payment_refunded" in platform.notification_kinds()

    @pytest.mark.asyncio
    async def test_partial_refunds_accumulate(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)

        first = await engine.refund_payment(payment.id, actor=ADMIN, amount=Decimal("30"))
        assert first.data.status == "ESCROWED"
        assert first.data.refunded_amount == Decimal("30.00")

        second = await engine.refund_payment(payment.id, actor=ADMIN, amount=Decimal("80"))
        assert second.data.status == "REFUNDED"
        assert second.data.refunded_amount == Decimal("110.00")

        keys = [call["idempotency_key"] for call in gateway.calls_to("refund")]
        assert keys == [f"refund:{payment.id}:0", f"refund:{payment.id}:3000"]
        assert (await _event_types(engine, payment.id))[-2:] == [
            "PARTIAL_REFUND",
            "FULL_REFUND",
        ]

    @pytest.mark.asyncio
    async def test_refund_beyond_remaining(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)
        await engine.refund_payment(payment.id, actor=ADMIN, amount=Decimal("100"))

        result = await engine.refund_payment(payment.id, actor=ADMIN, amount=Decimal("10.01"))

        assert result.error_kind is ErrorKind.INVALID
        assert len(gateway.calls_to("refund")) == 1

    @pytest.mark.asyncio
    async def test_client_may_not_refund(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)
        result = await engine.refund_payment(payment.id, actor=CLIENT)
        assert result.error_kind is ErrorKind.FORBIDDEN
        assert gateway.calls_to("refund") == []

    @pytest.mark.asyncio
    async def test_refund_window_expired(self, engine, clock, gateway) -> None:
        payment = await create_escrowed(engine)
        clock.advance(days=31)

        result = await engine.refund_payment(payment.id, actor=ADMIN)

        assert result.error_kind is ErrorKind.CANNOT_UPDATE
        assert gateway.calls_to("refund") == []

    @pytest.mark.asyncio
    async def test_refund_after_release(self, engine) -> None:
        payment = await create_escrowed(engine)
        await engine.release_payment(payment.id, actor=CLIENT)

        result = await engine.refund_payment(payment.id, actor=ADMIN)

        assert result.data.status == "REFUNDED"
        assert result.data.transferred_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_refund_of_pending_payment(self, engine) -> None:
        payment_id = await create_pending(engine)
        result = await engine.refund_payment(payment_id, actor=ADMIN)
        assert result.error_code == "PAYMENT_NOT_REFUNDABLE"


# ---------------------------------------------------------------------------
# cancel_payment
# ---------------------------------------------------------------------------


class TestCancelPayment:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, engine, gateway, clock) -> None:
        payment_id = await create_pending(engine)

        result = await engine.cancel_payment(payment_id, actor=CLIENT)

        assert result.data.status == "CANCELLED"
        assert result.data.cancelled_at == clock.now
        assert gateway.cancelled == [result.data.external_intent_id]

    @pytest.mark.asyncio
    async def test_cancel_escrowed_fails(self, engine, gateway, session_factory) -> None:
        payment = await create_escrowed(engine)

        result = await engine.cancel_payment(payment.id, actor=CLIENT)

        assert result.error_kind is ErrorKind.CANNOT_UPDATE
        assert gateway.cancelled == []
        assert (await load_payment(session_factory, payment.id)).status == "ESCROWED"

    @pytest.mark.asyncio
    async def test_provider_may_not_cancel(self, engine) -> None:
        payment_id = await create_pending(engine)
        result = await engine.cancel_payment(payment_id, actor=PROVIDER)
        assert result.error_kind is ErrorKind.FORBIDDEN


# ---------------------------------------------------------------------------
# Webhook entry points
# ---------------------------------------------------------------------------


class TestWebhookEntryPoints:
    @pytest.mark.asyncio
    async def test_processing_then_succeeded(self, engine, session_factory) -> None:
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(session_factory, payment_id)).external_intent_id

        processing = await engine.record_intent_processing(intent_id)
        assert processing.data.status == "PROCESSING"

        succeeded = await engine.record_intent_succeeded(intent_id)
        await engine.event_bus.drain()
        assert succeeded.data.status == "ESCROWED"

    @pytest.mark.asyncio
    async def test_duplicate_succeeded_creates_one_task(self, engine, platform, session_factory) -> None:
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(session_factory, payment_id)).external_intent_id

        for _ in range(3):
            result = await engine.record_intent_succeeded(intent_id)
            await engine.event_bus.drain()
            assert result.success

        assert (await load_payment(session_factory, payment_id)).status == "ESCROWED"
        assert len(platform.tasks) == 1

    @pytest.mark.asyncio
    async def test_succeeded_after_release_is_ignored(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)
        await engine.release_payment(payment.id, actor=CLIENT)
        fetches = len(gateway.calls_to("fetch_intent"))

        result = await engine.record_intent_succeeded(payment.external_intent_id)

        assert result.data.status == "RELEASED"
        assert len(gateway.calls_to("fetch_intent")) == fetches

    @pytest.mark.asyncio
    async def test_failed(self, engine, platform, session_factory) -> None:
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(session_factory, payment_id)).external_intent_id

        result = await engine.record_intent_failed(intent_id, reason="card_declined")
        await engine.event_bus.drain()

        assert result.data.status == "FAILED"
        assert result.data.cancelled_at is not None
        assert platform.notifications[-1].details == {"reason": "card_declined"}

    @pytest.mark.asyncio
    async def test_failed_after_capture_is_a_no_op(self, engine) -> None:
        payment = await create_escrowed(engine)
        result = await engine.record_intent_failed(payment.external_intent_id, reason="late")
        assert result.success
        assert result.data.status == "ESCROWED"

    @pytest.mark.asyncio
    async def test_cancelled_without_gateway_call(self, engine, gateway, session_factory) -> None:
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(session_factory, payment_id)).external_intent_id

        result = await engine.record_intent_cancelled(intent_id)

        assert result.data.status == "CANCELLED"
        assert gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_dispute_blocks_release(self, engine, gateway) -> None:
        payment = await create_escrowed(engine)

        disputed = await engine.record_dispute(
            payment.external_charge_id, dispute_id="dp_1", amount_minor=11000, reason="fraudulent"
        )
        assert disputed.data.status == "DISPUTED"

        release = await engine.release_payment(payment.id, actor=CLIENT)
        assert release.error_kind is ErrorKind.CANNOT_UPDATE
        assert gateway.calls_to("transfer") == []

    @pytest.mark.asyncio
    async def test_dispute_on_refunded_is_a_no_op(self, engine) -> None:
        payment = await create_escrowed(engine)
        await engine.refund_payment(payment.id, actor=ADMIN)

        result = await engine.record_dispute(payment.external_charge_id)

        assert result.success
        assert result.data.status == "REFUNDED"

    @pytest.mark.asyncio
    async def test_unknown_charge(self, engine) -> None:
        result = await engine.record_dispute("ch_unknown")
        assert result.error_kind is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestStatusView:
    @pytest.mark.asyncio
    async def test_escrowed_view(self, engine) -> None:
        payment = await create_escrowed(engine)

        view = (await engine.get_payment_status(payment.id)).data

        assert view.status == "ESCROWED"
        assert view.escrowed_amount == Decimal("110.00")
        assert view.releasable_amount == Decimal("100.00")
        assert view.is_in_escrow and view.can_be_released and view.can_be_refunded
        assert not view.can_be_cancelled
        assert set(view.allowed_transitions) == {"RELEASED", "REFUNDED", "DISPUTED"}
        assert view.fee_details["final_fee"] == "10.00"
        assert view.status_description.startswith("Funds are held in escrow")

    @pytest.mark.asyncio
    async def test_unknown_payment(self, engine) -> None:
        assert (await engine.get_payment_status(uuid.uuid4())).error_kind is ErrorKind.NOT_FOUND
        assert (await engine.get_payment_events(uuid.uuid4())).error_kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_events_carry_reconciliation_data(self, engine) -> None:
        payment = await create_escrowed(engine)
        released = await engine.release_payment(payment.id, actor=CLIENT)

        events = (await engine.get_payment_events(payment.id)).data
        release_event = events[-1]

        assert release_event.event_type == "ESCROW_RELEASED"
        assert release_event.old_status == "ESCROWED"
        assert release_event.new_status == "RELEASED"
        assert release_event.actor == CLIENT.actor_id
        assert release_event.metadata_json["transfer_id"] == released.data.external_transfer_id
        assert release_event.metadata_json["amount"] == "100.00"


# ---------------------------------------------------------------------------
# Concurrent writers
# ---------------------------------------------------------------------------


class TestConcurrentUpdates:
    @pytest.mark.asyncio
    async def test_lost_race_is_a_conflict(
        self, engine, gateway, session_factory, monkeypatch
    ) -> None:
        payment = await create_escrowed(engine)

        async def stale_save(self, payment):
            raise StaleDataError("0 rows matched")

        monkeypatch.setattr(PaymentRepository, "save", stale_save)
        result = await engine.release_payment(payment.id, actor=CLIENT)

        assert result.error_kind is ErrorKind.CONFLICT
        assert result.error_code == "CONCURRENT_UPDATE"
        # The transfer reached the gateway; the local write was rolled back
        assert len(gateway.calls_to("transfer")) == 1
        assert (await load_payment(session_factory, payment.id)).status == "ESCROWED"

    @pytest.mark.asyncio
    async def test_retried_release_reuses_the_transfer(
        self, engine, gateway, monkeypatch
    ) -> None:
        payment = await create_escrowed(engine)
        original_save = PaymentRepository.save

        async def stale_once(self, payment):
            monkeypatch.setattr(PaymentRepository, "save", original_save)
            raise StaleDataError("stale")

        monkeypatch.setattr(PaymentRepository, "save", stale_once)
        first = await engine.release_payment(payment.id, actor=CLIENT)
        second = await engine.release_payment(payment.id, actor=CLIENT)

        assert first.error_code == "CONCURRENT_UPDATE"
        assert second.success
        assert len(gateway.calls_to("transfer")) == 2
        assert gateway.unique_transfers == 1

    @pytest.mark.asyncio
    async def test_stale_capture_without_a_winner_is_a_conflict(
        self, engine, platform, session_factory, monkeypatch
    ) -> None:
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(session_factory, payment_id)).external_intent_id

        async def stale_save(self, payment):
            raise StaleDataError("0 rows matched")

        monkeypatch.setattr(PaymentRepository, "save", stale_save)
        result = await engine.confirm_payment(intent_id)
        await engine.event_bus.drain()

        assert result.error_code == "CONCURRENT_UPDATE"
        assert (await load_payment(session_factory, payment_id)).status == "PENDING"
        assert platform.tasks == []


class TestConcurrentDelivery:
    """Parallel calls on a file-backed database, one connection per session."""

    @pytest.mark.asyncio
    async def test_parallel_succeeded_deliveries_all_succeed(
        self, file_backed_engine, platform, file_session_factory
    ) -> None:
        engine = file_backed_engine
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(file_session_factory, payment_id)).external_intent_id

        results = await asyncio.gather(
            *(engine.record_intent_succeeded(intent_id) for _ in range(3))
        )
        await engine.event_bus.drain()

        assert [r.error_code for r in results] == [None, None, None]
        assert all(r.data.status == "ESCROWED" for r in results)
        assert (await _event_types(engine, payment_id)).count("PAYMENT_CAPTURED") == 1
        assert len(platform.tasks) == 1

    @pytest.mark.asyncio
    async def test_confirm_racing_webhook(
        self, file_backed_engine, platform, file_session_factory
    ) -> None:
        engine = file_backed_engine
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(file_session_factory, payment_id)).external_intent_id

        confirmed, delivered = await asyncio.gather(
            engine.confirm_payment(intent_id),
            engine.record_intent_succeeded(intent_id),
        )
        await engine.event_bus.drain()

        assert confirmed.success, confirmed.error
        assert delivered.success, delivered.error
        assert (await _event_types(engine, payment_id)).count("PAYMENT_CAPTURED") == 1
        assert len(platform.tasks) == 1

    @pytest.mark.asyncio
    async def test_parallel_failed_deliveries(
        self, file_backed_engine, file_session_factory
    ) -> None:
        engine = file_backed_engine
        payment_id = await create_pending(engine)
        intent_id = (await load_payment(file_session_factory, payment_id)).external_intent_id

        results = await asyncio.gather(
            *(engine.record_intent_failed(intent_id, reason="card_declined") for _ in range(2))
        )

        assert all(r.success for r in results)
        assert (await _event_types(engine, payment_id)).count("PAYMENT_FAILED") == 1

    @pytest.mark.asyncio
    async def test_parallel_release_moves_money_once(
        self, file_backed_engine, gateway, file_session_factory
    ) -> None:
        engine = file_backed_engine
        payment = await create_escrowed(engine)

        results = await asyncio.gather(
            engine.release_payment(payment.id, actor=CLIENT),
            engine.release_payment(payment.id, actor=CLIENT),
        )

        assert sum(r.success for r in results) == 1
        loser = next(r for r in results if not r.success)
        assert loser.error_kind in (ErrorKind.CONFLICT, ErrorKind.CANNOT_UPDATE)
        assert gateway.unique_transfers == 1

        stored = await load_payment(file_session_factory, payment.id)
        assert stored.status == "RELEASED"
        assert stored.transferred_amount == Decimal("100.00")
        assert (await _event_types(engine, payment.id)).count("ESCROW_RELEASED") == 1
