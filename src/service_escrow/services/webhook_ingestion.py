"""Gateway webhook ingestion.

Turns a signed gateway callback into a call on an ``EscrowEngine`` webhook
entry point:

    1. The gateway adapter verifies the signature (no mutation on failure).
    2. The body is parsed into a typed ``WebhookEnvelope``.
    3. The event id is claimed in Redis so concurrent re-deliveries are
       acknowledged without dispatch. The claim is dropped again when
       dispatch fails, so the gateway's retry gets through.
    4. The handler registered for the event type runs. Unknown types are
       logged and acknowledged.

Handlers are async functions registered with ``register_handler``:

    @register_handler("payment_intent.succeeded")
    async def on_succeeded(engine, event):
        return await engine.record_intent_succeeded(event.object_id)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, ValidationError

from service_escrow.domain.enums import ErrorKind
from service_escrow.domain.exceptions import EscrowError, MalformedWebhookError
from service_escrow.infrastructure.redis_client import claim_idempotency, release_idempotency
from service_escrow.logging_config import get_logger
from service_escrow.services.results import ServiceResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import redis.asyncio as aioredis

    from service_escrow.domain.gateway_protocol import PaymentGateway
    from service_escrow.services.escrow_engine import EscrowEngine

logger = get_logger(__name__)

DEFAULT_DEDUP_TTL_SECONDS = 86400


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class WebhookEnvelope(BaseModel):
    """The parts of a gateway event the handlers read."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    data: WebhookData

    @property
    def obj(self) -> dict[str, Any]:
        return self.data.object

    @property
    def object_id(self) -> str:
        object_id = self.obj.get("id")
        if not object_id:
            raise MalformedWebhookError(f"Event {self.id} carries no object id")
        return str(object_id)


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

WEBHOOK_HANDLERS: dict[
    str, Callable[[EscrowEngine, WebhookEnvelope], Awaitable[ServiceResult[Any]]]
] = {}


def register_handler(event_type: str) -> Callable:
    """Decorator that registers a handler for a gateway event type."""

    def decorator(func: Callable) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        return func

    return decorator


@register_handler("payment_intent.succeeded")
async def handle_intent_succeeded(
    engine: EscrowEngine, event: WebhookEnvelope
) -> ServiceResult[Any]:
    return await engine.record_intent_succeeded(event.object_id)


@register_handler("payment_intent.processing")
async def handle_intent_processing(
    engine: EscrowEngine, event: WebhookEnvelope
) -> ServiceResult[Any]:
    return await engine.record_intent_processing(event.object_id)


@register_handler("payment_intent.payment_failed")
async def handle_intent_failed(
    engine: EscrowEngine, event: WebhookEnvelope
) -> ServiceResult[Any]:
    last_error = event.obj.get("last_payment_error") or {}
    reason = last_error.get("message") or last_error.get("code")
    return await engine.record_intent_failed(event.object_id, reason=reason)


@register_handler("payment_intent.canceled")
async def handle_intent_canceled(
    engine: EscrowEngine, event: WebhookEnvelope
) -> ServiceResult[Any]:
    return await engine.record_intent_cancelled(event.object_id)


@register_handler("charge.dispute.created")
async def handle_dispute_created(
    engine: EscrowEngine, event: WebhookEnvelope
) -> ServiceResult[Any]:
    charge_id = event.obj.get("charge")
    if not charge_id:
        raise MalformedWebhookError(f"Dispute event {event.id} carries no charge id")
    return await engine.record_dispute(
        charge_id=str(charge_id),
        dispute_id=event.obj.get("id"),
        amount_minor=event.obj.get("amount"),
        reason=event.obj.get("reason"),
    )


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class WebhookIngestion:
    """Verifies, de-duplicates and dispatches gateway webhooks."""

    def __init__(
        self,
        engine: EscrowEngine,
        gateway: PaymentGateway,
        redis: aioredis.Redis | None = None,
        dedup_ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS,
    ) -> None:
        self._engine = engine
        self._gateway = gateway
        self._redis = redis
        self._dedup_ttl_seconds = dedup_ttl_seconds

    async def handle_webhook(self, raw_payload: bytes, signature: str) -> ServiceResult[str]:
        """Process one delivery. ``data`` is the outcome for the event id.

        Outcomes: ``processed``, ``duplicate``, ``ignored``.
        """
        try:
            body = self._gateway.verify_webhook(raw_payload, signature)
            event = self._parse(body)
        except EscrowError as exc:
            logger.warning("webhook.rejected", code=exc.code, error=exc.message)
            return ServiceResult.from_error(exc)

        handler = WEBHOOK_HANDLERS.get(event.type)
        if handler is None:
            logger.info("webhook.ignored", event_id=event.id, event_type=event.type)
            return ServiceResult.ok("ignored")

        if not await self._claim(event.id):
            logger.info("webhook.duplicate", event_id=event.id, event_type=event.type)
            return ServiceResult.ok("duplicate")

        try:
            result = await handler(self._engine, event)
        except EscrowError as exc:
            result = ServiceResult.from_error(exc)
        except Exception as exc:
            logger.exception(
                "webhook.handler_crashed",
                event_id=event.id,
                event_type=event.type,
                error=str(exc),
            )
            result = ServiceResult.fail(
                f"Handler for {event.type} failed",
                "TECHNICAL_ERROR",
                ErrorKind.TECHNICAL_ERROR,
            )

        if result.success:
            logger.info("webhook.processed", event_id=event.id, event_type=event.type)
            return ServiceResult.ok("processed")

        if result.error_kind is ErrorKind.NOT_FOUND:
            # Events for intents created outside this engine
            logger.info(
                "webhook.unknown_payment",
                event_id=event.id,
                event_type=event.type,
                error=result.error,
            )
            return ServiceResult.ok("ignored")

        await self._release(event.id)
        logger.warning(
            "webhook.dispatch_failed",
            event_id=event.id,
            event_type=event.type,
            code=result.error_code,
            error=result.error,
        )
        return ServiceResult(
            success=False,
            error=result.error,
            error_code=result.error_code,
            error_kind=result.error_kind,
        )

    @staticmethod
    def _parse(body: dict[str, Any]) -> WebhookEnvelope:
        try:
            return WebhookEnvelope.model_validate(body)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise MalformedWebhookError(f"Webhook body is missing fields: {fields}") from exc

    async def _claim(self, event_id: str) -> bool:
        if self._redis is None:
            return True
        try:
            return await claim_idempotency(
                self._redis, f"webhook:{event_id}", self._dedup_ttl_seconds
            )
        except Exception as exc:
            # Entity-level status checks still guard the handlers
            logger.warning("webhook.dedup_unavailable", event_id=event_id, error=str(exc))
            return True

    async def _release(self, event_id: str) -> None:
        if self._redis is None:
            return
        try:
            await release_idempotency(self._redis, f"webhook:{event_id}")
        except Exception as exc:
            logger.warning("webhook.dedup_release_failed", event_id=event_id, error=str(exc))
