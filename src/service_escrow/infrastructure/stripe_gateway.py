"""Stripe implementation of the PaymentGateway protocol.

All Stripe calls go through this adapter so error translation, idempotency
and logging stay consistent. The stripe SDK is blocking; each call runs in
a worker thread via ``asyncio.to_thread`` and the engine bounds it with its
own deadline.

Escrow flow on Stripe Connect ("separate charges and transfers"):
    - The client pays the platform through a PaymentIntent for the total.
    - Funds stay on the platform balance while the payment is escrowed.
    - Release creates a Transfer of the service amount to the provider's
      connected account. The protection fee never leaves the platform.
    - Refunds are issued against the original PaymentIntent.

Configuration (via settings):
    - STRIPE_SECRET_KEY: API secret key
    - STRIPE_WEBHOOK_SECRET: Webhook signing secret
    - STRIPE_WEBHOOK_TOLERANCE_SECONDS: Accepted signature age
    - STRIPE_MAX_NETWORK_RETRIES: SDK-level retries on connection errors
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any

import stripe

from service_escrow.domain.exceptions import (
    GatewayError,
    InsufficientPlatformFundsError,
    MalformedWebhookError,
    WebhookSignatureError,
)
from service_escrow.domain.gateway_protocol import (
    IntentHandle,
    IntentSnapshot,
    RefundReceipt,
    TransferReceipt,
)
from service_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from service_escrow.config import Settings

logger = get_logger(__name__)

# Stripe only accepts these refund reasons; free text goes into metadata.
REFUND_REASON = "requested_by_customer"


def _latest_charge_id(intent: Any) -> str | None:
    charge = getattr(intent, "latest_charge", None)
    if charge is None or isinstance(charge, str):
        return charge
    return charge.id


class StripeGateway:
    """Stripe Connect adapter (satisfies ``PaymentGateway``)."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        webhook_tolerance: int = 300,
        max_network_retries: int = 2,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        stripe.max_network_retries = max_network_retries

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeGateway:
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance=settings.stripe_webhook_tolerance_seconds,
            max_network_retries=settings.stripe_max_network_retries,
        )

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        destination_account_id: str,
        metadata: dict[str, str],
        description: str | None,
        idempotency_key: str,
    ) -> IntentHandle:
        params: dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if description:
            params["description"] = description
        if order_ref := metadata.get("order_ref"):
            params["transfer_group"] = f"order_{order_ref}"

        intent = await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            log_context={
                "amount_minor": amount_minor,
                "destination_account_id": destination_account_id,
            },
            **params,
        )
        return IntentHandle(
            intent_id=intent.id,
            client_secret=intent.client_secret,
            status=intent.status,
        )

    async def fetch_intent(self, intent_id: str) -> IntentSnapshot:
        intent = await self._call(
            "fetch_intent",
            stripe.PaymentIntent.retrieve,
            intent_id,
            log_context={"intent_id": intent_id},
        )
        return IntentSnapshot(
            intent_id=intent.id,
            status=intent.status,
            charge_id=_latest_charge_id(intent),
            amount_minor=getattr(intent, "amount", None),
        )

    async def cancel_intent(self, intent_id: str) -> None:
        await self._call(
            "cancel_intent",
            stripe.PaymentIntent.cancel,
            intent_id,
            log_context={"intent_id": intent_id},
        )

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    async def transfer(
        self,
        destination_account_id: str,
        amount_minor: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> TransferReceipt:
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create,
            idempotency_key=idempotency_key,
            log_context={
                "amount_minor": amount_minor,
                "destination_account_id": destination_account_id,
            },
            amount=amount_minor,
            currency=currency.lower(),
            destination=destination_account_id,
            description=description,
            metadata=metadata,
        )
        return TransferReceipt(
            transfer_id=transfer.id,
            amount_minor=transfer.amount,
            destination_account_id=destination_account_id,
        )

    async def refund(
        self,
        intent_id: str,
        amount_minor: int,
        reason: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> RefundReceipt:
        refund_metadata = dict(metadata)
        if reason:
            refund_metadata["refund_reason"] = reason[:500]
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            idempotency_key=idempotency_key,
            log_context={"intent_id": intent_id, "amount_minor": amount_minor},
            payment_intent=intent_id,
            amount=amount_minor,
            reason=REFUND_REASON,
            metadata=refund_metadata,
        )
        return RefundReceipt(
            refund_id=refund.id,
            amount_minor=refund.amount,
            status=refund.status,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the ``Stripe-Signature`` header and decode the event body."""
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedWebhookError("Webhook body is not UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, self._webhook_tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("gateway.webhook_signature_invalid", error=str(exc))
            raise WebhookSignatureError() from exc
        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise MalformedWebhookError(f"Webhook body is not JSON: {exc.msg}") from exc
        if not isinstance(event, dict):
            raise MalformedWebhookError("Webhook body must be a JSON object")
        return event

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        idempotency_key: str | None = None,
        log_context: dict[str, Any] | None = None,
        **params: Any,
    ) -> Any:
        """Run a blocking SDK call off the event loop and translate its errors."""
        context = {"operation": operation, **(log_context or {})}
        params["api_key"] = self._secret_key
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        started = time.monotonic()
        try:
            result = await asyncio.to_thread(func, *args, **params)
        except stripe.StripeError as exc:
            duration_ms = round((time.monotonic() - started) * 1000, 1)
            raise self._translate_error(exc, context, duration_ms) from exc

        logger.info(
            f"gateway.{operation}",
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            **context,
        )
        return result

    @staticmethod
    def _translate_error(
        error: stripe.StripeError, context: dict[str, Any], duration_ms: float
    ) -> GatewayError:
        """Map a Stripe SDK error to the domain ``GatewayError`` family."""
        code = getattr(error, "code", None)
        message = str(getattr(error, "user_message", None) or error)

        if isinstance(error, stripe.InvalidRequestError) and (
            code == "balance_insufficient"
            or "insufficient available funds" in message.lower()
        ):
            logger.error(
                "gateway.insufficient_platform_funds", duration_ms=duration_ms, **context
            )
            return InsufficientPlatformFundsError(message)

        if isinstance(error, stripe.CardError):
            logger.warning(
                "gateway.card_error",
                decline_code=getattr(error, "decline_code", None),
                duration_ms=duration_ms,
                **context,
            )
        elif isinstance(error, stripe.AuthenticationError):
            logger.critical("gateway.authentication_failed", duration_ms=duration_ms, **context)
            message = "Payment gateway authentication failed"
        elif isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
            logger.error("gateway.unavailable", error=message, duration_ms=duration_ms, **context)
        else:
            logger.error(
                "gateway.request_failed",
                error=message,
                gateway_code=code,
                duration_ms=duration_ms,
                **context,
            )
        return GatewayError(message=message, gateway_code=code)
