"""Payment Gateway Protocol.

Defines the capability surface the escrow engine needs from an external
payment processor. This is a Protocol (structural subtyping) so the Stripe
adapter and test doubles only need to match the shape.

The domain layer has ZERO imports from the stripe SDK.
Amounts crossing this boundary are integer minor units.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class IntentHandle:
    """Result of opening a payment intent.

    Attributes:
        intent_id: Gateway id of the intent (pi_...).
        client_secret: Secret the payer's client uses to confirm the intent.
        status: Gateway status right after creation.
    """

    intent_id: str
    client_secret: str
    status: str = "requires_payment_method"


@dataclass(frozen=True)
class IntentSnapshot:
    """Authoritative intent state fetched from the gateway."""

    intent_id: str
    status: str
    charge_id: str | None = None
    amount_minor: int | None = None


@dataclass(frozen=True)
class TransferReceipt:
    transfer_id: str
    amount_minor: int
    destination_account_id: str


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    amount_minor: int
    status: str = "succeeded"


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol that payment processor adapters must satisfy.

    Concrete implementations:
        - infrastructure/stripe_gateway.py (Stripe Connect)

    Every method raises ``GatewayError`` (or a subclass) on failure.
    """

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        destination_account_id: str,
        metadata: dict[str, str],
        description: str | None,
        idempotency_key: str,
    ) -> IntentHandle: ...

    async def fetch_intent(self, intent_id: str) -> IntentSnapshot: ...

    async def cancel_intent(self, intent_id: str) -> None: ...

    async def transfer(
        self,
        destination_account_id: str,
        amount_minor: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> TransferReceipt:
        """Move funds from the platform balance to a connected account.

        Raises:
            InsufficientPlatformFundsError: Platform balance is too low.
        """
        ...

    async def refund(
        self,
        intent_id: str,
        amount_minor: int,
        reason: str | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> RefundReceipt: ...

    def verify_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Check the webhook signature and return the decoded event body.

        Raises:
            WebhookSignatureError: Signature missing, stale or wrong.
            MalformedWebhookError: Body is not a JSON object.
        """
        ...
