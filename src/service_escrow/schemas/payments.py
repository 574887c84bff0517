"""Pydantic schemas for the Payments API.

These schemas define the request/response shapes for the REST API. They
are separate from the ORM models and the engine's result dataclasses to
keep clean boundaries between the API, service and database layers.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreatePaymentIntentRequest(BaseModel):
    """Request body for opening a payment intent for an order."""

    order_ref: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Reference of the order (reply) being paid",
        examples=["reply_7f3a"],
    )
    service_amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Price of the service; what the provider receives on release",
        examples=[Decimal("100.00")],
    )
    protection_fee: Decimal | None = Field(
        default=None,
        ge=0,
        decimal_places=2,
        description="Protection fee; derived from the fee configuration when omitted",
    )
    total_amount: Decimal | None = Field(
        default=None,
        ge=0,
        decimal_places=2,
        description="service_amount + protection_fee; derived when omitted",
    )
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=500)
    metadata: dict[str, str] | None = Field(
        default=None,
        description="Extra intent metadata; only documented keys are accepted",
    )


class ConfirmPaymentRequest(BaseModel):
    intent_id: str = Field(..., min_length=1, max_length=255, examples=["pi_3Nx..."])


class ReleasePaymentRequest(BaseModel):
    """Request body for releasing escrowed funds to the provider."""

    reason: str | None = Field(default=None, max_length=500)
    custom_amount: Decimal | None = Field(
        default=None,
        gt=0,
        decimal_places=2,
        description="Amount to transfer; defaults to the full service amount",
    )


class RefundPaymentRequest(BaseModel):
    """Request body for refunding a captured payment to the client."""

    amount: Decimal | None = Field(
        default=None,
        gt=0,
        decimal_places=2,
        description="Amount to refund; defaults to everything not yet refunded",
    )
    reason: str | None = Field(default=None, max_length=500)


class CalculateFeeRequest(BaseModel):
    service_amount: Decimal = Field(..., gt=0, decimal_places=2, examples=[Decimal("100.00")])


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class PaymentIntentResponse(BaseModel):
    """What the client needs to complete the payment."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    intent_id: str
    client_secret: str
    destination_account_id: str
    service_amount: Decimal
    protection_fee: Decimal
    total_amount: Decimal
    currency: str
    fee_details: dict | None = None


class PaymentResponse(BaseModel):
    """Response schema for a payment record."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_ref: str
    status: str
    currency: str
    service_amount: Decimal
    protection_fee: Decimal
    total_amount: Decimal
    transferred_amount: Decimal
    refunded_amount: Decimal
    fee_collected: bool
    external_intent_id: str
    external_transfer_id: str | None
    external_refund_id: str | None
    service_task_id: uuid.UUID | None
    paid_at: datetime | None
    escrow_released_at: datetime | None
    refunded_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime


class PaymentStatusResponse(BaseModel):
    """Status, amount breakdown and derived flags of a payment."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    order_ref: str
    status: str
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
    allowed_transitions: list[str] = Field(
        description="Statuses the payment can move to from its current status"
    )
    fee_details: dict | None = None


class PaymentEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    payment_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class RevenueReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: str
    total_service_revenue: Decimal
    total_protection_fees: Decimal
    total_platform_revenue: Decimal
    total_transactions: int
    completed_services: int
    refunded_services: int
    escrowed_payments: int
    refund_rate: Decimal
    average_service_value: Decimal
    average_protection_fee: Decimal
    total_escrowed_amount: Decimal
    count_by_status: dict[str, int]


class FeeCalculationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_amount: Decimal
    fee_type: str
    percentage_rate: Decimal
    fixed_amount: Decimal
    minimum_fee: Decimal
    maximum_fee: Decimal
    calculated_fee: Decimal
    final_fee: Decimal
    minimum_applied: bool
    maximum_applied: bool
    justification: str
    total_amount: Decimal


class FeeConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    fee_type: str
    percentage_rate: Decimal
    fixed_amount: Decimal
    minimum_fee: Decimal
    maximum_fee: Decimal
    enabled: bool


class WebhookAckResponse(BaseModel):
    received: bool = True
    outcome: str


class ErrorResponse(BaseModel):
    error: str
    kind: str | None = None
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
