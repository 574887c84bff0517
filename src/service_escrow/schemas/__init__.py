"""Pydantic API schemas."""

from service_escrow.schemas.payments import (
    CalculateFeeRequest,
    ConfirmPaymentRequest,
    CreatePaymentIntentRequest,
    ErrorResponse,
    FeeCalculationResponse,
    FeeConfigResponse,
    HealthResponse,
    PaymentEventResponse,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    RefundPaymentRequest,
    ReleasePaymentRequest,
    RevenueReportResponse,
    WebhookAckResponse,
)

__all__ = [
    "CalculateFeeRequest",
    "ConfirmPaymentRequest",
    "CreatePaymentIntentRequest",
    "ErrorResponse",
    "FeeCalculationResponse",
    "FeeConfigResponse",
    "HealthResponse",
    "PaymentEventResponse",
    "PaymentIntentResponse",
    "PaymentResponse",
    "PaymentStatusResponse",
    "RefundPaymentRequest",
    "ReleasePaymentRequest",
    "RevenueReportResponse",
    "WebhookAckResponse",
]
