"""Escrow payment REST API routes.

These endpoints are a thin HTTP layer over ``EscrowEngine`` and
``ReportingService``. Gateway webhooks call the same engine through
``WebhookIngestion``, so both paths share one set of transition rules.

Routes:
    POST   /api/v1/payments/intents          Open a payment intent for an order
    POST   /api/v1/payments/confirm          Confirm a paid intent (move to escrow)
    POST   /api/v1/payments/{id}/release     Release escrowed funds to the provider
    POST   /api/v1/payments/{id}/refund      Refund the client (partial or full)
    POST   /api/v1/payments/{id}/cancel      Cancel an uncaptured payment
    GET    /api/v1/payments/{id}/status      Status, amounts and derived flags
    GET    /api/v1/payments/{id}/events      Audit trail
    GET    /api/v1/payments/reports/revenue  Platform revenue report (admin)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime
from datetime import datetime  # noqa: TC003

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse  # noqa: TC002

from service_escrow.api.deps import (
    get_actor,
    get_escrow_engine,
    get_reporting_service,
)
from service_escrow.api.middleware import error_response
from service_escrow.domain.policy import Actor  # noqa: TC001
from service_escrow.logging_config import get_logger
from service_escrow.schemas.payments import (
    ConfirmPaymentRequest,
    CreatePaymentIntentRequest,
    PaymentEventResponse,
    PaymentIntentResponse,
    PaymentResponse,
    PaymentStatusResponse,
    RefundPaymentRequest,
    ReleasePaymentRequest,
    RevenueReportResponse,
)
from service_escrow.services.escrow_engine import EscrowEngine  # noqa: TC001
from service_escrow.services.reporting import ReportingService  # noqa: TC001

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


@router.post(
    "/intents",
    response_model=PaymentIntentResponse,
    status_code=201,
    summary="Open a payment intent for an order",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> PaymentIntentResponse | JSONResponse:
    """Create a gateway intent for the order total and record a PENDING payment."""
    result = await engine.create_payment_intent(
        order_ref=request.order_ref,
        service_amount=request.service_amount,
        protection_fee=request.protection_fee,
        total_amount=request.total_amount,
        currency=request.currency,
        description=request.description,
        metadata=request.metadata,
    )
    if not result.success:
        return error_response(result)
    logger.info("api.intent_created", actor_id=actor.actor_id, order_ref=request.order_ref)
    return PaymentIntentResponse.model_validate(result.data)


@router.post(
    "/confirm",
    response_model=PaymentResponse,
    summary="Confirm a paid intent and hold the funds in escrow",
)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> PaymentResponse | JSONResponse:
    """Check the intent with the gateway. Transitions PENDING/PROCESSING -> ESCROWED."""
    result = await engine.confirm_payment(request.intent_id, actor=actor)
    if not result.success:
        return error_response(result)
    return PaymentResponse.model_validate(result.data)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@router.get(
    "/reports/revenue",
    response_model=RevenueReportResponse,
    summary="Platform revenue report",
)
async def revenue_report(
    start: datetime = Query(..., description="Include payments created at or after"),
    end: datetime = Query(..., description="Include payments created at or before"),
    actor: Actor = Depends(get_actor),
    reporting: ReportingService = Depends(get_reporting_service),
) -> RevenueReportResponse | JSONResponse:
    result = await reporting.revenue_report(start, end, actor)
    if not result.success:
        return error_response(result)
    return RevenueReportResponse.model_validate(result.data)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


@router.post(
    "/{payment_id}/release",
    response_model=PaymentResponse,
    summary="Release escrowed funds to the provider",
)
async def release_payment(
    payment_id: uuid.UUID,
    request: ReleasePaymentRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> PaymentResponse | JSONResponse:
    """Transfer the service amount (or ``custom_amount``). Transitions ESCROWED -> RELEASED."""
    result = await engine.release_payment(
        payment_id,
        actor=actor,
        reason=request.reason,
        custom_amount=request.custom_amount,
    )
    if not result.success:
        return error_response(result)
    return PaymentResponse.model_validate(result.data)


@router.post(
    "/{payment_id}/refund",
    response_model=PaymentResponse,
    summary="Refund the client",
)
async def refund_payment(
    payment_id: uuid.UUID,
    request: RefundPaymentRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> PaymentResponse | JSONResponse:
    """Refund part or all of the remaining amount. A full refund ends in REFUNDED."""
    result = await engine.refund_payment(
        payment_id,
        actor=actor,
        amount=request.amount,
        reason=request.reason,
    )
    if not result.success:
        return error_response(result)
    return PaymentResponse.model_validate(result.data)


@router.post(
    "/{payment_id}/cancel",
    response_model=PaymentResponse,
    summary="Cancel an uncaptured payment",
)
async def cancel_payment(
    payment_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> PaymentResponse | JSONResponse:
    """Cancel the gateway intent. Valid from PENDING or PROCESSING."""
    result = await engine.cancel_payment(payment_id, actor=actor)
    if not result.success:
        return error_response(result)
    return PaymentResponse.model_validate(result.data)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{payment_id}/status",
    response_model=PaymentStatusResponse,
    summary="Get payment status and amount breakdown",
)
async def get_payment_status(
    payment_id: uuid.UUID,
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> PaymentStatusResponse | JSONResponse:
    result = await engine.get_payment_status(payment_id)
    if not result.success:
        return error_response(result)
    return PaymentStatusResponse.model_validate(result.data)


@router.get(
    "/{payment_id}/events",
    response_model=list[PaymentEventResponse],
    summary="Get audit trail",
)
async def get_payment_events(
    payment_id: uuid.UUID,
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> list[PaymentEventResponse] | JSONResponse:
    """Return the full audit trail for a payment."""
    result = await engine.get_payment_events(payment_id)
    if not result.success:
        return error_response(result)
    return [PaymentEventResponse.model_validate(e) for e in result.data or []]
