"""Gateway webhook endpoint.

The raw request body is passed through untouched: the signature covers
the exact bytes the gateway sent.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from service_escrow.api.deps import get_webhook_ingestion
from service_escrow.api.middleware import error_response
from service_escrow.schemas.payments import WebhookAckResponse
from service_escrow.services.webhook_ingestion import WebhookIngestion  # noqa: TC001

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    summary="Receive Stripe events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
) -> WebhookAckResponse | JSONResponse:
    """Verify, de-duplicate and dispatch one Stripe event.

    Any non-2xx answer makes Stripe redeliver the event later.
    """
    payload = await request.body()
    result = await ingestion.handle_webhook(payload, stripe_signature)
    if not result.success:
        return error_response(result)
    return WebhookAckResponse(outcome=result.data or "processed")
