"""FastAPI dependency injection providers.

The escrow engine, webhook ingestion and reporting service are composed
once in the application lifespan and stored on ``app.state``; these
providers hand them to route handlers. Caller identity comes from trusted
upstream headers (authentication happens before this service).
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from service_escrow.domain.enums import ActorRole
from service_escrow.domain.policy import Actor
from service_escrow.services.escrow_engine import EscrowEngine
from service_escrow.services.reporting import ReportingService
from service_escrow.services.webhook_ingestion import WebhookIngestion


def get_escrow_engine(request: Request) -> EscrowEngine:
    """Provide the escrow engine composed at startup."""
    return request.app.state.escrow_engine


def get_webhook_ingestion(request: Request) -> WebhookIngestion:
    return request.app.state.webhook_ingestion


def get_reporting_service(request: Request) -> ReportingService:
    return request.app.state.reporting_service


def get_actor(
    x_actor_id: str = Header(..., min_length=1, max_length=64),
    x_actor_role: str = Header(...),
) -> Actor:
    """Build the calling ``Actor`` from the X-Actor-Id / X-Actor-Role headers."""
    try:
        role = ActorRole(x_actor_role.strip().upper())
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown actor role '{x_actor_role}'",
        ) from None
    return Actor(actor_id=x_actor_id, role=role)
