"""FastAPI application entry point for the Service Escrow engine.

Lifecycle:
    1. Startup: Initialize logging, database and Redis, then compose the
       gateway, platform client, escrow engine, webhook ingestion and
       reporting service once and store them on ``app.state``.
    2. Running: Serve the REST API and the gateway webhook endpoint.
    3. Shutdown: Wait for in-flight outbound events, then close the
       platform client, database and Redis connections.

Run with:
    uv run uvicorn service_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

from fastapi import FastAPI

from service_escrow.config import get_settings
from service_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from service_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Initialize Redis (webhook de-duplication works without it)
    from service_escrow.infrastructure.redis_client import close_redis, init_redis

    redis = None
    try:
        redis = await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Compose the engine and its collaborators
    from service_escrow.infrastructure.platform_client import PlatformClient
    from service_escrow.infrastructure.stripe_gateway import StripeGateway
    from service_escrow.services.escrow_engine import EscrowEngine
    from service_escrow.services.outbound_events import OutboundEventBus
    from service_escrow.services.reporting import ReportingService
    from service_escrow.services.webhook_ingestion import WebhookIngestion

    session_factory = get_session_factory()
    gateway = StripeGateway.from_settings(settings)
    platform = PlatformClient.from_settings(settings)
    event_bus = OutboundEventBus()

    engine = EscrowEngine(
        session_factory=session_factory,
        gateway=gateway,
        payee_resolver=platform,
        order_confirmer=platform,
        task_creator=platform,
        notifier=platform,
        event_bus=event_bus,
        fee_config=settings.protection_fee_config(),
        default_currency=settings.default_currency,
        gateway_timeout=settings.gateway_timeout_seconds,
        refund_window=timedelta(days=settings.refund_window_days),
    )
    app.state.escrow_engine = engine
    app.state.webhook_ingestion = WebhookIngestion(
        engine=engine,
        gateway=gateway,
        redis=redis,
        dedup_ttl_seconds=settings.redis_idempotency_ttl_seconds,
    )
    app.state.reporting_service = ReportingService(session_factory)

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down", pending_events=event_bus.pending)
    await event_bus.drain()
    await platform.aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Service Escrow",
        description=(
            "Escrow payments for a services marketplace: the client pays up "
            "front, funds are held until the service is done, then released "
            "to the provider or refunded."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from service_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from service_escrow.api.routes.fees import router as fees_router
    from service_escrow.api.routes.health import router as health_router
    from service_escrow.api.routes.payments import router as payments_router
    from service_escrow.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router)
    app.include_router(payments_router)
    app.include_router(fees_router)
    app.include_router(webhooks_router)

    return app


# The app instance used by Uvicorn
app = create_app()
