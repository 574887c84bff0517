"""Application services: use case orchestration."""

from service_escrow.services.escrow_engine import EscrowEngine
from service_escrow.services.reporting import ReportingService
from service_escrow.services.webhook_ingestion import WebhookIngestion

__all__ = ["EscrowEngine", "ReportingService", "WebhookIngestion"]
