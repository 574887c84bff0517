"""HTTP client for the platform services the escrow engine depends on.

One ``PlatformClient`` satisfies all four collaborator protocols
(``PayeeAccountResolver``, ``OrderConfirmer``, ``ServiceTaskCreator`` and
``NotificationSink``) by calling the platform's internal API:

    GET  {base}/orders/{order_ref}/parties   -> client, provider, payee account
    POST {base}/orders/{order_ref}/confirm   -> accept the reply after capture
    POST {base}/service-tasks                -> create the task, returns {"id"}
    POST {base}/notifications                -> enqueue a user notification

Failures raise ``PlatformServiceError``; the engine decides which of them
are fatal (payee lookup) and which are logged and dropped (everything that
runs after capture).
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

import httpx

from service_escrow.domain.collaborators import Notification, OrderParties
from service_escrow.domain.exceptions import (
    PayeeAccountNotFoundError,
    PlatformServiceError,
)
from service_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from service_escrow.config import Settings

logger = get_logger(__name__)


class PlatformClient:
    """Async client for the platform's internal API."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> PlatformClient:
        return cls(
            base_url=settings.platform_api_url,
            token=settings.platform_api_token,
            timeout=settings.platform_api_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- PayeeAccountResolver ---

    async def resolve(self, order_ref: str) -> OrderParties:
        response = await self._request("resolve_payee", "GET", f"/orders/{order_ref}/parties")
        if response.status_code == 404:
            raise PayeeAccountNotFoundError(order_ref)
        body = self._json("resolve_payee", response)
        return OrderParties(
            order_ref=order_ref,
            client_id=str(body["client_id"]),
            provider_id=str(body["provider_id"]),
            destination_account_id=body.get("destination_account_id") or None,
        )

    # --- OrderConfirmer ---

    async def confirm_order(self, order_ref: str, payment_id: uuid.UUID) -> None:
        response = await self._request(
            "confirm_order",
            "POST",
            f"/orders/{order_ref}/confirm",
            json={"payment_id": str(payment_id)},
        )
        self._json("confirm_order", response)

    # --- ServiceTaskCreator ---

    async def create_task(self, order_ref: str, payment_id: uuid.UUID) -> uuid.UUID:
        response = await self._request(
            "create_task",
            "POST",
            "/service-tasks",
            json={"order_ref": order_ref, "payment_id": str(payment_id)},
        )
        body = self._json("create_task", response)
        try:
            return uuid.UUID(str(body["id"]))
        except (KeyError, ValueError) as exc:
            raise PlatformServiceError("create_task", "response has no task id") from exc

    # --- NotificationSink ---

    async def send(self, notification: Notification) -> None:
        payload: dict[str, Any] = {
            "recipient_id": notification.recipient_id,
            "kind": notification.kind,
            "payment_id": notification.payment_id,
            "amount": str(notification.amount) if notification.amount is not None else None,
            "details": notification.details,
        }
        response = await self._request("send_notification", "POST", "/notifications", json=payload)
        self._json("send_notification", response)

    # --- Internals ---

    async def _request(
        self, operation: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("platform.request_failed", operation=operation, error=str(exc))
            raise PlatformServiceError(operation, str(exc)) from exc

    @staticmethod
    def _json(operation: str, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            logger.warning(
                "platform.error_response",
                operation=operation,
                status_code=response.status_code,
            )
            raise PlatformServiceError(operation, f"HTTP {response.status_code}")
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise PlatformServiceError(operation, "response is not JSON") from exc
        return body if isinstance(body, dict) else {}
