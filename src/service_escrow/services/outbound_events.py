"""Non-blocking outbound events published after money state changes.

Order confirmation, service task creation and user notifications run
after the payment's status is committed. They are fire-and-forget:

    - ``publish`` schedules the handler on the running loop and returns
      immediately, so a slow collaborator never delays the caller.
    - Delivery is at most once. A handler that raises is logged with the
      event and dropped; nothing retries it and nothing rolls back.

Tests (and graceful shutdown) call ``drain`` to wait for in-flight
deliveries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from service_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboundEvent:
    """One side effect to deliver, e.g. ``payment.captured.notify_client``."""

    name: str
    payment_id: str
    context: dict[str, Any] = field(default_factory=dict)


class OutboundEventBus:
    """Schedules outbound deliveries as background tasks."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task[None]] = set()

    def publish(
        self,
        event: OutboundEvent,
        deliver: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(self._run(event, deliver), name=event.name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, event: OutboundEvent, deliver: Callable[[], Awaitable[Any]]) -> None:
        try:
            await deliver()
        except Exception as exc:
            logger.warning(
                "outbound.delivery_failed",
                outbound_event=event.name,
                payment_id=event.payment_id,
                error=str(exc),
                **event.context,
            )
            return
        logger.debug("outbound.delivered", outbound_event=event.name, payment_id=event.payment_id)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every delivery published so far (including chained ones)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
