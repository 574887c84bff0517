"""Protocols for the platform services the escrow engine talks to.

Orders (replies), service tasks, payee account lookup and user
notifications live in other parts of the platform. The engine receives
implementations through its constructor; it never looks them up.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class OrderParties:
    """Who pays and who gets paid for an order."""

    order_ref: str
    client_id: str
    provider_id: str
    destination_account_id: str | None


@dataclass(frozen=True)
class Notification:
    """A message for one user, published after a money state change."""

    recipient_id: str
    kind: str
    payment_id: str
    amount: Decimal | None = None
    details: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PayeeAccountResolver(Protocol):
    async def resolve(self, order_ref: str) -> OrderParties:
        """Return the parties of ``order_ref``; ``destination_account_id`` may be None."""
        ...


@runtime_checkable
class OrderConfirmer(Protocol):
    async def confirm_order(self, order_ref: str, payment_id: uuid.UUID) -> None:
        """Mark the order (reply) as accepted once its payment is captured."""
        ...


@runtime_checkable
class ServiceTaskCreator(Protocol):
    async def create_task(self, order_ref: str, payment_id: uuid.UUID) -> uuid.UUID:
        """Create the downstream service task and return its id."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...
