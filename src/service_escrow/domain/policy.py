"""Who may trigger which engine operation.

Authentication happens upstream; the engine receives an ``Actor`` that is
already trusted and only checks the role against this table.
"""

from __future__ import annotations

from dataclasses import dataclass

from service_escrow.domain.enums import ActorRole
from service_escrow.domain.exceptions import ActionForbiddenError

ROLE_POLICY: dict[str, frozenset[ActorRole]] = {
    "release_payment": frozenset({ActorRole.CLIENT, ActorRole.ADMIN, ActorRole.SYSTEM}),
    "refund_payment": frozenset({ActorRole.ADMIN, ActorRole.SYSTEM}),
    "cancel_payment": frozenset({ActorRole.CLIENT, ActorRole.ADMIN, ActorRole.SYSTEM}),
    "revenue_report": frozenset({ActorRole.ADMIN, ActorRole.SYSTEM}),
}


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: ActorRole

    @classmethod
    def system(cls, actor_id: str = "SYSTEM") -> Actor:
        return cls(actor_id=actor_id, role=ActorRole.SYSTEM)


WEBHOOK_ACTOR = Actor.system("gateway-webhook")


def authorize(operation: str, actor: Actor) -> None:
    """Raise ``ActionForbiddenError`` unless ``actor`` may run ``operation``.

    Operations missing from the policy table are open to every role.
    """
    allowed = ROLE_POLICY.get(operation)
    if allowed is not None and actor.role not in allowed:
        raise ActionForbiddenError(operation, actor.role.value)
