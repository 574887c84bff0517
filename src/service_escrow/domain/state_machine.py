"""Payment lifecycle state machine.

Uses python-statemachine to enforce legal transitions at the domain level.
Every status write in the engine goes through ``validate_transition``; no
other code consults the transition table.

Transition table:
    PENDING     -> PROCESSING   (mark_processing)
    PENDING     -> ESCROWED     (capture)
    PROCESSING  -> ESCROWED     (capture)
    PENDING     -> FAILED       (mark_failed)
    PROCESSING  -> FAILED       (mark_failed)
    PENDING     -> CANCELLED    (cancel_intent)
    PROCESSING  -> CANCELLED    (cancel_intent)
    ESCROWED    -> RELEASED     (release_funds)
    DISPUTED    -> RELEASED     (release_funds)
    ESCROWED    -> REFUNDED     (refund_payment)
    RELEASED    -> REFUNDED     (refund_payment)
    DISPUTED    -> REFUNDED     (refund_payment)
    ESCROWED    -> DISPUTED     (open_dispute)
    RELEASED    -> DISPUTED     (open_dispute)

FAILED, CANCELLED and REFUNDED are terminal.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from service_escrow.domain.enums import PaymentStatus
from service_escrow.domain.exceptions import InvalidStateTransitionError


class PaymentStateMachine(StateMachine):
    """State machine that guards escrow payment lifecycle transitions.

    Usage:
        sm = PaymentStateMachine(current_status="ESCROWED")
        sm.release_funds()  # transitions to RELEASED
        sm.status           # "RELEASED"
    """

    # --- States ---
    PENDING = State("PENDING", initial=True)
    PROCESSING = State("PROCESSING")
    ESCROWED = State("ESCROWED")
    RELEASED = State("RELEASED")
    DISPUTED = State("DISPUTED")
    FAILED = State("FAILED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    REFUNDED = State("REFUNDED", final=True)

    # --- Events / Transitions ---

    # Gateway progress
    mark_processing = PENDING.to(PROCESSING)
    capture = PENDING.to(ESCROWED) | PROCESSING.to(ESCROWED)
    mark_failed = PENDING.to(FAILED) | PROCESSING.to(FAILED)
    cancel_intent = PENDING.to(CANCELLED) | PROCESSING.to(CANCELLED)

    # Settlement
    release_funds = ESCROWED.to(RELEASED) | DISPUTED.to(RELEASED)
    refund_payment = (
        ESCROWED.to(REFUNDED) | RELEASED.to(REFUNDED) | DISPUTED.to(REFUNDED)
    )

    # Disputes
    open_dispute = ESCROWED.to(DISPUTED) | RELEASED.to(DISPUTED)

    def __init__(self, current_status: str = "PENDING") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: A PaymentStatus value. The legacy "COMPLETED"
                value is accepted and treated as ESCROWED.
        """
        try:
            status = PaymentStatus.from_stored(current_status)
        except ValueError:
            valid = ", ".join(sorted(s.value for s in PaymentStatus))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            ) from None
        super().__init__(start_value=status.value)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches PaymentStatus)."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


# The event that moves a payment into each target status.
EVENT_FOR_TARGET: dict[PaymentStatus, str] = {
    PaymentStatus.PROCESSING: "mark_processing",
    PaymentStatus.ESCROWED: "capture",
    PaymentStatus.FAILED: "mark_failed",
    PaymentStatus.CANCELLED: "cancel_intent",
    PaymentStatus.RELEASED: "release_funds",
    PaymentStatus.REFUNDED: "refund_payment",
    PaymentStatus.DISPUTED: "open_dispute",
}


def validate_transition(
    current_status: str | PaymentStatus,
    target_status: str | PaymentStatus,
) -> PaymentStatus:
    """Validate a status change and return the new status.

    Creates a temporary state machine at ``current_status`` and fires the
    event that leads to ``target_status``.

    Raises:
        InvalidStateTransitionError: If the change is not in the table.
    """
    current = PaymentStatus.from_stored(str(current_status))
    target = PaymentStatus.from_stored(str(target_status))

    event_name = EVENT_FOR_TARGET.get(target)
    if event_name is None:
        raise InvalidStateTransitionError(current.value, target.value)

    sm = PaymentStateMachine(current_status=current.value)
    try:
        getattr(sm, event_name)()
    except TransitionNotAllowed:
        raise InvalidStateTransitionError(current.value, target.value) from None

    if sm.status != target.value:
        raise InvalidStateTransitionError(current.value, target.value)
    return target


def can_transition(
    current_status: str | PaymentStatus,
    target_status: str | PaymentStatus,
) -> bool:
    try:
        validate_transition(current_status, target_status)
    except InvalidStateTransitionError:
        return False
    return True


def allowed_targets(current_status: str | PaymentStatus) -> list[PaymentStatus]:
    """List the statuses reachable in one step from ``current_status``."""
    return [
        target
        for target in EVENT_FOR_TARGET
        if can_transition(current_status, target)
    ]
