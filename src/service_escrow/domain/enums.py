"""Domain enumerations for the Service Escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum

# Status written by older releases for a captured, not yet released payment.
LEGACY_COMPLETED = "COMPLETED"


class PaymentStatus(enum.StrEnum):
    """Lifecycle states of an escrow payment.

    State transitions are enforced by the PaymentStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    ESCROWED = "ESCROWED"
    RELEASED = "RELEASED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

    @classmethod
    def from_stored(cls, value: str) -> "PaymentStatus":
        """Parse a persisted or serialized status, folding COMPLETED into ESCROWED."""
        normalized = value.strip().upper()
        if normalized == LEGACY_COMPLETED:
            return cls.ESCROWED
        return cls(normalized)


class EventType(enum.StrEnum):
    """Types of audit events recorded in the payment_events table.

    Every engine mutation produces exactly one event. This is the
    append-only trail used for manual reconciliation.
    """

    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    FULL_REFUND = "FULL_REFUND"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    SERVICE_TASK_LINKED = "SERVICE_TASK_LINKED"


class FeeType(enum.StrEnum):
    """How the protection fee is derived from the service amount."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"
    HYBRID = "hybrid"
    DISABLED = "disabled"


class ActorRole(enum.StrEnum):
    """Role of whoever triggers an engine operation."""

    CLIENT = "CLIENT"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class ErrorKind(enum.StrEnum):
    """Caller-facing error categories returned in every failed result."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID = "INVALID"
    CONFLICT = "CONFLICT"
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    CANNOT_UPDATE = "CANNOT_UPDATE"


class MetadataKey(enum.StrEnum):
    """Keys allowed in the metadata attached to a gateway payment intent."""

    PLATFORM = "platform"
    PAYMENT_TYPE = "payment_type"
    ORDER_REF = "order_ref"
    DESTINATION_ACCOUNT_ID = "destination_account_id"
    SERVICE_AMOUNT = "service_amount"
    PROTECTION_FEE = "protection_fee"
    CLIENT_ID = "client_id"
    PROVIDER_ID = "provider_id"
    CREATED_AT = "created_at"


class GatewayIntentStatus(enum.StrEnum):
    """Payment intent statuses reported by the gateway that the engine acts on."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"
