"""Domain layer: pure business logic with zero framework dependencies."""

from service_escrow.domain.enums import (
    ActorRole,
    ErrorKind,
    EventType,
    FeeType,
    PaymentStatus,
)
from service_escrow.domain.exceptions import (
    EscrowError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
)
from service_escrow.domain.fees import (
    ProtectionFeeCalculation,
    ProtectionFeeConfig,
    calculate_payment_breakdown,
    calculate_protection_fee,
)
from service_escrow.domain.gateway_protocol import PaymentGateway
from service_escrow.domain.policy import Actor, authorize
from service_escrow.domain.state_machine import (
    PaymentStateMachine,
    validate_transition,
)

__all__ = [
    "ActorRole",
    "ErrorKind",
    "EventType",
    "FeeType",
    "PaymentStatus",
    "EscrowError",
    "InvalidStateTransitionError",
    "PaymentNotFoundError",
    "ProtectionFeeCalculation",
    "ProtectionFeeConfig",
    "calculate_payment_breakdown",
    "calculate_protection_fee",
    "PaymentGateway",
    "Actor",
    "authorize",
    "PaymentStateMachine",
    "validate_transition",
]
