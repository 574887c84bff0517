"""Domain exceptions for the Service Escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
Engine entry points convert them into failed ``ServiceResult`` values; each
carries the ``ErrorKind`` the caller sees.
"""

from service_escrow.domain.enums import ErrorKind


class EscrowError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.TECHNICAL_ERROR

    def __init__(
        self,
        message: str,
        code: str = "ESCROW_ERROR",
        kind: ErrorKind | None = None,
    ) -> None:
        self.message = message
        self.code = code
        if kind is not None:
            self.kind = kind
        super().__init__(self.message)


# --- Not found ---


class PaymentNotFoundError(EscrowError):
    """Raised when no payment matches the given id, intent id or charge id."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, reference: str) -> None:
        super().__init__(
            message=f"Payment not found: {reference}",
            code="PAYMENT_NOT_FOUND",
        )
        self.reference = reference


class PayeeAccountNotFoundError(EscrowError):
    """Raised when the provider has no connected gateway account."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, order_ref: str) -> None:
        super().__init__(
            message=f"No payee account configured for order {order_ref}",
            code="PAYEE_ACCOUNT_NOT_FOUND",
        )
        self.order_ref = order_ref


# --- Forbidden ---


class ActionForbiddenError(EscrowError):
    """Raised when the caller's role may not perform an operation."""

    kind = ErrorKind.FORBIDDEN

    def __init__(self, operation: str, role: str) -> None:
        super().__init__(
            message=f"Role {role} may not perform {operation}",
            code="ACTION_FORBIDDEN",
        )
        self.operation = operation
        self.role = role


# --- Invalid input ---


class InvalidAmountError(EscrowError):
    """Raised for non-positive or out-of-range amounts."""

    kind = ErrorKind.INVALID

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_AMOUNT")


class InvalidFeeConfigError(EscrowError):
    """Raised when a protection fee configuration is inconsistent."""

    kind = ErrorKind.INVALID

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_FEE_CONFIG")


class WebhookSignatureError(EscrowError):
    """Raised when a webhook payload fails signature verification."""

    kind = ErrorKind.INVALID

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message=message, code="INVALID_WEBHOOK_SIGNATURE")


class MalformedWebhookError(EscrowError):
    """Raised when a signed webhook payload cannot be parsed."""

    kind = ErrorKind.INVALID

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="MALFORMED_WEBHOOK")


# --- Conflict ---


class AmountMismatchError(EscrowError):
    """Raised when total != service + fee beyond the rounding tolerance."""

    kind = ErrorKind.CONFLICT

    def __init__(self, service_amount: object, protection_fee: object, total: object) -> None:
        super().__init__(
            message=(
                f"Amount mismatch: service {service_amount} + fee {protection_fee} "
                f"!= total {total}"
            ),
            code="AMOUNT_MISMATCH",
        )


class DuplicatePaymentError(EscrowError):
    """Raised when an identical payment already exists for the same order."""

    kind = ErrorKind.CONFLICT

    def __init__(self, order_ref: str) -> None:
        super().__init__(
            message=f"Duplicate payment for order {order_ref}",
            code="DUPLICATE_PAYMENT",
        )
        self.order_ref = order_ref


class ConcurrentUpdateError(EscrowError):
    """Raised when another writer changed the payment between read and write."""

    kind = ErrorKind.CONFLICT

    def __init__(self, payment_id: str) -> None:
        super().__init__(
            message=f"Payment {payment_id} was modified concurrently; retry the operation",
            code="CONCURRENT_UPDATE",
        )
        self.payment_id = payment_id


# --- Technical (gateway / persistence) ---


class GatewayError(EscrowError):
    """Raised when the payment gateway rejects or fails a call."""

    kind = ErrorKind.TECHNICAL_ERROR

    def __init__(
        self,
        message: str,
        code: str = "GATEWAY_ERROR",
        gateway_code: str | None = None,
    ) -> None:
        super().__init__(message=message, code=code)
        self.gateway_code = gateway_code


class GatewayTimeoutError(GatewayError):
    """Raised when a gateway call exceeds its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            message=f"Gateway call {operation} timed out after {timeout}s",
            code="GATEWAY_TIMEOUT",
        )
        self.operation = operation


class InsufficientPlatformFundsError(GatewayError):
    """Raised when the platform balance cannot cover a transfer."""

    def __init__(self, message: str = "Insufficient available funds on platform balance") -> None:
        super().__init__(message=message, code="INSUFFICIENT_PLATFORM_FUNDS")


class PaymentNotConfirmedError(GatewayError):
    """Raised when the gateway reports an intent that has not succeeded."""

    def __init__(self, intent_id: str, gateway_status: str) -> None:
        super().__init__(
            message=f"Payment {intent_id} not successful: {gateway_status}",
            code="PAYMENT_NOT_CONFIRMED",
        )
        self.gateway_status = gateway_status


class PersistenceError(EscrowError):
    """Raised when a local write fails after the gateway accepted a call."""

    kind = ErrorKind.TECHNICAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PERSISTENCE_FAILED")


# --- Cannot update (state) ---


class InvalidStateTransitionError(EscrowError):
    """Raised when an attempted status change is not in the transition table.

    Example: ESCROWED -> CANCELLED (captured funds must be refunded instead).
    """

    kind = ErrorKind.CANNOT_UPDATE

    def __init__(self, current_state: str, attempted_state: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -> {attempted_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state


class PaymentNotReleasableError(EscrowError):
    kind = ErrorKind.CANNOT_UPDATE

    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(
            message=f"Payment {payment_id} cannot be released (status {status})",
            code="PAYMENT_NOT_RELEASABLE",
        )


class PaymentNotRefundableError(EscrowError):
    kind = ErrorKind.CANNOT_UPDATE

    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(
            message=f"Payment {payment_id} cannot be refunded (status {status})",
            code="PAYMENT_NOT_REFUNDABLE",
        )


class PaymentNotCancellableError(EscrowError):
    kind = ErrorKind.CANNOT_UPDATE

    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(
            message=f"Payment {payment_id} cannot be cancelled (status {status})",
            code="PAYMENT_NOT_CANCELLABLE",
        )


class PlatformServiceError(EscrowError):
    """Raised when a platform collaborator (orders, tasks, notifications) fails."""

    kind = ErrorKind.TECHNICAL_ERROR

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(
            message=f"Platform call {operation} failed: {message}",
            code="PLATFORM_SERVICE_ERROR",
        )
        self.operation = operation
