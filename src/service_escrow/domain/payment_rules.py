"""Derived, read-only queries over a payment record.

Every function here is pure: it inspects a payment-shaped object and
returns a flag or an amount. The engine uses these as operation
preconditions; the status endpoint and reporting expose them as-is.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from service_escrow.domain.enums import PaymentStatus
from service_escrow.domain.exceptions import AmountMismatchError, InvalidAmountError
from service_escrow.domain.money import ZERO, amounts_equal, to_money

if TYPE_CHECKING:
    from decimal import Decimal

DEFAULT_REFUND_WINDOW = timedelta(days=30)

_STATUS_DESCRIPTIONS: dict[PaymentStatus, str] = {
    PaymentStatus.PENDING: "Awaiting payment from the client",
    PaymentStatus.PROCESSING: "Payment is being processed by the gateway",
    PaymentStatus.ESCROWED: "Funds are held in escrow until the service is completed",
    PaymentStatus.RELEASED: "Funds were released to the provider",
    PaymentStatus.FAILED: "Payment failed",
    PaymentStatus.CANCELLED: "Payment was cancelled before capture",
    PaymentStatus.REFUNDED: "Payment was fully refunded to the client",
    PaymentStatus.DISPUTED: "The client opened a dispute with their card issuer",
}


class PaymentRecord(Protocol):
    """The attributes the rules read. The ORM ``Payment`` satisfies it."""

    status: str
    service_amount: Decimal
    protection_fee: Decimal
    total_amount: Decimal
    transferred_amount: Decimal
    refunded_amount: Decimal
    fee_collected: bool
    paid_at: datetime | None


def _status(payment: PaymentRecord) -> PaymentStatus:
    return PaymentStatus.from_stored(payment.status)


def _as_aware(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Flags
# ---------------------------------------------------------------------------


def is_in_escrow(payment: PaymentRecord) -> bool:
    return (
        _status(payment) is PaymentStatus.ESCROWED
        and payment.transferred_amount == 0
        and payment.refunded_amount < payment.total_amount
        and payment.paid_at is not None
    )


def can_be_released(payment: PaymentRecord) -> bool:
    """Partial refunds taken while ESCROWED do not block a release."""
    return (
        _status(payment) is PaymentStatus.ESCROWED
        and payment.transferred_amount == 0
        and payment.service_amount > 0
        and payment.paid_at is not None
    )


def can_be_refunded(
    payment: PaymentRecord,
    now: datetime | None = None,
    window: timedelta = DEFAULT_REFUND_WINDOW,
) -> bool:
    """Refunds are allowed for captured payments within ``window`` of capture."""
    if _status(payment) not in (PaymentStatus.ESCROWED, PaymentStatus.RELEASED):
        return False
    if payment.refunded_amount >= payment.total_amount or payment.paid_at is None:
        return False
    now = now or datetime.now(UTC)
    return _as_aware(now) <= _as_aware(payment.paid_at) + window


def can_be_cancelled(payment: PaymentRecord) -> bool:
    return _status(payment) in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


def is_fully_processed(payment: PaymentRecord) -> bool:
    """True once the payment reached a state that needs no further action."""
    status = _status(payment)
    if status is PaymentStatus.RELEASED:
        return payment.transferred_amount > 0
    return status in (
        PaymentStatus.REFUNDED,
        PaymentStatus.CANCELLED,
        PaymentStatus.FAILED,
    )


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------


def escrowed_amount(payment: PaymentRecord) -> Decimal:
    if not is_in_escrow(payment):
        return ZERO
    return to_money(
        payment.total_amount - payment.transferred_amount - payment.refunded_amount
    )


def max_refundable(
    payment: PaymentRecord,
    now: datetime | None = None,
    window: timedelta = DEFAULT_REFUND_WINDOW,
) -> Decimal:
    if not can_be_refunded(payment, now=now, window=window):
        return ZERO
    return to_money(payment.total_amount - payment.refunded_amount)


def releasable_amount(payment: PaymentRecord) -> Decimal:
    """The full service amount; prior partial refunds are not deducted."""
    if not can_be_released(payment):
        return ZERO
    return to_money(payment.service_amount)


def platform_revenue(payment: PaymentRecord) -> Decimal:
    """Protection fee kept by the platform, net of refunds that ate into it."""
    if not payment.fee_collected:
        return ZERO
    return to_money(
        payment.protection_fee - min(payment.refunded_amount, payment.protection_fee)
    )


def provider_earnings(payment: PaymentRecord) -> Decimal:
    if _status(payment) is PaymentStatus.RELEASED:
        return to_money(payment.transferred_amount)
    if not is_in_escrow(payment):
        return ZERO
    refund_beyond_fee = max(ZERO, payment.refunded_amount - payment.protection_fee)
    return to_money(max(ZERO, payment.service_amount - refund_beyond_fee))


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


def validate_amounts(
    service_amount: Decimal,
    protection_fee: Decimal,
    total_amount: Decimal,
) -> None:
    """Check the amount triple supplied when opening an intent.

    Raises:
        InvalidAmountError: service <= 0 or fee < 0.
        AmountMismatchError: total differs from service + fee by more than 0.01.
    """
    if service_amount <= 0:
        raise InvalidAmountError(f"Service amount must be positive, got {service_amount}")
    if protection_fee < 0:
        raise InvalidAmountError(f"Protection fee cannot be negative, got {protection_fee}")
    if not amounts_equal(total_amount, service_amount + protection_fee):
        raise AmountMismatchError(service_amount, protection_fee, total_amount)


def check_invariants(payment: PaymentRecord) -> None:
    """Assert the money-conservation invariants on a (mutated) payment.

    Raises:
        AmountMismatchError: If total != service + fee.
        InvalidAmountError: If transferred or refunded amounts leave their bounds.
    """
    if not amounts_equal(payment.total_amount, payment.service_amount + payment.protection_fee):
        raise AmountMismatchError(
            payment.service_amount, payment.protection_fee, payment.total_amount
        )
    if not ZERO <= payment.transferred_amount <= payment.service_amount:
        raise InvalidAmountError(
            f"Transferred amount {payment.transferred_amount} outside "
            f"[0, {payment.service_amount}]"
        )
    if not ZERO <= payment.refunded_amount <= payment.total_amount:
        raise InvalidAmountError(
            f"Refunded amount {payment.refunded_amount} outside [0, {payment.total_amount}]"
        )


def status_description(status: str) -> str:
    return _STATUS_DESCRIPTIONS.get(PaymentStatus.from_stored(status), "Unknown status")
