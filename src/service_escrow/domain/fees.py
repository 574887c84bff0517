"""Protection fee calculator.

The client pays ``service_amount + protection_fee``; the fee is platform
revenue and the service amount is what the provider can receive on
release. Calculation is pure: the same amount and configuration always
produce the same breakdown.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from service_escrow.domain.enums import FeeType
from service_escrow.domain.exceptions import InvalidAmountError, InvalidFeeConfigError
from service_escrow.domain.money import ZERO, to_money


class ProtectionFeeConfig(BaseModel):
    """Immutable protection fee settings.

    Defaults match the platform's standard plan: 10% of the service amount,
    never less than 5 and never more than 100.
    """

    model_config = ConfigDict(frozen=True)

    fee_type: FeeType = FeeType.PERCENTAGE
    percentage_rate: Decimal = Field(default=Decimal("10"), description="Percent, 0-100")
    fixed_amount: Decimal = Decimal("25")
    minimum_fee: Decimal = Decimal("5")
    maximum_fee: Decimal = Decimal("100")
    enabled: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> ProtectionFeeConfig:
        if self.fee_type is FeeType.DISABLED:
            raise ValueError("use enabled=False instead of fee_type='disabled'")
        if not Decimal("0") <= self.percentage_rate <= Decimal("100"):
            raise ValueError("percentage_rate must be between 0 and 100")
        if self.fixed_amount < 0:
            raise ValueError("fixed_amount cannot be negative")
        if self.minimum_fee < 0:
            raise ValueError("minimum_fee cannot be negative")
        if self.maximum_fee < self.minimum_fee:
            raise ValueError("maximum_fee must be greater than or equal to minimum_fee")
        return self

    @classmethod
    def parse(cls, data: dict[str, Any]) -> ProtectionFeeConfig:
        """Build a config from untrusted input, raising the domain error on failure."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            messages = "; ".join(err["msg"] for err in exc.errors())
            raise InvalidFeeConfigError(messages) from exc


@dataclass(frozen=True)
class ProtectionFeeCalculation:
    base_amount: Decimal
    fee_type: str
    percentage_rate: Decimal
    fixed_amount: Decimal
    minimum_fee: Decimal
    maximum_fee: Decimal
    calculated_fee: Decimal
    final_fee: Decimal
    minimum_applied: bool
    maximum_applied: bool
    justification: str

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly snapshot stored on the payment row."""
        return {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in asdict(self).items()
        }


def calculate_protection_fee(
    service_amount: Decimal,
    config: ProtectionFeeConfig | None = None,
) -> ProtectionFeeCalculation:
    """Compute the protection fee for ``service_amount``.

    The raw fee depends on the fee type, then gets clamped to
    ``[minimum_fee, maximum_fee]``. The justification records which bound,
    if any, was applied.

    Raises:
        InvalidAmountError: If ``service_amount`` is not positive.
    """
    config = config or ProtectionFeeConfig()
    amount = to_money(service_amount)
    if amount <= 0:
        raise InvalidAmountError(f"Service amount must be positive, got {amount}")

    if not config.enabled:
        return ProtectionFeeCalculation(
            base_amount=amount,
            fee_type=FeeType.DISABLED.value,
            percentage_rate=config.percentage_rate,
            fixed_amount=config.fixed_amount,
            minimum_fee=config.minimum_fee,
            maximum_fee=config.maximum_fee,
            calculated_fee=ZERO,
            final_fee=ZERO,
            minimum_applied=False,
            maximum_applied=False,
            justification="Protection fee is disabled",
        )

    percentage_fee = amount * config.percentage_rate / Decimal("100")
    if config.fee_type is FeeType.PERCENTAGE:
        raw_fee = percentage_fee
        justification = f"{config.percentage_rate}% of service amount"
    elif config.fee_type is FeeType.FIXED:
        raw_fee = config.fixed_amount
        justification = f"Fixed fee of {to_money(config.fixed_amount)}"
    else:
        raw_fee = max(percentage_fee, config.fixed_amount)
        justification = (
            f"Higher of {config.percentage_rate}% ({to_money(percentage_fee)}) "
            f"or fixed {to_money(config.fixed_amount)}"
        )

    calculated = to_money(raw_fee)
    final = to_money(min(max(calculated, config.minimum_fee), config.maximum_fee))

    minimum_applied = final != calculated and final == to_money(config.minimum_fee)
    maximum_applied = final != calculated and final == to_money(config.maximum_fee)
    if minimum_applied:
        justification += f" (minimum {to_money(config.minimum_fee)} applied)"
    elif maximum_applied:
        justification += f" (maximum {to_money(config.maximum_fee)} applied)"

    return ProtectionFeeCalculation(
        base_amount=amount,
        fee_type=config.fee_type.value,
        percentage_rate=config.percentage_rate,
        fixed_amount=config.fixed_amount,
        minimum_fee=config.minimum_fee,
        maximum_fee=config.maximum_fee,
        calculated_fee=calculated,
        final_fee=final,
        minimum_applied=minimum_applied,
        maximum_applied=maximum_applied,
        justification=justification,
    )


@dataclass(frozen=True)
class PaymentBreakdown:
    service_amount: Decimal
    protection_fee: Decimal
    total_amount: Decimal
    calculation: ProtectionFeeCalculation


def calculate_payment_breakdown(
    service_amount: Decimal,
    config: ProtectionFeeConfig | None = None,
) -> PaymentBreakdown:
    """Return service, fee and total with ``total == service + fee`` exactly."""
    calculation = calculate_protection_fee(service_amount, config)
    return PaymentBreakdown(
        service_amount=calculation.base_amount,
        protection_fee=calculation.final_fee,
        total_amount=calculation.base_amount + calculation.final_fee,
        calculation=calculation,
    )
