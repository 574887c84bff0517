"""Platform revenue reporting.

``build_revenue_report`` is a pure projection over payment rows, so it can
be tested without a database. ``ReportingService`` fetches the rows for a
period and applies the role policy.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from service_escrow.domain.enums import PaymentStatus
from service_escrow.domain.exceptions import EscrowError, InvalidAmountError
from service_escrow.domain.money import ZERO, to_money
from service_escrow.domain.payment_rules import escrowed_amount, is_in_escrow, platform_revenue
from service_escrow.domain.policy import authorize
from service_escrow.infrastructure.database.repositories import PaymentRepository
from service_escrow.logging_config import get_logger
from service_escrow.services.results import ServiceResult

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from service_escrow.domain.payment_rules import PaymentRecord
    from service_escrow.domain.policy import Actor

logger = get_logger(__name__)


@dataclass(frozen=True)
class RevenueReport:
    period: str
    total_service_revenue: Decimal
    total_protection_fees: Decimal
    total_platform_revenue: Decimal
    total_transactions: int
    completed_services: int
    refunded_services: int
    escrowed_payments: int
    refund_rate: Decimal
    average_service_value: Decimal
    average_protection_fee: Decimal
    total_escrowed_amount: Decimal
    count_by_status: dict[str, int] = field(default_factory=dict)


def build_revenue_report(
    payments: Sequence[PaymentRecord], start: datetime, end: datetime
) -> RevenueReport:
    """Aggregate payments created in ``[start, end]`` into a revenue report."""
    count = len(payments)
    statuses = Counter(PaymentStatus.from_stored(p.status) for p in payments)
    escrowed = [p for p in payments if is_in_escrow(p)]

    total_service = sum((p.service_amount for p in payments), ZERO)
    total_fees = sum((p.protection_fee for p in payments), ZERO)
    refunded = statuses[PaymentStatus.REFUNDED]

    if count:
        refund_rate = to_money(Decimal(refunded) / Decimal(count) * 100)
        average_service = to_money(total_service / count)
        average_fee = to_money(total_fees / count)
    else:
        refund_rate = average_service = average_fee = ZERO

    return RevenueReport(
        period=f"{start:%Y-%m-%d} to {end:%Y-%m-%d}",
        total_service_revenue=to_money(total_service),
        total_protection_fees=to_money(total_fees),
        total_platform_revenue=to_money(sum((platform_revenue(p) for p in payments), ZERO)),
        total_transactions=count,
        completed_services=statuses[PaymentStatus.RELEASED],
        refunded_services=refunded,
        escrowed_payments=len(escrowed),
        refund_rate=refund_rate,
        average_service_value=average_service,
        average_protection_fee=average_fee,
        total_escrowed_amount=to_money(sum((escrowed_amount(p) for p in escrowed), ZERO)),
        count_by_status={status.value: n for status, n in sorted(statuses.items())},
    )


class ReportingService:
    """Read-only reports for administrators."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def revenue_report(
        self, start: datetime, end: datetime, actor: Actor
    ) -> ServiceResult[RevenueReport]:
        try:
            authorize("revenue_report", actor)
            if end < start:
                raise InvalidAmountError(f"Report period ends before it starts: {start} > {end}")
            async with self._session_factory() as session:
                payments = await PaymentRepository(session).list_created_between(start, end)
        except EscrowError as exc:
            logger.warning("report.rejected", code=exc.code, error=exc.message)
            return ServiceResult.from_error(exc)
        except Exception as exc:
            logger.exception("report.failed", error=str(exc))
            return ServiceResult.fail("Could not build revenue report", "TECHNICAL_ERROR")

        report = build_revenue_report(payments, start, end)
        logger.info(
            "report.generated",
            period=report.period,
            transactions=report.total_transactions,
            platform_revenue=str(report.total_platform_revenue),
        )
        return ServiceResult.ok(report)
