"""Protection fee endpoints.

Routes:
    POST   /api/v1/fees/calculate  Fee breakdown for a service amount
    GET    /api/v1/fees/config     Active protection fee configuration
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from service_escrow.api.deps import get_escrow_engine
from service_escrow.domain.exceptions import EscrowError
from service_escrow.domain.fees import calculate_payment_breakdown
from service_escrow.schemas.payments import (
    CalculateFeeRequest,
    FeeCalculationResponse,
    FeeConfigResponse,
)
from service_escrow.services.escrow_engine import EscrowEngine  # noqa: TC001

router = APIRouter(prefix="/api/v1/fees", tags=["Fees"])


@router.post(
    "/calculate",
    response_model=FeeCalculationResponse,
    summary="Calculate the protection fee for a service amount",
)
async def calculate_fee(
    request: CalculateFeeRequest,
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> FeeCalculationResponse | JSONResponse:
    try:
        breakdown = calculate_payment_breakdown(request.service_amount, engine.fee_config)
    except EscrowError as exc:
        return JSONResponse(
            status_code=422,
            content={"error": exc.code, "kind": exc.kind, "message": exc.message},
        )
    return FeeCalculationResponse(
        **breakdown.calculation.to_dict(),
        total_amount=breakdown.total_amount,
    )


@router.get(
    "/config",
    response_model=FeeConfigResponse,
    summary="Get the active protection fee configuration",
)
async def get_fee_config(
    engine: EscrowEngine = Depends(get_escrow_engine),
) -> FeeConfigResponse:
    config = engine.fee_config
    return FeeConfigResponse(
        fee_type=config.fee_type.value,
        percentage_rate=config.percentage_rate,
        fixed_amount=config.fixed_amount,
        minimum_fee=config.minimum_fee,
        maximum_fee=config.maximum_fee,
        enabled=config.enabled,
    )
