"""Calibration, combination accuracy and factor routes."""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from oracle.core.exceptions import NotFoundError
from oracle.engine.calibration import calibration_report, run_all_calibrations
from oracle.engine.factors import get_factor_recommendations
from oracle.engine.schemas import (
    Calibration,
    CalibrationRunSummary,
    CombinationStats,
    FactorRecommendations,
)
from oracle.repositories import calibrations_orm, combination_stats_orm


router = APIRouter()


class CalibrateRequest(BaseModel):
    backend_id: str = Field("all", description='Backend id, or "all" for every known backend')


@router.post(
    "/calibrate",
    response_model=CalibrationRunSummary,
    summary="Run calibration",
)
async def calibrate(payload: CalibrateRequest) -> CalibrationRunSummary:
    """
    Calibrate one backend or all of them.

    Backends without enough settled picks are reported as skipped.
    """
    if payload.backend_id.lower() == "all":
        return await run_all_calibrations()
    return await run_all_calibrations([payload.backend_id])


@router.get(
    "/calibration",
    response_model=Calibration,
    summary="Latest calibration for a backend",
)
async def get_calibration(backend: str = Query(..., description="Backend id")) -> Calibration:
    calibration = await calibrations_orm.get_latest_calibration(backend)
    if calibration is None:
        raise NotFoundError(f"No calibration for {backend}")
    return calibration


@router.get(
    "/calibration/history",
    response_model=list[Calibration],
    summary="Calibration history for a backend",
)
async def calibration_history(
    backend: str = Query(...),
    limit: int = Query(10, ge=1, le=100),
) -> list[Calibration]:
    return await calibrations_orm.list_history(backend, limit)


@router.get(
    "/calibration/report",
    response_class=PlainTextResponse,
    summary="Markdown calibration report",
)
async def report() -> str:
    return await calibration_report()


@router.get(
    "/combinations",
    response_model=list[CombinationStats],
    summary="Backend combination leaderboard",
)
async def combinations(
    min_agreed: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=200),
) -> list[CombinationStats]:
    return await combination_stats_orm.list_stats(min_agreed, limit)


@router.get(
    "/factors",
    response_model=FactorRecommendations,
    summary="Factor recommendations for a backend",
)
async def factors(backend: str = Query(..., description="Backend id")) -> FactorRecommendations:
    return await get_factor_recommendations(backend)
