"""Analysis API routes.

Triggers multi-backend analysis and exposes the persisted picks and
consensus records.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from oracle.api.dependencies import get_app_settings, get_backend_set, get_orchestrator
from oracle.core.config import Settings
from oracle.core.exceptions import BadRequestError, NotFoundError
from oracle.core.logging import get_logger
from oracle.engine.backends.config import BackendSet
from oracle.engine.orchestrator import Orchestrator
from oracle.engine.schemas import ConsensusRecord, GenerationResult, Pick, PickStatus
from oracle.repositories import consensus_orm, picks_orm


router = APIRouter()

logger = get_logger("api.analysis")


# =============================================================================
# Request Schemas
# =============================================================================


class AnalyzeRequest(BaseModel):
    """Analysis request for one symbol."""

    symbol: str = Field(..., min_length=1, max_length=12, description="Ticker symbol")
    backends: list[str] | None = Field(
        None, description="Restrict the run to these backend ids (default: all enabled)"
    )

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/analyze",
    response_model=GenerationResult,
    summary="Analyze a symbol",
    description="Run every enabled backend concurrently and build a consensus when two or more succeed.",
)
async def analyze(
    payload: AnalyzeRequest,
    backends: BackendSet = Depends(get_backend_set),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> GenerationResult:
    if payload.backends is not None:
        try:
            backends = backends.subset(payload.backends)
        except KeyError as e:
            raise BadRequestError(str(e.args[0])) from e

    if not backends.enabled:
        raise BadRequestError("No enabled backends configured")

    return await orchestrator.generate_picks(payload.symbol, backends)


@router.get(
    "/picks",
    response_model=list[Pick],
    summary="List picks",
)
async def list_picks(
    symbol: str | None = Query(None, description="Filter by symbol"),
    status: PickStatus | None = Query(None, description="Filter by status"),
    backend: str | None = Query(None, description="Filter by backend id"),
    limit: int = Query(50, ge=1, le=500),
) -> list[Pick]:
    return await picks_orm.list_picks(
        symbol=symbol.upper() if symbol else None,
        status=status,
        backend_id=backend,
        limit=limit,
    )


@router.get("/picks/{pick_id}", response_model=Pick, summary="Get one pick")
async def get_pick(pick_id: str) -> Pick:
    pick = await picks_orm.get_pick(pick_id)
    if pick is None:
        raise NotFoundError(f"Pick {pick_id} not found")
    return pick


@router.get(
    "/consensus",
    response_model=ConsensusRecord,
    summary="Latest consensus for a symbol",
)
async def get_consensus(
    symbol: str = Query(..., min_length=1, description="Ticker symbol"),
    settings: Settings = Depends(get_app_settings),
) -> ConsensusRecord:
    """Most recent consensus created within the recency window."""
    since = datetime.now(UTC) - timedelta(hours=settings.consensus_recency_hours)
    record = await consensus_orm.get_latest_consensus(symbol, since)
    if record is None:
        raise NotFoundError(f"No recent consensus for {symbol.upper()}")
    return record


@router.get(
    "/consensus/history",
    response_model=list[ConsensusRecord],
    summary="Consensus history",
)
async def consensus_history(
    symbol: str | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
) -> list[ConsensusRecord]:
    return await consensus_orm.list_consensus(symbol, limit)
