"""Outcome resolution routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from oracle.api.dependencies import get_outcome_resolver
from oracle.engine.outcomes import OutcomeResolver
from oracle.engine.schemas import PendingStatus, Pick, ResolveSummary


router = APIRouter()


@router.post(
    "/resolve-expired",
    response_model=ResolveSummary,
    summary="Settle due picks",
    description="Run the settlement sweep now. Safe to repeat; settled picks are left untouched.",
)
async def resolve_expired(
    resolver: OutcomeResolver = Depends(get_outcome_resolver),
) -> ResolveSummary:
    return await resolver.resolve_expired()


@router.get("/pending", response_model=PendingStatus, summary="Pending pick status")
async def pending_status(
    resolver: OutcomeResolver = Depends(get_outcome_resolver),
) -> PendingStatus:
    return await resolver.pending_status()


@router.post(
    "/picks/{pick_id}/resolve",
    response_model=Pick,
    summary="Force-resolve one pick",
)
async def resolve_pick(
    pick_id: str,
    resolver: OutcomeResolver = Depends(get_outcome_resolver),
) -> Pick:
    """Settle a pick at the current price as if its horizon had elapsed."""
    return await resolver.resolve_pick(pick_id)
