"""Consensus and calibration engine.

Only the schemas are re-exported here; the repositories import them, so
heavier modules (orchestrator, resolver) are imported from their own paths.
"""

from oracle.engine.schemas import (
    BackendFailure,
    BackendTier,
    Calibration,
    CombinationStats,
    ConsensusRecord,
    ConsensusStrength,
    Direction,
    FailureReason,
    GenerationResult,
    MarketSnapshot,
    Pick,
    PickStatus,
    ResolveSummary,
    Timeframe,
)

__all__ = [
    "BackendFailure",
    "BackendTier",
    "Calibration",
    "CombinationStats",
    "ConsensusRecord",
    "ConsensusStrength",
    "Direction",
    "FailureReason",
    "GenerationResult",
    "MarketSnapshot",
    "Pick",
    "PickStatus",
    "ResolveSummary",
    "Timeframe",
]
