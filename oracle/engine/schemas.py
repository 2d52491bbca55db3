"""
Pydantic schemas for the consensus & calibration engine.

All data structures shared by backends, orchestrator, resolver, factor
tracker, calibration engine and the API layer.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class Direction(str, Enum):
    """Predicted price direction."""

    UP = "UP"
    DOWN = "DOWN"
    HOLD = "HOLD"


class PickStatus(str, Enum):
    """Settlement state of a pick or consensus."""

    PENDING = "PENDING"
    WIN = "WIN"
    LOSS = "LOSS"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not PickStatus.PENDING


class Timeframe(str, Enum):
    """Prediction horizon."""

    ONE_WEEK = "1W"
    TWO_WEEKS = "2W"
    ONE_MONTH = "1M"

    @property
    def horizon(self) -> timedelta:
        return {
            Timeframe.ONE_WEEK: timedelta(days=7),
            Timeframe.TWO_WEEKS: timedelta(days=14),
            Timeframe.ONE_MONTH: timedelta(days=30),
        }[self]


class Interpretation(str, Enum):
    """How a backend read a single factor."""

    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


class ConsensusStrength(str, Enum):
    """Agreement bucket of a consensus."""

    STRONG = "STRONG"
    MODERATE = "MODERATE"
    WEAK = "WEAK"
    SPLIT = "SPLIT"


class BackendTier(str, Enum):
    """A priori trust class of a backend."""

    LARGE = "large"
    MEDIUM = "medium"
    SMALL = "small"


class FailureReason(str, Enum):
    """Why a backend produced no pick."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    HTTP = "http"
    PARSE = "parse"
    VALIDATION = "validation"
    DISABLED = "disabled"


def _upper_enum_value(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().upper()
    return v


# =============================================================================
# Market Data
# =============================================================================


class MarketSnapshot(BaseModel):
    """Point-in-time market data the prompt is built from."""

    symbol: str
    price: float = Field(..., gt=0)
    company_name: str | None = None
    sector: str = "Unknown"
    industry: str | None = None
    currency: str = "USD"

    change_pct: float | None = Field(None, description="Day change in percent")
    volume: int | None = None
    avg_volume: int | None = None
    market_cap: float | None = None
    pe_ratio: float | None = None
    forward_pe: float | None = None
    dividend_yield: float | None = None
    high_52w: float | None = None
    low_52w: float | None = None
    sma_50: float | None = None
    sma_200: float | None = None

    fundamentals: dict[str, Any] = Field(default_factory=dict)
    technicals: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=_utcnow)

    @field_validator("symbol", mode="before")
    @classmethod
    def uppercase_symbol(cls, v: str) -> str:
        return v.upper().strip()


# =============================================================================
# Picks
# =============================================================================


class FactorAssessment(BaseModel):
    """A named qualitative observation cited within a pick."""

    model_config = ConfigDict(populate_by_name=True)

    factor_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("factor_id", "factorId")
    )
    factor_name: str = Field(
        "", validation_alias=AliasChoices("factor_name", "factorName")
    )
    observed_value: str = Field(
        "", validation_alias=AliasChoices("observed_value", "observedValue", "value")
    )
    interpretation: Interpretation
    confidence: int = Field(50, ge=0, le=100)
    reasoning: str = ""

    @field_validator("interpretation", mode="before")
    @classmethod
    def normalize_interpretation(cls, v: Any) -> Any:
        return _upper_enum_value(v)

    @field_validator("observed_value", mode="before")
    @classmethod
    def stringify_value(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def round_confidence(cls, v: Any) -> Any:
        if isinstance(v, float):
            return round(v)
        return v

    @model_validator(mode="after")
    def default_name(self) -> "FactorAssessment":
        if not self.factor_name:
            self.factor_name = self.factor_id
        return self


class BackendPickPayload(BaseModel):
    """The JSON contract a backend must answer with."""

    direction: Direction
    confidence: int = Field(..., ge=0, le=100)
    thesis: str = Field(..., min_length=1)
    full_reasoning: str = ""
    target_price: float = Field(..., gt=0)
    stop_loss: float = Field(..., gt=0)
    timeframe: Timeframe = Timeframe.ONE_WEEK
    factor_assessments: list[FactorAssessment] = Field(default_factory=list)
    key_bullish_factors: list[str] = Field(default_factory=list)
    key_bearish_factors: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    catalysts: list[str] = Field(default_factory=list)

    @field_validator("direction", "timeframe", mode="before")
    @classmethod
    def normalize_enums(cls, v: Any) -> Any:
        if v is None:
            return v
        return _upper_enum_value(v)

    @field_validator("timeframe", mode="before")
    @classmethod
    def default_timeframe(cls, v: Any) -> Any:
        return Timeframe.ONE_WEEK if v in (None, "") else v

    @field_validator("confidence", mode="before")
    @classmethod
    def round_confidence(cls, v: Any) -> Any:
        if isinstance(v, float):
            return round(v)
        return v


class Pick(BaseModel):
    """One backend's independent opinion on one symbol."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=_new_id)
    backend_id: str
    symbol: str
    company_name: str | None = None
    sector: str = "Unknown"

    direction: Direction
    confidence: int = Field(..., ge=0, le=100)
    timeframe: Timeframe = Timeframe.ONE_WEEK

    entry_price: float = Field(..., gt=0)
    target_price: float = Field(..., gt=0)
    stop_loss: float = Field(..., gt=0)

    thesis: str = ""
    full_reasoning: str = ""
    factor_assessments: list[FactorAssessment] = Field(default_factory=list)
    bullish_factors: list[str] = Field(default_factory=list)
    bearish_factors: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    catalysts: list[str] = Field(default_factory=list)

    status: PickStatus = PickStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    closed_at: datetime | None = None
    closed_price: float | None = None
    actual_return: float | None = None
    hit_target: bool | None = None
    hit_stop_loss: bool | None = None
    days_held: int | None = None

    consensus_id: str | None = None

    @property
    def is_settled(self) -> bool:
        return self.status.is_terminal


# =============================================================================
# Consensus
# =============================================================================


class ConsensusRecord(BaseModel):
    """Weighted verdict for one symbol derived from concurrent picks."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=_new_id)
    symbol: str
    direction: Direction
    agreeing_backends: list[str]
    dissenting_backends: list[str] = Field(default_factory=list)
    combination_key: str
    pick_ids: list[str] = Field(default_factory=list)
    consensus_strength: ConsensusStrength
    agreement_share: float = Field(..., ge=0.0, le=1.0)
    weighted_confidence: float = Field(..., ge=0.0, le=100.0)
    blended_confidence: float = Field(..., ge=0.0, le=100.0)
    reasoning: str = ""

    status: PickStatus = PickStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    closed_at: datetime | None = None
    actual_return: float | None = None


class CombinationStats(BaseModel):
    """Accuracy of a specific set of backends when they agree."""

    model_config = ConfigDict(from_attributes=True)

    combination_key: str
    backends: list[str] = Field(default_factory=list)
    times_agreed: int = 0
    times_correct: int = 0
    accuracy_rate: float = 0.0
    avg_confidence_when_correct: float = 0.0
    avg_confidence_when_wrong: float = 0.0
    last_updated: datetime = Field(default_factory=_utcnow)


# =============================================================================
# Learning
# =============================================================================


class FactorStat(BaseModel):
    """Win rate of one factor (or one sector) across settled picks."""

    times_used: int = 0
    wins: int = 0
    win_rate: float = 0.0


class FactorOutcomeRecord(BaseModel):
    """One factor's outcome inside one settled pick."""

    model_config = ConfigDict(from_attributes=True)

    pick_id: str
    backend_id: str
    factor_id: str
    factor_name: str
    sector: str
    symbol: str
    interpretation: Interpretation
    confidence: int
    pick_direction: Direction
    outcome: PickStatus
    pick_won: bool
    interpretation_correct: bool
    actual_return: float | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class FactorRecommendations(BaseModel):
    """Reliability-weighted factor advice for one backend."""

    backend_id: str
    avoid_factors: list[str] = Field(default_factory=list)
    strong_factors: list[str] = Field(default_factory=list)
    adjustments: list[str] = Field(default_factory=list)
    factor_stats: dict[str, FactorStat] = Field(default_factory=dict)


class Calibration(BaseModel):
    """One backend's point-in-time reliability snapshot."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    backend_id: str
    calibration_date: datetime
    total_picks: int
    wins: int
    losses: int
    win_rate: float
    avg_return: float
    avg_confidence: float
    confidence_accuracy_correlation: float
    overconfidence_score: float
    factor_performance: dict[str, FactorStat] = Field(default_factory=dict)
    sector_performance: dict[str, FactorStat] = Field(default_factory=dict)
    best_sectors: list[str] = Field(default_factory=list)
    worst_sectors: list[str] = Field(default_factory=list)
    avoid_factors: list[str] = Field(default_factory=list)
    key_learnings: list[str] = Field(default_factory=list)
    adjustments: list[str] = Field(default_factory=list)


# =============================================================================
# Results
# =============================================================================


class BackendFailure(BaseModel):
    """Typed failure returned by an adapter instead of raising."""

    backend_id: str
    reason: FailureReason
    message: str = ""


class GenerationResult(BaseModel):
    """Outcome of one fan-out analysis request."""

    symbol: str
    picks: list[Pick] = Field(default_factory=list)
    consensus: ConsensusRecord | None = None
    failed_backends: list[BackendFailure] = Field(default_factory=list)


class ResolveSummary(BaseModel):
    """Counts from one outcome-resolution sweep."""

    processed: int = 0
    wins: int = 0
    losses: int = 0
    expired: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    calibration_due: list[str] = Field(default_factory=list)


class PendingStatus(BaseModel):
    """Snapshot of the unsettled pick backlog."""

    pending: int = 0
    ready_to_resolve: int = 0
    next_expiry: datetime | None = None
    symbols: list[str] = Field(default_factory=list)


class CalibrationRunSummary(BaseModel):
    """Counts from calibrating several backends."""

    calibrated: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    results: dict[str, str] = Field(
        default_factory=dict, description="backend_id -> calibrated/skipped/error"
    )
