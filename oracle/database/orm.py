"""SQLAlchemy ORM models for Market Oracle.

This module defines all database tables using SQLAlchemy 2.0 ORM style.
Runs on PostgreSQL via asyncpg in production; JSON columns fall back to the
generic JSON type on other dialects.

Usage:
    from oracle.database.orm import Pick, ConsensusPick
    from oracle.database.connection import get_session

    async with get_session() as session:
        pick = await session.get(Pick, pick_id)
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


# Naming convention for constraints and indexes (deterministic names)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

JsonType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# PICKS
# =============================================================================


class Pick(Base):
    """One backend's prediction for one symbol. Settled exactly once."""
    __tablename__ = "oracle_picks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    backend_id: Mapped[str] = mapped_column(String(50), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(255))
    sector: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")

    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    timeframe: Mapped[str] = mapped_column(String(5), nullable=False, default="1W")

    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    target_price: Mapped[float] = mapped_column(Float, nullable=False)
    stop_loss: Mapped[float] = mapped_column(Float, nullable=False)

    thesis: Mapped[str] = mapped_column(Text, nullable=False, default="")
    full_reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    factor_assessments: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    bullish_factors: Mapped[list[str]] = mapped_column(JsonType, default=list)
    bearish_factors: Mapped[list[str]] = mapped_column(JsonType, default=list)
    risks: Mapped[list[str]] = mapped_column(JsonType, default=list)
    catalysts: Mapped[list[str]] = mapped_column(JsonType, default=list)

    status: Mapped[str] = mapped_column(String(10), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    closed_price: Mapped[float | None] = mapped_column(Float)
    actual_return: Mapped[float | None] = mapped_column(Float)
    hit_target: Mapped[bool | None] = mapped_column(Boolean)
    hit_stop_loss: Mapped[bool | None] = mapped_column(Boolean)
    days_held: Mapped[int | None] = mapped_column(Integer)

    consensus_id: Mapped[str | None] = mapped_column(String(36))

    __table_args__ = (
        CheckConstraint("direction IN ('UP', 'DOWN', 'HOLD')", name="valid_direction"),
        CheckConstraint(
            "status IN ('PENDING', 'WIN', 'LOSS', 'EXPIRED')", name="valid_status"
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="valid_confidence"),
        Index("idx_picks_backend", "backend_id"),
        Index("idx_picks_symbol", "symbol"),
        Index("idx_picks_status_expires", "status", "expires_at"),
        Index("idx_picks_created", "created_at"),
        Index("idx_picks_consensus", "consensus_id"),
    )


# =============================================================================
# CONSENSUS
# =============================================================================


class ConsensusPick(Base):
    """Weighted verdict built from two or more concurrent picks."""
    __tablename__ = "oracle_consensus_picks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    agreeing_backends: Mapped[list[str]] = mapped_column(JsonType, default=list)
    dissenting_backends: Mapped[list[str]] = mapped_column(JsonType, default=list)
    combination_key: Mapped[str] = mapped_column(String(255), nullable=False)
    pick_ids: Mapped[list[str]] = mapped_column(JsonType, default=list)
    consensus_strength: Mapped[str] = mapped_column(String(10), nullable=False)
    agreement_share: Mapped[float] = mapped_column(Float, nullable=False)
    weighted_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    blended_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")

    status: Mapped[str] = mapped_column(String(10), nullable=False, default="PENDING")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    actual_return: Mapped[float | None] = mapped_column(Float)

    __table_args__ = (
        CheckConstraint(
            "consensus_strength IN ('STRONG', 'MODERATE', 'WEAK', 'SPLIT')",
            name="valid_strength",
        ),
        Index("idx_consensus_symbol_created", "symbol", "created_at"),
        Index("idx_consensus_key", "combination_key"),
        Index("idx_consensus_status", "status"),
    )


class CombinationStats(Base):
    """Running accuracy of a specific set of backends when they agree."""
    __tablename__ = "oracle_combination_stats"

    combination_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    backends: Mapped[list[str]] = mapped_column(JsonType, default=list)
    times_agreed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    times_correct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accuracy_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_confidence_when_correct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_confidence_when_wrong: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_combination_accuracy", "accuracy_rate"),
    )


# =============================================================================
# LEARNING
# =============================================================================


class FactorOutcome(Base):
    """Outcome of one factor cited inside one settled pick."""
    __tablename__ = "oracle_factor_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pick_id: Mapped[str] = mapped_column(String(36), nullable=False)
    backend_id: Mapped[str] = mapped_column(String(50), nullable=False)
    factor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    factor_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sector: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    interpretation: Mapped[str] = mapped_column(String(10), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pick_direction: Mapped[str] = mapped_column(String(10), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False)
    pick_won: Mapped[bool] = mapped_column(Boolean, nullable=False)
    interpretation_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    actual_return: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("pick_id", "factor_id", name="uq_factor_outcome_pick_factor"),
        Index("idx_factor_outcomes_backend_factor", "backend_id", "factor_id", "sector"),
    )


class Calibration(Base):
    """Immutable point-in-time reliability snapshot for one backend."""
    __tablename__ = "oracle_calibrations"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    backend_id: Mapped[str] = mapped_column(String(50), nullable=False)
    calibration_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    total_picks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    losses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    win_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_return: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    confidence_accuracy_correlation: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overconfidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    factor_performance: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    sector_performance: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    best_sectors: Mapped[list[str]] = mapped_column(JsonType, default=list)
    worst_sectors: Mapped[list[str]] = mapped_column(JsonType, default=list)
    avoid_factors: Mapped[list[str]] = mapped_column(JsonType, default=list)
    key_learnings: Mapped[list[str]] = mapped_column(JsonType, default=list)
    adjustments: Mapped[list[str]] = mapped_column(JsonType, default=list)

    __table_args__ = (
        UniqueConstraint("backend_id", "calibration_date", name="uq_calibration_backend_date"),
        Index("idx_calibrations_backend_date", "backend_id", "calibration_date"),
    )
