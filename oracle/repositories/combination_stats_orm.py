"""Backend-combination accuracy repository using SQLAlchemy ORM."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from oracle.core.logging import get_logger
from oracle.database import orm
from oracle.database.connection import get_session
from oracle.engine.schemas import CombinationStats


logger = get_logger("repositories.combination_stats_orm")


def _running_mean(mean: float, count: int, value: float) -> float:
    """Mean after adding ``value`` as the ``count``-th sample."""
    if count <= 0:
        return 0.0
    return mean + (value - mean) / count


# =============================================================================
# SESSION-BASED FUNCTIONS
# =============================================================================

async def get_stats_with_session(
    session: AsyncSession, key: str
) -> CombinationStats | None:
    row = await session.get(orm.CombinationStats, key)
    return CombinationStats.model_validate(row) if row else None


def _insert_ignoring_conflict(session: AsyncSession):
    """Dialect insert whose ON CONFLICT DO NOTHING tolerates a concurrent creator."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(orm.CombinationStats)
    return pg_insert(orm.CombinationStats)


async def record_settlement_with_session(
    session: AsyncSession,
    key: str,
    *,
    correct: bool,
    confidence: float,
    now: datetime | None = None,
) -> CombinationStats:
    """
    Count one settled consensus against its backend combination.

    times_agreed always increments; times_correct only when ``correct``.
    The row is locked for the rest of the caller's transaction, so
    concurrent sweeps settling the same combination serialize here.
    """
    now = now or datetime.now(UTC)

    # Ensure the row exists without racing another creator
    await session.execute(
        _insert_ignoring_conflict(session)
        .values(
            combination_key=key,
            backends=key.split("+"),
            times_agreed=0,
            times_correct=0,
            accuracy_rate=0.0,
            avg_confidence_when_correct=0.0,
            avg_confidence_when_wrong=0.0,
            last_updated=now,
        )
        .on_conflict_do_nothing(index_elements=["combination_key"])
    )

    # Lock and re-read; never trust a copy cached earlier in this session
    result = await session.execute(
        select(orm.CombinationStats)
        .where(orm.CombinationStats.combination_key == key)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one()

    row.times_agreed += 1
    if correct:
        row.times_correct += 1
        row.avg_confidence_when_correct = _running_mean(
            row.avg_confidence_when_correct, row.times_correct, confidence
        )
    else:
        wrong = row.times_agreed - row.times_correct
        row.avg_confidence_when_wrong = _running_mean(
            row.avg_confidence_when_wrong, wrong, confidence
        )
    row.accuracy_rate = row.times_correct / row.times_agreed
    row.last_updated = now
    await session.flush()
    return CombinationStats.model_validate(row)


async def list_stats_with_session(
    session: AsyncSession,
    min_agreed: int = 0,
    limit: int = 20,
) -> list[CombinationStats]:
    result = await session.execute(
        select(orm.CombinationStats)
        .where(orm.CombinationStats.times_agreed >= min_agreed)
        .order_by(
            orm.CombinationStats.accuracy_rate.desc(),
            orm.CombinationStats.times_agreed.desc(),
        )
        .limit(limit)
    )
    return [CombinationStats.model_validate(r) for r in result.scalars().all()]


# =============================================================================
# AUTO-SESSION FUNCTIONS
# =============================================================================

async def get_stats(key: str) -> CombinationStats | None:
    async with get_session() as session:
        return await get_stats_with_session(session, key)


async def list_stats(min_agreed: int = 0, limit: int = 20) -> list[CombinationStats]:
    """Leaderboard of backend combinations by accuracy."""
    async with get_session() as session:
        return await list_stats_with_session(session, min_agreed, limit)
