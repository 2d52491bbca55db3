"""Pick repository using SQLAlchemy ORM.

Usage (recommended - auto session management):
    from oracle.repositories import picks_orm

    await picks_orm.insert_picks([pick_a, pick_b])
    pending = await picks_orm.list_pending_picks()

Usage (advanced - manual session control):
    from oracle.database.connection import get_session

    async with get_session() as session:
        settled = await picks_orm.settle_pick_with_session(session, pick_id, ...)
        await session.commit()
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oracle.core.logging import get_logger
from oracle.database import orm
from oracle.database.connection import get_session
from oracle.engine.schemas import Pick, PickStatus


logger = get_logger("repositories.picks_orm")

SETTLED_FOR_CALIBRATION = (PickStatus.WIN.value, PickStatus.LOSS.value)


def _to_columns(pick: Pick) -> dict[str, Any]:
    data = pick.model_dump(exclude={"factor_assessments"})
    data["factor_assessments"] = [f.model_dump(mode="json") for f in pick.factor_assessments]
    data["direction"] = pick.direction.value
    data["status"] = pick.status.value
    data["timeframe"] = pick.timeframe.value
    return data


# =============================================================================
# SESSION-BASED FUNCTIONS (for advanced use with manual session control)
# =============================================================================

async def upsert_picks_with_session(session: AsyncSession, picks: Iterable[Pick]) -> int:
    """Insert or replace picks keyed by id."""
    count = 0
    for pick in picks:
        await session.merge(orm.Pick(**_to_columns(pick)))
        count += 1
    return count


async def get_pick_with_session(session: AsyncSession, pick_id: str) -> Pick | None:
    row = await session.get(orm.Pick, pick_id)
    return Pick.model_validate(row) if row else None


async def settle_pick_with_session(
    session: AsyncSession,
    pick_id: str,
    *,
    status: PickStatus,
    closed_at: datetime,
    closed_price: float | None,
    actual_return: float | None,
    hit_target: bool,
    hit_stop_loss: bool,
    days_held: int,
) -> bool:
    """
    Move a pick out of PENDING.

    The update is conditional on the row still being PENDING, so a second
    settlement attempt changes nothing and returns False.
    """
    if not status.is_terminal:
        raise ValueError("Settlement status must be terminal")

    result = await session.execute(
        update(orm.Pick)
        .where(orm.Pick.id == pick_id, orm.Pick.status == PickStatus.PENDING.value)
        .values(
            status=status.value,
            closed_at=closed_at,
            closed_price=closed_price,
            actual_return=actual_return,
            hit_target=hit_target,
            hit_stop_loss=hit_stop_loss,
            days_held=days_held,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_pending_picks_with_session(
    session: AsyncSession,
    symbol: str | None = None,
) -> list[Pick]:
    stmt = select(orm.Pick).where(orm.Pick.status == PickStatus.PENDING.value)
    if symbol:
        stmt = stmt.where(orm.Pick.symbol == symbol.upper())
    stmt = stmt.order_by(orm.Pick.expires_at.asc())
    result = await session.execute(stmt)
    return [Pick.model_validate(r) for r in result.scalars().all()]


async def list_picks_with_session(
    session: AsyncSession,
    symbol: str | None = None,
    status: PickStatus | None = None,
    backend_id: str | None = None,
    limit: int = 50,
) -> list[Pick]:
    stmt = select(orm.Pick)
    if symbol:
        stmt = stmt.where(orm.Pick.symbol == symbol.upper())
    if status:
        stmt = stmt.where(orm.Pick.status == status.value)
    if backend_id:
        stmt = stmt.where(orm.Pick.backend_id == backend_id)
    stmt = stmt.order_by(orm.Pick.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return [Pick.model_validate(r) for r in result.scalars().all()]


async def list_settled_picks_with_session(
    session: AsyncSession,
    backend_id: str,
    since: datetime,
) -> list[Pick]:
    """WIN/LOSS picks for a backend closed on or after ``since``."""
    result = await session.execute(
        select(orm.Pick)
        .where(
            orm.Pick.backend_id == backend_id,
            orm.Pick.status.in_(SETTLED_FOR_CALIBRATION),
            orm.Pick.closed_at >= since,
        )
        .order_by(orm.Pick.closed_at.asc())
    )
    return [Pick.model_validate(r) for r in result.scalars().all()]


async def count_settlements_since_with_session(
    session: AsyncSession,
    backend_id: str,
    since: datetime,
) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(orm.Pick)
        .where(
            orm.Pick.backend_id == backend_id,
            orm.Pick.status.in_(SETTLED_FOR_CALIBRATION),
            orm.Pick.closed_at >= since,
        )
    )
    return result.scalar_one()


async def list_backend_ids_with_session(session: AsyncSession) -> list[str]:
    result = await session.execute(
        select(orm.Pick.backend_id).distinct().order_by(orm.Pick.backend_id)
    )
    return [r[0] for r in result.all()]


# =============================================================================
# AUTO-SESSION FUNCTIONS (simple API)
# =============================================================================

async def insert_picks(picks: Iterable[Pick]) -> int:
    """Persist picks as one unit of work."""
    async with get_session() as session:
        count = await upsert_picks_with_session(session, picks)
        await session.commit()
    logger.debug(f"Stored {count} picks")
    return count


async def get_pick(pick_id: str) -> Pick | None:
    async with get_session() as session:
        return await get_pick_with_session(session, pick_id)


async def list_pending_picks(symbol: str | None = None) -> list[Pick]:
    async with get_session() as session:
        return await list_pending_picks_with_session(session, symbol)


async def list_picks(
    symbol: str | None = None,
    status: PickStatus | None = None,
    backend_id: str | None = None,
    limit: int = 50,
) -> list[Pick]:
    """Query persisted picks, newest first."""
    async with get_session() as session:
        return await list_picks_with_session(session, symbol, status, backend_id, limit)


async def list_settled_picks(backend_id: str, since: datetime) -> list[Pick]:
    async with get_session() as session:
        return await list_settled_picks_with_session(session, backend_id, since)


async def count_settlements_since(backend_id: str, since: datetime) -> int:
    async with get_session() as session:
        return await count_settlements_since_with_session(session, backend_id, since)


async def list_backend_ids() -> list[str]:
    """Every backend that has ever produced a pick."""
    async with get_session() as session:
        return await list_backend_ids_with_session(session)
