"""Consensus record repository using SQLAlchemy ORM."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oracle.core.logging import get_logger
from oracle.database import orm
from oracle.database.connection import get_session
from oracle.engine.schemas import ConsensusRecord, PickStatus


logger = get_logger("repositories.consensus_orm")


def _to_columns(record: ConsensusRecord) -> dict[str, Any]:
    data = record.model_dump()
    data["direction"] = record.direction.value
    data["consensus_strength"] = record.consensus_strength.value
    data["status"] = record.status.value
    return data


# =============================================================================
# SESSION-BASED FUNCTIONS
# =============================================================================

async def upsert_consensus_with_session(
    session: AsyncSession, record: ConsensusRecord
) -> None:
    await session.merge(orm.ConsensusPick(**_to_columns(record)))


async def get_consensus_with_session(
    session: AsyncSession, consensus_id: str
) -> ConsensusRecord | None:
    row = await session.get(orm.ConsensusPick, consensus_id)
    return ConsensusRecord.model_validate(row) if row else None


async def get_latest_consensus_with_session(
    session: AsyncSession, symbol: str, since: datetime | None = None
) -> ConsensusRecord | None:
    stmt = select(orm.ConsensusPick).where(orm.ConsensusPick.symbol == symbol.upper())
    if since is not None:
        stmt = stmt.where(orm.ConsensusPick.created_at >= since)
    result = await session.execute(
        stmt
        .order_by(orm.ConsensusPick.created_at.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return ConsensusRecord.model_validate(row) if row else None


async def settle_consensus_with_session(
    session: AsyncSession,
    consensus_id: str,
    *,
    status: PickStatus,
    closed_at: datetime,
    actual_return: float | None,
) -> bool:
    """Settle a still-PENDING consensus. Returns False if already settled."""
    result = await session.execute(
        update(orm.ConsensusPick)
        .where(
            orm.ConsensusPick.id == consensus_id,
            orm.ConsensusPick.status == PickStatus.PENDING.value,
        )
        .values(status=status.value, closed_at=closed_at, actual_return=actual_return)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def list_consensus_with_session(
    session: AsyncSession,
    symbol: str | None = None,
    limit: int = 20,
) -> list[ConsensusRecord]:
    stmt = select(orm.ConsensusPick)
    if symbol:
        stmt = stmt.where(orm.ConsensusPick.symbol == symbol.upper())
    stmt = stmt.order_by(orm.ConsensusPick.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return [ConsensusRecord.model_validate(r) for r in result.scalars().all()]


# =============================================================================
# AUTO-SESSION FUNCTIONS
# =============================================================================

async def insert_consensus(record: ConsensusRecord) -> None:
    async with get_session() as session:
        await upsert_consensus_with_session(session, record)
        await session.commit()
    logger.debug(f"Stored consensus {record.id} for {record.symbol}")


async def get_consensus(consensus_id: str) -> ConsensusRecord | None:
    async with get_session() as session:
        return await get_consensus_with_session(session, consensus_id)


async def get_latest_consensus(
    symbol: str, since: datetime | None = None
) -> ConsensusRecord | None:
    """Most recent consensus for a symbol, optionally no older than ``since``."""
    async with get_session() as session:
        return await get_latest_consensus_with_session(session, symbol, since)


async def list_consensus(symbol: str | None = None, limit: int = 20) -> list[ConsensusRecord]:
    async with get_session() as session:
        return await list_consensus_with_session(session, symbol, limit)
