"""Factor outcome repository using SQLAlchemy ORM."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oracle.core.logging import get_logger
from oracle.database import orm
from oracle.database.connection import get_session
from oracle.engine.schemas import FactorOutcomeRecord


logger = get_logger("repositories.factor_outcomes_orm")


async def record_outcomes_with_session(
    session: AsyncSession,
    records: Sequence[FactorOutcomeRecord],
) -> int:
    """
    Insert factor outcomes not yet recorded.

    Rows are unique per (pick_id, factor_id); existing pairs are left alone.
    Returns the number of new rows.
    """
    if not records:
        return 0

    pick_ids = {r.pick_id for r in records}
    result = await session.execute(
        select(orm.FactorOutcome.pick_id, orm.FactorOutcome.factor_id).where(
            orm.FactorOutcome.pick_id.in_(pick_ids)
        )
    )
    seen = {(row.pick_id, row.factor_id) for row in result.all()}

    inserted = 0
    for record in records:
        key = (record.pick_id, record.factor_id)
        if key in seen:
            continue
        seen.add(key)
        session.add(
            orm.FactorOutcome(
                pick_id=record.pick_id,
                backend_id=record.backend_id,
                factor_id=record.factor_id,
                factor_name=record.factor_name,
                sector=record.sector,
                symbol=record.symbol,
                interpretation=record.interpretation.value,
                confidence=record.confidence,
                pick_direction=record.pick_direction.value,
                outcome=record.outcome.value,
                pick_won=record.pick_won,
                interpretation_correct=record.interpretation_correct,
                actual_return=record.actual_return,
                created_at=record.created_at,
            )
        )
        inserted += 1

    await session.flush()
    return inserted


async def list_outcomes_with_session(
    session: AsyncSession,
    backend_id: str,
    since: datetime | None = None,
) -> list[FactorOutcomeRecord]:
    stmt = select(orm.FactorOutcome).where(orm.FactorOutcome.backend_id == backend_id)
    if since is not None:
        stmt = stmt.where(orm.FactorOutcome.created_at >= since)
    stmt = stmt.order_by(orm.FactorOutcome.created_at.asc(), orm.FactorOutcome.id.asc())
    result = await session.execute(stmt)
    return [FactorOutcomeRecord.model_validate(r) for r in result.scalars().all()]


async def record_outcomes(records: Sequence[FactorOutcomeRecord]) -> int:
    async with get_session() as session:
        inserted = await record_outcomes_with_session(session, records)
        await session.commit()
    return inserted


async def list_outcomes(
    backend_id: str, since: datetime | None = None
) -> list[FactorOutcomeRecord]:
    async with get_session() as session:
        return await list_outcomes_with_session(session, backend_id, since)
