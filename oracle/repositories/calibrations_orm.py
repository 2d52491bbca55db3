"""Calibration snapshot repository using SQLAlchemy ORM.

Calibration rows are append-only: a new row supersedes the previous one for
lookups, older rows stay for audit.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from oracle.core.logging import get_logger
from oracle.database import orm
from oracle.database.connection import get_session
from oracle.engine.schemas import Calibration


logger = get_logger("repositories.calibrations_orm")


async def insert_calibration_with_session(
    session: AsyncSession, calibration: Calibration
) -> None:
    session.add(orm.Calibration(**calibration.model_dump(mode="python")))
    await session.flush()


async def get_latest_calibration_with_session(
    session: AsyncSession, backend_id: str
) -> Calibration | None:
    result = await session.execute(
        select(orm.Calibration)
        .where(orm.Calibration.backend_id == backend_id)
        .order_by(orm.Calibration.calibration_date.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return Calibration.model_validate(row) if row else None


async def list_latest_calibrations_with_session(
    session: AsyncSession,
) -> list[Calibration]:
    """Newest calibration of every backend."""
    latest = (
        select(
            orm.Calibration.backend_id,
            func.max(orm.Calibration.calibration_date).label("latest_date"),
        )
        .group_by(orm.Calibration.backend_id)
        .subquery()
    )
    result = await session.execute(
        select(orm.Calibration)
        .join(
            latest,
            (orm.Calibration.backend_id == latest.c.backend_id)
            & (orm.Calibration.calibration_date == latest.c.latest_date),
        )
        .order_by(orm.Calibration.win_rate.desc())
    )
    return [Calibration.model_validate(r) for r in result.scalars().all()]


async def list_history_with_session(
    session: AsyncSession, backend_id: str, limit: int = 10
) -> list[Calibration]:
    result = await session.execute(
        select(orm.Calibration)
        .where(orm.Calibration.backend_id == backend_id)
        .order_by(orm.Calibration.calibration_date.desc())
        .limit(limit)
    )
    return [Calibration.model_validate(r) for r in result.scalars().all()]


# =============================================================================
# AUTO-SESSION FUNCTIONS
# =============================================================================

async def insert_calibration(calibration: Calibration) -> None:
    async with get_session() as session:
        await insert_calibration_with_session(session, calibration)
        await session.commit()
    logger.debug(f"Stored calibration {calibration.id}")


async def get_latest_calibration(backend_id: str) -> Calibration | None:
    async with get_session() as session:
        return await get_latest_calibration_with_session(session, backend_id)


async def list_latest_calibrations() -> list[Calibration]:
    async with get_session() as session:
        return await list_latest_calibrations_with_session(session)


async def list_history(backend_id: str, limit: int = 10) -> list[Calibration]:
    async with get_session() as session:
        return await list_history_with_session(session, backend_id, limit)
