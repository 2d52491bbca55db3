"""Health check endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from oracle.core.config import settings
from oracle.core.logging import get_logger
from oracle.database.connection import get_session
from oracle.jobs.scheduler import get_scheduler


router = APIRouter(prefix="/health")

logger = get_logger("health")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Overall health status", examples=["healthy", "unhealthy"])
    version: str
    timestamp: datetime
    checks: dict[str, bool] = Field(default_factory=dict)


async def db_healthcheck() -> bool:
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning(f"Database healthcheck failed: {e}")
        return False


@router.get("", response_model=HealthResponse, summary="Health check")
async def health_check() -> HealthResponse:
    scheduler = get_scheduler()
    checks = {
        "database": await db_healthcheck(),
        "scheduler": scheduler is not None and scheduler.running,
    }
    return HealthResponse(
        status="healthy" if checks["database"] else "unhealthy",
        version=settings.app_version,
        timestamp=datetime.now(UTC),
        checks=checks,
    )
