"""Built-in job definitions for scheduled tasks.

Jobs:
- resolve_expired: Settle due picks and their consensus (every 30 min)
- calibration_trigger: Calibrate backends with enough fresh settlements (hourly)
- calibration_weekly: Calibrate every known backend (Sunday 8 PM UTC)

Each job is idempotent and can be run directly, outside the scheduler.
"""

from __future__ import annotations

from oracle.core.logging import get_logger
from oracle.engine.calibration import is_calibration_due, run_all_calibrations
from oracle.engine.data.market_data import MarketDataSource
from oracle.engine.outcomes import OutcomeResolver
from oracle.repositories import picks_orm

from .registry import register_job


logger = get_logger("jobs.definitions")


# =============================================================================
# RESOLVE EXPIRED - Settle due picks (every 30 min)
# =============================================================================


@register_job("resolve_expired")
async def resolve_expired_job(market_data: MarketDataSource | None = None) -> str:
    """
    Settle pending picks whose horizon elapsed or whose price crossed
    target/stop, then calibrate any backend the sweep made due.
    """
    summary = await OutcomeResolver(market_data=market_data).resolve_expired()

    message = (
        f"Resolved {summary.processed} picks "
        f"({summary.wins}W/{summary.losses}L/{summary.expired}E), "
        f"{summary.skipped} skipped"
    )
    if summary.calibration_due:
        calibrations = await run_all_calibrations(summary.calibration_due)
        message += f", calibrated {calibrations.calibrated} of {len(summary.calibration_due)} due"
    if summary.errors:
        message += f", {len(summary.errors)} errors"
    return message


# =============================================================================
# CALIBRATION TRIGGER - Backends with enough fresh settlements (hourly)
# =============================================================================


@register_job("calibration_trigger")
async def calibration_trigger_job() -> str:
    """Run calibration for backends that crossed the settlement trigger."""
    backend_ids = await picks_orm.list_backend_ids()
    due = [b for b in backend_ids if await is_calibration_due(b)]
    if not due:
        return "No backends due for calibration"

    summary = await run_all_calibrations(due)
    logger.info(f"Triggered calibration for {', '.join(due)}")
    return f"Calibrated {summary.calibrated}, skipped {summary.skipped}, errors {len(summary.errors)}"


# =============================================================================
# CALIBRATION WEEKLY - Every known backend (Sunday 8 PM UTC)
# =============================================================================


@register_job("calibration_weekly")
async def calibration_weekly_job() -> str:
    summary = await run_all_calibrations()
    return f"Calibrated {summary.calibrated}, skipped {summary.skipped}, errors {len(summary.errors)}"
