"""
Calibration engine.

Mines a backend's settled history into a reliability snapshot. Each run is
stateless and writes a new immutable row; the newest row is what the
orchestrator reads back on the next analysis.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from oracle.core.config import Settings, settings as default_settings
from oracle.core.logging import get_logger
from oracle.engine.backends.config import BackendSet
from oracle.engine.consensus import calibration_multiplier
from oracle.engine.factors import get_factor_recommendations
from oracle.engine.schemas import (
    Calibration,
    CalibrationRunSummary,
    FactorRecommendations,
    FactorStat,
    Pick,
    PickStatus,
)
from oracle.repositories import calibrations_orm, picks_orm


logger = get_logger("engine.calibration")

__all__ = [
    "calibration_multiplier",
    "calibration_report",
    "compute_calibration",
    "get_latest_calibration",
    "is_calibration_due",
    "pearson_correlation",
    "run_all_calibrations",
    "run_calibration",
]


def pearson_correlation(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson r, or 0.0 when either series is constant or too short."""
    if len(xs) != len(ys) or len(xs) < 2:
        return 0.0
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if x.std() == 0 or y.std() == 0:
        return 0.0
    return float(np.corrcoef(x, y)[0, 1])


def _rate(wins: int, total: int) -> float:
    return round(wins / total, 4) if total else 0.0


def _factor_performance(picks: Sequence[Pick]) -> dict[str, FactorStat]:
    performance: dict[str, FactorStat] = {}
    for pick in picks:
        for fa in pick.factor_assessments:
            stat = performance.setdefault(fa.factor_id, FactorStat())
            stat.times_used += 1
            stat.wins += int(pick.status == PickStatus.WIN)
    for stat in performance.values():
        stat.win_rate = _rate(stat.wins, stat.times_used)
    return performance


def _sector_performance(picks: Sequence[Pick]) -> dict[str, FactorStat]:
    performance: dict[str, FactorStat] = {}
    for pick in picks:
        stat = performance.setdefault(pick.sector or "Unknown", FactorStat())
        stat.times_used += 1
        stat.wins += int(pick.status == PickStatus.WIN)
    for stat in performance.values():
        stat.win_rate = _rate(stat.wins, stat.times_used)
    return performance


def compute_calibration(
    backend_id: str,
    picks: Sequence[Pick],
    recommendations: FactorRecommendations | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Calibration | None:
    """
    Build a calibration from WIN/LOSS picks, or None below the minimum
    sample size.
    """
    s = settings or default_settings
    now = now or datetime.now(UTC)
    settled = [p for p in picks if p.status in (PickStatus.WIN, PickStatus.LOSS)]
    if len(settled) < s.calibration_min_picks:
        return None

    total = len(settled)
    wins = sum(1 for p in settled if p.status == PickStatus.WIN)
    losses = total - wins
    win_rate = _rate(wins, total)
    avg_return = float(np.mean([p.actual_return or 0.0 for p in settled]))
    confidences = [float(p.confidence) for p in settled]
    avg_confidence = float(np.mean(confidences))
    correlation = pearson_correlation(
        confidences, [1.0 if p.status == PickStatus.WIN else 0.0 for p in settled]
    )
    overconfidence = avg_confidence - wins * 100 / total

    sectors = _sector_performance(settled)
    qualified = [
        (name, stat) for name, stat in sectors.items()
        if stat.times_used >= s.calibration_min_sector_picks
    ]
    by_best = sorted(qualified, key=lambda item: (-item[1].win_rate, item[0]))
    by_worst = sorted(qualified, key=lambda item: (item[1].win_rate, item[0]))
    best_sectors = [name for name, _ in by_best[:3]]
    worst_sectors = [name for name, _ in by_worst[:3]]

    learnings: list[str] = []
    adjustments: list[str] = []

    if win_rate > 0.65:
        learnings.append(f"Strong performance with {win_rate:.0%} win rate")
    elif win_rate < 0.45:
        learnings.append(f"Win rate needs improvement at {win_rate:.0%}")
        adjustments.append("Only publish picks with confidence of 75% or more")

    if overconfidence > 15:
        learnings.append(f"Overconfident by {overconfidence:.0f} points")
        adjustments.append("Reduce confidence scores by 10-15% across the board")
    elif overconfidence < -10:
        learnings.append("Underconfident: accuracy exceeds stated confidence")
        adjustments.append("Confidence can be raised on well-supported picks")

    if by_best and by_best[0][1].win_rate > 0.7:
        name, stat = by_best[0]
        learnings.append(f"Strong in {name} sector ({stat.win_rate:.0%})")
        adjustments.append(f"Prioritize {name} picks")
    if by_worst and by_worst[0][1].win_rate < 0.4:
        name, stat = by_worst[0]
        learnings.append(f"Weak in {name} sector ({stat.win_rate:.0%})")
        adjustments.append(f"Avoid or reduce confidence in {name} picks")

    avoid_factors: list[str] = []
    if recommendations is not None:
        avoid_factors = list(recommendations.avoid_factors)
        if avoid_factors:
            learnings.append(f"Factors to avoid: {', '.join(avoid_factors[:3])}")
        adjustments.extend(recommendations.adjustments[:3])

    return Calibration(
        id=f"cal_{backend_id}_{now:%Y%m%d%H%M%S%f}",
        backend_id=backend_id,
        calibration_date=now,
        total_picks=total,
        wins=wins,
        losses=losses,
        win_rate=win_rate,
        avg_return=round(avg_return, 6),
        avg_confidence=round(avg_confidence, 4),
        confidence_accuracy_correlation=round(correlation, 4),
        overconfidence_score=round(overconfidence, 4),
        factor_performance=_factor_performance(settled),
        sector_performance=sectors,
        best_sectors=best_sectors,
        worst_sectors=worst_sectors,
        avoid_factors=avoid_factors,
        key_learnings=learnings,
        adjustments=adjustments,
    )


async def run_calibration(
    backend_id: str,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> Calibration | None:
    """
    Calibrate one backend over the trailing window.

    Returns None (and writes nothing) when there is not enough settled data.
    """
    s = settings or default_settings
    now = now or datetime.now(UTC)
    since = now - timedelta(days=s.calibration_window_days)

    picks = await picks_orm.list_settled_picks(backend_id, since)
    if len(picks) < s.calibration_min_picks:
        logger.info(
            f"Skipping {backend_id} calibration - insufficient data "
            f"({len(picks)} picks, need {s.calibration_min_picks})"
        )
        return None

    recommendations = await get_factor_recommendations(backend_id, settings=s)
    calibration = compute_calibration(backend_id, picks, recommendations, s, now)
    if calibration is None:
        return None

    await calibrations_orm.insert_calibration(calibration)
    logger.info(
        f"{backend_id} calibration complete: {calibration.wins}W/{calibration.losses}L "
        f"({calibration.win_rate:.0%}), overconfidence {calibration.overconfidence_score:.1f}"
    )
    return calibration


async def run_all_calibrations(
    backend_ids: Iterable[str] | None = None,
    settings: Settings | None = None,
) -> CalibrationRunSummary:
    """Calibrate several backends; one failure does not stop the others."""
    if backend_ids is None:
        known = await picks_orm.list_backend_ids()
        backend_ids = list(dict.fromkeys([*BackendSet.from_settings().ids, *known]))

    summary = CalibrationRunSummary()
    for backend_id in backend_ids:
        try:
            calibration = await run_calibration(backend_id, settings)
        except SQLAlchemyError as e:
            logger.error(f"{backend_id} calibration failed: {e}")
            summary.errors.append(f"{backend_id}: {e}")
            summary.results[backend_id] = "error"
            continue
        if calibration is None:
            summary.skipped += 1
            summary.results[backend_id] = "skipped"
        else:
            summary.calibrated += 1
            summary.results[backend_id] = "calibrated"
    return summary


async def get_latest_calibration(backend_id: str) -> Calibration | None:
    return await calibrations_orm.get_latest_calibration(backend_id)


async def is_calibration_due(
    backend_id: str,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> bool:
    """
    Enough fresh WIN/LOSS settlements since the last calibration.

    Counts settlements inside the trigger window that also post-date the
    backend's latest calibration.
    """
    s = settings or default_settings
    now = now or datetime.now(UTC)
    since = now - timedelta(days=s.calibration_trigger_window_days)
    latest = await calibrations_orm.get_latest_calibration(backend_id)
    if latest is not None and latest.calibration_date > since:
        since = latest.calibration_date
    count = await picks_orm.count_settlements_since(backend_id, since)
    return count >= s.calibration_trigger_settlements


async def calibration_report(now: datetime | None = None) -> str:
    """Markdown summary of every backend's latest calibration."""
    now = now or datetime.now(UTC)
    lines = ["# Market Oracle Calibration Report", f"Generated: {now.isoformat()}", ""]
    calibrations = await calibrations_orm.list_latest_calibrations()
    if not calibrations:
        lines.append("No calibrations yet.")
    for cal in calibrations:
        lines += [
            f"## {cal.backend_id.upper()}",
            f"- Win Rate: {cal.win_rate * 100:.1f}%",
            f"- Total Picks: {cal.total_picks} ({cal.wins}W/{cal.losses}L)",
            f"- Avg Return: {cal.avg_return * 100:.2f}%",
            f"- Overconfidence: {cal.overconfidence_score:.1f}",
            f"- Confidence/accuracy correlation: {cal.confidence_accuracy_correlation:.2f}",
            f"- Weight multiplier: {calibration_multiplier(cal):.2f}",
            f"- Best sectors: {', '.join(cal.best_sectors) or 'n/a'}",
            f"- Worst sectors: {', '.join(cal.worst_sectors) or 'n/a'}",
        ]
        if cal.key_learnings:
            lines.append("- Key learnings:")
            lines += [f"  - {item}" for item in cal.key_learnings]
        lines.append("")
    return "\n".join(lines)
