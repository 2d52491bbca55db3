"""
Factor tracker.

Records, for every factor cited in a settled pick, whether the pick won and
whether the factor's own reading matched the move, then turns that history
into per-backend recommendations.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime

from oracle.core.config import Settings, settings as default_settings
from oracle.core.logging import get_logger
from oracle.engine.schemas import (
    FactorOutcomeRecord,
    FactorRecommendations,
    FactorStat,
    Interpretation,
    Pick,
    PickStatus,
)
from oracle.repositories import factor_outcomes_orm


logger = get_logger("engine.factors")


def interpretation_correct(
    interpretation: Interpretation, raw_return: float | None, hold_band: float
) -> bool:
    """Did the factor's reading match the unsigned price move?"""
    if raw_return is None:
        return False
    if interpretation == Interpretation.BULLISH:
        return raw_return > 0
    if interpretation == Interpretation.BEARISH:
        return raw_return < 0
    return abs(raw_return) <= hold_band


def build_factor_outcomes(
    pick: Pick,
    outcome: PickStatus,
    actual_return: float | None,
    raw_return: float | None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> list[FactorOutcomeRecord]:
    """One record per factor assessment of a WIN/LOSS pick."""
    if outcome not in (PickStatus.WIN, PickStatus.LOSS):
        return []
    s = settings or default_settings
    created_at = now or datetime.now(UTC)
    return [
        FactorOutcomeRecord(
            pick_id=pick.id,
            backend_id=pick.backend_id,
            factor_id=fa.factor_id,
            factor_name=fa.factor_name,
            sector=pick.sector,
            symbol=pick.symbol,
            interpretation=fa.interpretation,
            confidence=fa.confidence,
            pick_direction=pick.direction,
            outcome=outcome,
            pick_won=outcome == PickStatus.WIN,
            interpretation_correct=interpretation_correct(
                fa.interpretation, raw_return, s.outcome_hold_band
            ),
            actual_return=actual_return,
            created_at=created_at,
        )
        for fa in pick.factor_assessments
    ]


def summarize_factor_outcomes(
    backend_id: str,
    records: Sequence[FactorOutcomeRecord],
    settings: Settings | None = None,
) -> FactorRecommendations:
    """Aggregate factor history into avoid/strong lists and advice."""
    s = settings or default_settings

    stats: dict[str, FactorStat] = {}
    names: dict[str, str] = {}
    reads_right: dict[str, int] = defaultdict(int)
    for record in records:
        stat = stats.setdefault(record.factor_id, FactorStat())
        stat.times_used += 1
        stat.wins += int(record.pick_won)
        reads_right[record.factor_id] += int(record.interpretation_correct)
        names.setdefault(record.factor_id, record.factor_name or record.factor_id)

    for stat in stats.values():
        stat.win_rate = round(stat.wins / stat.times_used, 4) if stat.times_used else 0.0

    qualified = {
        fid: stat for fid, stat in stats.items() if stat.times_used >= s.factor_min_observations
    }
    avoid = sorted(
        (fid for fid, stat in qualified.items() if stat.win_rate < s.factor_avoid_threshold),
        key=lambda fid: qualified[fid].win_rate,
    )
    strong = sorted(
        (fid for fid, stat in qualified.items() if stat.win_rate >= s.factor_strong_threshold),
        key=lambda fid: -qualified[fid].win_rate,
    )

    adjustments: list[str] = []
    for fid in avoid:
        stat = qualified[fid]
        adjustments.append(
            f"Reduce reliance on {names[fid]}: {stat.win_rate:.0%} win rate over {stat.times_used} picks"
        )
    for fid in strong:
        stat = qualified[fid]
        adjustments.append(
            f"Weight {names[fid]} more heavily: {stat.win_rate:.0%} win rate over {stat.times_used} picks"
        )
    for fid, stat in qualified.items():
        read_rate = reads_right[fid] / stat.times_used
        if read_rate < s.factor_avoid_threshold:
            adjustments.append(
                f"Re-check how you read {names[fid]}: its direction was right only {read_rate:.0%} of the time"
            )

    return FactorRecommendations(
        backend_id=backend_id,
        avoid_factors=avoid,
        strong_factors=strong,
        adjustments=adjustments,
        factor_stats=stats,
    )


async def record_factor_outcomes(
    pick: Pick,
    outcome: PickStatus,
    actual_return: float | None,
    raw_return: float | None,
) -> int:
    """Persist factor outcomes for a settled pick. Idempotent per (pick, factor)."""
    records = build_factor_outcomes(pick, outcome, actual_return, raw_return)
    inserted = await factor_outcomes_orm.record_outcomes(records)
    logger.debug(f"Recorded {inserted} factor outcomes for pick {pick.id}")
    return inserted


async def get_factor_recommendations(
    backend_id: str,
    since: datetime | None = None,
    settings: Settings | None = None,
) -> FactorRecommendations:
    records = await factor_outcomes_orm.list_outcomes(backend_id, since)
    return summarize_factor_outcomes(backend_id, records, settings)
