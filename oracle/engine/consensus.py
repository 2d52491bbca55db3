"""
Consensus builder.

Turns a set of concurrent picks for one symbol into a single weighted
verdict. Pure functions only; persistence happens in the orchestrator.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime

from oracle.core.config import Settings, settings as default_settings
from oracle.engine.schemas import (
    BackendTier,
    Calibration,
    CombinationStats,
    ConsensusRecord,
    ConsensusStrength,
    Direction,
    Pick,
)


# Final tie-break when weight and weighted confidence are both equal
_DIRECTION_PRIORITY = {Direction.HOLD: 2, Direction.UP: 1, Direction.DOWN: 0}

STRENGTH_DISCOUNT = {
    ConsensusStrength.STRONG: 1.0,
    ConsensusStrength.MODERATE: 1.0,
    ConsensusStrength.WEAK: 0.75,
    ConsensusStrength.SPLIT: 0.5,
}

# Agreements needed before a combination's track record moves confidence
COMBINATION_MIN_HISTORY = 5

MULTIPLIER_MIN = 0.5
MULTIPLIER_MAX = 1.5


def calibration_multiplier(calibration: Calibration | None) -> float:
    """
    Weight multiplier from a backend's latest calibration.

    A 50% win rate is neutral; the result is clamped to [0.5, 1.5].
    """
    if calibration is None or calibration.total_picks <= 0:
        return 1.0
    return max(MULTIPLIER_MIN, min(MULTIPLIER_MAX, calibration.win_rate / 0.5))


def classify_strength(share: float, settings: Settings | None = None) -> ConsensusStrength:
    s = settings or default_settings
    if share >= s.strength_strong:
        return ConsensusStrength.STRONG
    if share >= s.strength_moderate:
        return ConsensusStrength.MODERATE
    if share >= s.strength_weak:
        return ConsensusStrength.WEAK
    return ConsensusStrength.SPLIT


def combination_key(backend_ids) -> str:
    """Canonical key for a set of backend ids."""
    return "+".join(sorted(set(backend_ids)))


def pick_weight(
    pick: Pick,
    tiers: Mapping[str, BackendTier],
    calibrations: Mapping[str, Calibration | None],
    settings: Settings | None = None,
) -> float:
    s = settings or default_settings
    tier = tiers.get(pick.backend_id, BackendTier.MEDIUM)
    return s.tier_weight(tier.value) * calibration_multiplier(calibrations.get(pick.backend_id))


def _unique(items) -> list[str]:
    return list(dict.fromkeys(items))


def _reasoning(
    symbol: str,
    direction: Direction,
    strength: ConsensusStrength,
    share: float,
    weighted_confidence: float,
    agreeing: list[str],
    dissent: list[tuple[str, Direction]],
    total_backends: int,
) -> str:
    text = (
        f"{len(agreeing)} of {total_backends} backends ({', '.join(agreeing)}) call {symbol} "
        f"{direction.value} with {strength.value} agreement ({share:.0%} of weight), "
        f"weighted confidence {weighted_confidence:.0f}%."
    )
    if dissent:
        others = ", ".join(f"{b} ({d.value})" for b, d in dissent)
        text += f" Dissenting: {others}."
    return text


def build_consensus(
    picks: Sequence[Pick],
    tiers: Mapping[str, BackendTier],
    calibrations: Mapping[str, Calibration | None] | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> ConsensusRecord:
    """
    Build the weighted verdict for one symbol.

    Raises:
        ValueError: fewer picks than the consensus minimum, or picks for
            more than one symbol.
    """
    s = settings or default_settings
    calibrations = calibrations or {}

    if len(picks) < s.consensus_min_picks:
        raise ValueError(f"Consensus needs at least {s.consensus_min_picks} picks")
    symbols = {p.symbol for p in picks}
    if len(symbols) != 1:
        raise ValueError(f"Consensus picks span several symbols: {sorted(symbols)}")
    symbol = symbols.pop()

    weights = [pick_weight(p, tiers, calibrations, s) for p in picks]
    direction_weight: dict[Direction, float] = defaultdict(float)
    direction_conf: dict[Direction, float] = defaultdict(float)
    for pick, weight in zip(picks, weights):
        direction_weight[pick.direction] += weight
        direction_conf[pick.direction] += weight * pick.confidence

    winner = max(
        direction_weight,
        key=lambda d: (direction_weight[d], direction_conf[d], _DIRECTION_PRIORITY[d]),
    )

    total_weight = sum(weights)
    share = round(direction_weight[winner] / total_weight, 6) if total_weight else 0.0
    strength = classify_strength(share, s)

    weighted_confidence = round(direction_conf[winner] / direction_weight[winner], 2)
    blended_confidence = round(weighted_confidence * STRENGTH_DISCOUNT[strength], 2)

    agreeing = _unique(p.backend_id for p in picks if p.direction == winner)
    dissent_picks = [(p.backend_id, p.direction) for p in picks if p.direction != winner]
    dissenting = _unique(b for b, _ in dissent_picks)

    return ConsensusRecord(
        symbol=symbol,
        direction=winner,
        agreeing_backends=agreeing,
        dissenting_backends=dissenting,
        combination_key=combination_key(agreeing),
        pick_ids=[p.id for p in picks],
        consensus_strength=strength,
        agreement_share=share,
        weighted_confidence=weighted_confidence,
        blended_confidence=blended_confidence,
        reasoning=_reasoning(
            symbol,
            winner,
            strength,
            share,
            weighted_confidence,
            agreeing,
            dissent_picks,
            len(_unique(p.backend_id for p in picks)),
        ),
        created_at=now or datetime.now(UTC),
    )


def apply_combination_history(
    record: ConsensusRecord, stats: CombinationStats | None
) -> ConsensusRecord:
    """
    Fold the agreeing combination's track record into blended confidence.

    Only combinations with enough history count, and the result never
    exceeds weighted confidence.
    """
    if stats is None or stats.times_agreed < COMBINATION_MIN_HISTORY:
        return record
    adjusted = record.blended_confidence * (0.5 + stats.accuracy_rate)
    blended = round(max(0.0, min(record.weighted_confidence, adjusted)), 2)
    note = (
        f" This combination has been right {stats.times_correct} of "
        f"{stats.times_agreed} times ({stats.accuracy_rate:.0%})."
    )
    return record.model_copy(
        update={"blended_confidence": blended, "reasoning": record.reasoning + note}
    )
