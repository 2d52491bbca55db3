"""Tests for the consensus builder."""

from __future__ import annotations

import pytest

from oracle.engine.consensus import (
    apply_combination_history,
    build_consensus,
    calibration_multiplier,
    classify_strength,
    combination_key,
)
from oracle.engine.schemas import (
    BackendTier,
    Calibration,
    CombinationStats,
    ConsensusStrength,
    Direction,
)


TIERS = {
    "gpt4": BackendTier.LARGE,
    "claude": BackendTier.LARGE,
    "gemini": BackendTier.MEDIUM,
    "perplexity": BackendTier.MEDIUM,
    "small": BackendTier.SMALL,
}


def _calibration(backend_id: str, win_rate: float) -> Calibration:
    return Calibration(
        id=f"cal_{backend_id}",
        backend_id=backend_id,
        calibration_date="2026-01-01T00:00:00Z",
        total_picks=10,
        wins=int(win_rate * 10),
        losses=10 - int(win_rate * 10),
        win_rate=win_rate,
        avg_return=0.0,
        avg_confidence=60,
        confidence_accuracy_correlation=0.0,
        overconfidence_score=0.0,
    )


class TestStrengthBuckets:
    """Agreement share maps onto strength at fixed boundaries."""

    @pytest.mark.parametrize(
        ("share", "strength"),
        [
            (1.0, ConsensusStrength.STRONG),
            (0.8, ConsensusStrength.STRONG),
            (0.7999, ConsensusStrength.MODERATE),
            (0.6, ConsensusStrength.MODERATE),
            (0.5999, ConsensusStrength.WEAK),
            (0.4, ConsensusStrength.WEAK),
            (0.3999, ConsensusStrength.SPLIT),
        ],
    )
    def test_boundaries(self, share, strength, test_settings):
        assert classify_strength(share, test_settings) == strength


class TestBuildConsensus:
    def test_requires_two_picks(self, make_pick, test_settings):
        with pytest.raises(ValueError):
            build_consensus([make_pick()], TIERS, settings=test_settings)

    def test_rejects_mixed_symbols(self, make_pick, test_settings):
        picks = [make_pick(), make_pick(backend_id="claude", symbol="MSFT")]
        with pytest.raises(ValueError):
            build_consensus(picks, TIERS, settings=test_settings)

    def test_unanimous_is_strong(self, make_pick, test_settings):
        picks = [
            make_pick(backend_id="gpt4", confidence=80),
            make_pick(backend_id="gemini", confidence=60),
        ]

        record = build_consensus(picks, TIERS, settings=test_settings)

        assert record.direction == Direction.UP
        assert record.consensus_strength == ConsensusStrength.STRONG
        assert record.agreement_share == 1.0
        # (1.5*80 + 1.0*60) / 2.5
        assert record.weighted_confidence == 72.0
        assert record.blended_confidence == 72.0
        assert record.agreeing_backends == ["gpt4", "gemini"]
        assert record.dissenting_backends == []
        assert record.combination_key == "gemini+gpt4"

    def test_tier_weight_decides_direction(self, make_pick, test_settings):
        """One large UP (1.5) outweighs one medium DOWN (1.0)."""
        picks = [
            make_pick(backend_id="gpt4", direction=Direction.UP),
            make_pick(backend_id="gemini", direction=Direction.DOWN, target_price=90.0, stop_loss=105.0),
        ]

        record = build_consensus(picks, TIERS, settings=test_settings)

        assert record.direction == Direction.UP
        assert record.agreement_share == 0.6
        assert record.consensus_strength == ConsensusStrength.MODERATE
        assert record.dissenting_backends == ["gemini"]
        assert "gemini (DOWN)" in record.reasoning

    def test_split_is_discounted(self, make_pick, test_settings):
        split = build_consensus(
            [
                make_pick(backend_id="gemini", direction=Direction.UP, confidence=80),
                make_pick(backend_id="perplexity", direction=Direction.HOLD, confidence=50),
                make_pick(backend_id="small", direction=Direction.DOWN, confidence=50),
            ],
            TIERS,
            settings=test_settings,
        )
        # UP 1.0 vs HOLD 1.0: tie broken by weighted confidence
        assert split.direction == Direction.UP
        assert split.consensus_strength == ConsensusStrength.SPLIT
        assert split.blended_confidence == split.weighted_confidence * 0.5

    def test_weight_tie_broken_by_confidence(self, make_pick, test_settings):
        picks = [
            make_pick(backend_id="gemini", direction=Direction.UP, confidence=60),
            make_pick(backend_id="perplexity", direction=Direction.HOLD, confidence=75),
        ]

        record = build_consensus(picks, TIERS, settings=test_settings)

        assert record.direction == Direction.HOLD
        assert record.agreement_share == 0.5
        assert record.consensus_strength == ConsensusStrength.WEAK
        assert record.blended_confidence == 75 * 0.75

    def test_calibration_shifts_weight(self, make_pick, test_settings):
        """A poorly calibrated large backend loses to a well calibrated medium one."""
        picks = [
            make_pick(backend_id="gpt4", direction=Direction.UP),
            make_pick(backend_id="gemini", direction=Direction.DOWN, target_price=90.0, stop_loss=105.0),
        ]
        calibrations = {
            "gpt4": _calibration("gpt4", 0.3),  # 1.5 * 0.6 = 0.9
            "gemini": _calibration("gemini", 0.7),  # 1.0 * 1.4 = 1.4
        }

        record = build_consensus(picks, TIERS, calibrations, settings=test_settings)

        assert record.direction == Direction.DOWN

    def test_pick_ids_cover_all_picks(self, make_pick, test_settings):
        picks = [
            make_pick(backend_id="gpt4"),
            make_pick(backend_id="gpt4"),
            make_pick(backend_id="claude"),
        ]

        record = build_consensus(picks, TIERS, settings=test_settings)

        assert record.pick_ids == [p.id for p in picks]
        assert record.agreeing_backends == ["gpt4", "claude"]

    def test_share_matches_strength_for_any_mix(self, make_pick, test_settings):
        directions = [Direction.UP, Direction.DOWN, Direction.HOLD]
        backends = list(TIERS)
        for i in range(len(directions) ** 3):
            chosen = [directions[(i // 3**k) % 3] for k in range(3)]
            picks = [
                make_pick(
                    backend_id=backends[k],
                    direction=d,
                    target_price=90.0 if d == Direction.DOWN else 110.0,
                    stop_loss=105.0 if d == Direction.DOWN else 95.0,
                )
                for k, d in enumerate(chosen)
            ]
            record = build_consensus(picks, TIERS, settings=test_settings)
            assert record.consensus_strength == classify_strength(record.agreement_share, test_settings)
            assert (record.agreement_share >= 0.8) == (record.consensus_strength == ConsensusStrength.STRONG)


class TestCalibrationMultiplier:
    @pytest.mark.parametrize(
        ("win_rate", "expected"),
        [(0.5, 1.0), (0.6, 1.2), (0.1, 0.5), (0.95, 1.5)],
    )
    def test_clamped_ratio(self, win_rate, expected):
        assert calibration_multiplier(_calibration("gpt4", win_rate)) == pytest.approx(expected)

    def test_no_calibration_is_neutral(self):
        assert calibration_multiplier(None) == 1.0


class TestCombinationHistory:
    def test_key_is_canonical(self):
        assert combination_key(["gpt4", "claude", "gpt4"]) == "claude+gpt4"

    def test_short_history_ignored(self, make_pick, test_settings):
        record = build_consensus(
            [make_pick(backend_id="gpt4"), make_pick(backend_id="claude")], TIERS, settings=test_settings
        )
        stats = CombinationStats(combination_key=record.combination_key, times_agreed=4, times_correct=0)

        assert apply_combination_history(record, stats) == record

    def test_poor_history_lowers_blended(self, make_pick, test_settings):
        record = build_consensus(
            [make_pick(backend_id="gpt4", confidence=80), make_pick(backend_id="claude", confidence=80)],
            TIERS,
            settings=test_settings,
        )
        stats = CombinationStats(
            combination_key=record.combination_key, times_agreed=10, times_correct=2, accuracy_rate=0.2
        )

        adjusted = apply_combination_history(record, stats)

        assert adjusted.blended_confidence == 56.0
        assert adjusted.weighted_confidence == 80.0
        assert "2 of 10" in adjusted.reasoning

    def test_good_history_never_exceeds_weighted(self, make_pick, test_settings):
        record = build_consensus(
            [make_pick(backend_id="gpt4", confidence=80), make_pick(backend_id="claude", confidence=80)],
            TIERS,
            settings=test_settings,
        )
        stats = CombinationStats(
            combination_key=record.combination_key, times_agreed=10, times_correct=9, accuracy_rate=0.9
        )

        assert apply_combination_history(record, stats).blended_confidence == 80.0
