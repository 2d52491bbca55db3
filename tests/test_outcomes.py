"""Tests for outcome classification and the settlement sweep."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from oracle.core.exceptions import MarketDataUnavailableError, NotFoundError
from oracle.database.connection import get_session
from oracle.engine.consensus import build_consensus
from oracle.engine.outcomes import OutcomeResolver, classify_outcome, days_held
from oracle.engine.schemas import BackendTier, Direction, PickStatus
from oracle.repositories import (
    combination_stats_orm,
    consensus_orm,
    factor_outcomes_orm,
    picks_orm,
)
from tests.conftest import FakeMarketData


NOW = datetime(2026, 3, 2, 15, 0, tzinfo=UTC)


class TestClassifyOutcome:
    """UP entry=100 target=110 stop=95 and its mirrors."""

    def test_up_hits_target(self, make_pick, test_settings):
        pick = make_pick(created_at=NOW - timedelta(days=2))
        result = classify_outcome(pick, 112.0, NOW, test_settings)
        assert result.status == PickStatus.WIN
        assert result.hit_target is True
        assert result.actual_return == pytest.approx(0.12)

    def test_up_hits_stop(self, make_pick, test_settings):
        pick = make_pick(created_at=NOW - timedelta(days=2))
        result = classify_outcome(pick, 93.0, NOW, test_settings)
        assert result.status == PickStatus.LOSS
        assert result.hit_stop_loss is True
        assert result.actual_return == pytest.approx(-0.07)

    def test_up_small_gain_at_expiry_is_loss(self, make_pick, test_settings):
        pick = make_pick(created_at=NOW - timedelta(days=8))
        result = classify_outcome(pick, 101.0, NOW, test_settings)
        assert result.status == PickStatus.LOSS
        assert result.actual_return == pytest.approx(0.01)
        assert not result.hit_target and not result.hit_stop_loss

    def test_up_two_percent_at_expiry_is_win(self, make_pick, test_settings):
        pick = make_pick(created_at=NOW - timedelta(days=8))
        assert classify_outcome(pick, 102.0, NOW, test_settings).status == PickStatus.WIN

    def test_open_pick_between_stop_and_target(self, make_pick, test_settings):
        pick = make_pick(created_at=NOW - timedelta(days=2))
        assert classify_outcome(pick, 104.0, NOW, test_settings) is None

    def test_down_is_mirrored(self, make_pick, test_settings):
        pick = make_pick(
            direction=Direction.DOWN,
            target_price=90.0,
            stop_loss=105.0,
            created_at=NOW - timedelta(days=8),
        )
        hit = classify_outcome(pick, 89.0, NOW, test_settings)
        assert hit.status == PickStatus.WIN and hit.hit_target
        assert hit.actual_return == pytest.approx(0.11)

        stopped = classify_outcome(pick, 106.0, NOW, test_settings)
        assert stopped.status == PickStatus.LOSS and stopped.hit_stop_loss

        assert classify_outcome(pick, 97.0, NOW, test_settings).status == PickStatus.WIN
        assert classify_outcome(pick, 99.0, NOW, test_settings).status == PickStatus.LOSS

    def test_hold_band(self, make_pick, test_settings):
        pick = make_pick(
            direction=Direction.HOLD,
            target_price=102.0,
            stop_loss=97.0,
            created_at=NOW - timedelta(days=8),
        )
        assert classify_outcome(pick, 102.5, NOW, test_settings).status == PickStatus.WIN
        assert classify_outcome(pick, 96.5, NOW, test_settings).status == PickStatus.LOSS

    def test_hold_waits_for_expiry(self, make_pick, test_settings):
        pick = make_pick(
            direction=Direction.HOLD,
            target_price=102.0,
            stop_loss=97.0,
            created_at=NOW - timedelta(days=2),
        )
        assert classify_outcome(pick, 120.0, NOW, test_settings) is None

    def test_thresholds_are_configurable(self, make_pick, test_settings):
        pick = make_pick(created_at=NOW - timedelta(days=8))
        lenient = test_settings.model_copy(update={"outcome_directional_threshold": 0.005})
        assert classify_outcome(pick, 101.0, NOW, lenient).status == PickStatus.WIN

    def test_days_held_rounds_up(self, make_pick):
        pick = make_pick(created_at=NOW - timedelta(days=6, hours=1))
        assert days_held(pick, NOW) == 7


class TestResolveExpired:
    """Tests for OutcomeResolver.resolve_expired against a real database."""

    @pytest.mark.asyncio
    async def test_settles_and_is_idempotent(self, db, make_pick, test_settings):
        picks = [
            make_pick(backend_id="gpt4", created_at=datetime.now(UTC) - timedelta(days=7, hours=12)),
            make_pick(backend_id="claude", symbol="MSFT", entry_price=200.0, target_price=220.0, stop_loss=190.0),
        ]
        await picks_orm.insert_picks(picks)
        resolver = OutcomeResolver(FakeMarketData({"AAPL": 112.0, "MSFT": 185.0}), test_settings)

        first = await resolver.resolve_expired()
        second = await resolver.resolve_expired()

        assert (first.processed, first.wins, first.losses) == (2, 1, 1)
        assert second.processed == 0

        won = await picks_orm.get_pick(picks[0].id)
        assert won.status == PickStatus.WIN
        assert won.hit_target is True
        assert won.closed_price == 112.0
        assert won.days_held == 8
        assert (won.entry_price, won.target_price, won.stop_loss) == (100.0, 110.0, 95.0)

        lost = await picks_orm.get_pick(picks[1].id)
        assert lost.status == PickStatus.LOSS
        assert lost.hit_stop_loss is True

    @pytest.mark.asyncio
    async def test_one_price_lookup_per_symbol(self, db, make_pick, test_settings):
        await picks_orm.insert_picks(
            [make_pick(backend_id=b) for b in ("gpt4", "claude", "gemini")]
        )
        market_data = FakeMarketData({"AAPL": 104.0})

        summary = await OutcomeResolver(market_data, test_settings).resolve_expired()

        assert market_data.price_calls == ["AAPL"]
        assert summary.processed == 3

    @pytest.mark.asyncio
    async def test_open_picks_left_pending(self, db, make_pick, test_settings):
        pick = make_pick(created_at=datetime.now(UTC) - timedelta(days=1))
        await picks_orm.insert_picks([pick])

        summary = await OutcomeResolver(FakeMarketData({"AAPL": 104.0}), test_settings).resolve_expired()

        assert summary.processed == 0
        assert (await picks_orm.get_pick(pick.id)).status == PickStatus.PENDING

    @pytest.mark.asyncio
    async def test_early_target_hit_settles_before_expiry(self, db, make_pick, test_settings):
        pick = make_pick(created_at=datetime.now(UTC) - timedelta(days=1))
        await picks_orm.insert_picks([pick])

        summary = await OutcomeResolver(FakeMarketData({"AAPL": 111.0}), test_settings).resolve_expired()

        assert summary.wins == 1
        assert (await picks_orm.get_pick(pick.id)).hit_target is True

    @pytest.mark.asyncio
    async def test_missing_price_skips_only_that_symbol(self, db, make_pick, test_settings):
        aapl = make_pick(symbol="AAPL")
        msft = make_pick(backend_id="claude", symbol="MSFT")
        await picks_orm.insert_picks([aapl, msft])

        summary = await OutcomeResolver(FakeMarketData({"MSFT": 150.0}), test_settings).resolve_expired()

        assert summary.processed == 1
        assert summary.skipped == 1
        assert any("AAPL" in e for e in summary.errors)
        assert (await picks_orm.get_pick(aapl.id)).status == PickStatus.PENDING
        assert (await picks_orm.get_pick(msft.id)).status == PickStatus.WIN

    @pytest.mark.asyncio
    async def test_raising_price_source_skips_only_that_symbol(self, db, make_pick, test_settings):
        class FlakyMarketData(FakeMarketData):
            async def get_current_price(self, symbol: str) -> float | None:
                if symbol == "AAPL":
                    raise ConnectionError("provider down")
                return await super().get_current_price(symbol)

        aapl = make_pick(symbol="AAPL")
        msft = make_pick(backend_id="claude", symbol="MSFT")
        await picks_orm.insert_picks([aapl, msft])

        summary = await OutcomeResolver(FlakyMarketData({"MSFT": 120.0}), test_settings).resolve_expired()

        assert (summary.processed, summary.wins, summary.skipped) == (1, 1, 1)
        assert any("AAPL" in e and "provider down" in e for e in summary.errors)
        assert (await picks_orm.get_pick(aapl.id)).status == PickStatus.PENDING
        assert (await picks_orm.get_pick(msft.id)).status == PickStatus.WIN

    @pytest.mark.asyncio
    async def test_stale_pick_without_price_expires(self, db, make_pick, test_settings):
        stale = make_pick(created_at=datetime.now(UTC) - timedelta(days=20))
        await picks_orm.insert_picks([stale])

        summary = await OutcomeResolver(FakeMarketData({}), test_settings).resolve_expired()

        assert summary.expired == 1
        assert summary.calibration_due == []
        settled = await picks_orm.get_pick(stale.id)
        assert settled.status == PickStatus.EXPIRED
        assert settled.closed_price is None
        assert settled.actual_return is None
        assert await factor_outcomes_orm.list_outcomes("gpt4") == []

    @pytest.mark.asyncio
    async def test_records_factor_outcomes(self, db, make_pick, test_settings):
        pick = make_pick()
        await picks_orm.insert_picks([pick])

        await OutcomeResolver(FakeMarketData({"AAPL": 112.0}), test_settings).resolve_expired()

        outcomes = await factor_outcomes_orm.list_outcomes("gpt4")
        assert len(outcomes) == 1
        assert outcomes[0].factor_id == "pe_ratio"
        assert outcomes[0].pick_won is True
        assert outcomes[0].interpretation_correct is True

    @pytest.mark.asyncio
    async def test_reports_backends_due_for_calibration(self, db, make_pick, test_settings):
        await picks_orm.insert_picks([make_pick() for _ in range(10)])

        summary = await OutcomeResolver(FakeMarketData({"AAPL": 112.0}), test_settings).resolve_expired()

        assert summary.processed == 10
        assert summary.calibration_due == ["gpt4"]


class TestConsensusSettlement:
    """Settling picks settles their consensus and counts the combination once."""

    async def _store(self, picks, test_settings):
        tiers = {p.backend_id: BackendTier.LARGE for p in picks}
        consensus = build_consensus(picks, tiers, settings=test_settings)
        picks = [p.model_copy(update={"consensus_id": consensus.id}) for p in picks]
        await picks_orm.insert_picks(picks)
        await consensus_orm.insert_consensus(consensus)
        return consensus, picks

    @pytest.mark.asyncio
    async def test_correct_consensus(self, db, make_pick, test_settings):
        consensus, _ = await self._store(
            [make_pick(backend_id="gpt4", confidence=80), make_pick(backend_id="claude", confidence=60)],
            test_settings,
        )

        await OutcomeResolver(FakeMarketData({"AAPL": 112.0}), test_settings).resolve_expired()
        await OutcomeResolver(FakeMarketData({"AAPL": 112.0}), test_settings).resolve_expired()

        settled = await consensus_orm.get_consensus(consensus.id)
        assert settled.status == PickStatus.WIN
        assert settled.actual_return == pytest.approx(0.12)

        stats = await combination_stats_orm.get_stats("claude+gpt4")
        assert stats.times_agreed == 1
        assert stats.times_correct == 1
        assert stats.accuracy_rate == 1.0
        assert stats.avg_confidence_when_correct == pytest.approx(consensus.weighted_confidence)

    @pytest.mark.asyncio
    async def test_wrong_consensus(self, db, make_pick, test_settings):
        await self._store(
            [make_pick(backend_id="gpt4"), make_pick(backend_id="claude")],
            test_settings,
        )

        await OutcomeResolver(FakeMarketData({"AAPL": 90.0}), test_settings).resolve_expired()

        stats = await combination_stats_orm.get_stats("claude+gpt4")
        assert stats.times_agreed == 1
        assert stats.times_correct == 0
        assert stats.accuracy_rate == 0.0

    @pytest.mark.asyncio
    async def test_dissenting_pick_does_not_settle_consensus(self, db, make_pick, test_settings):
        consensus, _ = await self._store(
            [
                make_pick(backend_id="gpt4"),
                make_pick(backend_id="claude"),
                make_pick(
                    backend_id="gemini",
                    direction=Direction.DOWN,
                    target_price=90.0,
                    stop_loss=105.0,
                    created_at=NOW,
                ),
            ],
            test_settings,
        )
        gemini = (await picks_orm.list_picks(backend_id="gemini"))[0]
        resolver = OutcomeResolver(FakeMarketData({}), test_settings)
        classification = classify_outcome(gemini, 106.0, NOW, test_settings)

        assert await resolver.settle(gemini, classification, 106.0, NOW) is True

        assert (await consensus_orm.get_consensus(consensus.id)).status == PickStatus.PENDING
        assert await combination_stats_orm.get_stats("claude+gpt4") is None


class TestCombinationStatsUpdates:
    """record_settlement_with_session must count from the stored row."""

    @pytest.mark.asyncio
    async def test_interleaved_writer_is_not_lost(self, db):
        key = "claude+gpt4"
        async with get_session() as first:
            await combination_stats_orm.record_settlement_with_session(
                first, key, correct=True, confidence=70.0
            )
            await first.commit()

            # Another sweep settles a second consensus with the same key while
            # ``first`` still holds its earlier copy of the row.
            async with get_session() as second:
                await combination_stats_orm.record_settlement_with_session(
                    second, key, correct=False, confidence=60.0
                )
                await second.commit()

            stats = await combination_stats_orm.record_settlement_with_session(
                first, key, correct=True, confidence=80.0
            )
            await first.commit()

        assert (stats.times_agreed, stats.times_correct) == (3, 2)
        stored = await combination_stats_orm.get_stats(key)
        assert (stored.times_agreed, stored.times_correct) == (3, 2)
        assert stored.accuracy_rate == pytest.approx(2 / 3)
        assert stored.avg_confidence_when_correct == pytest.approx(75.0)
        assert stored.avg_confidence_when_wrong == pytest.approx(60.0)
        assert stored.backends == ["claude", "gpt4"]


class TestResolvePick:
    @pytest.mark.asyncio
    async def test_forces_expiry_rule(self, db, make_pick, test_settings):
        pick = make_pick(created_at=datetime.now(UTC) - timedelta(days=1))
        await picks_orm.insert_picks([pick])
        resolver = OutcomeResolver(FakeMarketData({"AAPL": 101.0}), test_settings)

        settled = await resolver.resolve_pick(pick.id)

        assert settled.status == PickStatus.LOSS
        assert settled.actual_return == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_noop_on_settled_pick(self, db, make_pick, test_settings):
        pick = make_pick()
        await picks_orm.insert_picks([pick])
        resolver = OutcomeResolver(FakeMarketData({"AAPL": 112.0}), test_settings)
        first = await resolver.resolve_pick(pick.id)

        resolver.market_data.prices["AAPL"] = 50.0
        second = await resolver.resolve_pick(pick.id)

        assert first.status == second.status == PickStatus.WIN
        assert second.closed_price == 112.0

    @pytest.mark.asyncio
    async def test_missing_pick(self, db, test_settings):
        resolver = OutcomeResolver(FakeMarketData({}), test_settings)
        with pytest.raises(NotFoundError):
            await resolver.resolve_pick("missing")

    @pytest.mark.asyncio
    async def test_missing_price(self, db, make_pick, test_settings):
        pick = make_pick()
        await picks_orm.insert_picks([pick])
        with pytest.raises(MarketDataUnavailableError):
            await OutcomeResolver(FakeMarketData({}), test_settings).resolve_pick(pick.id)


class TestPendingStatus:
    @pytest.mark.asyncio
    async def test_counts_due_and_symbols(self, db, make_pick, test_settings):
        fresh = make_pick(symbol="MSFT", created_at=datetime.now(UTC))
        due = make_pick(symbol="AAPL")
        await picks_orm.insert_picks([fresh, due])

        status = await OutcomeResolver(FakeMarketData({}), test_settings).pending_status()

        assert status.pending == 2
        assert status.ready_to_resolve == 1
        assert status.next_expiry == due.expires_at
        assert status.symbols == ["AAPL", "MSFT"]
