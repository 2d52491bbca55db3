"""
Outcome resolver.

Settles PENDING picks once their horizon has elapsed or the price has
crossed target/stop, then settles the consensus they belong to and updates
the agreeing combination's accuracy. Safe to re-run: a pick leaves PENDING
exactly once.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from oracle.core.config import Settings, settings as default_settings
from oracle.core.exceptions import MarketDataUnavailableError, NotFoundError, PersistenceError
from oracle.core.logging import get_logger
from oracle.database.connection import get_session
from oracle.engine.calibration import is_calibration_due
from oracle.engine.data.market_data import MarketDataSource, get_market_data
from oracle.engine.factors import build_factor_outcomes
from oracle.engine.schemas import (
    Direction,
    PendingStatus,
    Pick,
    PickStatus,
    ResolveSummary,
)
from oracle.repositories import (
    combination_stats_orm,
    consensus_orm,
    factor_outcomes_orm,
    picks_orm,
)


logger = get_logger("engine.outcomes")


@dataclass(frozen=True)
class Classification:
    """Terminal state of a pick at a given price."""

    status: PickStatus
    actual_return: float | None
    raw_return: float | None
    hit_target: bool = False
    hit_stop_loss: bool = False


def raw_return(pick: Pick, price: float) -> float:
    return (price - pick.entry_price) / pick.entry_price


def signed_return(pick: Pick, price: float) -> float:
    """Return from the pick's point of view (positive is good for DOWN picks falling)."""
    raw = raw_return(pick, price)
    return -raw if pick.direction == Direction.DOWN else raw


def classify_outcome(
    pick: Pick,
    price: float,
    now: datetime,
    settings: Settings | None = None,
    force_expiry: bool = False,
) -> Classification | None:
    """
    Classify a pick at ``price``.

    Returns None while the pick is still open: not expired and neither
    target nor stop has been crossed.
    """
    s = settings or default_settings
    expired = force_expiry or pick.expires_at <= now
    raw = raw_return(pick, price)
    signed = signed_return(pick, price)

    if pick.direction == Direction.UP:
        if price >= pick.target_price:
            return Classification(PickStatus.WIN, signed, raw, hit_target=True)
        if price <= pick.stop_loss:
            return Classification(PickStatus.LOSS, signed, raw, hit_stop_loss=True)
    elif pick.direction == Direction.DOWN:
        if price <= pick.target_price:
            return Classification(PickStatus.WIN, signed, raw, hit_target=True)
        if price >= pick.stop_loss:
            return Classification(PickStatus.LOSS, signed, raw, hit_stop_loss=True)

    if not expired:
        return None

    if pick.direction == Direction.HOLD:
        won = abs(raw) <= s.outcome_hold_band
    else:
        won = signed >= s.outcome_directional_threshold
    return Classification(PickStatus.WIN if won else PickStatus.LOSS, signed, raw)


def days_held(pick: Pick, now: datetime) -> int:
    return max(0, math.ceil((now - pick.created_at).total_seconds() / 86400))


class OutcomeResolver:
    """Periodic settlement sweep over pending picks."""

    def __init__(
        self,
        market_data: MarketDataSource | None = None,
        settings: Settings | None = None,
    ):
        self.market_data = market_data or get_market_data()
        self.settings = settings or default_settings

    async def resolve_expired(self, now: datetime | None = None) -> ResolveSummary:
        """
        Settle every pending pick that is due.

        A price failure for one symbol only skips that symbol; its picks are
        retried on the next sweep.
        """
        now = now or datetime.now(UTC)
        summary = ResolveSummary()

        try:
            pending = await picks_orm.list_pending_picks()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load pending picks: {e}")
            raise PersistenceError("Failed to load pending picks", details={"error": str(e)}) from e

        if not pending:
            return summary

        by_symbol: dict[str, list[Pick]] = defaultdict(list)
        for pick in pending:
            by_symbol[pick.symbol].append(pick)

        settled_backends: set[str] = set()
        grace = timedelta(days=self.settings.outcome_stale_grace_days)

        for symbol, picks in by_symbol.items():
            try:
                price = await self.market_data.get_current_price(symbol)
            except Exception as e:
                logger.warning(f"Price lookup raised for {symbol}: {e}")
                summary.errors.append(f"Price lookup failed for {symbol}: {e}")
                summary.skipped += sum(1 for p in picks if p.expires_at <= now)
                continue

            if price is None:
                due = [p for p in picks if p.expires_at <= now]
                stale = [p for p in due if p.expires_at + grace <= now]
                summary.skipped += len(due) - len(stale)
                if due:
                    summary.errors.append(f"Could not fetch price for {symbol}")
                for pick in stale:
                    await self._settle_and_count(
                        pick,
                        Classification(PickStatus.EXPIRED, None, None),
                        None,
                        now,
                        summary,
                        settled_backends,
                    )
                continue

            for pick in picks:
                classification = classify_outcome(pick, price, now, self.settings)
                if classification is None:
                    continue
                await self._settle_and_count(
                    pick, classification, price, now, summary, settled_backends
                )

        summary.calibration_due = await self._calibration_due(settled_backends, summary)

        logger.info(
            f"Resolve sweep: {summary.processed} processed ({summary.wins}W/{summary.losses}L/"
            f"{summary.expired}E), {summary.skipped} skipped, {len(summary.errors)} errors"
        )
        return summary

    async def resolve_pick(self, pick_id: str, now: datetime | None = None) -> Pick:
        """
        Settle one pick immediately as if its horizon had elapsed.

        Already-settled picks are returned unchanged.
        """
        now = now or datetime.now(UTC)
        pick = await picks_orm.get_pick(pick_id)
        if pick is None:
            raise NotFoundError(f"Pick {pick_id} not found")
        if pick.is_settled:
            return pick

        price = await self.market_data.get_current_price(pick.symbol)
        if price is None:
            raise MarketDataUnavailableError(pick.symbol)

        classification = classify_outcome(pick, price, now, self.settings, force_expiry=True)
        try:
            await self.settle(pick, classification, price, now)
        except SQLAlchemyError as e:
            logger.error(f"Failed to settle pick {pick_id}: {e}")
            raise PersistenceError("Failed to settle pick", details={"pick_id": pick_id}) from e
        return await picks_orm.get_pick(pick_id)

    async def pending_status(self, now: datetime | None = None) -> PendingStatus:
        now = now or datetime.now(UTC)
        pending = await picks_orm.list_pending_picks()
        return PendingStatus(
            pending=len(pending),
            ready_to_resolve=sum(1 for p in pending if p.expires_at <= now),
            next_expiry=min((p.expires_at for p in pending), default=None),
            symbols=sorted({p.symbol for p in pending}),
        )

    async def settle(
        self,
        pick: Pick,
        classification: Classification,
        price: float | None,
        now: datetime,
    ) -> bool:
        """
        Settle one pick and everything that depends on it in one unit of work.

        Returns False when the pick had already left PENDING.
        """
        async with get_session() as session:
            settled = await picks_orm.settle_pick_with_session(
                session,
                pick.id,
                status=classification.status,
                closed_at=now,
                closed_price=price,
                actual_return=classification.actual_return,
                hit_target=classification.hit_target,
                hit_stop_loss=classification.hit_stop_loss,
                days_held=days_held(pick, now),
            )
            if not settled:
                await session.rollback()
                return False

            records = build_factor_outcomes(
                pick,
                classification.status,
                classification.actual_return,
                classification.raw_return,
                self.settings,
                now,
            )
            await factor_outcomes_orm.record_outcomes_with_session(session, records)

            if pick.consensus_id:
                await self._settle_consensus(session, pick, classification, now)

            await session.commit()
        return True

    async def _settle_consensus(self, session, pick: Pick, classification: Classification, now: datetime) -> None:
        consensus = await consensus_orm.get_consensus_with_session(session, pick.consensus_id)
        if consensus is None or consensus.status != PickStatus.PENDING:
            return
        if consensus.direction != pick.direction:
            return

        settled = await consensus_orm.settle_consensus_with_session(
            session,
            consensus.id,
            status=classification.status,
            closed_at=now,
            actual_return=classification.actual_return,
        )
        if not settled or classification.status == PickStatus.EXPIRED:
            return

        stats = await combination_stats_orm.record_settlement_with_session(
            session,
            consensus.combination_key,
            correct=classification.status == PickStatus.WIN,
            confidence=consensus.weighted_confidence,
            now=now,
        )
        logger.info(
            f"Consensus {consensus.id} settled {classification.status.value}; "
            f"{stats.combination_key} now {stats.times_correct}/{stats.times_agreed}"
        )

    async def _settle_and_count(
        self,
        pick: Pick,
        classification: Classification,
        price: float | None,
        now: datetime,
        summary: ResolveSummary,
        settled_backends: set[str],
    ) -> None:
        try:
            settled = await self.settle(pick, classification, price, now)
        except SQLAlchemyError as e:
            logger.error(f"Failed to settle pick {pick.id}: {e}")
            summary.errors.append(f"Settle error for {pick.id}: {e}")
            return
        if not settled:
            return

        summary.processed += 1
        if classification.status == PickStatus.WIN:
            summary.wins += 1
        elif classification.status == PickStatus.LOSS:
            summary.losses += 1
        else:
            summary.expired += 1
        if classification.status != PickStatus.EXPIRED:
            settled_backends.add(pick.backend_id)

    async def _calibration_due(self, backend_ids: set[str], summary: ResolveSummary) -> list[str]:
        due: list[str] = []
        for backend_id in sorted(backend_ids):
            try:
                if await is_calibration_due(backend_id, self.settings):
                    due.append(backend_id)
            except SQLAlchemyError as e:
                logger.error(f"Calibration trigger check failed for {backend_id}: {e}")
                summary.errors.append(f"Trigger check error for {backend_id}: {e}")
        return due


async def resolve_expired(market_data: MarketDataSource | None = None) -> ResolveSummary:
    """Convenience entry point for the periodic sweep."""
    return await OutcomeResolver(market_data=market_data).resolve_expired()
