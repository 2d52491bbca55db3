"""
Pick orchestrator.

Fans one analysis request out to every enabled backend concurrently, keeps
whatever succeeds within each backend's own deadline, persists the picks,
and builds a consensus when enough backends answered.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError

from oracle.core.config import Settings, settings as default_settings
from oracle.core.exceptions import MarketDataUnavailableError, PersistenceError
from oracle.core.logging import get_logger
from oracle.database.connection import get_session
from oracle.engine.backends.base import PredictionBackend, build_adapters
from oracle.engine.backends.config import BackendSet
from oracle.engine.backends.transport import Transport
from oracle.engine.consensus import apply_combination_history, build_consensus
from oracle.engine.data.market_data import MarketDataSource, get_market_data
from oracle.engine.schemas import (
    BackendFailure,
    Calibration,
    ConsensusRecord,
    FailureReason,
    GenerationResult,
    MarketSnapshot,
    Pick,
)
from oracle.repositories import calibrations_orm, combination_stats_orm, consensus_orm, picks_orm


logger = get_logger("engine.orchestrator")

CalibrationLookup = Callable[[str], Awaitable[Calibration | None]]


class Orchestrator:
    """
    Coordinates one multi-backend analysis.

    Collaborators are injected so tests can run arbitrary backend subsets
    against fake market data and transports.
    """

    def __init__(
        self,
        market_data: MarketDataSource | None = None,
        transports: dict[str, Transport] | None = None,
        calibration_lookup: CalibrationLookup | None = None,
        settings: Settings | None = None,
    ):
        self.market_data = market_data or get_market_data()
        self.transports = transports or {}
        self.calibration_lookup = calibration_lookup or calibrations_orm.get_latest_calibration
        self.settings = settings or default_settings

    async def generate_picks(
        self,
        symbol: str,
        backends: BackendSet | Sequence[PredictionBackend],
    ) -> GenerationResult:
        """
        Run every enabled backend for ``symbol``.

        Raises:
            MarketDataUnavailableError: no snapshot, so no entry price.
            PersistenceError: picks or consensus could not be stored.
        """
        start = time.monotonic()
        symbol = symbol.upper().strip()

        failures: list[BackendFailure] = []
        if isinstance(backends, BackendSet):
            adapters: list[PredictionBackend] = build_adapters(backends, self.transports)
            failures.extend(
                BackendFailure(
                    backend_id=c.backend_id,
                    reason=FailureReason.DISABLED,
                    message="Backend is disabled",
                )
                for c in backends
                if not c.enabled
            )
        else:
            adapters = list(backends)

        snapshot = await self.market_data.get_snapshot(symbol)
        if snapshot is None:
            raise MarketDataUnavailableError(symbol)

        calibrations = await self._load_calibrations([a.backend_id for a in adapters])

        results = await asyncio.gather(
            *[
                self._run_backend(adapter, symbol, snapshot, calibrations.get(adapter.backend_id))
                for adapter in adapters
            ]
        )

        picks: list[Pick] = []
        for result in results:
            if isinstance(result, Pick):
                picks.append(result)
            else:
                failures.append(result)

        consensus: ConsensusRecord | None = None
        if len(picks) >= self.settings.consensus_min_picks:
            consensus = build_consensus(
                picks,
                tiers={a.backend_id: a.tier for a in adapters},
                calibrations=calibrations,
                settings=self.settings,
            )
            consensus = apply_combination_history(
                consensus, await self._combination_stats(consensus.combination_key)
            )
            picks = [p.model_copy(update={"consensus_id": consensus.id}) for p in picks]

        await self._persist(picks, consensus)

        elapsed = time.monotonic() - start
        logger.info(
            f"Analysis for {symbol}: {len(picks)}/{len(adapters)} backends succeeded, "
            f"consensus={'yes' if consensus else 'no'} in {elapsed:.2f}s"
        )
        return GenerationResult(
            symbol=symbol,
            picks=picks,
            consensus=consensus,
            failed_backends=failures,
        )

    async def _run_backend(
        self,
        adapter: PredictionBackend,
        symbol: str,
        snapshot: MarketSnapshot,
        calibration: Calibration | None,
    ) -> Pick | BackendFailure:
        """One backend call under its own timeout; never raises."""
        try:
            return await asyncio.wait_for(
                adapter.analyze(symbol, snapshot, calibration),
                timeout=adapter.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{adapter.backend_id} timed out after {adapter.timeout_seconds}s for {symbol}")
            return BackendFailure(
                backend_id=adapter.backend_id,
                reason=FailureReason.TIMEOUT,
                message=f"No answer within {adapter.timeout_seconds}s",
            )
        except Exception as e:
            logger.exception(f"{adapter.backend_id} raised for {symbol}")
            return BackendFailure(
                backend_id=adapter.backend_id,
                reason=FailureReason.TRANSPORT,
                message=f"{type(e).__name__}: {e}",
            )

    async def _load_calibrations(self, backend_ids: list[str]) -> dict[str, Calibration | None]:
        try:
            found = await asyncio.gather(*[self.calibration_lookup(b) for b in backend_ids])
        except SQLAlchemyError as e:
            logger.error(f"Failed to load calibrations: {e}")
            raise PersistenceError("Failed to load calibrations", details={"error": str(e)}) from e
        return dict(zip(backend_ids, found))

    async def _combination_stats(self, key: str):
        try:
            return await combination_stats_orm.get_stats(key)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load combination stats for {key}: {e}")
            raise PersistenceError("Failed to load combination stats", details={"error": str(e)}) from e

    async def _persist(self, picks: list[Pick], consensus: ConsensusRecord | None) -> None:
        """Store picks and their consensus in one unit of work."""
        if not picks and consensus is None:
            return
        try:
            async with get_session() as session:
                await picks_orm.upsert_picks_with_session(session, picks)
                if consensus is not None:
                    await consensus_orm.upsert_consensus_with_session(session, consensus)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist analysis results: {e}")
            raise PersistenceError(
                "Failed to persist analysis results",
                details={"pick_ids": [p.id for p in picks], "error": str(e)},
            ) from e


async def generate_picks(
    symbol: str,
    backends: BackendSet | None = None,
    market_data: MarketDataSource | None = None,
) -> GenerationResult:
    """Convenience entry point using the configured backend catalogue."""
    orchestrator = Orchestrator(market_data=market_data)
    return await orchestrator.generate_picks(symbol, backends or BackendSet.from_settings())
