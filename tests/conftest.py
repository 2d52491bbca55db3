"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from oracle.core.config import Settings
from oracle.engine.backends.config import BackendConfig, BackendSet
from oracle.engine.schemas import (
    BackendTier,
    Direction,
    FactorAssessment,
    Interpretation,
    MarketSnapshot,
    Pick,
    Timeframe,
)


pytest_plugins = ["pytest_asyncio"]


# ============================================================================
# Fakes
# ============================================================================


class FakeMarketData:
    """In-memory market data source. Missing symbols are unavailable."""

    def __init__(self, prices: dict[str, float] | None = None, sector: str = "Technology"):
        self.prices = dict(prices or {})
        self.sector = sector
        self.price_calls: list[str] = []
        self.snapshot_calls: list[str] = []

    async def get_current_price(self, symbol: str) -> float | None:
        self.price_calls.append(symbol)
        return self.prices.get(symbol)

    async def get_snapshot(self, symbol: str) -> MarketSnapshot | None:
        self.snapshot_calls.append(symbol)
        price = self.prices.get(symbol)
        if price is None:
            return None
        return MarketSnapshot(
            symbol=symbol,
            price=price,
            company_name=f"{symbol} Inc.",
            sector=self.sector,
            technicals={"rsi_14": 55.0},
        )


class FakeTransport:
    """Transport returning canned text, raising, or stalling."""

    def __init__(self, response: str | BaseException = "", delay: float = 0.0):
        self.response = response
        self.delay = delay
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response


def pick_payload(
    direction: str = "UP",
    confidence: int = 70,
    target_price: float = 110.0,
    stop_loss: float = 95.0,
    timeframe: str | None = "1W",
    factors: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> str:
    """JSON text a well-behaved backend would return."""
    payload: dict[str, Any] = {
        "direction": direction,
        "confidence": confidence,
        "thesis": f"{direction} on strong setup",
        "full_reasoning": "Detailed reasoning.",
        "target_price": target_price,
        "stop_loss": stop_loss,
        "factor_assessments": factors
        if factors is not None
        else [
            {
                "factorId": "pe_ratio",
                "factorName": "P/E Ratio",
                "value": "25.1",
                "interpretation": "bullish",
                "confidence": 60,
                "reasoning": "Below sector average",
            }
        ],
        "key_bullish_factors": ["earnings"],
        "key_bearish_factors": [],
        "risks": ["macro"],
        "catalysts": ["earnings call"],
    }
    if timeframe is not None:
        payload["timeframe"] = timeframe
    payload.update(extra)
    return json.dumps(payload)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings with defaults and no API keys, independent of the environment."""
    return Settings(
        _env_file=None,
        openai_api_key="",
        anthropic_api_key="",
        gemini_api_key="",
        perplexity_api_key="",
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh SQLite database behind the module-level engine."""
    import oracle.database.connection as db_conn

    await db_conn.close_sqlalchemy_engine()
    await db_conn.init_sqlalchemy_engine(f"sqlite+aiosqlite:///{tmp_path / 'oracle.db'}")
    await db_conn.create_tables()
    yield
    await db_conn.close_sqlalchemy_engine()


@pytest.fixture
def market_data() -> FakeMarketData:
    return FakeMarketData({"AAPL": 100.0, "MSFT": 200.0})


@pytest.fixture
def make_backend_set() -> Callable[..., BackendSet]:
    """Build a BackendSet of enabled backends with short timeouts."""

    def _make(*specs: tuple[str, BackendTier], timeout: float = 0.5) -> BackendSet:
        return BackendSet(
            BackendConfig(
                backend_id=backend_id,
                display_name=backend_id.upper(),
                tier=tier,
                model="test-model",
                api_key="test-key",
                timeout_seconds=timeout,
            )
            for backend_id, tier in specs
        )

    return _make


@pytest.fixture
def make_pick() -> Callable[..., Pick]:
    """Pick factory with an entry of 100 and a target/stop of 110/95."""

    def _make(**overrides: Any) -> Pick:
        created_at = overrides.pop("created_at", datetime.now(UTC) - timedelta(days=8))
        timeframe = overrides.pop("timeframe", Timeframe.ONE_WEEK)
        data: dict[str, Any] = {
            "backend_id": "gpt4",
            "symbol": "AAPL",
            "company_name": "AAPL Inc.",
            "sector": "Technology",
            "direction": Direction.UP,
            "confidence": 70,
            "timeframe": timeframe,
            "entry_price": 100.0,
            "target_price": 110.0,
            "stop_loss": 95.0,
            "thesis": "Test thesis",
            "factor_assessments": [
                FactorAssessment(
                    factor_id="pe_ratio",
                    factor_name="P/E Ratio",
                    interpretation=Interpretation.BULLISH,
                    confidence=60,
                )
            ],
            "created_at": created_at,
            "expires_at": created_at + timeframe.horizon,
        }
        data.update(overrides)
        return Pick(**data)

    return _make


@pytest.fixture
def api_app(db, market_data):
    """API app wired to the temporary database and fake market data."""
    from oracle.api.app import create_api_app
    from oracle.api.dependencies import get_market_data_source

    app = create_api_app()
    app.dependency_overrides[get_market_data_source] = lambda: market_data
    return app


@pytest_asyncio.fixture
async def async_client(api_app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for the API app."""
    transport = ASGITransport(app=api_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
