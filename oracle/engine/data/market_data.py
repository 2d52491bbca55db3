"""
Market data source backed by yfinance.

yfinance is blocking, so every call runs in a small shared thread pool.
The provider has no batch quote endpoint we rely on, so calls are paced
through a serializing RateLimiter with a fixed minimum inter-call delay.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional, Protocol

import numpy as np
import yfinance as yf

from oracle.core.config import settings
from oracle.core.logging import get_logger
from oracle.core.rate_limiter import RateLimiter
from oracle.engine.schemas import MarketSnapshot


logger = get_logger("engine.market_data")

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="yfinance")


class MarketDataSource(Protocol):
    """Opaque market data collaborator."""

    async def get_current_price(self, symbol: str) -> float | None:
        """Latest price, or None when unavailable."""
        ...

    async def get_snapshot(self, symbol: str) -> MarketSnapshot | None:
        """Price, fundamentals and technicals, or None when unavailable."""
        ...


def _safe_float(value: Any) -> Optional[float]:
    """Safely convert value to float."""
    if value is None:
        return None
    try:
        f = float(value)
        if f != f or f in (float("inf"), float("-inf")):
            return None
        return f
    except (ValueError, TypeError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    """Safely convert value to int."""
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def compute_rsi(closes: np.ndarray, period: int = 14) -> Optional[float]:
    """Wilder RSI of a close series, or None for short series."""
    if len(closes) <= period:
        return None
    deltas = np.diff(closes)
    gains = np.clip(deltas, 0, None)
    losses = np.clip(-deltas, 0, None)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100 - 100 / (1 + rs))


def compute_technicals(closes: np.ndarray) -> dict[str, float]:
    """Small technical summary the prompt can cite."""
    technicals: dict[str, float] = {}
    rsi = compute_rsi(closes)
    if rsi is not None:
        technicals["RSI (14)"] = round(rsi, 1)
    if len(closes) > 21 and closes[-22] > 0:
        technicals["1M Momentum %"] = round(float((closes[-1] / closes[-22] - 1) * 100), 2)
    if len(closes) > 20:
        returns = np.diff(np.log(closes[-21:]))
        technicals["20D Volatility % (ann.)"] = round(float(returns.std() * np.sqrt(252) * 100), 2)
    return technicals


class YFinanceMarketData:
    """MarketDataSource implementation using yfinance."""

    def __init__(self, min_interval_seconds: float | None = None):
        interval = (
            settings.market_data_min_interval_seconds
            if min_interval_seconds is None
            else min_interval_seconds
        )
        self._limiter = RateLimiter.from_min_interval("yfinance", interval)
        self._timeout = settings.market_data_timeout_seconds

    async def _run(self, func, symbol: str):
        if self._limiter is not None and not await self._limiter.acquire(timeout=self._timeout):
            logger.warning(f"Rate limit timeout for {symbol}")
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, func, symbol)

    # =========================================================================
    # Blocking calls (thread pool)
    # =========================================================================

    @staticmethod
    def _fetch_price_sync(symbol: str) -> Optional[float]:
        try:
            fast_info = yf.Ticker(symbol).fast_info
            price = _safe_float(fast_info.get("lastPrice"))
            if price is None:
                price = _safe_float(fast_info.get("previousClose"))
            return price if price and price > 0 else None
        except Exception as e:
            logger.warning(f"Price fetch failed for {symbol}: {e}")
            return None

    @staticmethod
    def _fetch_snapshot_sync(symbol: str) -> Optional[MarketSnapshot]:
        try:
            ticker = yf.Ticker(symbol)
            info = ticker.info or {}
            if not info or not info.get("symbol"):
                return None

            price = _safe_float(
                info.get("regularMarketPrice") or info.get("currentPrice") or info.get("previousClose")
            )
            if not price or price <= 0:
                return None

            history = ticker.history(period="3mo", auto_adjust=True)
            closes = (
                history["Close"].dropna().to_numpy(dtype=float)
                if history is not None and not history.empty
                else np.array([], dtype=float)
            )

            return MarketSnapshot(
                symbol=symbol,
                price=price,
                company_name=info.get("shortName") or info.get("longName"),
                sector=info.get("sector") or "Unknown",
                industry=info.get("industry"),
                currency=info.get("currency") or "USD",
                change_pct=_safe_float(info.get("regularMarketChangePercent")),
                volume=_safe_int(info.get("volume")),
                avg_volume=_safe_int(info.get("averageVolume")),
                market_cap=_safe_float(info.get("marketCap")),
                pe_ratio=_safe_float(info.get("trailingPE")),
                forward_pe=_safe_float(info.get("forwardPE")),
                dividend_yield=_safe_float(info.get("dividendYield")),
                high_52w=_safe_float(info.get("fiftyTwoWeekHigh")),
                low_52w=_safe_float(info.get("fiftyTwoWeekLow")),
                sma_50=_safe_float(info.get("fiftyDayAverage")),
                sma_200=_safe_float(info.get("twoHundredDayAverage")),
                fundamentals={
                    "profit_margin": _safe_float(info.get("profitMargins")),
                    "revenue_growth": _safe_float(info.get("revenueGrowth")),
                    "debt_to_equity": _safe_float(info.get("debtToEquity")),
                    "beta": _safe_float(info.get("beta")),
                },
                technicals=compute_technicals(closes),
            )
        except Exception as e:
            logger.warning(f"Snapshot fetch failed for {symbol}: {e}")
            return None

    # =========================================================================
    # Async API
    # =========================================================================

    async def get_current_price(self, symbol: str) -> float | None:
        return await self._run(self._fetch_price_sync, symbol.upper())

    async def get_snapshot(self, symbol: str) -> MarketSnapshot | None:
        return await self._run(self._fetch_snapshot_sync, symbol.upper())


_instance: Optional[YFinanceMarketData] = None


def get_market_data() -> YFinanceMarketData:
    """Get singleton market data source."""
    global _instance
    if _instance is None:
        _instance = YFinanceMarketData()
    return _instance
