"""Market data access."""

from oracle.engine.data.market_data import (
    MarketDataSource,
    YFinanceMarketData,
    get_market_data,
)

__all__ = ["MarketDataSource", "YFinanceMarketData", "get_market_data"]
