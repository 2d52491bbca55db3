"""API dependencies providing engine collaborators.

Every collaborator is resolved through FastAPI's dependency system so tests
can swap in fakes with ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends

from oracle.core.config import Settings, get_settings
from oracle.engine.backends.config import BackendSet
from oracle.engine.backends.transport import Transport
from oracle.engine.data.market_data import MarketDataSource, get_market_data
from oracle.engine.orchestrator import Orchestrator
from oracle.engine.outcomes import OutcomeResolver


__all__ = [
    "get_app_settings",
    "get_backend_set",
    "get_market_data_source",
    "get_orchestrator",
    "get_outcome_resolver",
    "get_transports",
]


def get_app_settings() -> Settings:
    return get_settings()


def get_backend_set(settings: Settings = Depends(get_app_settings)) -> BackendSet:
    """Backend catalogue for this request."""
    return BackendSet.from_settings(settings)


def get_market_data_source() -> MarketDataSource:
    return get_market_data()


def get_transports() -> dict[str, Transport]:
    """Transport overrides keyed by backend id; empty means the default chat transport."""
    return {}


def get_orchestrator(
    market_data: MarketDataSource = Depends(get_market_data_source),
    transports: dict[str, Transport] = Depends(get_transports),
    settings: Settings = Depends(get_app_settings),
) -> Orchestrator:
    return Orchestrator(market_data=market_data, transports=transports, settings=settings)


def get_outcome_resolver(
    market_data: MarketDataSource = Depends(get_market_data_source),
    settings: Settings = Depends(get_app_settings),
) -> OutcomeResolver:
    return OutcomeResolver(market_data=market_data, settings=settings)
