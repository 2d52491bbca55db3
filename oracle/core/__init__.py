"""Core infrastructure: settings, logging, exceptions, pacing."""

from .config import Settings, get_settings, settings
from .exceptions import (
    AppException,
    BadRequestError,
    ExternalServiceError,
    MarketDataUnavailableError,
    NotFoundError,
    PersistenceError,
)
from .logging import get_logger, setup_logging


__all__ = [
    "AppException",
    "BadRequestError",
    "ExternalServiceError",
    "MarketDataUnavailableError",
    "NotFoundError",
    "PersistenceError",
    "Settings",
    "get_logger",
    "get_settings",
    "settings",
    "setup_logging",
]
