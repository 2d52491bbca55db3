"""Custom exceptions and centralized exception handlers."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class AppException(Exception):
    """Base application exception with structured error response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.status_code = status_code or self.status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to RFC 7807 problem+json style response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
            **({"details": self.details} if self.details else {}),
        }


class NotFoundError(AppException):
    """Resource not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"
    message = "Resource not found"


class BadRequestError(AppException):
    """Bad request."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "BAD_REQUEST"
    message = "Bad request"


class ExternalServiceError(AppException):
    """External service error."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "EXTERNAL_SERVICE_ERROR"
    message = "External service temporarily unavailable"


class MarketDataUnavailableError(ExternalServiceError):
    """No usable quote for a symbol, so no entry price can be stamped."""

    error_code = "MARKET_DATA_UNAVAILABLE"
    message = "Market data unavailable"

    def __init__(self, symbol: str, reason: str | None = None):
        self.symbol = symbol
        super().__init__(
            message=f"Market data unavailable for {symbol}"
            + (f": {reason}" if reason else ""),
            details={"symbol": symbol},
        )


class PersistenceError(AppException):
    """A store write or read failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "PERSISTENCE_ERROR"
    message = "Failed to persist data"


def register_exception_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        import logging

        logger = logging.getLogger("oracle.error")
        logger.exception(
            "Unhandled exception",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "method": request.method,
            },
        )

        from .config import settings

        if settings.debug:
            message = str(exc)
        else:
            message = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": message,
                "status": 500,
            },
            headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
        )
