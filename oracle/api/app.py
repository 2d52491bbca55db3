"""API application factory."""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from oracle.core.config import settings
from oracle.core.exceptions import register_exception_handlers
from oracle.core.logging import get_logger, request_id_var, setup_logging
from oracle.database.connection import close_database, init_database
from oracle.jobs import start_scheduler, stop_scheduler

from .routes import analysis, calibration, health, outcomes


logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and start the scheduler; undo both on shutdown."""
    setup_logging()
    await init_database()
    if settings.scheduler_enabled:
        await start_scheduler()

    yield

    await stop_scheduler()
    await close_database()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add request ID to all requests for tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        request_id_var.set(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start_time

        # Path only; query strings are not logged
        path = request.url.path
        logger.info(
            f"{request.method} {path} -> {response.status_code} ({duration:.3f}s)",
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": int(duration * 1000),
            },
        )
        return response


def create_api_app() -> FastAPI:
    """Create and configure the API application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Multi-backend market prediction consensus and calibration API",
        root_path=settings.root_path,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Last added is outermost
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )

    register_exception_handlers(app)

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(analysis.router, prefix="/api", tags=["Analysis"])
    app.include_router(outcomes.router, prefix="/api", tags=["Outcomes"])
    app.include_router(calibration.router, prefix="/api", tags=["Calibration"])

    return app
