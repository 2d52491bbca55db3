"""Application entry point."""

from __future__ import annotations

import uvicorn

from oracle.api.app import create_api_app
from oracle.core.config import settings


app = create_api_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_config=None,
    )
