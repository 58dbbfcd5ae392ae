"""FastAPI backend for the care records migration pipeline."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import LOG_LEVEL
from errors import (
    InvalidTransitionError,
    MigrationError,
    NotFoundError,
    TenantIsolationError,
)
from routes import migrations_router
from service import MigrationService

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# CORS configuration
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]


async def migration_error_handler(request: Request, exc: MigrationError) -> JSONResponse:
    """Map migration errors onto HTTP status codes.

    Another tenant's pipeline is reported exactly like a missing one.
    """
    if isinstance(exc, TenantIsolationError):
        return JSONResponse(status_code=404, content={"detail": "Not found"})
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, InvalidTransitionError):
        status_code = 409
    else:
        status_code = 400
    logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": exc.to_dict()},
    )


def create_app(service: MigrationService | None = None) -> FastAPI:
    """Build the application.

    Args:
        service: Service to serve (built from environment configuration on
            startup when omitted)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize resources on startup."""
        if getattr(app.state, "migration_service", None) is None:
            app.state.migration_service = MigrationService.from_config()
            logger.info("Migration service initialized")
        yield

    app = FastAPI(
        title="Care Records Migration",
        description="Legacy care-system data migration pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.migration_service = service
    app.add_exception_handler(MigrationError, migration_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(migrations_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
