"""
FastAPI application factory.

Run:
  uvicorn credit_metering.api.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Settings
from ..db.base import BaseDBManager
from ..errors import CreditMeteringError, PersistenceError
from ..generation.base import GenerationBackend
from ..services.container import build_container
from .middleware import RequestContextMiddleware
from .router import router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[BaseDBManager] = None,
    backend: Optional[GenerationBackend] = None,
) -> FastAPI:
    settings = settings or Settings()
    services = build_container(settings, db=db, backend=backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ensure_indexes = getattr(services.db, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()
        services.rate_limiter.start_cleanup(settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS)
        try:
            yield
        finally:
            await services.rate_limiter.stop_cleanup()
            await services.aclose()

    app = FastAPI(title="Credit metering", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(RequestContextMiddleware, skip_paths=("/health",))
    app.include_router(router)
    _install_error_handlers(app)
    return app


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CreditMeteringError)
    async def credit_metering_error(request: Request, exc: CreditMeteringError) -> JSONResponse:
        if isinstance(exc, PersistenceError):
            logger.error(
                "Store failure on %s: %s",
                request.url.path,
                exc.details,
                exc_info=exc,
                extra={"correlation_id": getattr(request.state, "correlation_id", None)},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled error on %s",
            request.url.path,
            extra={"correlation_id": getattr(request.state, "correlation_id", None)},
        )
        return JSONResponse(status_code=500, content={"error": "An unknown error occurred"})
