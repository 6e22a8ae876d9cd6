"""FastAPI application for Platform webhooks, OAuth linking and health.

The app runs inside the bot process (see ``bot.client.start_web_api``) and
shares its :class:`BotServices`, so webhook events edit messages through
the same gateway and sessions the handlers use.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from naffles_bot.bot.services.container import BotServices
from naffles_bot.web.api.routers.health import router as health_router
from naffles_bot.web.api.routers.oauth import router as oauth_router
from naffles_bot.web.api.routers.webhooks import router as webhooks_router
from naffles_bot.web.api.schemas import ErrorResponse
from naffles_bot.web.crud import ConflictError, DatabaseOperationError, NotFoundError

logger = logging.getLogger(__name__)


def _error(status_code: int, detail: str, error_type: str) -> JSONResponse:
    response = ErrorResponse(detail=detail, type=error_type, timestamp=datetime.now(timezone.utc))
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


def create_app(services: BotServices) -> FastAPI:
    """Build the API around an already-initialized service container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Sync API starting")
        try:
            yield
        finally:
            logger.info("Sync API stopped")

    api = FastAPI(
        title="Naffles Discord Bot API",
        description="Platform webhooks, OAuth account linking and health",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if services.settings.is_production else "/docs",
        redoc_url=None,
    )
    api.state.services = services

    @api.middleware("http")
    async def add_request_id_middleware(request: Request, call_next):
        """Add request ID to request state for tracking."""
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    @api.exception_handler(NotFoundError)
    async def not_found_exception_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, str(exc), "not_found_error")

    @api.exception_handler(ConflictError)
    async def conflict_exception_handler(request: Request, exc: ConflictError) -> JSONResponse:
        logger.warning(f"Conflict on {request.method} {request.url.path}: {exc}")
        return _error(409, str(exc), "conflict_error")

    @api.exception_handler(DatabaseOperationError)
    async def database_exception_handler(request: Request, exc: DatabaseOperationError) -> JSONResponse:
        logger.error(f"Database operation error on {request.method} {request.url.path}: {exc}")
        return _error(500, "Internal server error", "database_error")

    api.include_router(webhooks_router)
    api.include_router(oauth_router)
    api.include_router(health_router)
    return api
