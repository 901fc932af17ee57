"""FastAPI application for the webhook service.

This module provides:
- Application factory wiring store, registry, recorder and dispatcher
- Webhook management routes
- Health check endpoint
- Error handling
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from localpay_webhooks import __version__
from localpay_webhooks.api.webhooks import router as webhooks_router
from localpay_webhooks.config import Settings, settings
from localpay_webhooks.logging_config import configure_logging
from localpay_webhooks.webhooks.dispatcher import WebhookDispatcher
from localpay_webhooks.webhooks.executor import DeliveryExecutor
from localpay_webhooks.webhooks.recorder import DeliveryRecorder
from localpay_webhooks.webhooks.registry import WebhookRegistry
from localpay_webhooks.webhooks.storage import SQLiteWebhookStore

logger = structlog.get_logger(__name__)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    detail: str | None = Field(default=None, description="Detailed error information")


def _build_lifespan(config: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open storage and start the dispatcher unless one was injected."""
        configure_logging(config.LOG_LEVEL, json_logs=config.LOG_JSON)
        logger.info("application_starting")

        store: SQLiteWebhookStore | None = None
        if app.state.webhook_dispatcher is None:
            store = SQLiteWebhookStore(config.WEBHOOK_DB_PATH)
            await store.initialize()
            executor = DeliveryExecutor(
                timeout_seconds=config.WEBHOOK_DELIVERY_TIMEOUT,
                max_concurrent_deliveries=config.WEBHOOK_MAX_CONCURRENT_DELIVERIES,
                user_agent=config.WEBHOOK_USER_AGENT,
            )
            app.state.webhook_dispatcher = WebhookDispatcher(
                WebhookRegistry(store),
                DeliveryRecorder(store),
                executor=executor,
            )

        yield

        logger.info("application_shutting_down")
        if store is not None:
            await app.state.webhook_dispatcher.shutdown()
            await store.close()
            app.state.webhook_dispatcher = None

    return lifespan


def create_app(
    dispatcher: WebhookDispatcher | None = None,
    *,
    config: Settings | None = None,
    title: str = "LocalPay Webhook API",
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        dispatcher: Pre-built dispatcher. When omitted, one backed by SQLite
            is created on startup and shut down with the application.
        config: Settings (defaults to the environment).
        title: API title.

    Returns:
        Configured FastAPI application.
    """
    config = config or settings

    app = FastAPI(
        title=title,
        version=__version__,
        lifespan=_build_lifespan(config),
    )
    app.state.webhook_dispatcher = dispatcher

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="Internal server error").model_dump(),
        )

    app.include_router(webhooks_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        pending = 0
        if app.state.webhook_dispatcher is not None:
            pending = app.state.webhook_dispatcher.pending_count
        return {
            "status": "ok",
            "pending_deliveries": pending,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app
