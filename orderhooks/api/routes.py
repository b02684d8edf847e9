"""FastAPI application for the webhook engine.

This module provides:
- Application factory with engine lifecycle management
- Mapping of engine errors to HTTP responses
- Health check endpoint
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from orderhooks import __version__
from orderhooks.logging_config import setup_logging
from orderhooks.webhooks.engine import WebhookEngine
from orderhooks.webhooks.errors import NotFoundError, ValidationError, WebhookError

logger = structlog.get_logger(__name__)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    detail: str | None = Field(default=None, description="Detailed error information")
    field: str | None = Field(default=None, description="Offending field, for validation errors")


# ============================================================================
# Application Setup
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("application_starting")

    if getattr(app.state, "engine", None) is None:
        app.state.engine = WebhookEngine.from_settings()

    engine: WebhookEngine = app.state.engine
    await engine.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await engine.stop()


OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Manage webhook subscriptions and inspect delivery history. "
        "Every request is scoped to the tenant in the X-Tenant-ID header.",
    },
    {
        "name": "Health",
        "description": "Health check endpoint for monitoring service status.",
    },
]

API_DESCRIPTION = """
## Overview

Outbound webhook delivery for the order-management platform. Tenants register
endpoints for order, shipment, NDR and inventory events and receive a signed
JSON POST for every matching event.

## Verifying deliveries

Each request carries `X-Webhook-Signature`, the hex HMAC-SHA256 of the raw
body keyed with the subscription secret. Deliveries are retried with
exponential backoff; deduplicate on the envelope `id`.
"""


def create_app(
    engine: WebhookEngine | None = None,
    title: str = "OrderHooks Webhook API",
    version: str = __version__,
    description: str | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Webhook engine (built from settings on startup if not provided).
        title: API title.
        version: API version.
        description: API description (uses default if not provided).
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    setup_logging()

    app = FastAPI(
        title=title,
        version=version,
        description=description or API_DESCRIPTION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.engine = engine

    # Configure CORS
    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    @app.exception_handler(ValidationError)
    async def validation_error_handler(
        request: Request, exc: ValidationError  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error=exc.message, field=exc.field).model_dump(),
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(
        request: Request, exc: NotFoundError  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error=exc.message).model_dump(),
        )

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(
        request: Request, exc: WebhookError  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("webhook_error", **exc.to_dict())
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error=exc.message).model_dump(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            ).model_dump(),
        )

    # Register routes
    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    from orderhooks.api.webhooks import router as webhooks_router

    app.include_router(webhooks_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check, including the retry scheduler state."""
        engine: WebhookEngine | None = app.state.engine
        return {
            "status": "ok",
            "version": app.version,
            "scheduler_running": bool(engine and engine.scheduler.is_running),
            "timestamp": datetime.now(UTC).isoformat(),
        }


# ============================================================================
# Default Application Instance
# ============================================================================


# Create default app instance
app = create_app()
