"""FastAPI application entry point.

Tournament entry reservation engine: capacity-checked entries, FIFO
waitlist promotion and payment event reconciliation.

Run with:
    uvicorn entry_engine.main:create_app --factory
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from entry_engine import __version__
from entry_engine.api import admin, entries, membership, waitlist, webhooks
from entry_engine.config import Settings, get_settings
from entry_engine.logging_config import bind_context, clear_context, configure_logging, get_logger
from entry_engine.middleware.sentry import init_sentry
from entry_engine.services.gateway import StripeGateway
from entry_engine.utils import db as db_module
from entry_engine.utils.errors import EntryEngineError, ErrorCode
from entry_engine.utils.json_utils import ORJSONResponse
from entry_engine.utils.locks import TournamentLockManager
from entry_engine.utils.redis_client import close_redis, init_redis

logger = get_logger(__name__)


# =============================================================================
# Lifespan Events
# =============================================================================


def build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup and shutdown events."""
        logger.info("application_starting", app_env=settings.app_env)

        await db_module.init_db(settings)
        if settings.app_env != "production":
            await db_module.create_schema()
        logger.info("database_connected")

        redis_instance = await init_redis(settings)
        logger.info("redis_connected")

        app.state.lock_manager = TournamentLockManager(
            redis_instance,
            default_lock_timeout_ms=settings.lock_timeout_ms,
            default_acquire_timeout_ms=settings.lock_acquire_timeout_ms,
        )
        app.state.gateway = StripeGateway.from_settings(settings)
        if not settings.stripe_secret_key:
            logger.warning("payment_gateway_not_configured")

        logger.info("application_started")
        yield

        logger.info("application_stopping")
        try:
            released = await app.state.lock_manager.cleanup_all()
            if released:
                logger.info("tournament_locks_released", count=released)
        finally:
            await db_module.close_db()
            await close_redis()
        logger.info("application_stopped")

    return lifespan


# =============================================================================
# Middleware
# =============================================================================


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Adds X-Request-ID to every response and binds it into the log context."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        clear_context()
        bind_context(request_id=request_id)
        started = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response


# =============================================================================
# Error Handlers
# =============================================================================


def get_request_id(request: Request) -> str:
    """Get request ID from request state or headers."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID", str(uuid.uuid4()))


def create_error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    trace_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response."""
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
        "traceId": trace_id,
    }


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(EntryEngineError)
    async def entry_engine_error_handler(request: Request, exc: EntryEngineError) -> ORJSONResponse:
        """Handle reservation engine errors."""
        trace_id = get_request_id(request)
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("entry_engine_error", code=exc.code, message=exc.message, status_code=exc.status_code)

        return ORJSONResponse(
            status_code=exc.status_code,
            content=create_error_response(
                code=exc.code,
                message=exc.message,
                details=exc.details,
                trace_id=trace_id,
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> ORJSONResponse:
        """Missing or malformed request fields answer 400, not 422."""
        trace_id = get_request_id(request)
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
                "message": error.get("msg", ""),
            }
            for error in exc.errors()
        ]
        return ORJSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=create_error_response(
                code=ErrorCode.INVALID_REQUEST.value,
                message="Invalid request",
                details={"errors": errors},
                trace_id=trace_id,
            ),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> ORJSONResponse:
        """Handle HTTP exceptions."""
        trace_id = get_request_id(request)
        return ORJSONResponse(
            status_code=exc.status_code,
            content=create_error_response(
                code="HTTP_ERROR",
                message=str(exc.detail),
                trace_id=trace_id,
            ),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
        """Handle unexpected exceptions."""
        trace_id = get_request_id(request)
        logger.error(
            "unexpected_error",
            error_type=type(exc).__name__,
            error_message=str(exc),
            exc_info=True,
        )

        # Don't expose internal error details in production
        message = "Internal server error"
        if settings.app_debug:
            message = f"{type(exc).__name__}: {exc}"

        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=create_error_response(
                code=ErrorCode.INTERNAL_ERROR.value,
                message=message,
                trace_id=trace_id,
            ),
        )


# =============================================================================
# Health Check Endpoints
# =============================================================================


async def health_check(request: Request) -> dict[str, Any]:
    """Check database and Redis connectivity."""
    health_status: dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "services": {
            "database": "unknown",
            "redis": "unknown",
        },
    }
    overall_healthy = True

    if db_module.engine is None:
        health_status["services"]["database"] = "not initialized"
        overall_healthy = False
    else:
        try:
            async with db_module.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["services"]["database"] = "healthy"
        except Exception as e:
            health_status["services"]["database"] = f"unhealthy: {e}"
            overall_healthy = False
            logger.error("database_health_check_failed", error=str(e))

    lock_manager = getattr(request.app.state, "lock_manager", None)
    if lock_manager is None:
        health_status["services"]["redis"] = "not initialized"
        overall_healthy = False
    else:
        try:
            await lock_manager.redis.ping()
            health_status["services"]["redis"] = "healthy"
        except Exception as e:
            health_status["services"]["redis"] = f"unhealthy: {e}"
            overall_healthy = False
            logger.error("redis_health_check_failed", error=str(e))

    if not overall_healthy:
        health_status["status"] = "degraded"
    return health_status


async def liveness_probe() -> dict[str, str]:
    return {"status": "alive"}


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application. Tests pass their own settings."""
    settings = settings or get_settings()

    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.app_env == "production",
        app_env=settings.app_env,
    )
    sentry_enabled = init_sentry(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=settings.sentry_traces_sample_rate
        if settings.app_env == "production"
        else 0.0,
    )
    if sentry_enabled:
        logger.info("sentry_initialized")
    elif settings.app_env == "production":
        logger.warning("sentry_not_configured")

    app = FastAPI(
        title="Tournament Entry Engine",
        version=__version__,
        description="Tournament entry reservation, waitlist and payment reconciliation API",
        lifespan=build_lifespan(settings),
        default_response_class=ORJSONResponse,
    )

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Admin-Key"],
        expose_headers=["X-Request-ID"],
    )

    register_exception_handlers(app, settings)

    app.add_api_route("/health", health_check, methods=["GET"], tags=["Health"])
    app.add_api_route("/health/live", liveness_probe, methods=["GET"], tags=["Health"])

    app.include_router(entries.router)
    app.include_router(waitlist.router)
    app.include_router(webhooks.router)
    app.include_router(membership.router)
    app.include_router(admin.router)

    return app
