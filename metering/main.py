"""Creators metering service: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other metering imports
# (structlog caches the processor chain on first use)
from metering.core.logging import configure_structlog
from metering.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from metering.api.routes import api_router
from metering.billing.store import SubscriptionStore
from metering.billing.stripe_sync import StripeBilling
from metering.core.config import get_settings
from metering.core.exceptions import MeteringError, QuotaExceededError, RateLimitedError
from metering.core.rate_limit import build_rate_limiter
from metering.db import asyncpg_dsn, close_db, close_redis, get_redis, init_db, init_redis
from metering.middleware.correlation import get_correlation_id, setup_correlation_middleware
from metering.permissions.evaluator import PermissionEvaluator
from metering.realtime.notifier import PgChangeNotifier
from metering.usage.store import UsageStore
from metering.usage.tracker import UsageTracker

logger = structlog.get_logger(__name__)


def validate_price_map() -> None:
    """Fail fast if a Stripe price ID is missing outside debug mode."""
    settings = get_settings()
    if settings.debug:
        return
    required = {
        "stripe_price_basic_monthly": settings.stripe_price_basic_monthly,
        "stripe_price_pro_monthly": settings.stripe_price_pro_monthly,
    }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"Missing Stripe price IDs at startup: {missing}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the per-process components, tear them down in reverse order."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_price_map()

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    notifier = PgChangeNotifier(asyncpg_dsn(settings.database_url))
    await notifier.start()

    rate_limiter = build_rate_limiter(settings, get_redis())
    await rate_limiter.start()
    logger.info("rate_limiter_started", backend=settings.rate_limit_backend)

    usage_store = UsageStore()
    subscription_store = SubscriptionStore()

    app.state.notifier = notifier
    app.state.rate_limiter = rate_limiter
    app.state.usage_store = usage_store
    app.state.tracker = UsageTracker(usage_store)
    app.state.evaluator = PermissionEvaluator(threshold=settings.upgrade_warning_threshold)
    app.state.subscription_store = subscription_store
    app.state.billing = StripeBilling(subscription_store)

    yield

    logger.info("shutdown_begin", pending_usage_writes=app.state.tracker.pending)
    await app.state.tracker.drain()
    await rate_limiter.stop()
    await notifier.stop()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_context(request: Request) -> dict:
    return {
        "debug_id": str(uuid.uuid4()),
        "correlation_id": get_correlation_id(),
        "path": request.url.path,
        "method": request.method,
        "user_id": getattr(request.state, "user_id", None),
    }


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Log server-side with a debug_id, return a sanitized body."""
    ctx = _error_context(request)
    logger.error("http_exception", status_code=exc.status_code, detail=exc.detail, **ctx)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": ctx["debug_id"]},
        headers=getattr(exc, "headers", None),
    )


async def metering_error_handler(request: Request, exc: MeteringError) -> JSONResponse:
    """Render the service's error taxonomy as ``{"detail", "code", "debug_id"}``."""
    ctx = _error_context(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("metering_error", status_code=exc.status_code, code=exc.code, detail=exc.message, **ctx)

    content = {"detail": exc.message, "code": exc.code, "debug_id": ctx["debug_id"]}
    headers = None

    if isinstance(exc, QuotaExceededError) and exc.result is not None:
        content["result"] = exc.result.model_dump(mode="json")
    if isinstance(exc, RateLimitedError):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.reset_at),
        }

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the full exception, return a generic 500."""
    ctx = _error_context(request)
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
        **ctx,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": ctx["debug_id"]},
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Usage metering, plan enforcement and realtime subscription updates",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(MeteringError)(metering_error_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("metering.main:app", host="0.0.0.0", port=8000, reload=True)
