from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.bookings.routes import router as bookings_router
from app.config import settings
from app.database import async_session
from app.errors import DomainError
from app.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from app.payments.routes import router as payments_router
from app.revenue.routes import router as revenue_router
from app.utils.rate_limit import limiter
from app.wallet.routes import router as wallet_router

# JSON in production, console in development
processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]
if settings.is_production:
    processors.append(structlog.processors.JSONRenderer())
else:
    processors.append(structlog.dev.ConsoleRenderer())

structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(0),
)

logger = structlog.get_logger()

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )


async def _check_alembic_migration_version() -> None:
    """Warn when the database is not at the alembic head. Never fails startup."""
    try:
        from alembic.config import Config as AlembicConfig
        from alembic.script import ScriptDirectory

        head_rev = ScriptDirectory.from_config(AlembicConfig("alembic.ini")).get_current_head()

        async with async_session() as session:
            conn = await session.connection()

            def _get_current_rev(connection):
                if not connection.dialect.has_table(connection, "alembic_version"):
                    return None
                row = connection.execute(text("SELECT version_num FROM alembic_version")).fetchone()
                return row[0] if row else None

            current_rev = await conn.run_sync(_get_current_rev)

        if current_rev is None:
            logger.warning("alembic_version_check", status="no_alembic_version_table")
        elif current_rev != head_rev:
            logger.warning("alembic_version_mismatch", current=current_rev, head=head_rev)
        else:
            logger.info("alembic_version_ok", version=current_rev)
    except Exception as exc:
        logger.warning("alembic_version_check_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.services.scheduler import start_scheduler, stop_scheduler

    logger.info(
        "studiobook_startup",
        env=settings.APP_ENV,
        payhere_sandbox=settings.PAYHERE_SANDBOX,
        commission_rate=str(settings.PLATFORM_COMMISSION_RATE),
    )
    await _check_alembic_migration_version()

    if not settings.PAYHERE_MERCHANT_SECRET:
        logger.warning("payhere_merchant_secret_empty")

    start_scheduler()
    yield
    await stop_scheduler()
    logger.info("studiobook_shutdown")


app = FastAPI(
    title="Studiobook API",
    description="Studio and artist booking marketplace with PayHere settlement",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("domain_error", kind=exc.kind, detail=exc.message)
    else:
        logger.info("domain_error", kind=exc.kind, detail=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled exceptions become a safe 500 outside development."""
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV != "development":
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    raise exc


# Middleware is LIFO: the last one added runs first.
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)
app.add_middleware(RequestContextMiddleware)


def _safe_metrics(info) -> None:
    from prometheus_client import Counter, Histogram

    if not hasattr(_safe_metrics, "_total"):
        _safe_metrics._total = Counter(
            "studiobook_http_requests_total", "Total HTTP requests",
            ["method", "status", "handler"],
        )
        _safe_metrics._latency = Histogram(
            "studiobook_http_request_duration_seconds", "Request latency",
            ["method", "handler"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
        )
    _safe_metrics._total.labels(info.method, info.modified_status, info.modified_handler).inc()
    _safe_metrics._latency.labels(info.method, info.modified_handler).observe(info.modified_duration)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(_safe_metrics).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus metrics, guarded by METRICS_API_KEY."""
    from prometheus_client import generate_latest
    from starlette.responses import Response as StarletteResponse

    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")
    if settings.METRICS_API_KEY and request.headers.get("x-metrics-key", "") != settings.METRICS_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid metrics API key")

    return StarletteResponse(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(bookings_router, prefix="/bookings", tags=["bookings"])
app.include_router(payments_router, prefix="/payments", tags=["payments"])
app.include_router(wallet_router, prefix="/wallet", tags=["wallet"])
app.include_router(revenue_router, prefix="/revenue", tags=["revenue"])


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Database, Redis and scheduler state."""
    result: dict = {"status": "ok", "database": "connected", "redis": "connected"}

    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("health_database_unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "redis": "unknown"},
        )

    # Redis backs the slot holds and scheduler locks, both of which degrade without it.
    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
        await r.ping()
        await r.aclose()
    except Exception:
        result["redis"] = "unavailable"

    from app.services.scheduler import scheduler

    result["scheduler"] = "running" if scheduler.running else "stopped"

    if settings.is_production:
        checks = {
            "database": result["database"] == "connected",
            "redis": result["redis"] == "connected",
            "scheduler": result["scheduler"] == "running",
        }
        return {
            "status": "ok" if all(checks.values()) else "unhealthy",
            **{name: "ok" if ok else "error" for name, ok in checks.items()},
        }
    return result
