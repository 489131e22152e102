"""ReelVault API: secure video delivery and payment reconciliation."""
from __future__ import annotations

import logging

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException
from fastapi import Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import engine, get_session
from src.db.tables import Base
from src.payments.provider import PaymentProviderConfig, create_payment_provider
from src.services.errors import ServiceError, UserBannedError
from src.services.payments import PaymentService

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Scrub sensitive data
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)


def build_payment_service() -> PaymentService:
    """Pick the provider from configured credentials, once at process start."""
    provider = create_payment_provider(PaymentProviderConfig.from_settings(settings))
    return PaymentService(
        provider=provider,
        base_url=settings.BASE_URL,
        result_path=settings.PAYMENT_RESULT_PATH,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config and create tables on startup."""
    from src.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import src.db.payment_tables  # noqa: F401
    import src.db.security_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    yield

    logger.info("Shutting down, draining connections...")
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="ReelVault API",
    version="1.0.0",
    description="Movie streaming backend: KHQR payments, entitlement, protected playback",
    lifespan=lifespan,
)
app.state.payment_service = build_payment_service()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

from src.middleware.security_headers import SecurityHeadersMiddleware
app.add_middleware(SecurityHeadersMiddleware)

from src.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)

from src.middleware.rate_limit import RateLimitMiddleware
app.add_middleware(RateLimitMiddleware)


# ---- Routers ----
from src.api.payments import router as payments_router
from src.api.videos import router as videos_router
from src.api.security import router as security_router

app.include_router(payments_router)
app.include_router(videos_router)
app.include_router(security_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check that validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {
        "status": status,
        "db": db_status,
        "payments": app.state.payment_service.provider.name,
        "version": "1.0.0",
    }


@app.get("/ready")
async def readiness(session: AsyncSession = Depends(get_session)):
    """Readiness probe for orchestrators. Returns 503 if not ready to serve traffic."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check: database unreachable")
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database unavailable"})
    return {"ready": True}


# --- Structured Error Responses ---

@app.exception_handler(ServiceError)
async def service_error_handler(request: FastAPIRequest, exc: ServiceError):
    """Domain errors carry their own status and code."""
    content = {"error": exc.error, "message": exc.message}
    if isinstance(exc, UserBannedError) and exc.expires_at:
        content["expiresAt"] = exc.expires_at
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(HTTPException)
async def http_error_handler(request: FastAPIRequest, exc: HTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    }, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions; never leaks stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
