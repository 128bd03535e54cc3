"""Synth access & entitlement service — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.responses import ApiError, envelope, error_code_for_status
from app.api.v1.billing import router as billing_router
from app.api.v1.webhooks import router as webhooks_router
from app.api.v1.workflows import router as workflows_router
from app.billing.stripe_client import BillingConfigurationError
from app.config import settings

# Configure root logger so all app.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    yield
    # Shutdown: dispose engine connections
    from app.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Access, entitlement and billing reconciliation for Synth workflows.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers: every error leaves as {success, code, message, ...}


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return envelope(False, exc.code, exc.message, status_code=exc.status_code, **exc.data)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return envelope(
        False,
        error_code_for_status(exc.status_code),
        message,
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
        detail=exc.detail,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return envelope(
        False,
        "VALIDATION_ERROR",
        "Request validation failed.",
        status_code=400,
        errors=exc.errors(),
    )


@app.exception_handler(BillingConfigurationError)
async def billing_configuration_handler(
    request: Request, exc: BillingConfigurationError
) -> JSONResponse:
    logger.error("Billing is misconfigured (%s %s)", request.method, request.url.path, exc_info=exc)
    return envelope(
        False,
        "BILLING_NOT_CONFIGURED",
        "Billing is not configured. Please contact support.",
        status_code=500,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return envelope(False, "INTERNAL_ERROR", "Internal server error.", status_code=500)


# Routers
app.include_router(billing_router)
app.include_router(workflows_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
