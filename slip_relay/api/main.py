"""
Main FastAPI application.

Payment relay between marina front-ends, Stripe and the reservation ledger:
- CORS configuration
- Error mapping to ``{"error": code, "message": ...}``
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slip_relay import __version__
from slip_relay.config import Settings, get_settings
from slip_relay.core.exceptions import RelayError
from slip_relay.integrations.ledger_client import LedgerClient
from slip_relay.integrations.stripe_client import StripeClient
from slip_relay.monitoring.logging import setup_logging

from .dependencies import Services
from .routes import (
    checkout_router,
    connect_router,
    monitoring_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.services.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
        checkout_flow=settings.checkout_flow.value,
        connect_enabled=settings.connect_enabled,
    )

    yield

    logger.info("application_shutdown")
    try:
        await app.state.services.close()
        logger.info("ledger_client_closed")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            request_id=request_id,
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Map domain errors to their HTTP status and error code."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_rejected",
        error=exc.code,
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        message=exc.message,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are client errors like any other invalid input."""
    logger.warning("request_validation_failed", path=request.url.path, errors=exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_request", "message": "Request body could not be parsed"},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    stripe_client: Optional[StripeClient] = None,
    ledger: Optional[LedgerClient] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; loaded from the environment when omitted
        stripe_client: Stripe adapter override
        ledger: Ledger adapter override

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Slip Relay",
        description=(
            "Payment relay for marina slip reservations. Creates Stripe Checkout "
            "Sessions, reconciles payment status into the reservation ledger, "
            "charges saved cards on approval and onboards locations to Connect."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = Services.build(settings, stripe_client=stripe_client, ledger=ledger)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Include routers
    app.include_router(checkout_router)
    app.include_router(payment_router)
    app.include_router(connect_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    return app


def run() -> None:
    """Console entrypoint: serve the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "slip_relay.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
