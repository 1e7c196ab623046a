"""
API routes for the payment relay.

Errors from the core are RelayError subclasses; the application-level
handler in ``api.main`` turns them into ``{"error": code, "message": ...}``.
"""
from typing import Any, Dict, Optional, Union

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from slip_relay import __version__

from .dependencies import Services, get_services
from .schemas import (
    ApproveRequest,
    ApproveResponse,
    CheckoutSessionResponse,
    ConnectLinkResponse,
    CreateCheckoutSessionRequest,
    ErrorResponse,
    PaymentIntentActionResponse,
    PaymentIntentRequest,
    SessionSummaryResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

ERROR_RESPONSES: Dict[Union[int, str], Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}

# Create routers
checkout_router = APIRouter(tags=["checkout"], responses=ERROR_RESPONSES)
payment_router = APIRouter(tags=["payments"], responses=ERROR_RESPONSES)
connect_router = APIRouter(prefix="/connect", tags=["connect"], responses=ERROR_RESPONSES)
webhook_router = APIRouter(tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@checkout_router.post(
    "/create-checkout-session",
    response_model=CheckoutSessionResponse,
    summary="Start a checkout",
    description="Create a Stripe-hosted Checkout Session for a reservation",
)
async def create_checkout_session(
    request: CreateCheckoutSessionRequest,
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    logger.info(
        "api_create_checkout_session_request",
        location=request.location,
        reservation_id=request.reservation_id,
        amount_cents=request.amount_cents,
    )
    return await services.checkout.create_checkout_session(**request.model_dump())


@checkout_router.get(
    "/checkout-session",
    response_model=SessionSummaryResponse,
    summary="Poll a checkout session",
    description="Fetch a session's state and reconcile the reservation status",
)
async def get_checkout_session(
    session_id: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.engine.reconcile_session(session_id)


@payment_router.post(
    "/approve",
    response_model=ApproveResponse,
    response_model_exclude_none=True,
    summary="Approve a reservation",
    description="Charge the card saved for a reservation",
    responses={402: {"model": ErrorResponse}},
)
async def approve(
    request: ApproveRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        "api_approve_request",
        reservation_id=request.reservation_id,
        amount_cents=request.amount_cents,
    )
    result = await services.engine.approve(request.reservation_id, request.amount_cents)
    return result.model_dump()


@payment_router.post(
    "/capture",
    response_model=PaymentIntentActionResponse,
    summary="Capture a held payment",
)
async def capture(
    request: PaymentIntentRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.engine.capture(request.payment_intent_id)


@payment_router.post(
    "/release",
    response_model=PaymentIntentActionResponse,
    summary="Release a held payment",
)
async def release(
    request: PaymentIntentRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.engine.release(request.payment_intent_id)


@connect_router.get(
    "/get-paid",
    response_model=ConnectLinkResponse,
    summary="Onboard or log in a location",
    description="Create the location's connected account if needed and return a link",
)
async def connect_get_paid(
    location: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, object]:
    return await services.connect.get_paid(location)


@connect_router.get(
    "/login",
    response_model=ConnectLinkResponse,
    summary="Dashboard login link",
    responses={404: {"model": ErrorResponse}},
)
async def connect_login(
    location: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, object]:
    return await services.connect.login(location)


@webhook_router.post(
    "/webhook-endpoint",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and apply Stripe webhook events",
    responses={400: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Answers 200 for every delivery whose signature verifies, whatever
    happens downstream.
    """
    body = await request.body()
    return await services.engine.handle_webhook(body, stripe_signature)


@monitoring_router.get("/", summary="Liveness check")
async def root(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Root endpoint with service information."""
    settings = services.settings
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "checkout_flow": settings.checkout_flow.value,
        "connect_enabled": settings.connect_enabled,
    }


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
    status_code=status.HTTP_200_OK,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
