"""
Stripe webhook signature verification and event routing.

Implements:
- Webhook signature verification against the shared signing secret
- Degrade-safe acceptance when no secret is configured
- Event type routing to registered handlers
"""
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog

from slip_relay.config import Settings
from slip_relay.core.exceptions import UpstreamAuthError
from slip_relay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class WebhookError(UpstreamAuthError):
    """Raised when a webhook delivery cannot be trusted."""

    default_code = "invalid_signature"


class WebhookHandler:
    """
    Verifies Stripe webhook deliveries and routes them by event type.

    Events are plain dicts decoded from the verified payload, so handlers
    never see unverified data.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.event_handlers: Dict[str, EventHandler] = {}

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.succeeded')
            handler: Async callable receiving the event's ``data.object``
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Verified event

        Raises:
            WebhookError: If signature verification fails
        """
        if not signature:
            metrics.record_signature_failure()
            logger.warning("webhook_signature_missing")
            raise WebhookError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.settings.stripe_webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            metrics.record_signature_failure()
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {e}")
        except (UnicodeDecodeError, ValueError) as e:
            metrics.record_signature_failure()
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {e}", code="invalid_payload")

        if not isinstance(event, dict) or "type" not in event:
            raise WebhookError("Webhook payload is not a Stripe event", code="invalid_payload")

        logger.info(
            "webhook_signature_verified",
            event_id=event.get("id"),
            event_type=event["type"],
        )
        return event

    async def dispatch(self, event: Dict[str, Any]) -> Optional[Any]:
        """
        Route a verified event to its handler.

        Returns:
            The handler's result, or None when no handler is registered
        """
        event_type = event["type"]
        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_no_handler", event_id=event.get("id"), event_type=event_type)
            return None

        data_object = (event.get("data") or {}).get("object") or {}
        return await handler(data_object)
