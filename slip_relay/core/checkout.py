"""
Checkout session factory.

Turns a reservation request into a Stripe-hosted Checkout Session:

1. Validate input (location, amount or email)
2. Look up the location's connected account (when Connect is enabled)
3. Build correlation metadata from the reservation fields
4. Create the session with an idempotency key derived from the reservation
5. Return the hosted page URL
"""
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog

from slip_relay.config import Settings
from slip_relay.integrations.ledger_client import LedgerClient
from slip_relay.integrations.stripe_client import StripeClient

from .exceptions import ValidationError
from .fees import application_fee_for, normalize_amount
from .models import PaymentCorrelation

logger = structlog.get_logger(__name__)

CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def _clean(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _with_query(base: str, query: str) -> str:
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{query}"


class CheckoutFactory:
    """
    Builds Checkout Sessions for the configured flow.

    Flows are orthogonal settings rather than separate code paths:
    - ``checkout_flow=authorize``: payment mode, manual capture
    - ``checkout_flow=card_on_file``: setup mode, charged later off-session
    - ``connect_enabled``: funds routed to the location's connected account
    """

    def __init__(self, settings: Settings, stripe_client: StripeClient, ledger: LedgerClient):
        self.settings = settings
        self.stripe_client = stripe_client
        self.ledger = ledger

    def success_url(self, location: str) -> str:
        query = urlencode({"location": location})
        return _with_query(
            self.settings.success_url_base,
            f"{query}&session_id={CHECKOUT_SESSION_PLACEHOLDER}",
        )

    def cancel_url(self, location: str) -> str:
        return _with_query(self.settings.cancel_url_base, urlencode({"location": location}))

    @staticmethod
    def idempotency_key(
        reservation_id: Optional[str], amount_cents: Optional[int] = None
    ) -> Optional[str]:
        """
        Derive the session idempotency key, or None when no reservation id was given.

        Format: checkout:{reservation_id}:{amount_cents} or setup:{reservation_id}
        """
        if not reservation_id:
            return None
        if amount_cents is None:
            return f"setup:{reservation_id}"
        return f"checkout:{reservation_id}:{amount_cents}"

    async def create_checkout_session(
        self,
        location: Optional[str],
        amount_cents: Any = None,
        email: Optional[str] = None,
        reservation_id: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        hours: Optional[str] = None,
        arrival_date: Optional[str] = None,
        arrival_time: Optional[str] = None,
        boater_name: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Create a Checkout Session for a reservation.

        Args:
            location: Marina location name (required)
            amount_cents: Amount to authorize (authorize flow only)
            email: Boater email (required for the card-on-file flow)
            reservation_id: Ledger reservation id, used for correlation and idempotency
            city, state, hours, arrival_date, arrival_time, boater_name: Reservation details

        Returns:
            Dict[str, str]: ``url`` of the hosted page and ``session_id``

        Raises:
            ValidationError: If required input is missing or malformed
            ProcessorError: If Stripe refuses the session
            LedgerError: If the connected account lookup fails
        """
        location = _clean(location)
        if not location:
            raise ValidationError("location is required", code="missing_location")

        email = _clean(email)
        reservation_id = _clean(reservation_id)

        amount: Optional[int] = None
        if self.settings.card_on_file:
            if not email or "@" not in email:
                raise ValidationError("A valid email is required", code="missing_email")
        else:
            amount = normalize_amount(amount_cents)

        connected_account_id = None
        if self.settings.connect_enabled:
            connected_account_id = await self.ledger.get_account(location)

        correlation = PaymentCorrelation(
            reservation_id=reservation_id,
            location=location,
            city=_clean(city),
            state=_clean(state),
            hours=_clean(hours),
            arrival_date=_clean(arrival_date),
            arrival_time=_clean(arrival_time),
            boater_name=_clean(boater_name),
            connected_account_id=connected_account_id,
        )

        if amount is None:
            params = await self._setup_session_params(correlation, email)
        else:
            params = self._payment_session_params(correlation, amount, email)

        session = await self.stripe_client.create_checkout_session(
            params, idempotency_key=self.idempotency_key(reservation_id, amount)
        )

        logger.info(
            "checkout_session_ready",
            session_id=session["id"],
            reservation_id=reservation_id,
            location=location,
            flow=self.settings.checkout_flow.value,
            connected_account_id=connected_account_id,
        )
        return {"url": session["url"], "session_id": session["id"]}

    def _payment_session_params(
        self, correlation: PaymentCorrelation, amount_cents: int, email: Optional[str]
    ) -> Dict[str, Any]:
        """Payment mode with a manual-capture PaymentIntent."""
        metadata = correlation.to_metadata()
        payment_intent_data: Dict[str, Any] = {
            "capture_method": "manual",
            "metadata": metadata,
        }

        if correlation.connected_account_id:
            payment_intent_data["transfer_data"] = {
                "destination": correlation.connected_account_id
            }
            fee = application_fee_for(
                amount_cents,
                correlation.connected_account_id,
                self.settings.platform_fee_bps,
                self.settings.platform_fee_fixed_cents,
            )
            if fee is not None:
                payment_intent_data["application_fee_amount"] = fee

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.settings.currency,
                        "product_data": {"name": f"Reserved Slip at {correlation.location}"},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "payment_intent_data": payment_intent_data,
            "metadata": metadata,
            "success_url": self.success_url(correlation.location),
            "cancel_url": self.cancel_url(correlation.location),
        }
        if email:
            params["customer_email"] = email
        if correlation.reservation_id:
            params["client_reference_id"] = correlation.reservation_id
        return params

    async def _setup_session_params(
        self, correlation: PaymentCorrelation, email: str
    ) -> Dict[str, Any]:
        """Setup mode: collect a card for a later off-session charge."""
        metadata = correlation.to_metadata()
        customer_id = await self.stripe_client.find_or_create_customer(
            email, metadata={"location": correlation.location}
        )

        params: Dict[str, Any] = {
            "mode": "setup",
            "payment_method_types": ["card"],
            "customer": customer_id,
            "setup_intent_data": {"metadata": metadata},
            "metadata": metadata,
            "success_url": self.success_url(correlation.location),
            "cancel_url": self.cancel_url(correlation.location),
        }
        if correlation.reservation_id:
            params["client_reference_id"] = correlation.reservation_id
        return params
