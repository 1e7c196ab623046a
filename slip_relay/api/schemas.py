"""
Pydantic schemas for API request/response models.

Request fields are all optional at the schema level so that missing input
reaches the core validators and comes back as a 400 with a short error code.
Both snake_case and the front-end's camelCase names are accepted.
"""
from typing import Annotated, Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _to_text(value: Any) -> Any:
    # Spreadsheet-backed front-ends send ids and hours as numbers
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


Text = Annotated[Optional[str], BeforeValidator(_to_text)]


class CreateCheckoutSessionRequest(BaseModel):
    """Request schema for starting a checkout."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "location": "Pier7",
                    "amount_cents": 500,
                    "email": "boater@example.com",
                    "reservation_id": "R1",
                    "arrival_date": "2025-07-04",
                    "hours": "4",
                }
            ]
        },
    )

    location: Text = Field(
        default=None, validation_alias=_aliases("location", "locationName")
    )
    amount_cents: Optional[Any] = Field(
        default=None,
        validation_alias=_aliases("amount_cents", "amountCents"),
        description="Amount to authorize in cents (authorize flow)",
    )
    email: Text = Field(
        default=None, validation_alias=_aliases("email", "boaterEmail", "customer_email")
    )
    reservation_id: Text = Field(
        default=None, validation_alias=_aliases("reservation_id", "reservationId")
    )
    city: Text = None
    state: Text = None
    hours: Text = None
    arrival_date: Text = Field(
        default=None, validation_alias=_aliases("arrival_date", "arrivalDate")
    )
    arrival_time: Text = Field(
        default=None, validation_alias=_aliases("arrival_time", "arrivalTime")
    )
    boater_name: Text = Field(
        default=None, validation_alias=_aliases("boater_name", "boaterName")
    )


class CheckoutSessionResponse(BaseModel):
    """Response schema for checkout creation."""

    url: str = Field(..., description="Stripe-hosted checkout page")
    session_id: str = Field(..., description="Checkout Session ID")


class SessionSummaryResponse(BaseModel):
    """Checkout Session state for the confirmation page."""

    id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    mode: Optional[str] = None
    reservation_id: Optional[str] = None
    preauth_status: Optional[str] = None
    customer_email: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ApproveRequest(BaseModel):
    """Request schema for charging a saved card."""

    model_config = ConfigDict(populate_by_name=True)

    reservation_id: Text = Field(
        default=None, validation_alias=_aliases("reservation_id", "reservationId")
    )
    amount_cents: Optional[Any] = Field(
        default=None, validation_alias=_aliases("amount_cents", "amountCents")
    )


class ApproveResponse(BaseModel):
    """Response schema for an approval charge."""

    status: str = Field(..., description="paid, action_required or processing")
    payment_intent_id: Optional[str] = None
    url: Optional[str] = Field(
        default=None, description="Link for the boater to complete authentication"
    )


class PaymentIntentRequest(BaseModel):
    """Request schema for capture and release."""

    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: Text = Field(
        default=None, validation_alias=_aliases("payment_intent_id", "paymentIntentId")
    )


class PaymentIntentActionResponse(BaseModel):
    status: str = Field(..., description="Stripe PaymentIntent status after the action")
    payment_intent_id: str
    reservation_id: Optional[str] = None


class ConnectLinkResponse(BaseModel):
    """Onboarding or dashboard login link for a location's connected account."""

    url: str
    account_id: str
    onboarded: bool


class WebhookResponse(BaseModel):
    """Response schema for webhook deliveries."""

    received: bool = Field(..., description="Always true once the delivery is accepted")
    applied: bool = Field(default=False, description="Whether a ledger update was made")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable detail")
