"""
Domain models shared by the checkout factory and the reconciliation engine.
"""
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field


class PreauthStatus(str, Enum):
    """Payment status recorded against a reservation in the ledger."""

    CARD_ON_FILE = "card_on_file"
    REQUIRES_CAPTURE = "requires_capture"
    AUTHORIZED = "authorized"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"
    FAILED = "failed"
    CAPTURED = "captured"
    PAID = "paid"
    RELEASED = "released"


class PaymentCorrelation(BaseModel):
    """Metadata stamped on every Stripe object so events map back to a reservation."""

    reservation_id: Optional[str] = None
    location: str
    city: Optional[str] = None
    state: Optional[str] = None
    hours: Optional[str] = None
    arrival_date: Optional[str] = None
    arrival_time: Optional[str] = None
    boater_name: Optional[str] = None
    connected_account_id: Optional[str] = None

    def to_metadata(self) -> Dict[str, str]:
        """Flatten to Stripe metadata (string values, empty fields dropped)."""
        return {
            key: str(value)
            for key, value in self.model_dump().items()
            if value is not None and str(value) != ""
        }


class StoredPaymentMethod(BaseModel):
    """Card saved by the setup flow and charged on approval."""

    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    connected_account_id: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.customer_id and self.payment_method_id)

    @classmethod
    def from_ledger(cls, payload: Optional[Mapping[str, Any]]) -> "StoredPaymentMethod":
        if not payload:
            return cls()
        return cls(
            customer_id=payload.get("customer_id") or None,
            payment_method_id=payload.get("payment_method_id") or None,
            connected_account_id=payload.get("connected_account_id") or None,
        )


class ApprovalResult(BaseModel):
    """Outcome of an approval charge."""

    status: str = Field(..., description="paid or action_required")
    payment_intent_id: Optional[str] = None
    url: Optional[str] = None
