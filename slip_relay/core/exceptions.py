"""
Error taxonomy for the relay.

Every error carries a short machine-readable ``code`` and the HTTP status
the edge router answers with.
"""
from typing import Optional


class RelayError(Exception):
    """Base exception for errors surfaced to API callers."""

    status_code: int = 500
    default_code: str = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(RelayError):
    """Bad or missing required input. Never retried."""

    status_code = 400
    default_code = "invalid_request"


class UpstreamAuthError(RelayError):
    """Signature or credential failure. State is left untouched."""

    status_code = 400
    default_code = "invalid_signature"


class UpstreamTransientError(RelayError):
    """A Stripe or ledger call failed for operational reasons."""

    status_code = 502
    default_code = "upstream_unavailable"


class BusinessPreconditionError(RelayError):
    """The request is well-formed but a prerequisite is missing."""

    status_code = 400
    default_code = "precondition_failed"


class NotFoundError(RelayError):
    status_code = 404
    default_code = "not_found"


class PaymentDeclinedError(RelayError):
    """The processor refused the charge; message is the processor's."""

    status_code = 402
    default_code = "payment_failed"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ):
        super().__init__(message, code)
        self.payment_intent_id = payment_intent_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.payment_intent_id:
            body["payment_intent_id"] = self.payment_intent_id
        return body
