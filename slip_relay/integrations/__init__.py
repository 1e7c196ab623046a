"""External integrations: Stripe and the reservation ledger."""
from .ledger_client import LedgerClient, LedgerError
from .stripe_client import ProcessorError, StripeClient, StripeErrorType
from .webhook_handler import WebhookError, WebhookHandler

__all__ = [
    "LedgerClient",
    "LedgerError",
    "ProcessorError",
    "StripeClient",
    "StripeErrorType",
    "WebhookError",
    "WebhookHandler",
]
