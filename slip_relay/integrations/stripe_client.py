"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Idempotency keys on every object that moves money
- Per-request API key (no module-level Stripe configuration)
- Non-blocking calls: the blocking SDK runs in the default executor
- Results returned as plain dicts, never SDK objects
"""
import asyncio
import functools
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from slip_relay.config import Settings
from slip_relay.core.exceptions import RelayError, UpstreamAuthError
from slip_relay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AUTHENTICATION_REQUIRED = "authentication_required"


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    AUTH = "auth"  # Bad credentials, never retried


class ProcessorError(RelayError):
    """A classified Stripe failure."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        code: Optional[str] = None,
        payment_intent: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message (the processor's, where available)
            error_type: Classification of error
            code: Stripe error code (e.g. 'card_declined')
            payment_intent: PaymentIntent attached to a card error, if any
            original_error: Original Stripe exception
        """
        if error_type is StripeErrorType.PERMANENT:
            self.status_code = 400
            default_code = "processor_rejected"
        else:
            self.status_code = 502
            default_code = "processor_unavailable"
        super().__init__(message, code or default_code)
        self.error_type = error_type
        self.processor_code = code
        self.payment_intent = payment_intent
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT)

    @property
    def requires_authentication(self) -> bool:
        return self.processor_code == AUTHENTICATION_REQUIRED

    @property
    def payment_intent_id(self) -> Optional[str]:
        if not self.payment_intent:
            return None
        return self.payment_intent.get("id")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProcessorError) and error.retryable


def to_plain(value: Any) -> Any:
    """Convert Stripe objects, nested ones included, to plain dicts and lists."""
    if isinstance(value, stripe.StripeObject):
        value = value.to_dict()
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


class StripeClient:
    """
    Wrapper for the Stripe operations the relay needs.

    Features:
    - Automatic retry with exponential backoff for transient failures
    - Idempotent creation of sessions and charges
    - Comprehensive error classification
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Stripe client."""
        self.settings = settings

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            return StripeErrorType.AUTH
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.IdempotencyError),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError, operation: str) -> Exception:
        """
        Classify a Stripe error into the relay's taxonomy.

        Args:
            error: Stripe error
            operation: Name of the failed operation

        Returns:
            Exception: ProcessorError, or UpstreamAuthError for credential failures
        """
        error_type = self._classify_error(error)
        code = getattr(error, "code", None)
        message = getattr(error, "user_message", None) or str(error)
        payment_intent = to_plain(getattr(getattr(error, "error", None), "payment_intent", None))

        metrics.record_stripe_api_error(error_type.value)
        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=code,
            error_message=message,
        )

        if error_type is StripeErrorType.AUTH:
            auth_error = UpstreamAuthError(
                "Stripe rejected the configured credentials", code="processor_auth_failed"
            )
            auth_error.status_code = 502
            return auth_error

        return ProcessorError(
            message=message,
            error_type=error_type,
            code=code,
            payment_intent=payment_intent,
            original_error=error,
        )

    async def _request(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run one Stripe SDK call off the event loop, with retries.

        Args:
            operation: Operation name for logs and metrics
            func: Stripe SDK callable
            *args: Positional arguments
            **kwargs: Stripe parameters and request options

        Returns:
            Any: The SDK result as plain dicts and lists

        Raises:
            ProcessorError: If the call fails after retries
        """
        kwargs.setdefault("api_key", self.settings.stripe_secret_key)
        kwargs.setdefault("stripe_version", self.settings.stripe_api_version)
        call = functools.partial(func, *args, **kwargs)
        loop = asyncio.get_running_loop()

        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.processor_retry_attempts),
            wait=wait_exponential(multiplier=self.settings.processor_retry_base_delay, max=16),
            reraise=True,
        ):
            with attempt:
                start_time = time.time()
                try:
                    result = await loop.run_in_executor(None, call)
                except stripe.StripeError as e:
                    metrics.record_stripe_api_call(operation, "error", time.time() - start_time)
                    raise self._handle_stripe_error(e, operation) from e
                metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
                return to_plain(result)

    async def create_checkout_session(
        self, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a hosted Checkout Session.

        Args:
            params: Session parameters built by the checkout factory
            idempotency_key: Optional idempotency key for duplicate submissions

        Returns:
            Dict[str, Any]: Created session
        """
        logger.info(
            "creating_checkout_session",
            mode=params.get("mode"),
            idempotency_key=idempotency_key,
        )
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        session = await self._request(
            "create_checkout_session", stripe.checkout.Session.create, **params, **options
        )

        logger.info("checkout_session_created", session_id=session["id"], mode=params.get("mode"))
        return session

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """Retrieve a Checkout Session with its intents expanded."""
        logger.info("retrieving_checkout_session", session_id=session_id)
        return await self._request(
            "retrieve_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent", "setup_intent"],
        )

    async def retrieve_setup_intent(self, setup_intent_id: str) -> Dict[str, Any]:
        logger.info("retrieving_setup_intent", setup_intent_id=setup_intent_id)
        return await self._request(
            "retrieve_setup_intent", stripe.SetupIntent.retrieve, setup_intent_id
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """
        Retrieve a PaymentIntent by ID.

        Args:
            payment_intent_id: Stripe PaymentIntent ID

        Returns:
            Dict[str, Any]: Retrieved payment intent
        """
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)
        return await self._request(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id
        )

    async def capture_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Capture the full authorized amount of a manual-capture PaymentIntent."""
        logger.info("capturing_payment_intent", payment_intent_id=payment_intent_id)
        payment_intent = await self._request(
            "capture_payment_intent",
            stripe.PaymentIntent.capture,
            payment_intent_id,
            idempotency_key=f"capture:{payment_intent_id}",
        )
        logger.info(
            "payment_intent_captured",
            payment_intent_id=payment_intent_id,
            status=payment_intent["status"],
        )
        return payment_intent

    async def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Cancel a PaymentIntent, releasing any authorization hold."""
        logger.info("canceling_payment_intent", payment_intent_id=payment_intent_id)
        payment_intent = await self._request(
            "cancel_payment_intent",
            stripe.PaymentIntent.cancel,
            payment_intent_id,
            idempotency_key=f"cancel:{payment_intent_id}",
        )
        logger.info(
            "payment_intent_canceled",
            payment_intent_id=payment_intent_id,
            status=payment_intent["status"],
        )
        return payment_intent

    async def create_off_session_payment(
        self,
        amount_cents: int,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        destination: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create and confirm a PaymentIntent against a saved card, cardholder absent.

        Args:
            amount_cents: Amount in cents
            customer_id: Customer owning the payment method
            payment_method_id: Saved payment method
            idempotency_key: Idempotency key for preventing duplicate charges
            metadata: Correlation metadata
            destination: Connected account receiving the funds
            application_fee_amount: Platform fee, omitted when None

        Returns:
            Dict[str, Any]: Confirmed payment intent

        Raises:
            ProcessorError: If the charge is declined or needs authentication
        """
        logger.info(
            "creating_off_session_payment",
            amount_cents=amount_cents,
            customer_id=customer_id,
            idempotency_key=idempotency_key,
            destination=destination,
        )
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.settings.currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "off_session": True,
            "confirm": True,
            "metadata": metadata or {},
        }
        if destination:
            params["transfer_data"] = {"destination": destination}
            if application_fee_amount:
                params["application_fee_amount"] = application_fee_amount

        payment_intent = await self._request(
            "create_off_session_payment",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
        )

        logger.info(
            "off_session_payment_created",
            payment_intent_id=payment_intent["id"],
            status=payment_intent["status"],
        )
        return payment_intent

    async def find_or_create_customer(
        self, email: str, metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Return the first customer with this email, creating one if none exists.

        Not atomic: two concurrent requests for a new email can both create a
        customer. Duplicates are tolerated.
        """
        customers = await self._request(
            "list_customers", stripe.Customer.list, email=email, limit=1
        )
        existing: List[Any] = customers.get("data") or []
        if existing:
            customer_id = existing[0]["id"]
            logger.info("customer_found", customer_id=customer_id)
            return customer_id

        customer = await self._request(
            "create_customer", stripe.Customer.create, email=email, metadata=metadata or {}
        )
        logger.info("customer_created", customer_id=customer["id"])
        return customer["id"]

    async def create_connected_account(self, location: str) -> Dict[str, Any]:
        """Create an Express connected account for a location."""
        params: Dict[str, Any] = {
            "type": "express",
            "metadata": {"location": location},
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
        }
        if self.settings.connect_country:
            params["country"] = self.settings.connect_country
        if self.settings.connect_business_type:
            params["business_type"] = self.settings.connect_business_type

        account = await self._request("create_account", stripe.Account.create, **params)
        logger.info("connected_account_created", location=location, account_id=account["id"])
        return account

    async def retrieve_account(self, account_id: str) -> Dict[str, Any]:
        return await self._request("retrieve_account", stripe.Account.retrieve, account_id)

    async def create_account_link(self, account_id: str) -> str:
        """Create an onboarding link for a connected account."""
        link = await self._request(
            "create_account_link",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=self.settings.connect_refresh_url,
            return_url=self.settings.connect_return_url,
            type="account_onboarding",
        )
        return link["url"]

    async def create_login_link(self, account_id: str) -> str:
        """Create a dashboard login link for an onboarded connected account."""
        link = await self._request(
            "create_login_link", stripe.Account.create_login_link, account_id
        )
        return link["url"]
