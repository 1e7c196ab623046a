"""
Client for the spreadsheet-backed reservation ledger.

The ledger is an Apps Script web app. Every call is a GET keyed by an
``action`` query parameter plus the shared token; the app answers with
JSON, or with an empty body / 404 when nothing is stored.
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from slip_relay.config import Settings
from slip_relay.core.exceptions import UpstreamTransientError
from slip_relay.core.models import PreauthStatus, StoredPaymentMethod
from slip_relay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LedgerError(UpstreamTransientError):
    """Raised when the ledger cannot be reached or answers with a server error."""

    default_code = "ledger_unavailable"


class _RetryableLedgerError(Exception):
    pass


class LedgerClient:
    """
    Stateless adapter over the ledger web app.

    Actions:
    - getacct / setacct: connected account id cached per location
    - savesetup / getpayinfo: stored payment method per reservation
    - setpreauth: reservation payment status
    - attachpi: payment intent id per reservation
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize ledger client.

        Args:
            settings: Application settings
            http_client: Optional shared HTTP client (created if not provided)
        """
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.ledger_timeout_seconds,
            follow_redirects=True,
        )

    async def _call(self, action: str, **params: Any) -> Optional[Dict[str, Any]]:
        """
        Issue one ledger action.

        Returns:
            Optional[Dict[str, Any]]: Decoded JSON object, ``{}`` for a non-JSON
            acknowledgment, or None when the ledger has nothing stored

        Raises:
            LedgerError: On transport failure or a 5xx answer
        """
        query = {"action": action}
        query.update({k: v for k, v in params.items() if v is not None})
        if self.settings.ledger_token:
            query["token"] = self.settings.ledger_token

        start_time = time.time()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_RetryableLedgerError),
                stop=stop_after_attempt(self.settings.processor_retry_attempts),
                wait=wait_exponential(multiplier=self.settings.processor_retry_base_delay, max=8),
                reraise=True,
            ):
                with attempt:
                    response = await self._get(action, query)
        except (_RetryableLedgerError, httpx.HTTPError) as e:
            metrics.record_ledger_call(action, "error", time.time() - start_time)
            logger.error("ledger_call_failed", action=action, error=str(e))
            raise LedgerError(f"Ledger action {action} failed: {e}") from e

        duration = time.time() - start_time
        if response.status_code == 404 or not response.content.strip():
            metrics.record_ledger_call(action, "not_found", duration)
            logger.info("ledger_not_found", action=action)
            return None

        if response.status_code >= 400:
            metrics.record_ledger_call(action, "error", duration)
            logger.error("ledger_call_rejected", action=action, status_code=response.status_code)
            raise LedgerError(
                f"Ledger action {action} rejected with HTTP {response.status_code}"
            )

        metrics.record_ledger_call(action, "ok", duration)
        try:
            payload = response.json()
        except ValueError:
            # Plain-text acknowledgment such as "OK"
            return {}

        if payload is None:
            return None
        if not isinstance(payload, dict):
            return {"value": payload}
        return payload

    async def _get(self, action: str, query: Dict[str, Any]) -> httpx.Response:
        try:
            response = await self.http_client.get(self.settings.ledger_url, params=query)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            logger.warning("ledger_transport_error", action=action, error=str(e))
            raise _RetryableLedgerError(str(e)) from e

        if response.status_code >= 500:
            logger.warning("ledger_server_error", action=action, status_code=response.status_code)
            raise _RetryableLedgerError(f"HTTP {response.status_code}")
        return response

    async def get_account(self, location: str) -> Optional[str]:
        """Return the cached connected account id for a location, if any."""
        payload = await self._call("getacct", location=location)
        if not payload:
            return None
        return payload.get("account_id") or None

    async def set_account(self, location: str, account_id: str) -> None:
        await self._call("setacct", location=location, account_id=account_id)
        logger.info("ledger_account_cached", location=location, account_id=account_id)

    async def save_setup(
        self,
        reservation_id: str,
        customer_id: Optional[str],
        payment_method_id: Optional[str],
        connected_account_id: Optional[str] = None,
    ) -> None:
        await self._call(
            "savesetup",
            reservation_id=reservation_id,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            connected_account_id=connected_account_id,
        )
        logger.info(
            "ledger_setup_saved",
            reservation_id=reservation_id,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
        )

    async def get_pay_info(self, reservation_id: str) -> StoredPaymentMethod:
        """Return the stored payment method for a reservation (fields empty when none)."""
        payload = await self._call("getpayinfo", reservation_id=reservation_id)
        return StoredPaymentMethod.from_ledger(payload)

    async def set_preauth(
        self,
        reservation_id: str,
        status: PreauthStatus,
        payment_intent_id: Optional[str] = None,
        expected: Optional[PreauthStatus] = None,
    ) -> None:
        """
        Record a reservation's payment status.

        The ledger applies writes last-write-wins. ``expected`` is forwarded
        so a ledger that supports conditional writes can reject stale ones.
        """
        await self._call(
            "setpreauth",
            reservation_id=reservation_id,
            status=status.value,
            payment_intent_id=payment_intent_id,
            expected=expected.value if expected else None,
        )
        logger.info(
            "ledger_preauth_set",
            reservation_id=reservation_id,
            status=status.value,
            payment_intent_id=payment_intent_id,
        )

    async def attach_payment_intent(self, reservation_id: str, payment_intent_id: str) -> None:
        await self._call(
            "attachpi",
            reservation_id=reservation_id,
            payment_intent_id=payment_intent_id,
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.http_client.aclose()
