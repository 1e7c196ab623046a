"""
Pytest configuration and fixtures.
"""
from typing import Any, AsyncGenerator, Callable, Dict
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from slip_relay.api.main import create_app
from slip_relay.config import CheckoutFlow, Settings
from slip_relay.integrations.ledger_client import LedgerClient
from slip_relay.integrations.stripe_client import StripeClient

from stripe_signing import WEBHOOK_SECRET, make_event, sign_payload


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests with all collaborators mocked")
    config.addinivalue_line("markers", "integration: tests through the HTTP surface")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        ledger_url="https://ledger.test/exec",
        ledger_token="ledger-token",
        processor_retry_attempts=2,
        processor_retry_base_delay=0,
        checkout_flow=CheckoutFlow.AUTHORIZE,
        connect_enabled=False,
        success_url_base="https://marina.test/success.html",
        cancel_url_base="https://marina.test/cancel.html",
        payment_action_url_base="https://marina.test/complete-payment.html",
        app_name="slip-relay-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def card_on_file_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"checkout_flow": CheckoutFlow.CARD_ON_FILE})


@pytest.fixture
def connect_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(
        update={"connect_enabled": True, "platform_fee_bps": 1000}
    )


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """Stripe adapter with every operation mocked."""
    return AsyncMock(spec=StripeClient)


@pytest.fixture
def mock_ledger() -> AsyncMock:
    """Ledger adapter with every action mocked."""
    ledger = AsyncMock(spec=LedgerClient)
    ledger.get_account.return_value = None
    return ledger


@pytest.fixture
def signed_event() -> Callable[..., Dict[str, Any]]:
    """Factory returning a signed webhook delivery as ``payload`` and ``signature``."""

    def _build(event_type: str, data_object: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        payload = make_event(event_type, data_object, **kwargs)
        return {"payload": payload, "signature": sign_payload(payload)}

    return _build


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, mock_stripe_client: AsyncMock, mock_ledger: AsyncMock
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, stripe_client=mock_stripe_client, ledger=mock_ledger)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
