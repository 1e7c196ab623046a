"""
Unit tests for connected-account onboarding.
"""
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from slip_relay.config import Settings
from slip_relay.core.connect import ConnectOnboarding
from slip_relay.core.exceptions import BusinessPreconditionError, NotFoundError, ValidationError
from slip_relay.integrations.ledger_client import LedgerError
from slip_relay.integrations.stripe_client import StripeClient

ONBOARDING_URL = "https://connect.stripe.com/setup/e/acct_1/abc"
LOGIN_URL = "https://connect.stripe.com/express/acct_1/xyz"


@pytest.fixture
def onboarding(
    connect_settings: Settings, mock_stripe_client: AsyncMock, mock_ledger: AsyncMock
) -> ConnectOnboarding:
    mock_stripe_client.create_account_link.return_value = ONBOARDING_URL
    mock_stripe_client.create_login_link.return_value = LOGIN_URL
    return ConnectOnboarding(connect_settings, mock_stripe_client, mock_ledger)


class TestGetPaid:
    """Test suite for the get-paid flow."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_visit_creates_and_caches_account(
        self,
        onboarding: ConnectOnboarding,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_stripe_client.create_connected_account.return_value = {"id": "acct_1"}
        mock_stripe_client.retrieve_account.return_value = {
            "id": "acct_1",
            "details_submitted": False,
        }

        result = await onboarding.get_paid("Pier7")

        assert result == {"url": ONBOARDING_URL, "account_id": "acct_1", "onboarded": False}
        mock_stripe_client.create_connected_account.assert_awaited_once_with("Pier7")
        mock_ledger.set_account.assert_awaited_once_with("Pier7", "acct_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_onboarded_account_gets_login_link(
        self,
        onboarding: ConnectOnboarding,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_account.return_value = "acct_1"
        mock_stripe_client.retrieve_account.return_value = {
            "id": "acct_1",
            "details_submitted": True,
        }

        result = await onboarding.get_paid("Pier7")

        assert result == {"url": LOGIN_URL, "account_id": "acct_1", "onboarded": True}
        mock_stripe_client.create_connected_account.assert_not_awaited()
        mock_ledger.set_account.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cache_failure_still_returns_link(
        self,
        onboarding: ConnectOnboarding,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_stripe_client.create_connected_account.return_value = {"id": "acct_1"}
        mock_stripe_client.retrieve_account.return_value = {"id": "acct_1"}
        mock_ledger.set_account.side_effect = LedgerError("ledger down")

        result = await onboarding.get_paid("Pier7")

        assert result["account_id"] == "acct_1"
        assert result["url"] == ONBOARDING_URL

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_location(self, onboarding: ConnectOnboarding) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await onboarding.get_paid(None)
        assert exc_info.value.code == "missing_location"


class TestLogin:
    """Test suite for dashboard login links."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_location(
        self, onboarding: ConnectOnboarding, mock_stripe_client: AsyncMock
    ) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await onboarding.login("Pier7")

        assert exc_info.value.status_code == 404
        mock_stripe_client.create_login_link.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_onboarding_incomplete(
        self,
        onboarding: ConnectOnboarding,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_account.return_value = "acct_1"
        mock_stripe_client.retrieve_account.return_value = {
            "id": "acct_1",
            "details_submitted": False,
        }

        with pytest.raises(BusinessPreconditionError) as exc_info:
            await onboarding.login("Pier7")

        assert exc_info.value.code == "onboarding_incomplete"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_login_link(
        self,
        onboarding: ConnectOnboarding,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_account.return_value = "acct_1"
        mock_stripe_client.retrieve_account.return_value = {
            "id": "acct_1",
            "details_submitted": True,
        }

        result = await onboarding.login("Pier7")

        assert result == {"url": LOGIN_URL, "account_id": "acct_1", "onboarded": True}
        mock_stripe_client.create_login_link.assert_awaited_once_with("acct_1")


class TestWithStripeObjects:
    """Onboarding against account objects returned by the Stripe SDK."""

    @pytest.fixture
    def sdk_onboarding(
        self, connect_settings: Settings, mock_ledger: AsyncMock
    ) -> ConnectOnboarding:
        mock_ledger.get_account.return_value = "acct_1"
        return ConnectOnboarding(connect_settings, StripeClient(connect_settings), mock_ledger)

    @staticmethod
    def _account(details_submitted: bool) -> stripe.Account:
        return stripe.Account.construct_from(
            {"id": "acct_1", "object": "account", "details_submitted": details_submitted},
            "sk_test_fake_key_for_testing",
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_login_for_onboarded_account(self, sdk_onboarding: ConnectOnboarding) -> None:
        login_link = stripe.LoginLink.construct_from(
            {"object": "login_link", "url": LOGIN_URL}, "sk_test_fake_key_for_testing"
        )

        with patch("stripe.Account.retrieve", return_value=self._account(True)), patch(
            "stripe.Account.create_login_link", return_value=login_link
        ):
            result = await sdk_onboarding.login("Pier7")

        assert result == {"url": LOGIN_URL, "account_id": "acct_1", "onboarded": True}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_paid_for_incomplete_account(
        self, sdk_onboarding: ConnectOnboarding
    ) -> None:
        account_link = stripe.AccountLink.construct_from(
            {"object": "account_link", "url": ONBOARDING_URL}, "sk_test_fake_key_for_testing"
        )

        with patch("stripe.Account.retrieve", return_value=self._account(False)), patch(
            "stripe.AccountLink.create", return_value=account_link
        ):
            result = await sdk_onboarding.get_paid("Pier7")

        assert result == {"url": ONBOARDING_URL, "account_id": "acct_1", "onboarded": False}
