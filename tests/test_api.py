"""
Integration tests through the HTTP surface with Stripe and the ledger mocked.
"""
from typing import Any, Callable, Dict
from unittest.mock import AsyncMock

import httpx
import pytest

from slip_relay.core.models import PreauthStatus, StoredPaymentMethod
from slip_relay.integrations.ledger_client import LedgerError
from slip_relay.integrations.stripe_client import ProcessorError, StripeErrorType

from stripe_signing import make_event, sign_payload


class TestCheckoutEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_checkout_session(
        self, client: httpx.AsyncClient, mock_stripe_client: AsyncMock
    ) -> None:
        """The front-end's camelCase names and numeric ids are accepted."""
        mock_stripe_client.create_checkout_session.return_value = {
            "id": "cs_1",
            "url": "https://checkout.stripe.com/c/pay/cs_1",
        }

        response = await client.post(
            "/create-checkout-session",
            json={"location": "Pier7", "amountCents": "500", "reservationId": 123, "hours": 4},
        )

        assert response.status_code == 200
        assert response.json() == {
            "url": "https://checkout.stripe.com/c/pay/cs_1",
            "session_id": "cs_1",
        }
        assert response.headers["X-Request-ID"]
        call = mock_stripe_client.create_checkout_session.call_args
        assert call.kwargs["idempotency_key"] == "checkout:123:500"
        assert call.args[0]["metadata"]["hours"] == "4"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_location(
        self, client: httpx.AsyncClient, mock_stripe_client: AsyncMock
    ) -> None:
        response = await client.post("/create-checkout-session", json={"amount_cents": 500})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_location"
        mock_stripe_client.create_checkout_session.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/create-checkout-session",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processor_outage(
        self, client: httpx.AsyncClient, mock_stripe_client: AsyncMock
    ) -> None:
        mock_stripe_client.create_checkout_session.side_effect = ProcessorError(
            "Stripe unavailable", StripeErrorType.TRANSIENT
        )

        response = await client.post(
            "/create-checkout-session", json={"location": "Pier7", "amount_cents": 500}
        )

        assert response.status_code == 502
        assert response.json() == {
            "error": "processor_unavailable",
            "message": "Stripe unavailable",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_poll_requires_session_id(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/checkout-session")

        assert response.status_code == 400
        assert response.json()["error"] == "missing_session_id"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_poll(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_stripe_client.retrieve_checkout_session.return_value = {
            "id": "cs_1",
            "mode": "payment",
            "status": "complete",
            "payment_status": "unpaid",
            "metadata": {"reservation_id": "R1"},
            "payment_intent": {"id": "pi_1", "status": "requires_capture"},
        }

        response = await client.get("/checkout-session", params={"session_id": "cs_1"})

        assert response.status_code == 200
        body = response.json()
        assert body["preauth_status"] == "authorized"
        assert body["reservation_id"] == "R1"
        mock_ledger.set_preauth.assert_awaited_once()


class TestPaymentEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_declined(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_pay_info.return_value = StoredPaymentMethod(
            customer_id="cus_1", payment_method_id="pm_1"
        )
        mock_stripe_client.create_off_session_payment.side_effect = ProcessorError(
            "Your card was declined.",
            StripeErrorType.PERMANENT,
            code="card_declined",
            payment_intent={"id": "pi_9"},
        )

        response = await client.post(
            "/approve", json={"reservationId": "R1", "amountCents": 500}
        )

        assert response.status_code == 402
        assert response.json() == {
            "error": "card_declined",
            "message": "Your card was declined.",
            "payment_intent_id": "pi_9",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_action_required(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_pay_info.return_value = StoredPaymentMethod(
            customer_id="cus_1", payment_method_id="pm_1"
        )
        mock_stripe_client.create_off_session_payment.side_effect = ProcessorError(
            "This payment requires authentication.",
            StripeErrorType.PERMANENT,
            code="authentication_required",
            payment_intent={"id": "pi_9", "client_secret": "pi_9_secret_abc"},
        )

        response = await client.post("/approve", json={"reservation_id": "R1", "amount_cents": 500})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "action_required"
        assert body["payment_intent_id"] == "pi_9"
        assert "client_secret=pi_9_secret_abc" in body["url"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_paid_omits_url(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_pay_info.return_value = StoredPaymentMethod(
            customer_id="cus_1", payment_method_id="pm_1"
        )
        mock_stripe_client.create_off_session_payment.return_value = {
            "id": "pi_9",
            "status": "succeeded",
        }

        response = await client.post("/approve", json={"reservation_id": "R1", "amount_cents": 500})

        assert response.status_code == 200
        assert response.json() == {"status": "paid", "payment_intent_id": "pi_9"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_without_saved_card(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_pay_info.return_value = StoredPaymentMethod()

        response = await client.post("/approve", json={"reservation_id": "R2", "amount_cents": 500})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_customer_or_payment_method"
        mock_stripe_client.create_off_session_payment.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_ledger_unavailable(
        self, client: httpx.AsyncClient, mock_ledger: AsyncMock
    ) -> None:
        mock_ledger.get_pay_info.side_effect = LedgerError("ledger down")

        response = await client.post("/approve", json={"reservation_id": "R1", "amount_cents": 500})

        assert response.status_code == 502
        assert response.json()["error"] == "ledger_unavailable"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_stripe_client.capture_payment_intent.return_value = {
            "id": "pi_1",
            "status": "succeeded",
            "metadata": {"reservation_id": "R1"},
        }

        response = await client.post("/capture", json={"paymentIntentId": "pi_1"})

        assert response.status_code == 200
        assert response.json() == {
            "status": "succeeded",
            "payment_intent_id": "pi_1",
            "reservation_id": "R1",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_release_requires_id(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/release", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_payment_intent_id"


class TestWebhookEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_event_applied(
        self,
        client: httpx.AsyncClient,
        mock_ledger: AsyncMock,
        signed_event: Callable[..., Dict[str, Any]],
    ) -> None:
        delivery = signed_event(
            "payment_intent.amount_capturable_updated",
            {"id": "pi_1", "metadata": {"reservation_id": "R1"}},
        )

        response = await client.post(
            "/webhook-endpoint",
            content=delivery["payload"],
            headers={"Stripe-Signature": delivery["signature"]},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "applied": True}
        mock_ledger.set_preauth.assert_awaited_once_with(
            "R1", PreauthStatus.AUTHORIZED, payment_intent_id="pi_1", expected=None
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature(self, client: httpx.AsyncClient, mock_ledger: AsyncMock) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})

        response = await client.post(
            "/webhook-endpoint",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"
        mock_ledger.set_preauth.assert_not_awaited()


class TestConnectEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_login_unknown_location(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/connect/login", params={"location": "Pier7"})

        assert response.status_code == 404
        assert response.json()["error"] == "account_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_paid(
        self,
        client: httpx.AsyncClient,
        mock_stripe_client: AsyncMock,
        mock_ledger: AsyncMock,
    ) -> None:
        mock_ledger.get_account.return_value = "acct_1"
        mock_stripe_client.retrieve_account.return_value = {"id": "acct_1"}
        mock_stripe_client.create_account_link.return_value = "https://connect.stripe.com/setup/x"

        response = await client.get("/connect/get-paid", params={"location": "Pier7"})

        assert response.status_code == 200
        assert response.json() == {
            "url": "https://connect.stripe.com/setup/x",
            "account_id": "acct_1",
            "onboarded": False,
        }


class TestMonitoringEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "slip-relay-test"
        assert body["status"] == "operational"
        assert body["test_mode"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "stripe_api_requests_total" in response.text
