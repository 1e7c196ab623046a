"""Service wiring shared by the routes."""
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from slip_relay.config import Settings
from slip_relay.core.checkout import CheckoutFactory
from slip_relay.core.connect import ConnectOnboarding
from slip_relay.core.reconciliation import ReconciliationEngine
from slip_relay.integrations.ledger_client import LedgerClient
from slip_relay.integrations.stripe_client import StripeClient


@dataclass
class Services:
    """Components built once per application from one Settings instance."""

    settings: Settings
    stripe_client: StripeClient
    ledger: LedgerClient
    checkout: CheckoutFactory
    connect: ConnectOnboarding
    engine: ReconciliationEngine

    @classmethod
    def build(
        cls,
        settings: Settings,
        stripe_client: Optional[StripeClient] = None,
        ledger: Optional[LedgerClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "Services":
        stripe_client = stripe_client or StripeClient(settings)
        ledger = ledger or LedgerClient(settings, http_client=http_client)
        return cls(
            settings=settings,
            stripe_client=stripe_client,
            ledger=ledger,
            checkout=CheckoutFactory(settings, stripe_client, ledger),
            connect=ConnectOnboarding(settings, stripe_client, ledger),
            engine=ReconciliationEngine(settings, stripe_client, ledger),
        )

    async def close(self) -> None:
        await self.ledger.close()


def get_services(request: Request) -> Services:
    return request.app.state.services
