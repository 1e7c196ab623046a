"""
Connected-account onboarding for marina locations.

Each location gets at most one Express account. The account id is cached in
the ledger; creation is check-then-create without a lock, so two first-time
requests for the same location can still create two accounts.
"""
from typing import Dict, Optional

import structlog

from slip_relay.config import Settings
from slip_relay.integrations.ledger_client import LedgerClient, LedgerError
from slip_relay.integrations.stripe_client import StripeClient

from .exceptions import BusinessPreconditionError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


class ConnectOnboarding:
    """Creates and links connected accounts for locations."""

    def __init__(self, settings: Settings, stripe_client: StripeClient, ledger: LedgerClient):
        self.settings = settings
        self.stripe_client = stripe_client
        self.ledger = ledger

    @staticmethod
    def _require_location(location: Optional[str]) -> str:
        location = (location or "").strip()
        if not location:
            raise ValidationError("location is required", code="missing_location")
        return location

    async def get_or_create_account(self, location: str) -> str:
        """
        Return the location's account id, creating and caching one if absent.
        """
        account_id = await self.ledger.get_account(location)
        if account_id:
            return account_id

        account = await self.stripe_client.create_connected_account(location)
        account_id = account["id"]
        try:
            await self.ledger.set_account(location, account_id)
        except LedgerError as e:
            # Known gap: the account exists upstream but is not cached, so the
            # next request for this location creates another one.
            logger.error(
                "connected_account_cache_failed",
                location=location,
                account_id=account_id,
                error=str(e),
            )
        return account_id

    async def get_paid(self, location: Optional[str]) -> Dict[str, object]:
        """
        Onboarding link for a new or incomplete account, login link otherwise.
        """
        location = self._require_location(location)
        account_id = await self.get_or_create_account(location)
        account = await self.stripe_client.retrieve_account(account_id)

        if account.get("details_submitted"):
            url = await self.stripe_client.create_login_link(account_id)
            onboarded = True
        else:
            url = await self.stripe_client.create_account_link(account_id)
            onboarded = False

        logger.info(
            "connect_link_created",
            location=location,
            account_id=account_id,
            onboarded=onboarded,
        )
        return {"url": url, "account_id": account_id, "onboarded": onboarded}

    async def login(self, location: Optional[str]) -> Dict[str, object]:
        """Login link for an existing, onboarded account."""
        location = self._require_location(location)
        account_id = await self.ledger.get_account(location)
        if not account_id:
            raise NotFoundError(
                f"No connected account for location {location}", code="account_not_found"
            )

        account = await self.stripe_client.retrieve_account(account_id)
        if not account.get("details_submitted"):
            raise BusinessPreconditionError(
                "Onboarding has not been completed for this location",
                code="onboarding_incomplete",
            )

        url = await self.stripe_client.create_login_link(account_id)
        return {"url": url, "account_id": account_id, "onboarded": True}
