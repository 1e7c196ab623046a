"""
Reconciliation engine for reservation payment status.

Keeps the ledger's per-reservation status in step with Stripe through two
independent channels:

- Webhooks: signed, possibly duplicated, possibly out of order
- Confirmation-page polls: re-read the live session and write the same update

Both converge on the same status for the same Stripe state. The ledger is
last-write-wins, so writes are only issued for a state change derived from
a Stripe event or object, keyed by the Stripe object id.

Also runs the approval charge, capture and release operations, whose
outcomes flow through the same status writes.
"""
import functools
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog

from slip_relay.config import Settings
from slip_relay.integrations.ledger_client import LedgerClient
from slip_relay.integrations.stripe_client import AUTHENTICATION_REQUIRED, ProcessorError, StripeClient
from slip_relay.integrations.webhook_handler import WebhookHandler
from slip_relay.monitoring.metrics import metrics

from .exceptions import (
    BusinessPreconditionError,
    PaymentDeclinedError,
    RelayError,
    ValidationError,
)
from .fees import application_fee_for, normalize_amount
from .models import ApprovalResult, PreauthStatus

logger = structlog.get_logger(__name__)

APPLIED = "applied"
IGNORED = "ignored"
UNCORRELATED = "uncorrelated"


def _object_id(value: Any) -> Optional[str]:
    """Id of a Stripe reference that may be a bare id or an expanded object."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def reservation_id_for(stripe_object: Any) -> Optional[str]:
    """Reservation id from metadata, falling back to a session's client_reference_id."""
    metadata = stripe_object.get("metadata") or {}
    reservation_id = metadata.get("reservation_id") or stripe_object.get("client_reference_id")
    if not reservation_id:
        return None
    return str(reservation_id).strip() or None


class ReconciliationEngine:
    """
    Drives reservation payment status from Stripe lifecycle events.

    Transitions:
        none -> requires_capture | card_on_file
             -> authorized | failed | payment_action_required
             -> captured | paid
             -> released

    Every requested transition is written unconditionally; the ledger
    offers no compare-and-swap.
    """

    def __init__(
        self,
        settings: Settings,
        stripe_client: StripeClient,
        ledger: LedgerClient,
        webhook_handler: Optional[WebhookHandler] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            settings: Application settings
            stripe_client: Stripe adapter
            ledger: Ledger adapter
            webhook_handler: Optional webhook verifier/router
        """
        self.settings = settings
        self.stripe_client = stripe_client
        self.ledger = ledger
        self.webhook_handler = webhook_handler or WebhookHandler(settings)

        self.webhook_handler.register_handler(
            "checkout.session.completed", self.handle_checkout_session_completed
        )
        for event_type, status in (
            ("payment_intent.amount_capturable_updated", PreauthStatus.AUTHORIZED),
            ("payment_intent.canceled", PreauthStatus.RELEASED),
            ("payment_intent.succeeded", self.succeeded_status),
        ):
            self.webhook_handler.register_handler(
                event_type, functools.partial(self.handle_payment_intent_event, status)
            )
        self.webhook_handler.register_handler(
            "payment_intent.payment_failed", self.handle_payment_failed
        )

        logger.info(
            "reconciliation_engine_initialized",
            flow=settings.checkout_flow.value,
            webhook_verification=settings.webhook_verification_enabled,
        )

    @property
    def succeeded_status(self) -> PreauthStatus:
        """A succeeded intent is a capture in the authorize flow, a charge otherwise."""
        return PreauthStatus.PAID if self.settings.card_on_file else PreauthStatus.CAPTURED

    def status_for_payment_intent(self, payment_intent: Any) -> Optional[PreauthStatus]:
        """Status implied by a live PaymentIntent, or None if nothing to record yet."""
        intent_status = payment_intent.get("status")
        if intent_status == "requires_capture":
            return PreauthStatus.AUTHORIZED
        if intent_status == "succeeded":
            return self.succeeded_status
        if intent_status == "canceled":
            return PreauthStatus.RELEASED
        if intent_status == "requires_payment_method" and payment_intent.get("last_payment_error"):
            return PreauthStatus.FAILED
        return None

    async def transition(
        self,
        reservation_id: str,
        status: PreauthStatus,
        source: str,
        payment_intent_id: Optional[str] = None,
        expected: Optional[PreauthStatus] = None,
    ) -> None:
        """
        Write a reservation status to the ledger.

        Args:
            reservation_id: Reservation to update
            status: New status
            source: Channel issuing the write (webhook, poll, approve, capture, release)
            payment_intent_id: Stripe object the status was derived from
            expected: Status the caller believes is current, for conditional ledgers
        """
        logger.info(
            "preauth_status_transition",
            reservation_id=reservation_id,
            status=status.value,
            source=source,
            payment_intent_id=payment_intent_id,
        )
        await self.ledger.set_preauth(
            reservation_id,
            status,
            payment_intent_id=payment_intent_id,
            expected=expected,
        )
        metrics.record_status_write(status.value, source)

    async def _transition_best_effort(
        self,
        reservation_id: Optional[str],
        status: PreauthStatus,
        source: str,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        """Secondary status write: failures are logged, not raised."""
        if not reservation_id:
            logger.info("preauth_status_skipped_uncorrelated", status=status.value, source=source)
            return False
        try:
            await self.transition(
                reservation_id, status, source, payment_intent_id=payment_intent_id
            )
            return True
        except RelayError as e:
            logger.error(
                "preauth_status_write_failed",
                reservation_id=reservation_id,
                status=status.value,
                source=source,
                error=str(e),
            )
            return False

    async def _save_card_on_file(
        self, reservation_id: str, session: Any, setup_intent: Any, source: str
    ) -> None:
        metadata = setup_intent.get("metadata") or session.get("metadata") or {}
        customer_id = _object_id(setup_intent.get("customer")) or _object_id(session.get("customer"))
        payment_method_id = _object_id(setup_intent.get("payment_method"))

        await self.ledger.save_setup(
            reservation_id,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            connected_account_id=metadata.get("connected_account_id") or None,
        )
        await self.transition(
            reservation_id, PreauthStatus.CARD_ON_FILE, source, payment_intent_id=None
        )

    # Webhook channel

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and apply one webhook delivery.

        Returns:
            Dict[str, Any]: Acknowledgment; always ``received`` once verified

        Raises:
            WebhookError: If the signature does not verify
        """
        if not self.settings.webhook_verification_enabled:
            logger.warning("webhook_secret_not_configured", payload_bytes=len(payload))
            return {"received": True, "applied": False}

        event = self.webhook_handler.verify_signature(payload, signature)
        event_id = event.get("id")
        event_type = event["type"]
        start_time = time.time()

        try:
            outcome = await self.webhook_handler.dispatch(event) or IGNORED
        except Exception as e:
            # Verified deliveries are always acknowledged
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome = "failed"

        metrics.record_webhook_event(event_type, outcome, time.time() - start_time)
        logger.info(
            "webhook_event_handled",
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
        )
        return {"received": True, "applied": outcome == APPLIED}

    async def handle_checkout_session_completed(self, session: Dict[str, Any]) -> str:
        reservation_id = reservation_id_for(session)
        if not reservation_id:
            logger.info("checkout_session_uncorrelated", session_id=session.get("id"))
            return UNCORRELATED

        mode = session.get("mode")
        if mode == "setup":
            setup_intent_id = _object_id(session.get("setup_intent"))
            if not setup_intent_id:
                logger.warning("setup_session_without_intent", session_id=session.get("id"))
                return IGNORED
            setup_intent = await self.stripe_client.retrieve_setup_intent(setup_intent_id)
            await self._save_card_on_file(reservation_id, session, setup_intent, "webhook")
            return APPLIED

        if mode == "payment":
            payment_intent_id = _object_id(session.get("payment_intent"))
            if payment_intent_id:
                await self.ledger.attach_payment_intent(reservation_id, payment_intent_id)
            await self.transition(
                reservation_id,
                PreauthStatus.REQUIRES_CAPTURE,
                "webhook",
                payment_intent_id=payment_intent_id,
            )
            return APPLIED

        return IGNORED

    async def handle_payment_intent_event(
        self, status: PreauthStatus, payment_intent: Dict[str, Any]
    ) -> str:
        reservation_id = reservation_id_for(payment_intent)
        if not reservation_id:
            logger.info(
                "payment_intent_uncorrelated",
                payment_intent_id=payment_intent.get("id"),
                status=status.value,
            )
            return UNCORRELATED

        await self.transition(
            reservation_id, status, "webhook", payment_intent_id=payment_intent.get("id")
        )
        return APPLIED

    async def handle_payment_failed(self, payment_intent: Dict[str, Any]) -> str:
        """
        Record a failed charge, unless it only needs cardholder authentication.

        An off-session charge that needs 3DS also emits this event. Approval
        has already written payment_action_required for it; that status stays.
        """
        last_error = payment_intent.get("last_payment_error") or {}
        if last_error.get("code") == AUTHENTICATION_REQUIRED:
            logger.info(
                "payment_failed_awaiting_authentication",
                payment_intent_id=payment_intent.get("id"),
                reservation_id=reservation_id_for(payment_intent),
            )
            return IGNORED
        return await self.handle_payment_intent_event(PreauthStatus.FAILED, payment_intent)

    # Poll channel

    async def reconcile_session(self, session_id: Optional[str]) -> Dict[str, Any]:
        """
        Re-read a Checkout Session and write the status it implies.

        A backstop for missed webhooks; ledger failures are logged only.

        Returns:
            Dict[str, Any]: Session summary for the confirmation page
        """
        session_id = (session_id or "").strip()
        if not session_id:
            raise ValidationError("session_id is required", code="missing_session_id")

        session = await self.stripe_client.retrieve_checkout_session(session_id)
        reservation_id = reservation_id_for(session)

        preauth_status: Optional[PreauthStatus] = None
        if reservation_id:
            try:
                preauth_status = await self._reconcile_session_state(reservation_id, session)
            except RelayError as e:
                logger.warning(
                    "session_reconcile_failed",
                    session_id=session_id,
                    reservation_id=reservation_id,
                    error=str(e),
                )

        customer_details = session.get("customer_details") or {}
        return {
            "id": session.get("id"),
            "status": session.get("status"),
            "payment_status": session.get("payment_status"),
            "mode": session.get("mode"),
            "reservation_id": reservation_id,
            "preauth_status": preauth_status.value if preauth_status else None,
            "customer_email": customer_details.get("email") or session.get("customer_email"),
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
            "metadata": dict(session.get("metadata") or {}),
        }

    async def _reconcile_session_state(
        self, reservation_id: str, session: Any
    ) -> Optional[PreauthStatus]:
        mode = session.get("mode")

        if mode == "setup":
            setup_intent = session.get("setup_intent")
            if isinstance(setup_intent, str):
                setup_intent = await self.stripe_client.retrieve_setup_intent(setup_intent)
            if not setup_intent or setup_intent.get("status") != "succeeded":
                return None
            await self._save_card_on_file(reservation_id, session, setup_intent, "poll")
            return PreauthStatus.CARD_ON_FILE

        if mode == "payment":
            payment_intent = session.get("payment_intent")
            if isinstance(payment_intent, str):
                payment_intent = await self.stripe_client.retrieve_payment_intent(payment_intent)
            if not payment_intent:
                return None
            status = self.status_for_payment_intent(payment_intent)
            if status is None:
                return None
            await self.ledger.attach_payment_intent(reservation_id, payment_intent["id"])
            await self.transition(
                reservation_id, status, "poll", payment_intent_id=payment_intent["id"]
            )
            return status

        return None

    # Capture / release

    @staticmethod
    def _require_payment_intent_id(payment_intent_id: Optional[str]) -> str:
        payment_intent_id = (payment_intent_id or "").strip()
        if not payment_intent_id:
            raise ValidationError(
                "payment_intent_id is required", code="missing_payment_intent_id"
            )
        return payment_intent_id

    async def capture(self, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        """Capture an authorized hold and record it against the reservation."""
        payment_intent_id = self._require_payment_intent_id(payment_intent_id)
        payment_intent = await self.stripe_client.capture_payment_intent(payment_intent_id)
        reservation_id = reservation_id_for(payment_intent)
        await self._transition_best_effort(
            reservation_id, PreauthStatus.CAPTURED, "capture", payment_intent_id
        )
        return {
            "status": payment_intent["status"],
            "payment_intent_id": payment_intent_id,
            "reservation_id": reservation_id,
        }

    async def release(self, payment_intent_id: Optional[str]) -> Dict[str, Any]:
        """Cancel an authorized hold and record the release."""
        payment_intent_id = self._require_payment_intent_id(payment_intent_id)
        payment_intent = await self.stripe_client.cancel_payment_intent(payment_intent_id)
        reservation_id = reservation_id_for(payment_intent)
        await self._transition_best_effort(
            reservation_id, PreauthStatus.RELEASED, "release", payment_intent_id
        )
        return {
            "status": payment_intent["status"],
            "payment_intent_id": payment_intent_id,
            "reservation_id": reservation_id,
        }

    # Approval charge

    @staticmethod
    def approval_idempotency_key(reservation_id: str, amount_cents: int) -> str:
        """Same reservation and amount always map to the same charge."""
        return f"approve:{reservation_id}:{amount_cents}"

    def payment_action_url(self, payment_intent: Any, reservation_id: str) -> str:
        query = urlencode(
            {
                "payment_intent": payment_intent["id"],
                "client_secret": payment_intent.get("client_secret") or "",
                "reservation_id": reservation_id,
            }
        )
        base = self.settings.payment_action_url_base
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{query}"

    async def approve(self, reservation_id: Optional[str], amount_cents: Any) -> ApprovalResult:
        """
        Charge the card saved for a reservation.

        Args:
            reservation_id: Reservation being approved
            amount_cents: Amount to charge

        Returns:
            ApprovalResult: ``paid`` or ``action_required`` with a completion link

        Raises:
            ValidationError: If input is missing or malformed
            LedgerError: If the saved payment method cannot be read
            BusinessPreconditionError: If no payment method is saved
            PaymentDeclinedError: If Stripe declines the charge
        """
        reservation_id = (reservation_id or "").strip()
        if not reservation_id:
            raise ValidationError("reservation_id is required", code="missing_reservation_id")
        amount = normalize_amount(amount_cents)

        stored = await self.ledger.get_pay_info(reservation_id)
        if not stored.is_complete:
            metrics.record_approval("missing_payment_method")
            logger.warning("approve_missing_payment_method", reservation_id=reservation_id)
            raise BusinessPreconditionError(
                "No saved customer or payment method for this reservation",
                code="missing_customer_or_payment_method",
            )

        metadata = {"reservation_id": reservation_id}
        if stored.connected_account_id:
            metadata["connected_account_id"] = stored.connected_account_id

        idempotency_key = self.approval_idempotency_key(reservation_id, amount)
        try:
            payment_intent = await self.stripe_client.create_off_session_payment(
                amount_cents=amount,
                customer_id=stored.customer_id,
                payment_method_id=stored.payment_method_id,
                idempotency_key=idempotency_key,
                metadata=metadata,
                destination=stored.connected_account_id,
                application_fee_amount=application_fee_for(
                    amount,
                    stored.connected_account_id,
                    self.settings.platform_fee_bps,
                    self.settings.platform_fee_fixed_cents,
                ),
            )
        except ProcessorError as e:
            if e.requires_authentication and e.payment_intent:
                return await self._require_action(reservation_id, e.payment_intent)
            await self._fail_approval(reservation_id, e.payment_intent_id, e.message)
            if e.retryable:
                raise
            raise PaymentDeclinedError(
                e.message,
                code=e.processor_code or "payment_failed",
                payment_intent_id=e.payment_intent_id,
            ) from e

        intent_status = payment_intent.get("status")
        if intent_status == "succeeded":
            await self._transition_best_effort(
                reservation_id, PreauthStatus.PAID, "approve", payment_intent["id"]
            )
            metrics.record_approval("paid")
            logger.info(
                "approve_paid",
                reservation_id=reservation_id,
                payment_intent_id=payment_intent["id"],
                amount_cents=amount,
            )
            return ApprovalResult(status="paid", payment_intent_id=payment_intent["id"])

        if intent_status in ("requires_action", "requires_confirmation"):
            return await self._require_action(reservation_id, payment_intent)

        if intent_status == "processing":
            logger.info("approve_processing", reservation_id=reservation_id)
            return ApprovalResult(status="processing", payment_intent_id=payment_intent["id"])

        message = (payment_intent.get("last_payment_error") or {}).get(
            "message"
        ) or f"Payment ended in status {intent_status}"
        await self._fail_approval(reservation_id, payment_intent["id"], message)
        raise PaymentDeclinedError(message, payment_intent_id=payment_intent["id"])

    async def _require_action(self, reservation_id: str, payment_intent: Any) -> ApprovalResult:
        url = self.payment_action_url(payment_intent, reservation_id)
        await self._transition_best_effort(
            reservation_id,
            PreauthStatus.PAYMENT_ACTION_REQUIRED,
            "approve",
            payment_intent["id"],
        )
        metrics.record_approval("action_required")
        logger.info(
            "approve_action_required",
            reservation_id=reservation_id,
            payment_intent_id=payment_intent["id"],
        )
        return ApprovalResult(
            status="action_required", payment_intent_id=payment_intent["id"], url=url
        )

    async def _fail_approval(
        self, reservation_id: str, payment_intent_id: Optional[str], reason: str
    ) -> None:
        await self._transition_best_effort(
            reservation_id, PreauthStatus.FAILED, "approve", payment_intent_id
        )
        metrics.record_approval("failed")
        logger.warning(
            "approve_failed",
            reservation_id=reservation_id,
            payment_intent_id=payment_intent_id,
            reason=reason,
        )
