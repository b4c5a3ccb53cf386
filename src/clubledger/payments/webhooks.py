"""Stripe webhook dispatch.

Verifies the ``Stripe-Signature`` header and routes payment events to
the :class:`~clubledger.payments.status_ledger.PaymentStatusLedger`.
Events the ledger does not care about are acknowledged and ignored, so
Stripe stops redelivering them.

The routing layer owns the HTTP endpoint; it only passes the raw body
and signature header to :meth:`WebhookHandler.handle`.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Optional

from clubledger.errors import ClubLedgerError, ExternalProcessorError, InvalidInputError
from clubledger.guest_passes import GuestPassAllocator
from clubledger.payments.status_ledger import PaymentStatusLedger
from clubledger.persistence import ClubDB

logger = logging.getLogger(__name__)


class WebhookHandler:
    """Verifies and applies Stripe webhook events.

    Args:
        ledger: Status ledger that applies the transitions.
        db: Ledger database, used to find the booking behind an intent.
        allocator: When given, guest-pass holds are converted on payment
            and released on cancellation.
        webhook_secret: Signing secret.  Falls back to
            ``CLUBLEDGER_STRIPE_WEBHOOK_SECRET``.
    """

    def __init__(
        self,
        ledger: PaymentStatusLedger,
        db: ClubDB,
        *,
        allocator: Optional[GuestPassAllocator] = None,
        webhook_secret: Optional[str] = None,
    ) -> None:
        self._ledger = ledger
        self._db = db
        self._allocator = allocator
        self._secret = webhook_secret or os.environ.get("CLUBLEDGER_STRIPE_WEBHOOK_SECRET", "")
        self._routes: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "payment_intent.succeeded": self._on_succeeded,
            "payment_intent.canceled": self._on_canceled,
            "payment_intent.payment_failed": self._on_failed,
            "charge.refunded": self._on_refunded,
        }

    def handle(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """Verify *payload* and dispatch it.

        Raises:
            ClubLedgerError: If no signing secret is configured.
            InvalidInputError: If the payload or signature is invalid.
        """
        if not self._secret:
            raise ClubLedgerError(
                "Webhook secret not configured. Set CLUBLEDGER_STRIPE_WEBHOOK_SECRET.",
                code="WEBHOOK_NOT_CONFIGURED",
            )
        try:
            import stripe  # type: ignore[import-untyped]
        except ImportError as exc:
            raise ExternalProcessorError(
                "stripe package not installed. Install it with: pip install stripe",
                code="MISSING_DEPENDENCY",
            ) from exc

        try:
            event = stripe.Webhook.construct_event(payload, sig_header, self._secret)
        except ValueError as exc:
            raise InvalidInputError(f"Invalid webhook payload: {exc}") from exc
        except stripe.error.SignatureVerificationError as exc:
            raise InvalidInputError("Invalid webhook signature") from exc

        return self.dispatch(event)

    def dispatch(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Route an already verified event."""
        event_type = event["type"]
        route = self._routes.get(event_type)
        if route is None:
            logger.debug("Ignoring webhook event %s", event_type)
            return {"received": True, "type": event_type, "handled": False}
        obj = event["data"]["object"]
        logger.info("Webhook %s for %s", event_type, obj.get("id"))
        result = route(obj)
        return {"received": True, "type": event_type, "handled": True, "result": result}

    # -- Routes ----------------------------------------------------------------

    def _intent_record(self, intent_id: str) -> Optional[Dict[str, Any]]:
        return self._db.get_payment_intent(intent_id)

    def _on_succeeded(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        intent_id = obj["id"]
        result = self._ledger.mark_payment_succeeded(
            intent_id, staff_email="system", staff_name="Stripe Webhook"
        )
        record = self._intent_record(intent_id)
        if self._allocator is not None and record and record.get("booking_id") and record.get("member_email"):
            # Hold conversion is best effort: the payment itself is already recorded.
            try:
                self._allocator.convert_hold_to_usage(record["booking_id"], record["member_email"])
            except Exception:
                logger.exception("Failed to convert guest pass holds for %s", intent_id)
        return result.to_dict()

    def _on_canceled(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        intent_id = obj["id"]
        result = self._ledger.mark_payment_cancelled(intent_id)
        record = self._intent_record(intent_id)
        if self._allocator is not None and record and record.get("booking_id"):
            try:
                self._allocator.release_hold(record["booking_id"])
            except Exception:
                logger.exception("Failed to release guest pass holds for %s", intent_id)
        return result.to_dict()

    def _on_failed(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._ledger.sync_from_processor(obj["id"], obj.get("status") or "requires_payment_method").to_dict()

    def _on_refunded(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        intent_id = obj.get("payment_intent")
        if not intent_id:
            return {"success": True, "skipped": "charge has no payment intent"}
        if not obj.get("refunded"):
            logger.info(
                "Partial refund on %s (%s of %s cents); leaving snapshot as is",
                intent_id, obj.get("amount_refunded"), obj.get("amount"),
            )
            return {"success": True, "skipped": "partial refund"}
        return self._ledger.mark_payment_refunded(
            intent_id, staff_email="system", staff_name="Stripe Webhook"
        ).to_dict()
