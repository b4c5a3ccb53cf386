"""Prepayment intents for bookings that carry fees.

When a booking with overage or guest fees is approved, the owner is asked
to prepay.  :class:`PrepaymentService` creates the processor intent and
the matching fee snapshot; the snapshot is what the
:class:`~clubledger.payments.status_ledger.PaymentStatusLedger` later
marks paid, refunded, or cancelled.

Ghost bookings (no real owner email), staff, and unlimited-tier members
never get a prepayment intent.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

from clubledger.errors import ExternalProcessorError
from clubledger.fees import FeeBreakdown
from clubledger.members import MemberDirectory, is_valid_email, normalize_email
from clubledger.payments.base import PENDING_LIKE_STATUSES, PaymentProcessor
from clubledger.payments.status_ledger import PaymentStatusLedger
from clubledger.persistence import ClubDB

logger = logging.getLogger(__name__)

_CLOSED_STATUSES = ("canceled", "cancelled", "refunded", "failed")


@dataclass(frozen=True)
class PrepaymentResult:
    payment_intent_id: str
    amount_cents: int
    client_secret: Optional[str] = None
    created: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("client_secret")
        return data


class PrepaymentService:
    """Creates and cancels booking prepayment intents."""

    def __init__(
        self,
        db: ClubDB,
        processor: PaymentProcessor,
        directory: MemberDirectory,
        ledger: PaymentStatusLedger,
    ) -> None:
        self._db = db
        self._processor = processor
        self._directory = directory
        self._ledger = ledger

    def _existing_intent(self, session_id: int, booking_id: int) -> Optional[dict[str, Any]]:
        placeholders = ",".join("?" for _ in _CLOSED_STATUSES)
        by_session = self._db.fetch_one(
            f"""
            SELECT * FROM payment_intents
            WHERE session_id = ? AND purpose = 'prepayment'
              AND status NOT IN ({placeholders})
            LIMIT 1
            """,
            (session_id, *_CLOSED_STATUSES),
        )
        if by_session is not None:
            return by_session
        return self._db.fetch_one(
            f"""
            SELECT * FROM payment_intents
            WHERE booking_id = ? AND purpose = 'prepayment'
              AND status NOT IN ({placeholders}, 'succeeded')
            LIMIT 1
            """,
            (booking_id, *_CLOSED_STATUSES),
        )

    def _idempotency_key(self, session_id: int, total: int) -> str:
        """Stable per attempt; a new attempt starts once earlier intents closed."""
        row = self._db.fetch_one(
            "SELECT COUNT(*) AS n FROM payment_intents WHERE session_id = ? AND purpose = 'prepayment'",
            (session_id,),
        )
        attempt = int(row["n"]) if row else 0
        key = f"prepayment-{session_id}-{total}"
        return key if attempt == 0 else f"{key}-{attempt}"

    def create_prepayment_intent(
        self,
        session_id: int,
        booking_id: int,
        member_email: str,
        breakdown: FeeBreakdown,
    ) -> Optional[PrepaymentResult]:
        """Create a prepayment intent and fee snapshot for the session.

        Returns ``None`` when nothing should be charged, or the already
        open intent (``created=False``) if one exists for the session or
        booking.

        Raises:
            ExternalProcessorError: If the processor rejects the intent, or
                replays one that is no longer payable.
        """
        total = breakdown.totals.total_cents
        if total <= 0:
            return None
        if not is_valid_email(member_email):
            logger.info(
                "Skipping prepayment for booking %s: no valid owner email", booking_id
            )
            return None
        email = normalize_email(member_email)
        if self._directory.is_fee_exempt(email):
            logger.info("Skipping prepayment for booking %s: %s is fee exempt", booking_id, email)
            return None

        existing = self._existing_intent(session_id, booking_id)
        if existing is not None:
            logger.info(
                "Prepayment intent %s already open for booking %s",
                existing["stripe_payment_intent_id"],
                booking_id,
            )
            return PrepaymentResult(
                payment_intent_id=existing["stripe_payment_intent_id"],
                amount_cents=int(existing["amount_cents"]),
                created=False,
            )

        overage = breakdown.totals.overage_cents
        guest = breakdown.totals.guest_cents
        description = (
            f"Prepayment for booking #{booking_id} - "
            f"Overage: ${overage / 100:.2f}, Guest fees: ${guest / 100:.2f}"
        )
        intent = self._processor.create_payment_intent(
            total,
            customer_email=email,
            description=description,
            metadata={
                "bookingId": str(booking_id),
                "sessionId": str(session_id),
                "overageCents": str(overage),
                "guestCents": str(guest),
                "prepaymentType": "booking_approval",
            },
            idempotency_key=self._idempotency_key(session_id, total),
        )
        known = self._db.get_payment_intent(intent.id)
        if known is not None and known["status"] not in _CLOSED_STATUSES:
            # A concurrent request with the same key got here first.
            return PrepaymentResult(intent.id, int(known["amount_cents"]), created=False)
        if known is not None or intent.status not in PENDING_LIKE_STATUSES:
            raise ExternalProcessorError(
                f"Processor returned {intent.status} intent {intent.id} for a new prepayment",
                code="replayed_intent",
            )

        with self._db.transaction() as conn:
            self._db.save_payment_intent(
                intent.id,
                member_email=email,
                booking_id=booking_id,
                session_id=session_id,
                amount_cents=total,
                purpose="prepayment",
                description=description,
                status="pending" if intent.status in PENDING_LIKE_STATUSES else intent.status,
                conn=conn,
            )
            self._db.save_fee_snapshot(
                intent.id,
                total_cents=total,
                participant_fees=breakdown.snapshot_fees(),
                booking_id=booking_id,
                session_id=session_id,
                conn=conn,
            )

        logger.info(
            "Created prepayment intent %s for booking %s (%d cents)", intent.id, booking_id, total
        )
        return PrepaymentResult(
            payment_intent_id=intent.id,
            amount_cents=total,
            client_secret=intent.client_secret,
        )

    def cancel_pending_payment_intents_for_booking(self, booking_id: int) -> int:
        """Cancel every open intent for a cancelled booking.

        Non-critical: a failure for one intent is logged and the rest are
        still attempted.  Returns how many were cancelled.
        """
        statuses = PENDING_LIKE_STATUSES + ("requires_capture",)
        placeholders = ",".join("?" for _ in statuses)
        try:
            rows = self._db.fetch_all(
                f"SELECT stripe_payment_intent_id FROM payment_intents "
                f"WHERE booking_id = ? AND status IN ({placeholders})",
                (booking_id, *statuses),
            )
        except Exception:
            logger.warning("Could not list open intents for booking %s", booking_id, exc_info=True)
            return 0

        cancelled = 0
        for row in rows:
            intent_id = row["stripe_payment_intent_id"]
            try:
                self._processor.cancel_payment_intent(intent_id)
            except ExternalProcessorError as exc:
                if not exc.is_resource_missing:
                    logger.warning("Failed to cancel payment intent %s: %s", intent_id, exc)
                    continue
            try:
                self._ledger.mark_payment_cancelled(intent_id)
            except Exception:
                logger.warning("Cancelled %s at processor but not locally", intent_id, exc_info=True)
                continue
            cancelled += 1
            logger.info("Cancelled payment intent %s for booking %s", intent_id, booking_id)
        return cancelled
