"""Payment status ledger.

The only code path that changes payment or fee status.  Each transition
updates the fee snapshot, the mirrored payment intent, the participants,
and the audit log in one transaction, so a roster is never left half paid.

Snapshot transitions::

    pending --> paid --> refunded
       |  \\
       |   --> refunded
       --> cancelled

Anything else is a no-op.  In particular a second ``succeeded`` for the
same intent finds the snapshot already ``paid`` and reports zero updates,
which makes webhook redelivery and reconciliation replays safe.

Example::

    ledger = PaymentStatusLedger(db, events=bus)
    ledger.sync_from_processor("pi_123", "succeeded")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from clubledger.events import EventBus, EventType
from clubledger.payments.base import (
    INTENT_CANCELED,
    INTENT_REFUNDED,
    INTENT_SUCCEEDED,
    ParticipantPaymentStatus,
    SnapshotStatus,
)
from clubledger.persistence import ClubDB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentStatusResult:
    success: bool
    participants_updated: int = 0
    snapshots_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_NOOP = PaymentStatusResult(success=True)


class PaymentStatusLedger:
    """Applies processor payment events atomically.

    :param db: Ledger database.
    :param events: Optional bus notified after each committed transition.
    """

    def __init__(self, db: ClubDB, *, events: Optional[EventBus] = None) -> None:
        self._db = db
        self._events = events

    # ------------------------------------------------------------------
    # Helpers (caller holds the transaction)
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_snapshot(conn: sqlite3.Connection, intent_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM fee_snapshots WHERE stripe_payment_intent_id = ?",
            (intent_id,),
        ).fetchone()

    @staticmethod
    def _set_snapshot_status(conn: sqlite3.Connection, snapshot_id: int, status: SnapshotStatus) -> None:
        conn.execute(
            "UPDATE fee_snapshots SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, time.time(), snapshot_id),
        )

    @staticmethod
    def set_intent_status(
        conn: sqlite3.Connection,
        intent_id: str,
        status: str,
        failure_reason: Optional[str] = None,
    ) -> None:
        """Mirror the processor status onto the local intent row."""
        if failure_reason is None:
            conn.execute(
                "UPDATE payment_intents SET status = ?, updated_at = ? WHERE stripe_payment_intent_id = ?",
                (status, time.time(), intent_id),
            )
        else:
            conn.execute(
                "UPDATE payment_intents SET status = ?, failure_reason = ?, updated_at = ? "
                "WHERE stripe_payment_intent_id = ?",
                (status, failure_reason, time.time(), intent_id),
            )

    @staticmethod
    def _audit(
        conn: sqlite3.Connection,
        snapshot: sqlite3.Row,
        participant_id: int,
        *,
        action: str,
        staff_email: str,
        staff_name: str,
        amount_cents: int,
        previous_status: str,
        new_status: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_payment_audit
                (booking_id, session_id, participant_id, action, staff_email, staff_name,
                 amount_affected, previous_status, new_status, stripe_payment_intent_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot["booking_id"],
                snapshot["session_id"],
                participant_id,
                action,
                staff_email,
                staff_name,
                amount_cents,
                previous_status,
                new_status,
                snapshot["stripe_payment_intent_id"],
                time.time(),
            ),
        )

    def _publish(self, event_type: EventType, intent_id: str, result: PaymentStatusResult) -> None:
        if self._events is None:
            return
        self._events.publish(
            event_type,
            {"payment_intent_id": intent_id, **result.to_dict()},
            source="status_ledger",
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_payment_succeeded(
        self,
        intent_id: str,
        *,
        staff_email: str = "system",
        staff_name: str = "Auto-sync",
    ) -> PaymentStatusResult:
        """Mark the intent's snapshot and pending participants paid."""
        with self._db.transaction() as conn:
            snapshot = self._lock_snapshot(conn, intent_id)
            if snapshot is None:
                # Not a booking payment: mirror the intent, nothing else to do.
                self.set_intent_status(conn, intent_id, INTENT_SUCCEEDED)
                return _NOOP
            if snapshot["status"] == SnapshotStatus.PAID.value:
                logger.debug("Snapshot for %s already paid; skipping", intent_id)
                return _NOOP
            if snapshot["status"] != SnapshotStatus.PENDING.value:
                logger.warning(
                    "Ignoring success for %s: snapshot is %s", intent_id, snapshot["status"]
                )
                self.set_intent_status(conn, intent_id, INTENT_SUCCEEDED)
                return _NOOP

            self._set_snapshot_status(conn, snapshot["id"], SnapshotStatus.PAID)
            self.set_intent_status(conn, intent_id, INTENT_SUCCEEDED)

            updated = 0
            for fee in json.loads(snapshot["participant_fees"] or "[]"):
                participant_id = fee.get("id")
                if not participant_id:
                    continue
                cur = conn.execute(
                    "UPDATE booking_participants SET payment_status = ? WHERE id = ? AND payment_status = ?",
                    (
                        ParticipantPaymentStatus.PAID.value,
                        participant_id,
                        ParticipantPaymentStatus.PENDING.value,
                    ),
                )
                if cur.rowcount == 0:
                    continue
                updated += 1
                self._audit(
                    conn,
                    snapshot,
                    participant_id,
                    action="payment_succeeded",
                    staff_email=staff_email,
                    staff_name=staff_name,
                    amount_cents=int(fee.get("amount_cents") or 0),
                    previous_status=ParticipantPaymentStatus.PENDING.value,
                    new_status=ParticipantPaymentStatus.PAID.value,
                )

        result = PaymentStatusResult(success=True, participants_updated=updated, snapshots_updated=1)
        logger.info("Marked payment %s succeeded, updated %d participant(s)", intent_id, updated)
        self._publish(EventType.PAYMENT_SUCCEEDED, intent_id, result)
        return result

    def mark_payment_refunded(
        self,
        intent_id: str,
        *,
        staff_email: str = "system",
        staff_name: str = "Refund",
    ) -> PaymentStatusResult:
        """Mark the snapshot and every participant on it refunded.

        Participants are flipped regardless of their prior status.
        """
        with self._db.transaction() as conn:
            self.set_intent_status(conn, intent_id, INTENT_REFUNDED)
            snapshot = self._lock_snapshot(conn, intent_id)
            if snapshot is None:
                return _NOOP
            if snapshot["status"] not in (SnapshotStatus.PENDING.value, SnapshotStatus.PAID.value):
                logger.debug("Snapshot for %s is %s; refund is a no-op", intent_id, snapshot["status"])
                return _NOOP

            self._set_snapshot_status(conn, snapshot["id"], SnapshotStatus.REFUNDED)
            updated = 0
            for fee in json.loads(snapshot["participant_fees"] or "[]"):
                participant_id = fee.get("id")
                if not participant_id:
                    continue
                cur = conn.execute(
                    "UPDATE booking_participants SET payment_status = ? WHERE id = ?",
                    (ParticipantPaymentStatus.REFUNDED.value, participant_id),
                )
                if cur.rowcount == 0:
                    continue
                updated += 1
                self._audit(
                    conn,
                    snapshot,
                    participant_id,
                    action="payment_refunded",
                    staff_email=staff_email,
                    staff_name=staff_name,
                    amount_cents=int(fee.get("amount_cents") or 0),
                    previous_status=ParticipantPaymentStatus.PAID.value,
                    new_status=ParticipantPaymentStatus.REFUNDED.value,
                )

        result = PaymentStatusResult(success=True, participants_updated=updated, snapshots_updated=1)
        logger.info("Marked payment %s refunded, updated %d participant(s)", intent_id, updated)
        self._publish(EventType.PAYMENT_REFUNDED, intent_id, result)
        return result

    def mark_payment_cancelled(self, intent_id: str) -> PaymentStatusResult:
        """Cancel the pending snapshot; participants are left untouched."""
        with self._db.transaction() as conn:
            self.set_intent_status(conn, intent_id, INTENT_CANCELED)
            snapshot = self._lock_snapshot(conn, intent_id)
            if snapshot is None or snapshot["status"] != SnapshotStatus.PENDING.value:
                return _NOOP
            self._set_snapshot_status(conn, snapshot["id"], SnapshotStatus.CANCELLED)

        result = PaymentStatusResult(success=True, snapshots_updated=1)
        logger.info("Marked payment %s cancelled", intent_id)
        self._publish(EventType.PAYMENT_CANCELLED, intent_id, result)
        return result

    def sync_from_processor(
        self,
        intent_id: str,
        external_status: str,
        *,
        staff_email: str = "system",
    ) -> PaymentStatusResult:
        """Apply whatever the processor reports for *intent_id*.

        ``succeeded`` and ``canceled`` run the matching transition; any
        other status (``processing``, ``requires_action``, ...) is only
        mirrored onto the intent row.
        """
        handlers: Dict[str, Callable[[], PaymentStatusResult]] = {
            INTENT_SUCCEEDED: lambda: self.mark_payment_succeeded(
                intent_id, staff_email=staff_email, staff_name="Stripe Sync"
            ),
            INTENT_CANCELED: lambda: self.mark_payment_cancelled(intent_id),
        }
        handler = handlers.get(external_status)
        if handler is not None:
            result = handler()
        else:
            with self._db.transaction() as conn:
                self.set_intent_status(conn, intent_id, external_status)
            result = _NOOP
        logger.info("Synced payment %s from processor status %s", intent_id, external_status)
        if self._events is not None:
            self._events.publish(
                EventType.PAYMENT_SYNCED,
                {"payment_intent_id": intent_id, "status": external_status},
                source="status_ledger",
            )
        return result

    def cancel_orphan_snapshot(self, intent_id: str) -> int:
        """Cancel a pending snapshot whose intent no longer exists at the processor."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE fee_snapshots SET status = ?, updated_at = ? "
                "WHERE stripe_payment_intent_id = ? AND status = ?",
                (
                    SnapshotStatus.CANCELLED.value,
                    time.time(),
                    intent_id,
                    SnapshotStatus.PENDING.value,
                ),
            )
            count = cur.rowcount
        if count:
            logger.info("Cancelled orphan fee snapshot for missing intent %s", intent_id)
        return count

    def cancel_intent_locally(
        self,
        intent_id: str,
        reason: Optional[str],
        *,
        status: str = INTENT_CANCELED,
    ) -> None:
        """Record *status* with *reason* on the intent and cancel its pending snapshots.

        Used when the processor is not (or cannot be) consulted.  A
        ``succeeded`` status leaves the snapshots alone.
        """
        with self._db.transaction() as conn:
            self.set_intent_status(conn, intent_id, status, failure_reason=reason)
            if status != INTENT_SUCCEEDED:
                conn.execute(
                    "UPDATE fee_snapshots SET status = ?, updated_at = ? "
                    "WHERE stripe_payment_intent_id = ? AND status = ?",
                    (
                        SnapshotStatus.CANCELLED.value,
                        time.time(),
                        intent_id,
                        SnapshotStatus.PENDING.value,
                    ),
                )
        logger.info("Intent %s set to %s locally: %s", intent_id, status, reason)
