"""Reconciliation scheduler: repairs drift against the payment processor.

Webhooks get lost, members abandon checkout, and bookings are cancelled
while an intent is still open.  This module runs periodic sweeps that
notice and repair those cases:

1. **Pending snapshots** older than 5 minutes are checked against the
   processor and synced (missed ``succeeded``/``canceled`` webhooks).
2. **Abandoned intents** still awaiting payment after 2 hours are
   cancelled at the processor and locally.
3. **Stale intents** pending for over 7 days are resolved from their
   booking's outcome, consulting the processor only when the booking
   went ahead.
4. **Expired guest-pass holds** are deleted.

Each sweep has its own timer thread and health record, so one failing
sweep neither stops nor hides the others.  Within a sweep each row is
isolated: a failure is logged and counted and the row is retried on the
next tick.

Lifecycle::

    scheduler = ReconciliationScheduler(db, processor, ledger, health)
    scheduler.start()    # one daemon thread per sweep
    ...
    scheduler.stop()

    scheduler.run_all()  # one synchronous pass, for the CLI and tests
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from clubledger.errors import ExternalProcessorError
from clubledger.events import EventBus, EventType
from clubledger.guest_passes import GuestPassAllocator
from clubledger.health import SchedulerHealthTracker
from clubledger.payments.base import (
    INTENT_CANCELED,
    INTENT_SUCCEEDED,
    PENDING_LIKE_STATUSES,
    PaymentProcessor,
    SnapshotStatus,
)
from clubledger.payments.status_ledger import PaymentStatusLedger
from clubledger.persistence import ClubDB

logger = logging.getLogger(__name__)

JOB_PENDING_SNAPSHOTS = "Fee Snapshot Reconciliation"
JOB_ABANDONED_INTENTS = "Abandoned Payment Intent Cleanup"
JOB_STALE_INTENTS = "Stale Payment Intent Reconciliation"
JOB_EXPIRED_HOLDS = "Guest Pass Hold Cleanup"

MAX_BATCH_SIZE = 50

_SNAPSHOT_STALE_SECONDS: float = 5 * 60
_ABANDONED_SECONDS: float = 2 * 3600
_STALE_INTENT_SECONDS: float = 7 * 86400

ABANDONED_REASON = "Auto-cancelled: abandoned after 2 hours"
ORPHAN_REASON = "Auto-reconciled: orphan payment intent with no linked booking"
MISSING_AT_PROCESSOR_REASON = "Auto-reconciled: payment intent not found in Stripe"

_NEGATIVE_BOOKING_STATES = ("cancelled", "declined", "expired")
_POSITIVE_BOOKING_STATES = ("attended", "confirmed")

Sweep = Callable[[], Dict[str, int]]


class ReconciliationScheduler:
    """Runs the reconciliation sweeps on independent timers.

    :param db: Ledger database.
    :param processor: External payment processor.
    :param ledger: Status ledger; every repair goes through it.
    :param health: Receives one ``record_run`` per sweep execution.
    :param allocator: Enables the expired-hold sweep when given.
    :param interval_seconds: Period of each sweep (default 15 minutes).
    :param initial_delay_seconds: Wait before the first run after start.
    :param batch_size: Rows examined per sweep, capped at 50.
    :param clock: Wall-clock source (epoch seconds).
    """

    def __init__(
        self,
        db: ClubDB,
        processor: PaymentProcessor,
        ledger: PaymentStatusLedger,
        health: SchedulerHealthTracker,
        *,
        allocator: Optional[GuestPassAllocator] = None,
        events: Optional[EventBus] = None,
        interval_seconds: float = 900.0,
        initial_delay_seconds: float = 120.0,
        batch_size: int = MAX_BATCH_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._processor = processor
        self._ledger = ledger
        self._health = health
        self._allocator = allocator
        self._events = events
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self._clock = clock
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def sweeps(self) -> Dict[str, Sweep]:
        jobs: Dict[str, Sweep] = {
            JOB_PENDING_SNAPSHOTS: self.reconcile_pending_snapshots,
            JOB_ABANDONED_INTENTS: self.cleanup_abandoned_intents,
            JOB_STALE_INTENTS: self.reconcile_stale_intents,
        }
        if self._allocator is not None:
            jobs[JOB_EXPIRED_HOLDS] = self.cleanup_expired_holds
        return jobs

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Launch one daemon thread per sweep."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                args=(job_name, sweep),
                name=f"clubledger-{job_name.lower().replace(' ', '-')}",
                daemon=True,
            )
            for job_name, sweep in self.sweeps().items()
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Reconciliation scheduler started (%d sweeps, every %.0fs after %.0fs delay)",
            len(self._threads), self._interval, self._initial_delay,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal all sweeps to stop and wait for them."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Reconciliation scheduler stopped")

    def _run_loop(self, job_name: str, sweep: Sweep) -> None:
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            self.run_sweep(job_name, sweep)
            if self._stop_event.wait(self._interval):
                break

    def run_sweep(self, job_name: str, sweep: Sweep) -> Dict[str, Any]:
        """Run one sweep, record its health, and never raise."""
        try:
            summary: Dict[str, Any] = dict(sweep())
        except Exception as exc:
            logger.exception("%s sweep failed", job_name)
            self._health.record_run(job_name, False, str(exc))
            return {"error": str(exc)}
        self._health.record_run(job_name, True)
        if any(summary.values()):
            logger.info("%s: %s", job_name, summary)
        return summary

    def run_all(self) -> Dict[str, Dict[str, Any]]:
        """Run every sweep once, in order, and return their summaries."""
        results = {name: self.run_sweep(name, sweep) for name, sweep in self.sweeps().items()}
        if self._events is not None:
            self._events.publish(EventType.RECONCILIATION_COMPLETED, results, source="reconciliation")
        return results

    # ------------------------------------------------------------------
    # Sweep 1: pending fee snapshots
    # ------------------------------------------------------------------

    def reconcile_pending_snapshots(self) -> Dict[str, int]:
        cutoff = self._clock() - _SNAPSHOT_STALE_SECONDS
        rows = self._db.fetch_all(
            """
            SELECT stripe_payment_intent_id FROM fee_snapshots
            WHERE status = ? AND stripe_payment_intent_id IS NOT NULL AND created_at < ?
            ORDER BY created_at
            LIMIT ?
            """,
            (SnapshotStatus.PENDING.value, cutoff, self._batch_size),
        )
        synced = errors = 0
        for row in rows:
            intent_id = row["stripe_payment_intent_id"]
            try:
                if self._sync_snapshot(intent_id):
                    synced += 1
            except Exception:
                errors += 1
                logger.exception("Failed to reconcile fee snapshot for %s", intent_id)
        return {"synced": synced, "errors": errors}

    def _sync_snapshot(self, intent_id: str) -> bool:
        try:
            intent = self._processor.retrieve_payment_intent(intent_id)
        except ExternalProcessorError as exc:
            if exc.is_resource_missing:
                self._ledger.cancel_orphan_snapshot(intent_id)
                return True
            raise
        if intent.status == INTENT_SUCCEEDED:
            self._ledger.mark_payment_succeeded(
                intent_id, staff_email="system", staff_name="Reconciliation"
            )
            return True
        if intent.status == INTENT_CANCELED:
            self._ledger.mark_payment_cancelled(intent_id)
            return True
        return False

    # ------------------------------------------------------------------
    # Sweep 2: abandoned intents
    # ------------------------------------------------------------------

    def cleanup_abandoned_intents(self) -> Dict[str, int]:
        cutoff = self._clock() - _ABANDONED_SECONDS
        placeholders = ",".join("?" for _ in PENDING_LIKE_STATUSES)
        rows = self._db.fetch_all(
            f"""
            SELECT stripe_payment_intent_id FROM payment_intents
            WHERE status IN ({placeholders}) AND created_at < ?
            ORDER BY created_at
            LIMIT ?
            """,
            (*PENDING_LIKE_STATUSES, cutoff, self._batch_size),
        )
        cancelled = errors = 0
        for row in rows:
            intent_id = row["stripe_payment_intent_id"]
            try:
                self._cancel_abandoned(intent_id)
                cancelled += 1
            except Exception:
                errors += 1
                logger.exception("Failed to cancel abandoned intent %s", intent_id)
        return {"cancelled": cancelled, "errors": errors}

    def _cancel_abandoned(self, intent_id: str) -> None:
        try:
            self._processor.cancel_payment_intent(intent_id)
        except ExternalProcessorError as exc:
            if exc.is_resource_missing:
                self._ledger.cancel_intent_locally(intent_id, ABANDONED_REASON)
                return
            if exc.is_unexpected_state:
                # Not cancellable at the processor: adopt its status instead.
                actual = self._processor.retrieve_payment_intent(intent_id).status
                logger.info("Abandoned intent %s is already %s; mirroring", intent_id, actual)
                if actual == INTENT_SUCCEEDED:
                    self._ledger.sync_from_processor(intent_id, actual)
                else:
                    self._ledger.cancel_intent_locally(intent_id, None, status=actual)
                return
            raise
        self._ledger.cancel_intent_locally(intent_id, ABANDONED_REASON)

    # ------------------------------------------------------------------
    # Sweep 3: stale long-pending intents
    # ------------------------------------------------------------------

    def reconcile_stale_intents(self) -> Dict[str, int]:
        cutoff = self._clock() - _STALE_INTENT_SECONDS
        rows = self._db.fetch_all(
            """
            SELECT stripe_payment_intent_id, booking_id FROM payment_intents
            WHERE status = 'pending' AND created_at < ?
            ORDER BY created_at
            LIMIT ?
            """,
            (cutoff, self._batch_size),
        )
        reconciled = errors = 0
        for row in rows:
            intent_id = row["stripe_payment_intent_id"]
            try:
                if self._resolve_stale(intent_id, row["booking_id"]):
                    reconciled += 1
            except Exception:
                errors += 1
                logger.exception("Failed to reconcile stale intent %s", intent_id)
        return {"reconciled": reconciled, "errors": errors}

    def _resolve_stale(self, intent_id: str, booking_id: Optional[int]) -> bool:
        booking = self._db.get_booking(booking_id) if booking_id is not None else None
        if booking is None:
            self._ledger.cancel_intent_locally(intent_id, ORPHAN_REASON)
            return True

        status = booking["status"]
        if status in _NEGATIVE_BOOKING_STATES:
            self._ledger.cancel_intent_locally(
                intent_id, f"Auto-reconciled: linked booking was {status}"
            )
            return True
        if status not in _POSITIVE_BOOKING_STATES:
            return False

        try:
            intent = self._processor.retrieve_payment_intent(intent_id)
        except ExternalProcessorError as exc:
            if exc.is_resource_missing:
                self._ledger.cancel_intent_locally(intent_id, MISSING_AT_PROCESSOR_REASON)
                return True
            raise
        if intent.status in (INTENT_SUCCEEDED, INTENT_CANCELED):
            self._ledger.sync_from_processor(intent_id, intent.status)
            return True
        return False

    # ------------------------------------------------------------------
    # Sweep 4: expired guest-pass holds
    # ------------------------------------------------------------------

    def cleanup_expired_holds(self) -> Dict[str, int]:
        if self._allocator is None:
            return {"removed": 0}
        return {"removed": self._allocator.cleanup_expired_holds()}
