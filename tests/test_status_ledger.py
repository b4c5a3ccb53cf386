"""Tests for clubledger.payments.status_ledger -- atomic payment transitions."""

from __future__ import annotations

import threading

import pytest

from clubledger.events import EventType
from clubledger.payments.status_ledger import PaymentStatusLedger

from conftest import CORE_EMAIL


@pytest.fixture()
def paid_setup(db, make_session):
    """A session with owner + guest and a pending snapshot for ``pi_1``."""
    booking_id, session_id, owner_id = make_session(CORE_EMAIL, duration=90)
    guest_id = db.insert_participant(session_id, "guest", display_name="Sam")
    db.save_payment_intent(
        "pi_1", member_email=CORE_EMAIL, booking_id=booking_id, session_id=session_id, amount_cents=5000
    )
    db.save_fee_snapshot(
        "pi_1",
        total_cents=5000,
        participant_fees=[
            {"id": owner_id, "display_name": "Cora Core", "amount_cents": 2500},
            {"id": guest_id, "display_name": "Sam", "amount_cents": 2500},
        ],
        booking_id=booking_id,
        session_id=session_id,
    )
    return {"booking_id": booking_id, "session_id": session_id, "owner_id": owner_id, "guest_id": guest_id}


def _snapshot_status(db, intent_id: str = "pi_1") -> str:
    return db.get_fee_snapshot(intent_id)["status"]


class TestMarkSucceeded:
    def test_marks_snapshot_and_participants_paid(self, db, ledger, paid_setup):
        result = ledger.mark_payment_succeeded("pi_1")
        assert result.success is True
        assert result.participants_updated == 2
        assert result.snapshots_updated == 1
        assert _snapshot_status(db) == "paid"
        assert db.get_payment_intent("pi_1")["status"] == "succeeded"
        assert db.get_participant(paid_setup["owner_id"])["payment_status"] == "paid"

    def test_writes_audit_rows(self, db, ledger, paid_setup):
        ledger.mark_payment_succeeded("pi_1", staff_email="ops@club.test", staff_name="Ops")
        audit = db.list_audit("pi_1")
        assert len(audit) == 2
        assert {a["action"] for a in audit} == {"payment_succeeded"}
        assert audit[0]["previous_status"] == "pending"
        assert audit[0]["new_status"] == "paid"
        assert audit[0]["amount_affected"] == 2500
        assert audit[0]["staff_name"] == "Ops"

    def test_second_success_is_noop(self, db, ledger, paid_setup):
        ledger.mark_payment_succeeded("pi_1")
        again = ledger.mark_payment_succeeded("pi_1")
        assert again.success is True
        assert again.participants_updated == 0
        assert again.snapshots_updated == 0
        assert len(db.list_audit("pi_1")) == 2

    def test_already_paid_participant_not_counted(self, db, ledger, paid_setup):
        db.execute(
            "UPDATE booking_participants SET payment_status = 'paid' WHERE id = ?",
            (paid_setup["guest_id"],),
        )
        result = ledger.mark_payment_succeeded("pi_1")
        assert result.participants_updated == 1

    def test_no_snapshot_mirrors_intent(self, db, ledger):
        db.save_payment_intent("pi_other", purpose="one_off")
        result = ledger.mark_payment_succeeded("pi_other")
        assert result.snapshots_updated == 0
        assert db.get_payment_intent("pi_other")["status"] == "succeeded"

    def test_cancelled_snapshot_not_resurrected(self, db, ledger, paid_setup):
        ledger.mark_payment_cancelled("pi_1")
        result = ledger.mark_payment_succeeded("pi_1")
        assert result.snapshots_updated == 0
        assert _snapshot_status(db) == "cancelled"

    def test_publishes_event(self, ledger, events, paid_setup):
        received = []
        events.subscribe(EventType.PAYMENT_SUCCEEDED, received.append)
        ledger.mark_payment_succeeded("pi_1")
        assert received[0].data["payment_intent_id"] == "pi_1"
        assert received[0].data["participants_updated"] == 2

    def test_concurrent_deliveries_apply_once(self, db, paid_setup):
        ledger = PaymentStatusLedger(db)
        results = []
        lock = threading.Lock()

        def deliver():
            r = ledger.mark_payment_succeeded("pi_1")
            with lock:
                results.append(r.participants_updated)

        threads = [threading.Thread(target=deliver) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [0, 0, 0, 0, 2]
        assert len(db.list_audit("pi_1")) == 2


class TestMarkRefunded:
    def test_refund_after_payment(self, db, ledger, paid_setup):
        ledger.mark_payment_succeeded("pi_1")
        result = ledger.mark_payment_refunded("pi_1")
        assert result.participants_updated == 2
        assert _snapshot_status(db) == "refunded"
        assert db.get_payment_intent("pi_1")["status"] == "refunded"
        assert db.get_participant(paid_setup["guest_id"])["payment_status"] == "refunded"

    def test_refund_from_pending_flips_all_participants(self, db, ledger, paid_setup):
        result = ledger.mark_payment_refunded("pi_1")
        assert result.participants_updated == 2
        assert db.get_participant(paid_setup["owner_id"])["payment_status"] == "refunded"

    def test_second_refund_is_noop(self, ledger, paid_setup):
        ledger.mark_payment_refunded("pi_1")
        assert ledger.mark_payment_refunded("pi_1").snapshots_updated == 0

    def test_refund_audit(self, db, ledger, paid_setup):
        ledger.mark_payment_succeeded("pi_1")
        ledger.mark_payment_refunded("pi_1", staff_name="Front Desk")
        refunds = [a for a in db.list_audit("pi_1") if a["action"] == "payment_refunded"]
        assert len(refunds) == 2
        assert refunds[0]["staff_name"] == "Front Desk"


class TestMarkCancelled:
    def test_cancel_pending(self, db, ledger, paid_setup):
        result = ledger.mark_payment_cancelled("pi_1")
        assert result.snapshots_updated == 1
        assert _snapshot_status(db) == "cancelled"
        assert db.get_payment_intent("pi_1")["status"] == "canceled"
        assert db.get_participant(paid_setup["owner_id"])["payment_status"] == "pending"

    def test_cancel_paid_is_noop(self, db, ledger, paid_setup):
        ledger.mark_payment_succeeded("pi_1")
        assert ledger.mark_payment_cancelled("pi_1").snapshots_updated == 0
        assert _snapshot_status(db) == "paid"


class TestSyncFromProcessor:
    def test_succeeded(self, db, ledger, paid_setup):
        result = ledger.sync_from_processor("pi_1", "succeeded")
        assert result.participants_updated == 2
        assert db.list_audit("pi_1")[0]["staff_name"] == "Stripe Sync"

    def test_canceled(self, db, ledger, paid_setup):
        ledger.sync_from_processor("pi_1", "canceled")
        assert _snapshot_status(db) == "cancelled"

    def test_other_status_only_mirrors(self, db, ledger, paid_setup):
        result = ledger.sync_from_processor("pi_1", "processing")
        assert result.snapshots_updated == 0
        assert db.get_payment_intent("pi_1")["status"] == "processing"
        assert _snapshot_status(db) == "pending"

    def test_publishes_synced(self, ledger, events, paid_setup):
        received = []
        events.subscribe(EventType.PAYMENT_SYNCED, received.append)
        ledger.sync_from_processor("pi_1", "requires_action")
        assert received[0].data == {"payment_intent_id": "pi_1", "status": "requires_action"}


class TestLocalRepairs:
    def test_cancel_orphan_snapshot(self, db, ledger, paid_setup):
        assert ledger.cancel_orphan_snapshot("pi_1") == 1
        assert _snapshot_status(db) == "cancelled"
        assert ledger.cancel_orphan_snapshot("pi_1") == 0

    def test_cancel_intent_locally(self, db, ledger, paid_setup):
        ledger.cancel_intent_locally("pi_1", "Auto-cancelled: abandoned after 2 hours")
        intent = db.get_payment_intent("pi_1")
        assert intent["status"] == "canceled"
        assert intent["failure_reason"] == "Auto-cancelled: abandoned after 2 hours"
        assert _snapshot_status(db) == "cancelled"

    def test_local_succeeded_keeps_snapshot(self, db, ledger, paid_setup):
        ledger.cancel_intent_locally("pi_1", None, status="succeeded")
        assert _snapshot_status(db) == "pending"
