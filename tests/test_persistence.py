"""Tests for clubledger.persistence -- the SQLite ledger store."""

from __future__ import annotations

import sqlite3

import pytest

from clubledger import persistence
from clubledger.errors import TransactionFailure
from clubledger.persistence import ClubDB

from conftest import CORE_EMAIL


class TestSchema:
    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "ledger.db"
        db = ClubDB(db_path=str(path))
        try:
            assert path.exists()
            assert db.path == str(path)
        finally:
            db.close()

    def test_env_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLUBLEDGER_DB_PATH", str(tmp_path / "env.db"))
        db = ClubDB()
        try:
            assert db.path == str(tmp_path / "env.db")
        finally:
            db.close()

    def test_in_memory(self):
        db = ClubDB(db_path=":memory:")
        try:
            assert db.fetch_all("SELECT * FROM fee_snapshots") == []
        finally:
            db.close()

    def test_reopen_keeps_data(self, tmp_path):
        path = str(tmp_path / "ledger.db")
        first = ClubDB(db_path=path)
        first.save_member("m-1", "a@club.test", tier="Core")
        first.close()
        second = ClubDB(db_path=path)
        try:
            assert second.get_member_by_id("m-1")["email"] == "a@club.test"
        finally:
            second.close()

    def test_foreign_keys_enforced(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_participant(9999, "guest", display_name="Nobody")


class TestTransaction:
    def test_commit(self, db):
        with db.transaction() as conn:
            conn.execute(
                "INSERT INTO guest_passes (member_email, passes_used, passes_total, month, updated_at) "
                "VALUES (?, 1, 4, '2026-03', 0)",
                (CORE_EMAIL,),
            )
        assert db.fetch_one("SELECT passes_used FROM guest_passes")["passes_used"] == 1

    def test_exception_rolls_back(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                conn.execute(
                    "INSERT INTO guest_passes (member_email, passes_used, passes_total, month, updated_at) "
                    "VALUES (?, 1, 4, '2026-03', 0)",
                    (CORE_EMAIL,),
                )
                raise RuntimeError("abort")
        assert db.fetch_all("SELECT * FROM guest_passes") == []

    def test_sqlite_error_wrapped(self, db):
        with pytest.raises(TransactionFailure) as exc_info:
            with db.transaction() as conn:
                conn.execute("INSERT INTO no_such_table VALUES (1)")
        assert exc_info.value.code == "TRANSACTION_FAILED"
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)

    def test_nested_joins_outer(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction() as inner:
                    inner.execute(
                        "INSERT INTO guest_passes (member_email, passes_used, passes_total, month, updated_at) "
                        "VALUES (?, 2, 4, '2026-03', 0)",
                        (CORE_EMAIL,),
                    )
                raise RuntimeError("outer fails after inner finished")
        assert db.fetch_all("SELECT * FROM guest_passes") == []

    def test_usable_after_rollback(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction():
                raise RuntimeError("abort")
        with db.transaction() as conn:
            conn.execute("DELETE FROM guest_passes")


class TestRecords:
    def test_member_round_trip(self, db):
        db.save_member("m-x", " X@Club.Test ", display_name="X", tier="Core", linked_emails=["Y@club.test"])
        member = db.get_member_by_email("x@club.test")
        assert member["id"] == "m-x"
        assert member["linked_emails"] == ["y@club.test"]
        assert db.find_member_by_linked_email("Y@CLUB.TEST")["id"] == "m-x"
        assert db.find_member_by_linked_email("z@club.test") is None

    def test_participants_owner_first(self, db, make_session):
        _, session_id, owner_id = make_session(CORE_EMAIL)
        guest_id = db.insert_participant(session_id, "guest", display_name="G")
        assert [p["id"] for p in db.list_participants(session_id)] == [owner_id, guest_id]

    def test_session_by_booking(self, db, make_session):
        booking_id, session_id, _ = make_session(CORE_EMAIL)
        assert db.get_session_by_booking(booking_id)["id"] == session_id
        assert db.get_session_by_booking(booking_id + 100) is None

    def test_duplicate_intent_ignored(self, db):
        db.save_payment_intent("pi_1", amount_cents=100)
        db.save_payment_intent("pi_1", amount_cents=999)
        assert db.get_payment_intent("pi_1")["amount_cents"] == 100

    def test_snapshot_unique_per_intent(self, db):
        first = db.save_fee_snapshot("pi_1", total_cents=100, participant_fees=[])
        second = db.save_fee_snapshot("pi_1", total_cents=999, participant_fees=[])
        assert second["id"] == first["id"]
        assert second["total_cents"] == 100

    def test_audit_filter(self, db):
        for intent in ("pi_1", "pi_2"):
            db.execute(
                "INSERT INTO booking_payment_audit (action, staff_email, stripe_payment_intent_id, created_at) "
                "VALUES ('payment_succeeded', 'system', ?, 0)",
                (intent,),
            )
        assert len(db.list_audit()) == 2
        assert [a["stripe_payment_intent_id"] for a in db.list_audit("pi_2")] == ["pi_2"]


class TestSingleton:
    def test_get_db_is_shared(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLUBLEDGER_DB_PATH", str(tmp_path / "singleton.db"))
        monkeypatch.setattr(persistence, "_db", None)
        first = persistence.get_db()
        try:
            assert persistence.get_db() is first
        finally:
            first.close()
