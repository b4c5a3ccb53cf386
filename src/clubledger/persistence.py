"""SQLite persistence layer for the billing ledger.

Holds members, bookings, sessions, participants, usage, guest passes, fee
snapshots, payment intents, and the payment audit log.  The database is
created automatically at ``~/.clubledger/ledger.db`` (override with the
``CLUBLEDGER_DB_PATH`` environment variable).

Financial mutations go through :meth:`ClubDB.transaction`, which opens a
``BEGIN IMMEDIATE`` transaction.  That takes SQLite's reserved lock up
front, so two writers that both read-check-write (two webhook deliveries
for one intent, two holds for one member) are serialised: the second
blocks until the first commits and then sees its result.

Example::

    db = get_db()
    with db.transaction() as conn:
        row = conn.execute(
            "SELECT * FROM fee_snapshots WHERE stripe_payment_intent_id = ?",
            (intent_id,),
        ).fetchone()
        ...
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from clubledger.errors import TransactionFailure

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default DB location
# ---------------------------------------------------------------------------

_DEFAULT_DB_DIR = os.path.join(str(Path.home()), ".clubledger")
_DEFAULT_DB_PATH = os.path.join(_DEFAULT_DB_DIR, "ledger.db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS members (
    id              TEXT PRIMARY KEY,
    email           TEXT NOT NULL UNIQUE,
    display_name    TEXT NOT NULL DEFAULT '',
    tier            TEXT,
    role            TEXT NOT NULL DEFAULT 'member',
    linked_emails   TEXT NOT NULL DEFAULT '[]',
    created_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS booking_requests (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    member_email    TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    request_date    TEXT,
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS booking_sessions (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    booking_id              INTEGER NOT NULL UNIQUE REFERENCES booking_requests(id),
    session_date            TEXT NOT NULL,
    duration_minutes        INTEGER NOT NULL,
    declared_player_count   INTEGER NOT NULL DEFAULT 1,
    host_email              TEXT NOT NULL,
    roster_version          INTEGER NOT NULL DEFAULT 0,
    created_at              REAL NOT NULL,
    updated_at              REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS booking_participants (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          INTEGER NOT NULL REFERENCES booking_sessions(id),
    user_id             TEXT,
    email               TEXT,
    display_name        TEXT NOT NULL DEFAULT '',
    participant_type    TEXT NOT NULL,
    payment_status      TEXT NOT NULL DEFAULT 'pending',
    cached_fee_cents    INTEGER NOT NULL DEFAULT 0,
    used_guest_pass     INTEGER NOT NULL DEFAULT 0,
    created_at          REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_participants_session
    ON booking_participants(session_id);

CREATE TABLE IF NOT EXISTS usage_ledger (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      INTEGER NOT NULL,
    member_email    TEXT NOT NULL,
    session_date    TEXT NOT NULL,
    minutes_charged INTEGER NOT NULL,
    recorded_at     REAL NOT NULL,
    UNIQUE(session_id, member_email)
);

CREATE INDEX IF NOT EXISTS idx_usage_member_date
    ON usage_ledger(member_email, session_date);

CREATE TABLE IF NOT EXISTS fee_snapshots (
    id                          INTEGER PRIMARY KEY AUTOINCREMENT,
    stripe_payment_intent_id    TEXT UNIQUE,
    booking_id                  INTEGER,
    session_id                  INTEGER,
    status                      TEXT NOT NULL DEFAULT 'pending',
    total_cents                 INTEGER NOT NULL,
    participant_fees            TEXT NOT NULL DEFAULT '[]',
    created_at                  REAL NOT NULL,
    updated_at                  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fee_snapshots_status
    ON fee_snapshots(status, created_at);

CREATE TABLE IF NOT EXISTS payment_intents (
    id                          INTEGER PRIMARY KEY AUTOINCREMENT,
    stripe_payment_intent_id    TEXT NOT NULL UNIQUE,
    member_email                TEXT,
    booking_id                  INTEGER,
    session_id                  INTEGER,
    amount_cents                INTEGER NOT NULL DEFAULT 0,
    purpose                     TEXT NOT NULL DEFAULT 'prepayment',
    description                 TEXT,
    status                      TEXT NOT NULL DEFAULT 'pending',
    failure_reason              TEXT,
    created_at                  REAL NOT NULL,
    updated_at                  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payment_intents_status
    ON payment_intents(status, created_at);

CREATE TABLE IF NOT EXISTS booking_payment_audit (
    id                          INTEGER PRIMARY KEY AUTOINCREMENT,
    booking_id                  INTEGER,
    session_id                  INTEGER,
    participant_id              INTEGER,
    action                      TEXT NOT NULL,
    staff_email                 TEXT NOT NULL,
    staff_name                  TEXT,
    amount_affected             INTEGER NOT NULL DEFAULT 0,
    previous_status             TEXT,
    new_status                  TEXT,
    stripe_payment_intent_id    TEXT,
    created_at                  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS guest_passes (
    member_email    TEXT PRIMARY KEY,
    passes_used     INTEGER NOT NULL DEFAULT 0,
    passes_total    INTEGER NOT NULL DEFAULT 0,
    month           TEXT NOT NULL,
    updated_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS guest_pass_holds (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    member_email    TEXT NOT NULL,
    booking_id      INTEGER NOT NULL,
    passes_held     INTEGER NOT NULL,
    expires_at      REAL NOT NULL,
    created_at      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_holds_member
    ON guest_pass_holds(member_email);

CREATE TABLE IF NOT EXISTS scheduler_runs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name        TEXT NOT NULL,
    success         INTEGER NOT NULL,
    error_detail    TEXT,
    ran_at          REAL NOT NULL
);
"""


class ClubDB:
    """Thread-safe SQLite wrapper for the billing ledger.

    A single connection is shared between threads and guarded by a
    re-entrant lock; the connection runs in autocommit mode so that
    :meth:`transaction` controls ``BEGIN``/``COMMIT`` explicitly.

    Parameters:
        db_path: Filesystem path for the SQLite database file.  Defaults to
            the value of ``CLUBLEDGER_DB_PATH`` or ``~/.clubledger/ledger.db``.
            ``":memory:"`` is accepted for tests.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or os.environ.get("CLUBLEDGER_DB_PATH", _DEFAULT_DB_PATH)

        if self._db_path != ":memory:":
            parent = os.path.dirname(self._db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._write_lock = threading.RLock()

        self._ensure_schema()

    @property
    def path(self) -> str:
        return self._db_path

    def _ensure_schema(self) -> None:
        with self._write_lock:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._write_lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Transactions and raw access
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block in one ``BEGIN IMMEDIATE`` transaction.

        Commits on success.  Any exception rolls the whole block back and
        is re-raised; bare :class:`sqlite3.Error` is wrapped in
        :class:`~clubledger.errors.TransactionFailure`.  A nested call on
        the same thread joins the outer transaction.
        """
        with self._write_lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._rollback()
                raise TransactionFailure(f"Transaction rolled back: {exc}") from exc
            except BaseException:
                self._rollback()
                raise
            else:
                self._conn.execute("COMMIT")

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed on %s", self._db_path)

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._write_lock:
            row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._write_lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single autocommitted write; return the affected row count."""
        with self._write_lock:
            cur = self._conn.execute(sql, params)
            return cur.rowcount

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def save_member(
        self,
        member_id: str,
        email: str,
        *,
        display_name: str = "",
        tier: Optional[str] = None,
        role: str = "member",
        linked_emails: Optional[List[str]] = None,
    ) -> None:
        """Insert or replace a member row."""
        with self._write_lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO members
                    (id, email, display_name, tier, role, linked_emails, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    member_id,
                    email.strip().lower(),
                    display_name,
                    tier,
                    role,
                    json.dumps([e.strip().lower() for e in linked_emails or []]),
                    time.time(),
                ),
            )

    def get_member_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._member_from_row(
            self.fetch_one("SELECT * FROM members WHERE email = ?", (email.strip().lower(),))
        )

    def get_member_by_id(self, member_id: str) -> Optional[Dict[str, Any]]:
        return self._member_from_row(
            self.fetch_one("SELECT * FROM members WHERE id = ?", (member_id,))
        )

    def find_member_by_linked_email(self, email: str) -> Optional[Dict[str, Any]]:
        needle = email.strip().lower()
        for row in self.fetch_all("SELECT * FROM members WHERE linked_emails != '[]'"):
            member = self._member_from_row(row)
            if member and needle in member["linked_emails"]:
                return member
        return None

    @staticmethod
    def _member_from_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        row["linked_emails"] = json.loads(row.get("linked_emails") or "[]")
        return row

    # ------------------------------------------------------------------
    # Bookings, sessions, participants
    # ------------------------------------------------------------------

    def create_booking(
        self,
        member_email: str,
        *,
        status: str = "approved",
        request_date: Optional[str] = None,
    ) -> int:
        now = time.time()
        with self._write_lock:
            cur = self._conn.execute(
                """
                INSERT INTO booking_requests (member_email, status, request_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (member_email.strip().lower(), status, request_date, now, now),
            )
            return int(cur.lastrowid)

    def get_booking(self, booking_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one("SELECT * FROM booking_requests WHERE id = ?", (booking_id,))

    def set_booking_status(self, booking_id: int, status: str) -> None:
        self.execute(
            "UPDATE booking_requests SET status = ?, updated_at = ? WHERE id = ?",
            (status, time.time(), booking_id),
        )

    def create_session(
        self,
        booking_id: int,
        *,
        session_date: str,
        duration_minutes: int,
        host_email: str,
        declared_player_count: int = 1,
    ) -> int:
        now = time.time()
        with self._write_lock:
            cur = self._conn.execute(
                """
                INSERT INTO booking_sessions
                    (booking_id, session_date, duration_minutes, declared_player_count,
                     host_email, roster_version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    booking_id,
                    session_date,
                    duration_minutes,
                    declared_player_count,
                    host_email.strip().lower(),
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)

    def get_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one("SELECT * FROM booking_sessions WHERE id = ?", (session_id,))

    def get_session_by_booking(self, booking_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            "SELECT * FROM booking_sessions WHERE booking_id = ?", (booking_id,)
        )

    def insert_participant(
        self,
        session_id: int,
        participant_type: str,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        display_name: str = "",
        used_guest_pass: bool = False,
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Insert a participant row.

        Pass *conn* to write inside an open :meth:`transaction`.
        """
        sql = """
            INSERT INTO booking_participants
                (session_id, user_id, email, display_name, participant_type,
                 used_guest_pass, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            session_id,
            user_id,
            email.strip().lower() if email else None,
            display_name,
            participant_type,
            1 if used_guest_pass else 0,
            time.time(),
        )
        with self._write_lock:
            cur = (conn or self._conn).execute(sql, params)
            return int(cur.lastrowid)

    def list_participants(self, session_id: int) -> List[Dict[str, Any]]:
        """Participants of a session, owner first then in creation order."""
        return self.fetch_all(
            """
            SELECT * FROM booking_participants
            WHERE session_id = ?
            ORDER BY CASE participant_type WHEN 'owner' THEN 0 ELSE 1 END,
                     created_at, id
            """,
            (session_id,),
        )

    def get_participant(self, participant_id: int) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            "SELECT * FROM booking_participants WHERE id = ?", (participant_id,)
        )

    # ------------------------------------------------------------------
    # Payment intents and fee snapshots
    # ------------------------------------------------------------------

    def save_payment_intent(
        self,
        intent_id: str,
        *,
        member_email: Optional[str] = None,
        booking_id: Optional[int] = None,
        session_id: Optional[int] = None,
        amount_cents: int = 0,
        purpose: str = "prepayment",
        description: Optional[str] = None,
        status: str = "pending",
        created_at: Optional[float] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Insert a payment intent mirror row; a duplicate id is ignored."""
        now = time.time()
        with self._write_lock:
            (conn or self._conn).execute(
                """
                INSERT OR IGNORE INTO payment_intents
                    (stripe_payment_intent_id, member_email, booking_id, session_id,
                     amount_cents, purpose, description, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent_id,
                    member_email,
                    booking_id,
                    session_id,
                    amount_cents,
                    purpose,
                    description,
                    status,
                    created_at if created_at is not None else now,
                    now,
                ),
            )

    def get_payment_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            "SELECT * FROM payment_intents WHERE stripe_payment_intent_id = ?",
            (intent_id,),
        )

    def save_fee_snapshot(
        self,
        intent_id: Optional[str],
        *,
        total_cents: int,
        participant_fees: List[Dict[str, Any]],
        booking_id: Optional[int] = None,
        session_id: Optional[int] = None,
        status: str = "pending",
        created_at: Optional[float] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Dict[str, Any]:
        """Create the snapshot for *intent_id*, or return the existing one.

        Snapshots are unique per intent, so a retried prepayment never
        produces a second invoice.
        """
        now = time.time()
        with self._write_lock:
            c = conn or self._conn
            if intent_id is not None:
                existing = c.execute(
                    "SELECT * FROM fee_snapshots WHERE stripe_payment_intent_id = ?",
                    (intent_id,),
                ).fetchone()
                if existing is not None:
                    return dict(existing)
            cur = c.execute(
                """
                INSERT INTO fee_snapshots
                    (stripe_payment_intent_id, booking_id, session_id, status,
                     total_cents, participant_fees, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent_id,
                    booking_id,
                    session_id,
                    status,
                    total_cents,
                    json.dumps(participant_fees),
                    created_at if created_at is not None else now,
                    now,
                ),
            )
            row = c.execute(
                "SELECT * FROM fee_snapshots WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
            return dict(row)

    def get_fee_snapshot(self, intent_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            "SELECT * FROM fee_snapshots WHERE stripe_payment_intent_id = ?",
            (intent_id,),
        )

    def list_audit(self, intent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if intent_id is None:
            return self.fetch_all("SELECT * FROM booking_payment_audit ORDER BY id")
        return self.fetch_all(
            "SELECT * FROM booking_payment_audit WHERE stripe_payment_intent_id = ? ORDER BY id",
            (intent_id,),
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_db: Optional[ClubDB] = None
_db_lock = threading.Lock()


def get_db() -> ClubDB:
    """Return the module-level :class:`ClubDB` singleton.

    The instance is lazily created on first call.
    """
    global _db
    with _db_lock:
        if _db is None:
            _db = ClubDB()
        return _db
