"""Guest-pass allocator.

Each member gets a monthly allowance of guest passes from their tier.
Passes are either *used* (permanent for the month) or *held* (reserved
for a booking that has not been confirmed yet, with an expiry)::

    available = max(0, allowance - used - held)

Every read-check-write runs inside one :meth:`ClubDB.transaction`, so two
bookings racing for the last pass cannot both win: the second transaction
waits for the first to commit and then sees zero available.

Example::

    allocator = GuestPassAllocator(db, directory)
    allocator.create_hold("host@club.test", booking_id=42, passes_needed=2)
    ...
    allocator.convert_hold_to_usage(42, "host@club.test")   # on payment
    allocator.release_hold(42)                              # on cancel
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from clubledger.errors import InsufficientPassesError, InvalidInputError
from clubledger.members import MemberDirectory, normalize_email
from clubledger.persistence import ClubDB

logger = logging.getLogger(__name__)

DEFAULT_ALLOWANCE = 4
DEFAULT_HOLD_TTL_HOURS = 24

_LIVE_HELD_SQL = (
    "SELECT COALESCE(SUM(passes_held), 0) AS held FROM guest_pass_holds "
    "WHERE member_email = ? AND expires_at > ?"
)


@dataclass(frozen=True)
class GuestPassBalance:
    """Point-in-time view of a member's monthly guest passes."""

    member_email: str
    allowance: int
    used: int
    held: int

    @property
    def available(self) -> int:
        return max(0, self.allowance - self.used - self.held)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["available"] = self.available
        return data


@dataclass(frozen=True)
class HoldResult:
    success: bool
    passes_held: int
    available: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class GuestPassAllocator:
    """Consumes, holds, and releases monthly guest passes.

    :param db: Ledger database.
    :param directory: Resolves a member's tier for the monthly allowance.
    :param default_allowance: Allowance when the member's tier is unknown.
    :param hold_ttl_hours: Lifetime of a hold before cleanup may drop it.
    :param clock: Wall-clock source (epoch seconds), injectable for tests.
    """

    def __init__(
        self,
        db: ClubDB,
        directory: MemberDirectory,
        *,
        default_allowance: int = DEFAULT_ALLOWANCE,
        hold_ttl_hours: int = DEFAULT_HOLD_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db = db
        self._directory = directory
        self._default_allowance = default_allowance
        self._hold_ttl_seconds = hold_ttl_hours * 3600
        self._clock = clock

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the transaction)
    # ------------------------------------------------------------------

    def _current_month(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).strftime("%Y-%m")

    def _tier_allowance(self, email: str) -> int:
        tier = self._directory.tier_for(email=email)
        if tier is None:
            return self._default_allowance
        return tier.guest_passes_per_month

    def _held(self, conn: sqlite3.Connection, email: str, now: float) -> int:
        row = conn.execute(_LIVE_HELD_SQL, (email, now)).fetchone()
        return int(row["held"])

    def _load_balance(self, conn: sqlite3.Connection, email: str) -> GuestPassBalance:
        """Read (and lazily create or roll over) the member's pass row."""
        month = self._current_month()
        tier_allowance = self._tier_allowance(email)
        now = self._clock()

        row = conn.execute(
            "SELECT passes_used, passes_total, month FROM guest_passes WHERE member_email = ?",
            (email,),
        ).fetchone()
        if row is None:
            conn.execute(
                """
                INSERT INTO guest_passes (member_email, passes_used, passes_total, month, updated_at)
                VALUES (?, 0, ?, ?, ?)
                """,
                (email, tier_allowance, month, now),
            )
            used, total = 0, tier_allowance
        else:
            used, total = int(row["passes_used"]), int(row["passes_total"])
            if row["month"] != month:
                logger.info("Rolling guest passes for %s into %s", email, month)
                used = 0
                conn.execute(
                    "UPDATE guest_passes SET passes_used = 0, month = ?, updated_at = ? WHERE member_email = ?",
                    (month, now, email),
                )
            if tier_allowance > total:
                total = tier_allowance
                conn.execute(
                    "UPDATE guest_passes SET passes_total = ?, updated_at = ? WHERE member_email = ?",
                    (total, now, email),
                )

        return GuestPassBalance(email, total, used, self._held(conn, email, now))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def balance(self, member_email: str) -> GuestPassBalance:
        email = normalize_email(member_email)
        with self._db.transaction() as conn:
            return self._load_balance(conn, email)

    def available(self, member_email: str) -> int:
        return self.balance(member_email).available

    def peek_balance(self, member_email: str) -> GuestPassBalance:
        """Same numbers as :meth:`balance` without creating or rolling the row.

        For previews, which must not write.
        """
        email = normalize_email(member_email)
        tier_allowance = self._tier_allowance(email)
        row = self._db.fetch_one(
            "SELECT passes_used, passes_total, month FROM guest_passes WHERE member_email = ?",
            (email,),
        )
        if row is None:
            used, total = 0, tier_allowance
        else:
            used = int(row["passes_used"]) if row["month"] == self._current_month() else 0
            total = max(int(row["passes_total"]), tier_allowance)
        held = self._db.fetch_one(_LIVE_HELD_SQL, (email, self._clock()))
        return GuestPassBalance(email, total, used, int(held["held"]))

    def create_hold(
        self,
        member_email: str,
        booking_id: int,
        passes_needed: int,
    ) -> HoldResult:
        """Reserve *passes_needed* passes for *booking_id*.

        Raises:
            InsufficientPassesError: If fewer passes are available; nothing
                is held in that case.
        """
        if passes_needed <= 0:
            return HoldResult(success=True, passes_held=0, available=self.peek_balance(member_email).available)

        email = normalize_email(member_email)
        with self._db.transaction() as conn:
            balance = self._load_balance(conn, email)
            if balance.available < passes_needed:
                raise InsufficientPassesError(balance.available, passes_needed)
            now = self._clock()
            conn.execute(
                """
                INSERT INTO guest_pass_holds (member_email, booking_id, passes_held, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (email, booking_id, passes_needed, now + self._hold_ttl_seconds, now),
            )
            remaining = balance.available - passes_needed

        logger.info(
            "Held %d guest pass(es) for %s on booking %s (%d left)",
            passes_needed, email, booking_id, remaining,
        )
        return HoldResult(success=True, passes_held=passes_needed, available=remaining)

    def release_hold(self, booking_id: int) -> int:
        """Delete every hold for *booking_id*; return the passes released."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(passes_held), 0) AS held FROM guest_pass_holds WHERE booking_id = ?",
                (booking_id,),
            ).fetchone()
            released = int(row["held"])
            if released:
                conn.execute("DELETE FROM guest_pass_holds WHERE booking_id = ?", (booking_id,))
        if released:
            logger.info("Released %d guest pass hold(s) for booking %s", released, booking_id)
        return released

    def convert_hold_to_usage(self, booking_id: int, member_email: str) -> int:
        """Turn the booking's holds into permanent usage.

        Live holds convert in full.  Passes from expired holds were already
        back in the pool and may have been taken by another booking, so
        they only convert up to what is still available; the shortfall is
        logged.  Returns the number of passes added to usage.
        """
        email = normalize_email(member_email)
        with self._db.transaction() as conn:
            now = self._clock()
            row = conn.execute(
                "SELECT "
                "COALESCE(SUM(CASE WHEN expires_at > ? THEN passes_held END), 0) AS live, "
                "COALESCE(SUM(CASE WHEN expires_at <= ? THEN passes_held END), 0) AS expired "
                "FROM guest_pass_holds WHERE booking_id = ? AND member_email = ?",
                (now, now, booking_id, email),
            ).fetchone()
            live, expired = int(row["live"]), int(row["expired"])
            if live == 0 and expired == 0:
                return 0
            # Also rolls the month over, or last month's count leaks in.
            balance = self._load_balance(conn, email)
            reclaimed = min(expired, balance.available)
            converted = live + reclaimed
            if converted:
                conn.execute(
                    "UPDATE guest_passes SET passes_used = passes_used + ?, updated_at = ? WHERE member_email = ?",
                    (converted, now, email),
                )
            conn.execute(
                "DELETE FROM guest_pass_holds WHERE booking_id = ? AND member_email = ?",
                (booking_id, email),
            )
        if reclaimed < expired:
            logger.warning(
                "Booking %s for %s had %d expired guest pass(es) already taken; converted %d of them",
                booking_id, email, expired, reclaimed,
            )
        logger.info("Converted %d held guest pass(es) to usage for %s (booking %s)", converted, email, booking_id)
        return converted

    def consume(self, member_email: str, count: int = 1) -> GuestPassBalance:
        """Use *count* passes immediately, without a hold.

        Called inside an open transaction, this joins it.
        """
        if count <= 0:
            raise InvalidInputError(f"Pass count must be positive, got {count}")
        email = normalize_email(member_email)
        with self._db.transaction() as c:
            balance = self._load_balance(c, email)
            if balance.available < count:
                raise InsufficientPassesError(balance.available, count)
            c.execute(
                "UPDATE guest_passes SET passes_used = passes_used + ?, updated_at = ? WHERE member_email = ?",
                (count, self._clock(), email),
            )
        return GuestPassBalance(email, balance.allowance, balance.used + count, balance.held)

    def refund(self, member_email: str, count: int = 1) -> None:
        """Give back *count* used passes (never below zero)."""
        email = normalize_email(member_email)
        with self._db.transaction() as c:
            self._load_balance(c, email)
            c.execute(
                "UPDATE guest_passes SET passes_used = MAX(0, passes_used - ?), updated_at = ? "
                "WHERE member_email = ?",
                (count, self._clock(), email),
            )

    def reset_month(self, member_email: str) -> None:
        email = normalize_email(member_email)
        with self._db.transaction() as conn:
            self._load_balance(conn, email)
            conn.execute(
                "UPDATE guest_passes SET passes_used = 0, updated_at = ? WHERE member_email = ?",
                (self._clock(), email),
            )

    def cleanup_expired_holds(self) -> int:
        """Delete holds past their expiry; return how many were removed."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM guest_pass_holds WHERE expires_at <= ?", (self._clock(),)
            )
            removed = cur.rowcount
        if removed:
            logger.info("Cleaned up %d expired guest pass hold(s)", removed)
        return removed
