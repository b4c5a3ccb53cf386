"""Roster mutation guard: optimistic concurrency for participant lists.

Every roster read returns the session's :class:`RosterVersion`.  Clients
send it back with each add/remove; if someone else changed the roster in
between, the mutation is rejected with
:class:`~clubledger.errors.RosterConflictError` carrying the current
version so the client can refresh and retry.

Mutations run in one transaction that starts by taking the database
write lock, so the version check and the write cannot interleave with
another mutation of the same session.  After commit, fees are
recalculated because time allocation depends on the participant count.

Example::

    view = guard.get_participants(booking_id)
    result = guard.add_participant(
        booking_id,
        AddParticipantRequest(ParticipantType.GUEST, guest_name="Sam", use_guest_pass=True),
        client_version=view.roster_version,
    )
    result.new_roster_version   # view.roster_version.next()
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from clubledger.errors import InvalidInputError, NotFoundError, RosterConflictError
from clubledger.events import EventBus, EventType
from clubledger.fees import FeeBreakdown, FeeBreakdownComputer, ParticipantType
from clubledger.guest_passes import GuestPassAllocator
from clubledger.members import MemberDirectory
from clubledger.persistence import ClubDB
from clubledger.tiers import TierCatalog, enforce_social_tier_rules

logger = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 20


@dataclass(frozen=True, order=True)
class RosterVersion:
    """Concurrency token for a session's participant list.

    Compares only with other :class:`RosterVersion` values, never with
    bare integers.
    """

    value: int

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError(f"Roster version cannot be negative: {self.value}")

    def next(self) -> "RosterVersion":
        return RosterVersion(self.value + 1)

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class RosterView:
    booking_id: int
    session_id: int
    roster_version: RosterVersion
    participants: List[Dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "session_id": self.session_id,
            "roster_version": int(self.roster_version),
            "participants": self.participants,
        }


@dataclass(frozen=True)
class AddParticipantRequest:
    """Parameters for adding a member or guest to a session."""

    participant_type: ParticipantType
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    use_guest_pass: bool = False
    defer_fee_recalc: bool = False


@dataclass(frozen=True)
class RosterOperation:
    """One step of a batch: ``add`` with *request*, or ``remove`` with *participant_id*."""

    action: str
    request: Optional[AddParticipantRequest] = None
    participant_id: Optional[int] = None


@dataclass
class RosterMutationResult:
    new_roster_version: RosterVersion
    session_id: int
    participant_ids: List[int] = field(default_factory=list)
    fee_breakdown: Optional[FeeBreakdown] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "new_roster_version": int(self.new_roster_version),
            "session_id": self.session_id,
            "participant_ids": list(self.participant_ids),
            "fees": self.fee_breakdown.to_dict() if self.fee_breakdown else None,
        }


class RosterGuard:
    """Applies roster edits under a version check and recomputes fees."""

    def __init__(
        self,
        db: ClubDB,
        fees: FeeBreakdownComputer,
        allocator: GuestPassAllocator,
        directory: MemberDirectory,
        catalog: TierCatalog,
        *,
        events: Optional[EventBus] = None,
    ) -> None:
        self._db = db
        self._fees = fees
        self._allocator = allocator
        self._directory = directory
        self._catalog = catalog
        self._events = events

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _session_for(self, booking_id: int) -> Dict[str, Any]:
        if self._db.get_booking(booking_id) is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        session = self._db.get_session_by_booking(booking_id)
        if session is None:
            raise NotFoundError("Booking does not have an active session")
        return session

    def get_participants(self, booking_id: int) -> RosterView:
        session = self._session_for(booking_id)
        return RosterView(
            booking_id=booking_id,
            session_id=int(session["id"]),
            roster_version=RosterVersion(int(session["roster_version"] or 0)),
            participants=self._db.list_participants(session["id"]),
        )

    # ------------------------------------------------------------------
    # Locked helpers (caller holds the transaction)
    # ------------------------------------------------------------------

    def _lock_and_check(
        self, booking_id: int, client_version: Optional[RosterVersion]
    ) -> tuple[Dict[str, Any], RosterVersion]:
        session = self._session_for(booking_id)
        current = RosterVersion(int(session["roster_version"] or 0))
        if client_version is not None and client_version != current:
            logger.info(
                "Roster conflict on booking %s: client v%s, server v%s",
                booking_id, client_version, current,
            )
            raise RosterConflictError(current)
        return session, current

    def _bump_version(
        self, conn: sqlite3.Connection, session_id: int, current: RosterVersion
    ) -> RosterVersion:
        new_version = current.next()
        cur = conn.execute(
            "UPDATE booking_sessions SET roster_version = ?, updated_at = ? "
            "WHERE id = ? AND roster_version = ?",
            (new_version.value, time.time(), session_id, current.value),
        )
        if cur.rowcount != 1:
            # Only reachable if a writer bypassed the transaction lock.
            row = conn.execute(
                "SELECT roster_version FROM booking_sessions WHERE id = ?", (session_id,)
            ).fetchone()
            raise RosterConflictError(RosterVersion(int(row["roster_version"] or 0)))
        return new_version

    def _add_locked(
        self,
        conn: sqlite3.Connection,
        session: Dict[str, Any],
        request: AddParticipantRequest,
    ) -> int:
        session_id = int(session["id"])
        host_email = session["host_email"]

        if request.participant_type is ParticipantType.OWNER:
            raise InvalidInputError("A session has exactly one owner; add a member or guest")

        if request.participant_type is ParticipantType.MEMBER:
            if not request.user_id:
                raise InvalidInputError("user_id is required to add a member")
            member = self._directory.by_id(request.user_id)
            if member is None:
                raise NotFoundError(f"Member {request.user_id} not found")
            duplicate = conn.execute(
                "SELECT 1 FROM booking_participants WHERE session_id = ? AND user_id = ?",
                (session_id, member.id),
            ).fetchone()
            if duplicate is not None:
                raise InvalidInputError(f"{member.email} is already on this booking")
            return self._db.insert_participant(
                session_id,
                ParticipantType.MEMBER.value,
                user_id=member.id,
                email=member.email,
                display_name=member.display_name or member.email,
                conn=conn,
            )

        if not request.guest_name:
            raise InvalidInputError("guest_name is required to add a guest")
        host = self._directory.by_email(host_email)
        existing = self._db.list_participants(session_id)
        rule = enforce_social_tier_rules(
            self._catalog,
            host.tier if host else None,
            existing + [{"participant_type": ParticipantType.GUEST.value}],
        )
        if not rule.allowed:
            raise InvalidInputError(rule.reason or "Guests are not allowed on this booking")

        if request.use_guest_pass:
            self._allocator.consume(host_email, 1)
        return self._db.insert_participant(
            session_id,
            ParticipantType.GUEST.value,
            email=request.guest_email,
            display_name=request.guest_name,
            used_guest_pass=request.use_guest_pass,
            conn=conn,
        )

    def _remove_locked(
        self,
        conn: sqlite3.Connection,
        session: Dict[str, Any],
        participant_id: int,
    ) -> None:
        row = conn.execute(
            "SELECT * FROM booking_participants WHERE id = ? AND session_id = ?",
            (participant_id, session["id"]),
        ).fetchone()
        if row is None:
            raise NotFoundError("Participant not found")
        if row["participant_type"] == ParticipantType.OWNER.value:
            raise InvalidInputError("The booking owner cannot be removed")
        if row["participant_type"] == ParticipantType.GUEST.value and row["used_guest_pass"]:
            self._allocator.refund(session["host_email"], 1)
        conn.execute("DELETE FROM booking_participants WHERE id = ?", (participant_id,))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _finish(
        self,
        booking_id: int,
        session_id: int,
        new_version: RosterVersion,
        participant_ids: List[int],
        action: str,
        defer_fee_recalc: bool,
    ) -> RosterMutationResult:
        result = RosterMutationResult(
            new_roster_version=new_version,
            session_id=session_id,
            participant_ids=participant_ids,
        )
        if not defer_fee_recalc:
            result.fee_breakdown = self._fees.recalculate_session_fees(
                session_id, source=f"roster_{action}"
            )
        logger.info("Roster %s on booking %s -> v%s", action, booking_id, new_version)
        if self._events is not None:
            self._events.publish(
                EventType.ROSTER_CHANGED,
                {
                    "booking_id": booking_id,
                    "session_id": session_id,
                    "action": action,
                    "roster_version": new_version.value,
                    "participant_ids": participant_ids,
                },
                source="roster",
            )
        return result

    def add_participant(
        self,
        booking_id: int,
        request: AddParticipantRequest,
        *,
        client_version: Optional[RosterVersion] = None,
    ) -> RosterMutationResult:
        """Add a member or guest.

        Raises:
            RosterConflictError: If *client_version* is stale.
            NotFoundError: If the booking, session, or member is missing.
            InsufficientPassesError: If ``use_guest_pass`` and none remain.
        """
        with self._db.transaction() as conn:
            session, current = self._lock_and_check(booking_id, client_version)
            participant_id = self._add_locked(conn, session, request)
            new_version = self._bump_version(conn, session["id"], current)
        return self._finish(
            booking_id, int(session["id"]), new_version, [participant_id], "add",
            request.defer_fee_recalc,
        )

    def remove_participant(
        self,
        booking_id: int,
        participant_id: int,
        *,
        client_version: Optional[RosterVersion] = None,
        defer_fee_recalc: bool = False,
    ) -> RosterMutationResult:
        """Remove a non-owner participant, refunding a guest pass it used."""
        with self._db.transaction() as conn:
            session, current = self._lock_and_check(booking_id, client_version)
            self._remove_locked(conn, session, participant_id)
            new_version = self._bump_version(conn, session["id"], current)
        return self._finish(
            booking_id, int(session["id"]), new_version, [participant_id], "remove",
            defer_fee_recalc,
        )

    def apply_batch(
        self,
        booking_id: int,
        operations: Sequence[RosterOperation],
        *,
        client_version: Optional[RosterVersion],
    ) -> RosterMutationResult:
        """Apply up to 20 adds/removes atomically under one version bump.

        Unlike single mutations, a batch always requires *client_version*.
        """
        if client_version is None:
            raise InvalidInputError("roster_version is required for batch updates")
        if not 1 <= len(operations) <= MAX_BATCH_OPERATIONS:
            raise InvalidInputError(
                f"A batch must contain 1-{MAX_BATCH_OPERATIONS} operations, got {len(operations)}"
            )

        touched: List[int] = []
        with self._db.transaction() as conn:
            session, current = self._lock_and_check(booking_id, client_version)
            for op in operations:
                if op.action == "add" and op.request is not None:
                    touched.append(self._add_locked(conn, session, op.request))
                elif op.action == "remove" and op.participant_id is not None:
                    self._remove_locked(conn, session, op.participant_id)
                    touched.append(op.participant_id)
                else:
                    raise InvalidInputError(f"Malformed roster operation: {op!r}")
            new_version = self._bump_version(conn, session["id"], current)
        return self._finish(booking_id, int(session["id"]), new_version, touched, "batch", False)
