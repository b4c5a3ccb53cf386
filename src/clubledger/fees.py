"""Fee breakdown computer.

Turns a booking session into a per-participant invoice: overage for the
owner and members who exceed their tier's daily allowance, flat fees for
guests not covered by a guest pass.

A breakdown can be computed for a stored session (by ``session_id`` or
``booking_id``) or for a preview payload that has not been saved yet.
Both are normalised into :class:`SessionInputs` and priced by the same
code, so a preview and the persisted session it becomes produce the same
numbers.

Example::

    computer = FeeBreakdownComputer(db, directory, usage, allocator)
    preview = computer.compute(FeeRequest(
        session_date="2026-03-14",
        session_duration=90,
        host_email="ana@club.test",
        participants=[ParticipantInput(ParticipantType.OWNER, email="ana@club.test")],
    ))
    preview.totals.total_cents   # 2500 for a Core member with no prior usage

    computer.recalculate_session_fees(session_id, source="roster_update")
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from clubledger.errors import InvalidInputError, NotFoundError
from clubledger.events import EventBus, EventType
from clubledger.guest_passes import GuestPassAllocator
from clubledger.members import MemberDirectory, normalize_email
from clubledger.persistence import ClubDB
from clubledger.pricing import (
    GUEST_FEE_CENTS,
    OVERAGE_BLOCK_MINUTES,
    OVERAGE_RATE_CENTS,
    allocate_minutes,
    effective_player_count,
    incremental_overage_cents,
)
from clubledger.tiers import UNLIMITED_MINUTES, TierLimits
from clubledger.usage import UsageLedgerReader

logger = logging.getLogger(__name__)


class ParticipantType(str, enum.Enum):
    """Closed set of roles a participant can have in a session."""

    OWNER = "owner"
    MEMBER = "member"
    GUEST = "guest"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParticipantInput:
    """One participant as seen by the pricing code."""

    participant_type: ParticipantType
    participant_id: Optional[int] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    display_name: str = ""
    used_guest_pass: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ParticipantInput":
        return cls(
            participant_type=ParticipantType(row["participant_type"]),
            participant_id=row.get("id"),
            user_id=row.get("user_id"),
            email=row.get("email"),
            display_name=row.get("display_name") or "",
            used_guest_pass=bool(row.get("used_guest_pass")),
        )

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ParticipantInput":
        raw_type = data.get("participant_type", data.get("type"))
        try:
            ptype = ParticipantType(raw_type)
        except ValueError as exc:
            raise InvalidInputError(f"Unknown participant type: {raw_type!r}") from exc
        return cls(
            participant_type=ptype,
            participant_id=data.get("participant_id", data.get("id")),
            user_id=data.get("user_id"),
            email=data.get("email"),
            display_name=data.get("display_name", data.get("name")) or "",
            used_guest_pass=bool(data.get("used_guest_pass", False)),
        )


@dataclass(frozen=True)
class FeeRequest:
    """What to price: a stored session reference or a preview payload."""

    session_id: Optional[int] = None
    booking_id: Optional[int] = None
    session_date: Optional[str] = None
    session_duration: Optional[int] = None
    host_email: Optional[str] = None
    participants: Optional[Sequence[ParticipantInput]] = None
    declared_player_count: Optional[int] = None
    exclude_session_from_usage: bool = False
    source: str = "preview"

    @property
    def is_reference(self) -> bool:
        return self.session_id is not None or self.booking_id is not None


@dataclass(frozen=True)
class SessionInputs:
    """Normalised pricing inputs, identical for preview and stored sessions."""

    session_date: str
    duration_minutes: int
    host_email: str
    declared_player_count: int
    participants: tuple[ParticipantInput, ...]
    session_id: Optional[int] = None
    booking_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


@dataclass
class FeeLineItem:
    """Computed charge for one participant.

    ``minutes_allocated`` is this participant's share of the session and
    the shares always sum to the session duration.  ``billable_minutes``
    is what counts against the daily allowance: the owner is billed for
    the whole session, everyone else for the even split.
    """

    participant_type: ParticipantType
    participant_id: Optional[int] = None
    display_name: str = ""
    minutes_allocated: int = 0
    billable_minutes: int = 0
    overage_cents: int = 0
    guest_cents: int = 0
    guest_pass_used: bool = False
    tier_name: Optional[str] = None
    daily_allowance: Optional[int] = None
    used_minutes_today: int = 0

    @property
    def total_cents(self) -> int:
        return self.overage_cents + self.guest_cents

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["participant_type"] = self.participant_type.value
        data["total_cents"] = self.total_cents
        return data


@dataclass
class FeeTotals:
    total_cents: int = 0
    overage_cents: int = 0
    guest_cents: int = 0
    guest_passes_used: int = 0
    guest_passes_available: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeeBreakdown:
    line_items: List[FeeLineItem]
    totals: FeeTotals
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totals": self.totals.to_dict(),
            "participants": [item.to_dict() for item in self.line_items],
            "metadata": dict(self.metadata),
        }

    def snapshot_fees(self) -> List[Dict[str, Any]]:
        """Line items in the shape stored on a fee snapshot."""
        return [
            {
                "id": item.participant_id,
                "display_name": item.display_name,
                "amount_cents": item.total_cents,
            }
            for item in self.line_items
        ]


@dataclass
class _PricingContext:
    """Mutable state threaded through one breakdown computation."""

    inputs: SessionInputs
    host_tier: Optional[TierLimits]
    has_guest_pass_benefit: bool
    guest_passes_remaining: int
    per_participant_minutes: int
    exclude_session_id: Optional[int]
    guest_passes_used: int = 0


# ---------------------------------------------------------------------------
# Computer
# ---------------------------------------------------------------------------


class FeeBreakdownComputer:
    """Prices sessions and writes cached fees onto participants.

    :param db: Ledger database.
    :param directory: Resolves emails and user ids to members and tiers.
    :param usage: Daily usage reader.
    :param allocator: Guest-pass allocator, read for host availability.
    :param events: Optional bus notified after a recalculation.
    """

    def __init__(
        self,
        db: ClubDB,
        directory: MemberDirectory,
        usage: UsageLedgerReader,
        allocator: GuestPassAllocator,
        *,
        events: Optional[EventBus] = None,
        overage_rate_cents: int = OVERAGE_RATE_CENTS,
        overage_block_minutes: int = OVERAGE_BLOCK_MINUTES,
        guest_fee_cents: int = GUEST_FEE_CENTS,
    ) -> None:
        self._db = db
        self._directory = directory
        self._usage = usage
        self._allocator = allocator
        self._events = events
        self._rate_cents = overage_rate_cents
        self._block_minutes = overage_block_minutes
        self._guest_fee_cents = guest_fee_cents

    # -- Input resolution ------------------------------------------------------

    def _load_inputs(self, request: FeeRequest) -> SessionInputs:
        if request.session_id is not None:
            session = self._db.get_session(request.session_id)
            if session is None:
                raise NotFoundError(f"Session {request.session_id} not found")
        else:
            session = self._db.get_session_by_booking(request.booking_id)
            if session is None:
                raise NotFoundError(f"No session found for booking {request.booking_id}")

        rows = self._db.list_participants(session["id"])
        return SessionInputs(
            session_date=session["session_date"],
            duration_minutes=int(session["duration_minutes"]),
            host_email=session["host_email"],
            declared_player_count=int(session["declared_player_count"] or 1),
            participants=tuple(ParticipantInput.from_row(r) for r in rows),
            session_id=int(session["id"]),
            booking_id=session["booking_id"],
        )

    @staticmethod
    def _preview_inputs(request: FeeRequest) -> SessionInputs:
        missing = [
            name
            for name in ("session_date", "session_duration", "host_email", "participants")
            if getattr(request, name) is None
        ]
        if missing:
            raise InvalidInputError(
                "Missing required fields for fee preview: " + ", ".join(missing)
            )
        if request.session_duration < 0:
            raise InvalidInputError(
                f"Session duration must be non-negative, got {request.session_duration}"
            )
        return SessionInputs(
            session_date=request.session_date,
            duration_minutes=int(request.session_duration),
            host_email=normalize_email(request.host_email),
            declared_player_count=int(request.declared_player_count or 1),
            participants=tuple(request.participants),
        )

    # -- Public API --------------------------------------------------------------

    def compute(self, request: FeeRequest) -> FeeBreakdown:
        """Compute the fee breakdown for a stored session or a preview.

        Raises:
            NotFoundError: If the referenced session or booking does not exist.
            InvalidInputError: If a preview is missing required fields.
        """
        if request.is_reference:
            inputs = self._load_inputs(request)
        else:
            inputs = self._preview_inputs(request)
        exclude = inputs.session_id if request.exclude_session_from_usage else None
        return self.compute_from_inputs(inputs, exclude_session_id=exclude, source=request.source)

    def compute_from_inputs(
        self,
        inputs: SessionInputs,
        *,
        exclude_session_id: Optional[int] = None,
        source: str = "preview",
    ) -> FeeBreakdown:
        participants = inputs.participants
        actual = len(participants)
        effective = effective_player_count(inputs.declared_player_count, actual)
        per_participant = inputs.duration_minutes // effective

        host_tier = self._directory.tier_for(email=inputs.host_email)
        has_benefit = bool(host_tier and host_tier.has_simulator_guest_passes)
        available = self._allocator.peek_balance(inputs.host_email).available

        ctx = _PricingContext(
            inputs=inputs,
            host_tier=host_tier,
            has_guest_pass_benefit=has_benefit,
            guest_passes_remaining=available,
            per_participant_minutes=per_participant,
            exclude_session_id=exclude_session_id,
        )

        shares: List[int] = []
        if participants:
            owner_index = next(
                (i for i, p in enumerate(participants) if p.participant_type is ParticipantType.OWNER),
                None,
            )
            shares = allocate_minutes(
                inputs.duration_minutes,
                actual,
                declared_slots=inputs.declared_player_count,
                owner_index=owner_index,
            )

        items: List[FeeLineItem] = []
        for participant, share in zip(participants, shares):
            item = FeeLineItem(
                participant_type=participant.participant_type,
                participant_id=participant.participant_id,
                display_name=participant.display_name,
                minutes_allocated=share,
            )
            handler = self._HANDLERS[participant.participant_type]
            handler(self, ctx, participant, item)
            items.append(item)

        totals = FeeTotals(
            overage_cents=sum(i.overage_cents for i in items),
            guest_cents=sum(i.guest_cents for i in items),
            guest_passes_used=ctx.guest_passes_used,
            guest_passes_available=available,
        )
        totals.total_cents = totals.overage_cents + totals.guest_cents

        return FeeBreakdown(
            line_items=items,
            totals=totals,
            metadata={
                "effective_player_count": effective,
                "declared_player_count": inputs.declared_player_count,
                "actual_player_count": actual,
                "session_duration": inputs.duration_minutes,
                "session_date": inputs.session_date,
                "source": source,
            },
        )

    # -- Per-type pricing --------------------------------------------------------

    def _overage_for(
        self,
        tier: Optional[TierLimits],
        usage_email: Optional[str],
        billable_minutes: int,
        ctx: _PricingContext,
        item: FeeLineItem,
    ) -> None:
        item.billable_minutes = billable_minutes
        if tier is None:
            logger.warning(
                "No tier for %s participant %s; billing every minute as overage",
                item.participant_type.value,
                item.participant_id or usage_email,
            )
            allowance = 0
        else:
            item.tier_name = tier.name
            allowance = tier.daily_sim_minutes
        item.daily_allowance = allowance
        if tier is not None and (tier.is_unlimited or allowance >= UNLIMITED_MINUTES):
            return
        prior = 0
        if usage_email:
            prior = self._usage.daily_usage(
                usage_email,
                ctx.inputs.session_date,
                exclude_session_id=ctx.exclude_session_id,
            )
        item.used_minutes_today = prior
        item.overage_cents = incremental_overage_cents(
            prior,
            billable_minutes,
            allowance,
            rate_cents=self._rate_cents,
            block_minutes=self._block_minutes,
        )

    def _price_owner(
        self, ctx: _PricingContext, participant: ParticipantInput, item: FeeLineItem
    ) -> None:
        owner = self._directory.resolve(user_id=participant.user_id, email=participant.email)
        if owner is not None and owner.tier:
            tier = self._directory.tier_for(user_id=owner.id)
            email = owner.email
        else:
            tier = ctx.host_tier
            email = participant.email or ctx.inputs.host_email
        self._overage_for(tier, email, ctx.inputs.duration_minutes, ctx, item)

    def _price_member(
        self, ctx: _PricingContext, participant: ParticipantInput, item: FeeLineItem
    ) -> None:
        member = self._directory.resolve(user_id=participant.user_id, email=participant.email)
        tier = self._directory.tier_for(user_id=member.id) if member else None
        email = member.email if member else participant.email
        self._overage_for(tier, email, ctx.per_participant_minutes, ctx, item)

    def _price_guest(
        self, ctx: _PricingContext, participant: ParticipantInput, item: FeeLineItem
    ) -> None:
        item.billable_minutes = ctx.per_participant_minutes
        if participant.used_guest_pass:
            # Pass was consumed when the guest was added; already out of the balance.
            item.guest_pass_used = True
            ctx.guest_passes_used += 1
        elif ctx.has_guest_pass_benefit and ctx.guest_passes_remaining > 0:
            item.guest_pass_used = True
            ctx.guest_passes_remaining -= 1
            ctx.guest_passes_used += 1
        else:
            item.guest_cents = self._guest_fee_cents

    _HANDLERS: Dict[
        ParticipantType,
        Callable[["FeeBreakdownComputer", _PricingContext, ParticipantInput, FeeLineItem], None],
    ] = {
        ParticipantType.OWNER: _price_owner,
        ParticipantType.MEMBER: _price_member,
        ParticipantType.GUEST: _price_guest,
    }

    # -- Persistence ---------------------------------------------------------------

    def apply_fee_breakdown_to_participants(
        self, session_id: int, breakdown: FeeBreakdown
    ) -> int:
        """Write each line item's total onto its participant, all or nothing.

        Returns the number of participant rows updated.
        """
        updated = 0
        with self._db.transaction() as conn:
            for item in breakdown.line_items:
                if item.participant_id is None:
                    continue
                cur = conn.execute(
                    "UPDATE booking_participants SET cached_fee_cents = ? WHERE id = ? AND session_id = ?",
                    (item.total_cents, item.participant_id, session_id),
                )
                updated += cur.rowcount
        logger.debug("Applied fees to %d participant(s) in session %s", updated, session_id)
        return updated

    def recalculate_session_fees(self, session_id: int, source: str = "recalculation") -> FeeBreakdown:
        """Recompute and persist fees after the session changed."""
        breakdown = self.compute(
            FeeRequest(session_id=session_id, exclude_session_from_usage=True, source=source)
        )
        self.apply_fee_breakdown_to_participants(session_id, breakdown)
        logger.info(
            "Recalculated fees for session %s (%s): total %d cents",
            session_id,
            source,
            breakdown.totals.total_cents,
        )
        if self._events is not None:
            self._events.publish(
                EventType.FEES_RECALCULATED,
                {"session_id": session_id, "source": source, **breakdown.totals.to_dict()},
                source="fees",
            )
        return breakdown

    def invalidate_cached_fees(self, participant_ids: Iterable[int], reason: str) -> int:
        """Zero the cached fees of *participant_ids*.

        Non-critical: the next recalculation rewrites these values, so a
        failure here is logged and reported as 0 rows.
        """
        ids = [int(pid) for pid in participant_ids]
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        try:
            count = self._db.execute(
                f"UPDATE booking_participants SET cached_fee_cents = 0 WHERE id IN ({placeholders})",
                ids,
            )
        except Exception:
            logger.exception("Failed to invalidate cached fees (%s) for %s", reason, ids)
            return 0
        logger.info("Invalidated cached fees for %d participant(s): %s", count, reason)
        return count


_unpriced = set(ParticipantType) - set(FeeBreakdownComputer._HANDLERS)
if _unpriced:
    raise RuntimeError(
        "No pricing handler for participant types: "
        + ", ".join(sorted(t.value for t in _unpriced))
    )
