"""Overage pricing and time allocation.

Pure functions only: nothing here touches storage.  All money is integer
cents.  Overage is billed in whole blocks, so 31 minutes over the daily
allowance costs two blocks.

Example::

    calculate_overage_fee(90, 60)
    # OverageResult(has_overage=True, overage_minutes=30, overage_cents=2500)

    incremental_overage_cents(prior_minutes=60, added_minutes=30, allowance=60)
    # 2500
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Optional

from clubledger.errors import InvalidInputError
from clubledger.tiers import UNLIMITED_MINUTES

OVERAGE_BLOCK_MINUTES = 30
OVERAGE_RATE_CENTS = 2500
GUEST_FEE_CENTS = 2500


@dataclass(frozen=True)
class OverageResult:
    """Outcome of an overage calculation."""

    has_overage: bool
    overage_minutes: int
    overage_cents: int

    @property
    def overage_dollars(self) -> float:
        return self.overage_cents / 100.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["overage_dollars"] = self.overage_dollars
        return data


_NO_OVERAGE = OverageResult(has_overage=False, overage_minutes=0, overage_cents=0)


def calculate_overage_fee(
    minutes_used: int,
    tier_allowance: int,
    *,
    rate_cents: int = OVERAGE_RATE_CENTS,
    block_minutes: int = OVERAGE_BLOCK_MINUTES,
) -> OverageResult:
    """Price the minutes used beyond *tier_allowance*.

    An allowance at or above the unlimited sentinel never produces overage.
    """
    if tier_allowance >= UNLIMITED_MINUTES or minutes_used <= tier_allowance:
        return _NO_OVERAGE
    overage_minutes = minutes_used - tier_allowance
    blocks = math.ceil(overage_minutes / block_minutes)
    return OverageResult(
        has_overage=True,
        overage_minutes=overage_minutes,
        overage_cents=blocks * rate_cents,
    )


def incremental_overage_cents(
    prior_minutes: int,
    added_minutes: int,
    allowance: int,
    *,
    rate_cents: int = OVERAGE_RATE_CENTS,
    block_minutes: int = OVERAGE_BLOCK_MINUTES,
) -> int:
    """Overage attributable to *added_minutes* on top of *prior_minutes*.

    Computing ``overage(after) - overage(before)`` keeps a block that was
    already billed by an earlier booking from being charged again.
    """
    before = calculate_overage_fee(
        prior_minutes, allowance, rate_cents=rate_cents, block_minutes=block_minutes
    )
    after = calculate_overage_fee(
        prior_minutes + added_minutes,
        allowance,
        rate_cents=rate_cents,
        block_minutes=block_minutes,
    )
    return after.overage_cents - before.overage_cents


def effective_player_count(declared: Optional[int], actual: int) -> int:
    """Divisor for time sharing: the larger of declared and actual players."""
    declared_count = declared if declared and declared > 0 else 1
    return max(declared_count, actual, 1)


def allocate_minutes(
    duration: int,
    participant_count: int,
    *,
    declared_slots: Optional[int] = None,
    owner_index: Optional[int] = None,
) -> list[int]:
    """Split *duration* across participants so the shares sum exactly.

    The session is divided into ``max(participant_count, declared_slots)``
    equal slots of ``duration // slots`` minutes; the first
    ``duration % slots`` slots get one extra minute.  Participants take
    slots in list order and any slot left unfilled (declared players who
    never joined) goes to the owner, or to the first participant when
    there is no owner.
    """
    if duration < 0:
        raise InvalidInputError(f"Session duration must be non-negative, got {duration}")
    if participant_count < 1:
        raise InvalidInputError("Cannot allocate minutes without participants")

    slots = max(participant_count, declared_slots or 0, 1)
    base, remainder = divmod(duration, slots)
    slot_minutes = [base + 1 if i < remainder else base for i in range(slots)]

    shares = slot_minutes[:participant_count]
    unfilled = sum(slot_minutes[participant_count:])
    if unfilled:
        target = owner_index if owner_index is not None else 0
        shares[target] += unfilled
    return shares
