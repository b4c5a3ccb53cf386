"""Membership tier catalog.

Each tier grants a daily simulator allowance (999 means unlimited) and a
monthly guest-pass allowance.  The catalog is read-only at runtime; the
built-in defaults can be overridden per tier from the ``tiers`` section
of the config file.

Example::

    catalog = TierCatalog.from_settings(load_settings())
    premium = catalog.require("Premium Membership")
    remaining_minutes(premium, booked_today=45)   # -> 45
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Iterable, Mapping, Optional

from clubledger.errors import NotFoundError

logger = logging.getLogger(__name__)

# Allowance sentinel meaning "no daily cap".
UNLIMITED_MINUTES = 999

SOCIAL_TIER = "social"

_MEMBERSHIP_SUFFIX = " membership"


@dataclass(frozen=True)
class TierLimits:
    """Immutable limits for one membership tier."""

    name: str
    daily_sim_minutes: int
    guest_passes_per_month: int
    unlimited_access: bool = False
    can_book_simulators: bool = True
    has_simulator_guest_passes: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.unlimited_access or self.daily_sim_minutes >= UNLIMITED_MINUTES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_DEFAULT_TIERS: tuple[TierLimits, ...] = (
    TierLimits("Social", 0, 0, can_book_simulators=False),
    TierLimits("Core", 60, 4),
    TierLimits("Premium", 90, 8, has_simulator_guest_passes=True),
    TierLimits("Corporate", 90, 8, has_simulator_guest_passes=True),
    TierLimits("VIP", 999, 999, unlimited_access=True, has_simulator_guest_passes=True),
    TierLimits("Staff", 999, 999, unlimited_access=True, has_simulator_guest_passes=True),
    TierLimits("Group Lessons", 0, 0, can_book_simulators=False),
)


def normalize_tier_name(name: Optional[str]) -> str:
    """Return the lookup key for a tier name.

    Strips whitespace and a trailing ``" Membership"`` and lowercases, so
    ``"Premium Membership"`` and ``" premium "`` resolve to the same tier.
    """
    if not name:
        return ""
    key = name.strip().lower()
    if key.endswith(_MEMBERSHIP_SUFFIX):
        key = key[: -len(_MEMBERSHIP_SUFFIX)].strip()
    return key


class TierCatalog:
    """Lookup of :class:`TierLimits` by (normalised) tier name."""

    def __init__(self, tiers: Iterable[TierLimits] = _DEFAULT_TIERS) -> None:
        self._tiers: dict[str, TierLimits] = {
            normalize_tier_name(t.name): t for t in tiers
        }

    @classmethod
    def from_settings(cls, settings: Any) -> "TierCatalog":
        """Build the default catalog with ``settings.tiers`` overrides applied."""
        return cls.with_overrides(getattr(settings, "tiers", {}) or {})

    @classmethod
    def with_overrides(
        cls, overrides: Mapping[str, Mapping[str, Any]]
    ) -> "TierCatalog":
        """Merge per-tier overrides over the built-in defaults.

        Unknown tier names add a new tier; unknown fields are ignored with
        a warning.
        """
        catalog = cls()
        allowed = {f.name for f in fields(TierLimits)} - {"name"}
        for tier_name, values in overrides.items():
            key = normalize_tier_name(tier_name)
            clean = {k: v for k, v in values.items() if k in allowed}
            for bad in sorted(set(values) - allowed):
                logger.warning("Ignoring unknown tier field %r for %s", bad, tier_name)
            base = catalog._tiers.get(key)
            if base is None:
                base = TierLimits(name=str(tier_name).strip(), daily_sim_minutes=0, guest_passes_per_month=0)
            catalog._tiers[key] = replace(base, **clean)
        return catalog

    def get(self, name: Optional[str]) -> Optional[TierLimits]:
        return self._tiers.get(normalize_tier_name(name))

    def require(self, name: Optional[str]) -> TierLimits:
        tier = self.get(name)
        if tier is None:
            raise NotFoundError(f"Unknown membership tier: {name!r}")
        return tier

    def names(self) -> list[str]:
        return [t.name for t in self._tiers.values()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_tier_name(name) in self._tiers


def remaining_minutes(tier: TierLimits, booked_today: int) -> int:
    """Minutes left in today's allowance (999 for unlimited tiers)."""
    if tier.is_unlimited:
        return UNLIMITED_MINUTES
    return max(0, tier.daily_sim_minutes - booked_today)


@dataclass(frozen=True)
class TierRuleResult:
    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def enforce_social_tier_rules(
    catalog: TierCatalog,
    owner_tier: Optional[str],
    participants: Iterable[Any],
) -> TierRuleResult:
    """Reject guests on bookings owned by a Social member with no passes.

    *participants* may be :class:`~clubledger.fees.ParticipantInput`
    objects or plain dicts with a ``type``/``participant_type`` key.
    Lookup failures are logged and treated as allowed so a catalog
    problem never blocks a booking.
    """
    if normalize_tier_name(owner_tier) != SOCIAL_TIER:
        return TierRuleResult(allowed=True)
    try:
        tier = catalog.get(owner_tier)
        if tier is None or tier.guest_passes_per_month != 0:
            return TierRuleResult(allowed=True)
        has_guest = any(_participant_type(p) == "guest" for p in participants)
    except Exception:
        logger.exception("Social tier rule check failed for tier %r", owner_tier)
        return TierRuleResult(allowed=True)

    if has_guest:
        return TierRuleResult(
            allowed=False,
            reason=(
                "Social tier members cannot bring guests to simulator bookings. "
                "Your membership includes 0 guest passes per month."
            ),
        )
    return TierRuleResult(allowed=True)


def _participant_type(participant: Any) -> str:
    if isinstance(participant, Mapping):
        value = participant.get("participant_type", participant.get("type"))
    else:
        value = getattr(participant, "participant_type", None)
    return str(getattr(value, "value", value) or "")
