"""Member directory: resolves emails and ids to members and tiers.

Lookups go through an injected :class:`~clubledger.member_cache.MemberCache`
and fall back to the ``members`` table, including linked (secondary)
emails.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from clubledger.member_cache import MemberCache
from clubledger.persistence import ClubDB
from clubledger.tiers import TierCatalog, TierLimits

logger = logging.getLogger(__name__)

# Roles that never pay booking fees.
EXEMPT_ROLES = frozenset({"staff", "admin", "golf_instructor"})

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    return bool(_EMAIL_RE.match(normalize_email(email)))


@dataclass(frozen=True)
class Member:
    id: str
    email: str
    display_name: str = ""
    tier: Optional[str] = None
    role: str = "member"
    linked_emails: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Member":
        return cls(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name") or "",
            tier=row.get("tier"),
            role=row.get("role") or "member",
            linked_emails=tuple(row.get("linked_emails") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["linked_emails"] = list(self.linked_emails)
        return data


class MemberDirectory:
    """Cached member lookups.

    :param db: Ledger database.
    :param catalog: Tier catalog used by :meth:`tier_for`.
    :param cache: Member cache; a private one is created if omitted.
    """

    def __init__(
        self,
        db: ClubDB,
        catalog: TierCatalog,
        cache: Optional[MemberCache] = None,
    ) -> None:
        self._db = db
        self._catalog = catalog
        self._cache = cache if cache is not None else MemberCache()

    @property
    def cache(self) -> MemberCache:
        return self._cache

    def by_email(self, email: Optional[str]) -> Optional[Member]:
        key = normalize_email(email)
        if not key:
            return None
        cached = self._cache.get_by_email(key)
        if cached is not None:
            return Member.from_row(cached)
        row = self._db.get_member_by_email(key) or self._db.find_member_by_linked_email(key)
        if row is None:
            return None
        self._cache.set(row)
        return Member.from_row(row)

    def by_id(self, member_id: Optional[str]) -> Optional[Member]:
        if not member_id:
            return None
        cached = self._cache.get_by_id(member_id)
        if cached is not None:
            return Member.from_row(cached)
        row = self._db.get_member_by_id(member_id)
        if row is None:
            return None
        self._cache.set(row)
        return Member.from_row(row)

    def resolve(
        self, *, user_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Member]:
        """Find a member by id first, then by email."""
        return self.by_id(user_id) or self.by_email(email)

    def tier_for(
        self, *, user_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[TierLimits]:
        member = self.resolve(user_id=user_id, email=email)
        if member is None or not member.tier:
            return None
        tier = self._catalog.get(member.tier)
        if tier is None:
            logger.warning("Member %s has unknown tier %r", member.email, member.tier)
        return tier

    def is_fee_exempt(self, email: Optional[str]) -> bool:
        """Staff roles and unlimited tiers are never asked to prepay."""
        member = self.by_email(email)
        if member is None:
            return False
        if member.role in EXEMPT_ROLES:
            return True
        tier = self._catalog.get(member.tier)
        return bool(tier and tier.is_unlimited)

    def invalidate(self, email_or_id: str) -> None:
        self._cache.invalidate(email_or_id)
