"""Usage ledger reader.

Answers "how many simulator minutes has this member already used today?"
When a session is being recomputed its own ledger rows are excluded, so
the session does not count against itself.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from clubledger.members import normalize_email
from clubledger.persistence import ClubDB
from clubledger.tiers import TierLimits, remaining_minutes

logger = logging.getLogger(__name__)


class UsageLedgerReader:
    """Reads and records per-member daily minute usage."""

    def __init__(self, db: ClubDB) -> None:
        self._db = db

    def daily_usage(
        self,
        member_email: str,
        session_date: str,
        *,
        exclude_session_id: Optional[int] = None,
    ) -> int:
        """Minutes charged to *member_email* on *session_date*."""
        sql = (
            "SELECT COALESCE(SUM(minutes_charged), 0) AS total FROM usage_ledger "
            "WHERE member_email = ? AND session_date = ?"
        )
        params: list = [normalize_email(member_email), session_date]
        if exclude_session_id is not None:
            sql += " AND session_id != ?"
            params.append(exclude_session_id)
        row = self._db.fetch_one(sql, params)
        return int(row["total"]) if row else 0

    def record_usage(
        self,
        session_id: int,
        member_email: str,
        minutes: int,
        session_date: str,
    ) -> None:
        """Record (or replace) the minutes a session charged to a member."""
        self._db.execute(
            """
            INSERT INTO usage_ledger (session_id, member_email, session_date, minutes_charged, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id, member_email) DO UPDATE SET
                minutes_charged = excluded.minutes_charged,
                session_date = excluded.session_date,
                recorded_at = excluded.recorded_at
            """,
            (session_id, normalize_email(member_email), session_date, minutes, time.time()),
        )
        logger.debug("Recorded %d min for %s on %s (session %s)", minutes, member_email, session_date, session_id)

    def remaining_minutes(
        self,
        member_email: str,
        session_date: str,
        tier: TierLimits,
    ) -> int:
        return remaining_minutes(tier, self.daily_usage(member_email, session_date))
