"""Shared fixtures for the clubledger test suite.

Provides a temporary ledger database seeded with one member per tier,
the wired ledger components on top of it, a controllable wall clock, and
a mock ``stripe`` module whose exception classes are real so ``except``
clauses behave as they do against the SDK.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from clubledger.events import EventBus
from clubledger.fees import FeeBreakdownComputer
from clubledger.guest_passes import GuestPassAllocator
from clubledger.member_cache import MemberCache
from clubledger.members import MemberDirectory
from clubledger.payments.status_ledger import PaymentStatusLedger
from clubledger.persistence import ClubDB
from clubledger.roster import RosterGuard
from clubledger.tiers import TierCatalog
from clubledger.usage import UsageLedgerReader

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# 2026-03-14 00:00:00 UTC
NOW = 1773446400.0
SESSION_DATE = "2026-03-14"

CORE_EMAIL = "cora@club.test"
CORE2_EMAIL = "colin@club.test"
PREMIUM_EMAIL = "pat@club.test"
SOCIAL_EMAIL = "sol@club.test"
VIP_EMAIL = "vera@club.test"
STAFF_EMAIL = "sam.staff@club.test"
NO_TIER_EMAIL = "nina@club.test"

MEMBERS: List[Dict[str, Any]] = [
    {"member_id": "m-core", "email": CORE_EMAIL, "display_name": "Cora Core", "tier": "Core"},
    {"member_id": "m-core2", "email": CORE2_EMAIL, "display_name": "Colin Core", "tier": "Core Membership"},
    {"member_id": "m-premium", "email": PREMIUM_EMAIL, "display_name": "Pat Premium", "tier": "Premium"},
    {"member_id": "m-social", "email": SOCIAL_EMAIL, "display_name": "Sol Social", "tier": "Social"},
    {"member_id": "m-vip", "email": VIP_EMAIL, "display_name": "Vera VIP", "tier": "VIP"},
    {"member_id": "m-staff", "email": STAFF_EMAIL, "display_name": "Sam Staff", "tier": "Core", "role": "staff"},
    {"member_id": "m-none", "email": NO_TIER_EMAIL, "display_name": "Nina", "tier": None},
]


class FakeClock:
    """Settable wall clock for time-dependent components."""

    def __init__(self, start: float = NOW) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_mock_stripe() -> MagicMock:
    """Return a mock ``stripe`` module with the expected sub-objects."""
    mock = MagicMock()

    # stripe.error namespace: real exception classes so except clauses work
    StripeError = type("StripeError", (Exception,), {"code": None})
    InvalidRequestError = type("InvalidRequestError", (StripeError,), {})
    SignatureVerificationError = type("SignatureVerificationError", (StripeError,), {})
    mock.error.StripeError = StripeError
    mock.error.InvalidRequestError = InvalidRequestError
    mock.error.SignatureVerificationError = SignatureVerificationError

    return mock


def stripe_error(mock_stripe: MagicMock, code: Optional[str], message: str = "boom") -> Exception:
    """Build an ``InvalidRequestError`` carrying a Stripe error *code*."""
    exc = mock_stripe.error.InvalidRequestError(message)
    exc.code = code
    return exc


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db(tmp_path):
    """Return a ClubDB backed by a temporary file, seeded with members."""
    instance = ClubDB(db_path=str(tmp_path / "ledger.db"))
    for member in MEMBERS:
        data = dict(member)
        instance.save_member(data.pop("member_id"), data.pop("email"), **data)
    yield instance
    instance.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def events():
    return EventBus()


@pytest.fixture()
def catalog():
    return TierCatalog()


@pytest.fixture()
def directory(db, catalog):
    return MemberDirectory(db, catalog, MemberCache())


@pytest.fixture()
def usage(db):
    return UsageLedgerReader(db)


@pytest.fixture()
def allocator(db, directory, clock):
    return GuestPassAllocator(db, directory, clock=clock)


@pytest.fixture()
def computer(db, directory, usage, allocator, events):
    return FeeBreakdownComputer(db, directory, usage, allocator, events=events)


@pytest.fixture()
def ledger(db, events):
    return PaymentStatusLedger(db, events=events)


@pytest.fixture()
def guard(db, computer, allocator, directory, catalog, events):
    return RosterGuard(db, computer, allocator, directory, catalog, events=events)


@pytest.fixture()
def make_session(db):
    """Factory: create a booking and session with its owner participant.

    Returns ``(booking_id, session_id, owner_participant_id)``.
    """

    def _make(
        host_email: str = CORE_EMAIL,
        *,
        duration: int = 60,
        declared: int = 1,
        session_date: str = SESSION_DATE,
        status: str = "approved",
    ) -> tuple[int, int, int]:
        booking_id = db.create_booking(host_email, status=status, request_date=session_date)
        session_id = db.create_session(
            booking_id,
            session_date=session_date,
            duration_minutes=duration,
            host_email=host_email,
            declared_player_count=declared,
        )
        member = db.get_member_by_email(host_email)
        owner_id = db.insert_participant(
            session_id,
            "owner",
            user_id=member["id"] if member else None,
            email=host_email,
            display_name=member["display_name"] if member else host_email,
        )
        return booking_id, session_id, owner_id

    return _make


@pytest.fixture()
def mock_stripe():
    return build_mock_stripe()
