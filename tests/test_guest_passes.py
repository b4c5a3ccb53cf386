"""Tests for clubledger.guest_passes -- monthly allowance, holds, and usage."""

from __future__ import annotations

import threading

import pytest

from clubledger.errors import InsufficientPassesError, InvalidInputError
from clubledger.guest_passes import GuestPassAllocator

from conftest import CORE_EMAIL, NO_TIER_EMAIL, PREMIUM_EMAIL, SOCIAL_EMAIL


def _used(db, email: str) -> int:
    row = db.fetch_one("SELECT passes_used FROM guest_passes WHERE member_email = ?", (email,))
    return row["passes_used"] if row else 0


class TestBalance:
    def test_new_member_gets_tier_allowance(self, allocator):
        balance = allocator.balance(PREMIUM_EMAIL)
        assert balance.allowance == 8
        assert balance.used == 0
        assert balance.available == 8

    def test_unknown_tier_gets_default(self, allocator):
        assert allocator.available(NO_TIER_EMAIL) == 4

    def test_social_gets_none(self, allocator):
        assert allocator.available(SOCIAL_EMAIL) == 0

    def test_email_is_normalised(self, allocator):
        allocator.consume(PREMIUM_EMAIL.upper(), 1)
        assert allocator.available(PREMIUM_EMAIL) == 7

    def test_month_rollover_resets_usage(self, db, allocator, clock):
        allocator.consume(PREMIUM_EMAIL, 3)
        clock.advance(31 * 86400)
        assert allocator.available(PREMIUM_EMAIL) == 8
        row = db.fetch_one("SELECT month FROM guest_passes WHERE member_email = ?", (PREMIUM_EMAIL,))
        assert row["month"] == "2026-04"

    def test_tier_upgrade_raises_allowance(self, db, allocator, directory):
        assert allocator.available(CORE_EMAIL) == 4
        db.save_member("m-core", CORE_EMAIL, display_name="Cora Core", tier="Premium")
        directory.invalidate(CORE_EMAIL)
        assert allocator.available(CORE_EMAIL) == 8

    def test_to_dict(self, allocator):
        data = allocator.balance(PREMIUM_EMAIL).to_dict()
        assert data["available"] == 8
        assert data["member_email"] == PREMIUM_EMAIL

    def test_peek_matches_balance_without_writing(self, db, allocator):
        assert allocator.peek_balance(PREMIUM_EMAIL).available == 8
        assert db.fetch_all("SELECT * FROM guest_passes") == []

        allocator.consume(PREMIUM_EMAIL, 3)
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=2)
        assert allocator.peek_balance(PREMIUM_EMAIL) == allocator.balance(PREMIUM_EMAIL)

    def test_peek_sees_month_rollover(self, db, allocator, clock):
        allocator.consume(PREMIUM_EMAIL, 3)
        clock.advance(31 * 86400)
        assert allocator.peek_balance(PREMIUM_EMAIL).used == 0
        row = db.fetch_one("SELECT month, passes_used FROM guest_passes WHERE member_email = ?", (PREMIUM_EMAIL,))
        assert (row["month"], row["passes_used"]) == ("2026-03", 3)


class TestConsumeAndRefund:
    def test_consume(self, db, allocator):
        balance = allocator.consume(PREMIUM_EMAIL, 2)
        assert balance.used == 2
        assert balance.available == 6
        assert _used(db, PREMIUM_EMAIL) == 2

    def test_consume_more_than_available(self, db, allocator):
        with pytest.raises(InsufficientPassesError) as exc_info:
            allocator.consume(CORE_EMAIL, 5)
        assert exc_info.value.available == 4
        assert exc_info.value.code == "INSUFFICIENT_PASSES"
        assert "Requested: 5, Available: 4" in exc_info.value.message
        assert _used(db, CORE_EMAIL) == 0

    def test_consume_rejects_non_positive(self, allocator):
        with pytest.raises(InvalidInputError):
            allocator.consume(CORE_EMAIL, 0)

    def test_refund_never_below_zero(self, db, allocator):
        allocator.consume(PREMIUM_EMAIL, 1)
        allocator.refund(PREMIUM_EMAIL, 3)
        assert _used(db, PREMIUM_EMAIL) == 0

    def test_reset_month(self, allocator):
        allocator.consume(PREMIUM_EMAIL, 5)
        allocator.reset_month(PREMIUM_EMAIL)
        assert allocator.available(PREMIUM_EMAIL) == 8

    def test_concurrent_consumers_cannot_overdraw(self, db, directory, clock):
        allocator = GuestPassAllocator(db, directory, clock=clock)
        results: list[str] = []
        lock = threading.Lock()

        def worker():
            try:
                allocator.consume(CORE_EMAIL, 1)
                outcome = "ok"
            except InsufficientPassesError:
                outcome = "denied"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 4
        assert results.count("denied") == 6
        assert _used(db, CORE_EMAIL) == 4


class TestHolds:
    def test_hold_reduces_available(self, allocator):
        result = allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=3)
        assert result.success is True
        assert result.passes_held == 3
        assert result.available == 5
        assert allocator.available(PREMIUM_EMAIL) == 5

    def test_zero_hold_is_noop(self, db, allocator):
        allocator.consume(PREMIUM_EMAIL, 3)
        result = allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=0)
        assert result.success is True
        assert result.passes_held == 0
        assert result.available == 5
        assert db.fetch_all("SELECT * FROM guest_pass_holds") == []

    def test_hold_beyond_available_rejected(self, db, allocator):
        allocator.create_hold(CORE_EMAIL, booking_id=1, passes_needed=3)
        with pytest.raises(InsufficientPassesError) as exc_info:
            allocator.create_hold(CORE_EMAIL, booking_id=2, passes_needed=2)
        assert exc_info.value.available == 1
        assert len(db.fetch_all("SELECT * FROM guest_pass_holds")) == 1

    def test_release_returns_passes(self, allocator):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=7, passes_needed=2)
        assert allocator.release_hold(7) == 2
        assert allocator.available(PREMIUM_EMAIL) == 8

    def test_release_without_holds(self, allocator):
        assert allocator.release_hold(999) == 0

    def test_convert_moves_hold_to_usage(self, db, allocator):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=7, passes_needed=2)
        assert allocator.convert_hold_to_usage(7, PREMIUM_EMAIL) == 2
        balance = allocator.balance(PREMIUM_EMAIL)
        assert balance.used == 2
        assert balance.held == 0
        assert balance.available == 6

    def test_convert_without_hold(self, allocator):
        assert allocator.convert_hold_to_usage(7, PREMIUM_EMAIL) == 0

    def test_conservation_across_lifecycle(self, allocator):
        """used + held + available always equals the allowance."""
        def check():
            b = allocator.balance(PREMIUM_EMAIL)
            assert b.used + b.held + b.available == b.allowance

        check()
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=2)
        check()
        allocator.create_hold(PREMIUM_EMAIL, booking_id=2, passes_needed=3)
        check()
        allocator.consume(PREMIUM_EMAIL, 1)
        check()
        allocator.convert_hold_to_usage(1, PREMIUM_EMAIL)
        check()
        allocator.release_hold(2)
        check()
        allocator.refund(PREMIUM_EMAIL, 1)
        check()

    def test_expired_hold_not_counted(self, allocator, clock):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=4)
        clock.advance(25 * 3600)
        assert allocator.available(PREMIUM_EMAIL) == 8

    def test_cleanup_expired_holds(self, db, allocator, clock):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=1)
        clock.advance(12 * 3600)
        allocator.create_hold(PREMIUM_EMAIL, booking_id=2, passes_needed=1)
        clock.advance(13 * 3600)
        assert allocator.cleanup_expired_holds() == 1
        remaining = db.fetch_all("SELECT booking_id FROM guest_pass_holds")
        assert [r["booking_id"] for r in remaining] == [2]

    def test_expired_hold_cannot_overdraw_on_conversion(self, db, allocator, clock):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=8)
        clock.advance(25 * 3600)
        allocator.create_hold(PREMIUM_EMAIL, booking_id=2, passes_needed=8)

        assert allocator.convert_hold_to_usage(1, PREMIUM_EMAIL) == 0
        balance = allocator.balance(PREMIUM_EMAIL)
        assert (balance.used, balance.held) == (0, 8)
        remaining = db.fetch_all("SELECT booking_id FROM guest_pass_holds")
        assert [r["booking_id"] for r in remaining] == [2]

    def test_expired_hold_converts_while_passes_are_free(self, allocator, clock):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=3)
        clock.advance(25 * 3600)
        assert allocator.convert_hold_to_usage(1, PREMIUM_EMAIL) == 3
        assert allocator.balance(PREMIUM_EMAIL).used == 3

    def test_expired_hold_converts_only_what_is_left(self, allocator, clock):
        allocator.create_hold(PREMIUM_EMAIL, booking_id=1, passes_needed=3)
        clock.advance(25 * 3600)
        allocator.create_hold(PREMIUM_EMAIL, booking_id=2, passes_needed=6)
        assert allocator.convert_hold_to_usage(1, PREMIUM_EMAIL) == 2
        balance = allocator.balance(PREMIUM_EMAIL)
        assert (balance.used, balance.held, balance.available) == (2, 6, 0)


def _apply(allocator, clock, step):
    action, *args = step
    if action == "hold":
        allocator.create_hold(PREMIUM_EMAIL, booking_id=args[0], passes_needed=args[1])
    elif action == "advance":
        clock.advance(args[0] * 3600)
    elif action == "convert":
        allocator.convert_hold_to_usage(args[0], PREMIUM_EMAIL)
    elif action == "release":
        allocator.release_hold(args[0])
    elif action == "consume":
        allocator.consume(PREMIUM_EMAIL, args[0])
    elif action == "cleanup":
        allocator.cleanup_expired_holds()
    else:
        raise AssertionError(f"unknown step {action}")


class TestAllowanceNeverExceeded:
    @pytest.mark.parametrize(
        "steps, final_used",
        [
            (
                [("hold", 1, 5), ("advance", 25), ("hold", 2, 6), ("convert", 1), ("convert", 2)],
                8,
            ),
            (
                [("hold", 1, 4), ("consume", 2), ("advance", 25), ("hold", 2, 6),
                 ("convert", 1), ("release", 2), ("convert", 1)],
                2,
            ),
            (
                [("hold", 1, 3), ("advance", 12), ("hold", 1, 2), ("advance", 13),
                 ("hold", 2, 5), ("convert", 1), ("cleanup",), ("convert", 2)],
                8,
            ),
            (
                [("hold", 1, 8), ("advance", 25), ("cleanup",), ("hold", 2, 8), ("convert", 1)],
                0,
            ),
        ],
        ids=["reclaim-partial", "expired-after-consume", "mixed-live-and-expired", "cleaned-up-first"],
    )
    def test_used_plus_held_within_allowance(self, allocator, clock, steps, final_used):
        for step in steps:
            _apply(allocator, clock, step)
            balance = allocator.balance(PREMIUM_EMAIL)
            assert balance.used + balance.held <= balance.allowance, step
        assert allocator.balance(PREMIUM_EMAIL).used == final_used
