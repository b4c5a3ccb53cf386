"""Tests for clubledger.pricing -- overage blocks and time allocation."""

from __future__ import annotations

import pytest

from clubledger.errors import InvalidInputError
from clubledger.pricing import (
    OverageResult,
    allocate_minutes,
    calculate_overage_fee,
    effective_player_count,
    incremental_overage_cents,
)


class TestCalculateOverageFee:
    def test_within_allowance_is_free(self):
        result = calculate_overage_fee(60, 60)
        assert result == OverageResult(False, 0, 0)

    def test_one_block(self):
        result = calculate_overage_fee(90, 60)
        assert result.has_overage is True
        assert result.overage_minutes == 30
        assert result.overage_cents == 2500

    def test_partial_block_rounds_up(self):
        result = calculate_overage_fee(91, 60)
        assert result.overage_minutes == 31
        assert result.overage_cents == 5000

    def test_single_minute_over_is_a_full_block(self):
        assert calculate_overage_fee(61, 60).overage_cents == 2500

    def test_unlimited_allowance_never_charges(self):
        assert calculate_overage_fee(5000, 999).has_overage is False

    def test_zero_allowance_charges_everything(self):
        assert calculate_overage_fee(60, 0).overage_cents == 5000

    def test_custom_rate_and_block(self):
        result = calculate_overage_fee(75, 60, rate_cents=1000, block_minutes=15)
        assert result.overage_cents == 1000

    def test_dollars_and_dict(self):
        result = calculate_overage_fee(120, 60)
        assert result.overage_dollars == 50.0
        assert result.to_dict()["overage_cents"] == 5000
        assert result.to_dict()["overage_dollars"] == 50.0


class TestIncrementalOverage:
    def test_no_prior_usage(self):
        assert incremental_overage_cents(0, 90, 60) == 2500

    def test_prior_usage_within_allowance(self):
        assert incremental_overage_cents(30, 60, 60) == 2500

    def test_already_billed_block_not_charged_twice(self):
        # 70 min prior already paid one block that covers up to 90 min.
        assert incremental_overage_cents(70, 20, 60) == 0

    def test_crossing_into_next_block(self):
        assert incremental_overage_cents(70, 30, 60) == 2500

    def test_nothing_added(self):
        assert incremental_overage_cents(120, 0, 60) == 0

    def test_monotone_in_added_minutes(self):
        previous = 0
        for added in range(0, 300, 7):
            cents = incremental_overage_cents(45, added, 60)
            assert cents >= previous
            previous = cents

    def test_never_negative(self):
        for prior in range(0, 200, 13):
            for added in range(0, 200, 17):
                assert incremental_overage_cents(prior, added, 60) >= 0


class TestEffectivePlayerCount:
    def test_declared_larger(self):
        assert effective_player_count(4, 2) == 4

    def test_actual_larger(self):
        assert effective_player_count(2, 3) == 3

    def test_missing_declared(self):
        assert effective_player_count(None, 2) == 2
        assert effective_player_count(0, 0) == 1


class TestAllocateMinutes:
    def test_even_split(self):
        assert allocate_minutes(120, 4) == [30, 30, 30, 30]

    def test_remainder_goes_to_first_slots(self):
        shares = allocate_minutes(185, 4)
        assert shares == [47, 46, 46, 46]
        assert sum(shares) == 185

    def test_unfilled_declared_slots_go_to_owner(self):
        shares = allocate_minutes(120, 2, declared_slots=4, owner_index=1)
        assert shares == [30, 90]
        assert sum(shares) == 120

    def test_unfilled_slots_without_owner_go_to_first(self):
        assert allocate_minutes(90, 1, declared_slots=3) == [90]

    def test_zero_duration(self):
        assert allocate_minutes(0, 3) == [0, 0, 0]

    @pytest.mark.parametrize("duration", [1, 59, 60, 61, 89, 185, 241])
    @pytest.mark.parametrize("count", [1, 2, 3, 4])
    def test_shares_always_sum_to_duration(self, duration, count):
        shares = allocate_minutes(duration, count, declared_slots=4, owner_index=0)
        assert len(shares) == count
        assert sum(shares) == duration

    def test_negative_duration_rejected(self):
        with pytest.raises(InvalidInputError):
            allocate_minutes(-1, 1)

    def test_no_participants_rejected(self):
        with pytest.raises(InvalidInputError):
            allocate_minutes(60, 0)
