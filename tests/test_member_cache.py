"""Tests for clubledger.member_cache and clubledger.members."""

from __future__ import annotations

from unittest.mock import patch

from clubledger.member_cache import MemberCache
from clubledger.members import MemberDirectory, is_valid_email, normalize_email

from conftest import CORE_EMAIL, PREMIUM_EMAIL, STAFF_EMAIL, VIP_EMAIL, FakeClock


def _member(n: int, **overrides) -> dict:
    data = {"id": f"m-{n}", "email": f"user{n}@club.test", "tier": "Core", "linked_emails": []}
    data.update(overrides)
    return data


class TestMemberCacheLookups:
    def test_hit_by_email_and_id(self):
        cache = MemberCache()
        cache.set(_member(1))
        assert cache.get_by_email("USER1@club.test")["id"] == "m-1"
        assert cache.get_by_id("m-1")["email"] == "user1@club.test"

    def test_linked_emails_are_cached(self):
        cache = MemberCache()
        cache.set(_member(1, linked_emails=["alt@club.test"]))
        assert cache.get_by_email("alt@club.test")["id"] == "m-1"

    def test_miss(self):
        cache = MemberCache()
        assert cache.get_by_email("nobody@club.test") is None
        assert cache.get_stats()["misses"] == 1

    def test_ttl_expiry(self):
        clock = FakeClock(0.0)
        cache = MemberCache(ttl_seconds=300, clock=clock)
        cache.set(_member(1))
        clock.advance(299)
        assert cache.get_by_id("m-1") is not None
        clock.advance(2)
        assert cache.get_by_id("m-1") is None

    def test_stats_count_hits(self):
        cache = MemberCache()
        cache.set(_member(1))
        cache.get_by_id("m-1")
        cache.get_by_id("m-1")
        stats = cache.get_stats()
        assert stats["hits"] == 2
        assert stats["size"] == 2
        assert stats["max_size"] == 1000
        assert stats["ttl_seconds"] == 300


class TestMemberCacheEviction:
    def test_oldest_evicted_when_full(self):
        # Each member occupies two keys (id + email).
        cache = MemberCache(max_size=8)
        for n in range(4):
            cache.set(_member(n))
        assert len(cache) == 8
        cache.set(_member(4))
        # 10 keys > 8: the 2 oldest keys (member 0) go.
        assert len(cache) == 8
        assert cache.get_by_id("m-0") is None
        assert cache.get_by_email("user0@club.test") is None
        assert cache.get_by_id("m-4") is not None
        assert cache.get_stats()["evictions"] == 2

    def test_expired_evicted_before_oldest(self):
        clock = FakeClock(0.0)
        cache = MemberCache(ttl_seconds=100, max_size=8, clock=clock)
        cache.set(_member(0))
        clock.advance(50)
        for n in range(1, 4):
            cache.set(_member(n))
        clock.advance(60)  # member 0 expired, members 1-3 still live
        cache.set(_member(4))
        assert len(cache) == 8
        assert cache.get_by_id("m-1") is not None

    def test_invalidate_drops_all_keys(self):
        cache = MemberCache()
        cache.set(_member(1, linked_emails=["alt@club.test"]))
        assert cache.invalidate("user1@club.test") == 3
        assert cache.get_by_id("m-1") is None
        assert cache.get_by_email("alt@club.test") is None

    def test_invalidate_by_id(self):
        cache = MemberCache()
        cache.set(_member(1))
        assert cache.invalidate("m-1") == 2

    def test_invalidate_unknown(self):
        assert MemberCache().invalidate("ghost@club.test") == 0

    def test_clear(self):
        cache = MemberCache()
        cache.set(_member(1))
        cache.clear()
        assert len(cache) == 0


class TestEmailHelpers:
    def test_normalize(self):
        assert normalize_email("  Ana@Club.Test ") == "ana@club.test"
        assert normalize_email(None) == ""

    def test_valid(self):
        assert is_valid_email("ana@club.test")
        assert not is_valid_email("ghost-booking")
        assert not is_valid_email("")


class TestMemberDirectory:
    def test_resolve_by_email(self, directory):
        member = directory.by_email(CORE_EMAIL.upper())
        assert member.id == "m-core"
        assert member.tier == "Core"

    def test_resolve_prefers_id(self, directory):
        member = directory.resolve(user_id="m-premium", email=CORE_EMAIL)
        assert member.email == PREMIUM_EMAIL

    def test_linked_email_lookup(self, db, directory):
        db.save_member("m-linked", "main@club.test", tier="Core", linked_emails=["Old@Club.test"])
        assert directory.by_email("old@club.test").id == "m-linked"

    def test_unknown_member(self, directory):
        assert directory.by_email("ghost@club.test") is None
        assert directory.by_id("m-ghost") is None
        assert directory.by_email("") is None

    def test_second_lookup_served_from_cache(self, db, directory):
        directory.by_email(CORE_EMAIL)
        with patch.object(db, "get_member_by_email", side_effect=AssertionError("db hit")):
            assert directory.by_email(CORE_EMAIL).id == "m-core"

    def test_tier_for(self, directory):
        assert directory.tier_for(email=PREMIUM_EMAIL).name == "Premium"
        assert directory.tier_for(user_id="m-core2").name == "Core"
        assert directory.tier_for(email="nina@club.test") is None

    def test_fee_exempt(self, directory):
        assert directory.is_fee_exempt(STAFF_EMAIL) is True
        assert directory.is_fee_exempt(VIP_EMAIL) is True
        assert directory.is_fee_exempt(CORE_EMAIL) is False
        assert directory.is_fee_exempt("ghost@club.test") is False

    def test_invalidate_refetches(self, db, directory):
        directory.by_email(CORE_EMAIL)
        db.save_member("m-core", CORE_EMAIL, display_name="Cora Core", tier="Premium")
        assert directory.by_email(CORE_EMAIL).tier == "Core"
        directory.invalidate(CORE_EMAIL)
        assert directory.by_email(CORE_EMAIL).tier == "Premium"
