"""
backend/tests/test_quota_engine.py
Quota Engine: lazy monthly reset, atomic consume-or-reject, release clamping.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from backend.core.errors import ConflictError, ForbiddenError, QuotaExceededError, ValidationError
from backend.features.accounts.service import register_account, set_tier
from backend.features.events.service import recorded_events
from backend.features.quotas.service import (
    consume_or_raise,
    quota_summary,
    release,
    remaining,
    try_consume,
)
from backend.models.account import AccountRole, Tier
from backend.models.events import EventType
from backend.models.quota import UNBOUNDED, QuotaCounter

KIND = "new_creator_messages"
JAN_1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
JAN_15 = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)
FEB_1 = datetime(2025, 2, 1, tzinfo=timezone.utc)


def _brand(account_id="brand-1", tier=Tier.BASIC):
    return register_account(account_id, AccountRole.BRAND, JAN_1, tier=tier)


class TestRemaining:
    """remaining() resolves tier limits and never writes"""

    def test_fresh_account_has_full_allowance(self):
        """No counter yet: remaining equals the tier limit"""
        _brand()
        assert remaining("brand-1", KIND, JAN_15) == 10

    def test_none_tier_gets_one_per_month(self):
        """Brands that never paid get the free allowance"""
        _brand(tier=Tier.NONE)
        assert remaining("brand-1", KIND, JAN_15) == 1

    def test_pro_tier_is_unbounded_sentinel(self):
        """Pro has no cap; the sentinel is not a number"""
        _brand(tier=Tier.PRO)
        result = remaining("brand-1", KIND, JAN_15)
        assert result is UNBOUNDED
        assert not isinstance(result, int)

    def test_stale_counter_reads_as_zero_without_write(self, store):
        """Counter anchored last month is logically zero; storage is untouched"""
        _brand()
        store.cas_quota_counter(
            QuotaCounter(account_id="brand-1", kind=KIND, count=10, anchor=JAN_1), None
        )
        assert remaining("brand-1", KIND, FEB_1) == 10
        stored = store.get_quota_counter("brand-1", KIND)
        assert stored.count == 10
        assert stored.anchor == JAN_1

    def test_unknown_kind_rejected(self):
        _brand()
        with pytest.raises(ValidationError):
            remaining("brand-1", "unknown_kind", JAN_15)

    def test_creator_cannot_use_brand_kind(self):
        register_account("creator-1", AccountRole.CREATOR, JAN_1)
        with pytest.raises(ForbiddenError):
            try_consume("creator-1", KIND, JAN_15)


class TestTryConsume:
    """Consume-or-reject semantics"""

    def test_consume_decrements_remaining(self):
        _brand()
        decision = try_consume("brand-1", KIND, JAN_15)
        assert decision.granted is True
        assert decision.remaining_after == 9
        assert decision.used == 1
        assert remaining("brand-1", KIND, JAN_15) == 9

    def test_remaining_is_monotonic_within_period(self):
        """Each successful consume lowers remaining; it never climbs back mid-period"""
        _brand()
        previous = remaining("brand-1", KIND, JAN_15)
        for _ in range(10):
            assert try_consume("brand-1", KIND, JAN_15).granted
            current = remaining("brand-1", KIND, JAN_15)
            assert current < previous
            previous = current
        assert previous == 0

    def test_refusal_leaves_state_unchanged(self, store):
        """A refused consume does not write"""
        _brand(tier=Tier.NONE)
        assert try_consume("brand-1", KIND, JAN_15).granted
        before = store.get_quota_counter("brand-1", KIND)

        decision = try_consume("brand-1", KIND, JAN_15)

        assert decision.granted is False
        assert decision.reason == "quota_exceeded"
        assert decision.remaining_after == 0
        assert store.get_quota_counter("brand-1", KIND) == before

    def test_refusal_emits_quota_exceeded_event(self):
        _brand(tier=Tier.NONE)
        try_consume("brand-1", KIND, JAN_15)
        try_consume("brand-1", KIND, JAN_15)
        events = recorded_events(EventType.QUOTA_EXCEEDED)
        assert len(events) == 1
        assert events[0].account_ids == ("brand-1",)
        assert events[0].payload["kind"] == KIND

    def test_amount_larger_than_remaining_is_refused(self):
        _brand()
        decision = try_consume("brand-1", KIND, JAN_15, amount=11)
        assert decision.granted is False
        assert remaining("brand-1", KIND, JAN_15) == 10

    @pytest.mark.parametrize("amount", [0, -1, 1.5, True])
    def test_amount_must_be_positive_integer(self, amount):
        _brand()
        with pytest.raises(ValidationError):
            try_consume("brand-1", KIND, JAN_15, amount=amount)

    def test_unbounded_tier_always_granted(self):
        _brand(tier=Tier.PRO)
        for _ in range(25):
            decision = try_consume("brand-1", KIND, JAN_15)
            assert decision.granted
            assert decision.remaining_after is UNBOUNDED

    def test_zero_limit_kind_refused(self):
        """campaigns_posted is a pro-only allowance"""
        _brand(tier=Tier.BASIC)
        assert try_consume("brand-1", "campaigns_posted", JAN_15).granted is False

    def test_upgrade_applies_immediately(self):
        """Tier is re-read on every call; nothing is cached"""
        _brand(tier=Tier.NONE)
        try_consume("brand-1", KIND, JAN_15)
        assert try_consume("brand-1", KIND, JAN_15).granted is False
        set_tier("brand-1", Tier.BASIC, JAN_15)
        decision = try_consume("brand-1", KIND, JAN_15)
        assert decision.granted
        assert decision.remaining_after == 8

    def test_consume_or_raise_carries_banner_details(self):
        _brand(tier=Tier.NONE)
        consume_or_raise("brand-1", KIND, JAN_15)
        with pytest.raises(QuotaExceededError) as exc_info:
            consume_or_raise("brand-1", KIND, JAN_15)
        details = exc_info.value.details
        assert details["limit"] == 1
        assert details["used"] == 1
        assert details["tier"] == "none"
        assert details["reset_at"] == FEB_1.isoformat()


class TestPeriodBoundary:
    """Calendar-month periods in UTC"""

    def test_messaging_quota_scenario(self, store):
        """basic brand at 10/10 on Jan 15 is refused; on Feb 1 it is granted with 9 left"""
        _brand()
        store.cas_quota_counter(
            QuotaCounter(account_id="brand-1", kind=KIND, count=10, anchor=JAN_1), None
        )

        refused = try_consume("brand-1", KIND, JAN_15)
        assert refused.granted is False
        assert refused.reason == "quota_exceeded"

        granted = try_consume("brand-1", KIND, FEB_1)
        assert granted.granted is True
        assert granted.remaining_after == 9
        stored = store.get_quota_counter("brand-1", KIND)
        assert stored.anchor == FEB_1
        assert stored.count == 1

    def test_boundary_instant_belongs_to_new_period(self):
        _brand(tier=Tier.NONE)
        last_moment = datetime(2025, 1, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert try_consume("brand-1", KIND, last_moment).granted
        assert try_consume("brand-1", KIND, last_moment).granted is False
        assert try_consume("brand-1", KIND, FEB_1).granted

    def test_december_rolls_into_january(self):
        _brand(tier=Tier.NONE)
        dec = datetime(2024, 12, 31, 22, 0, tzinfo=timezone.utc)
        decision = try_consume("brand-1", KIND, dec)
        assert decision.reset_at == JAN_1
        assert try_consume("brand-1", KIND, JAN_1).granted

    def test_late_write_for_previous_month_is_refused(self, store):
        """A delayed January call must not roll February's counter back"""
        _brand()
        feb_10 = datetime(2025, 2, 10, tzinfo=timezone.utc)
        try_consume("brand-1", KIND, feb_10, amount=5)

        late = datetime(2025, 1, 31, 23, 59, 59, tzinfo=timezone.utc)
        with pytest.raises(ConflictError) as exc_info:
            try_consume("brand-1", KIND, late)
        assert exc_info.value.code == "period_closed"
        assert exc_info.value.details["current_period"] == FEB_1.isoformat()

        assert remaining("brand-1", KIND, feb_10) == 5
        stored = store.get_quota_counter("brand-1", KIND)
        assert stored.anchor == FEB_1
        assert stored.count == 5

    def test_counter_from_later_month_not_counted_for_earlier_read(self, store):
        _brand()
        store.cas_quota_counter(
            QuotaCounter(account_id="brand-1", kind=KIND, count=7, anchor=FEB_1), None
        )
        assert remaining("brand-1", KIND, JAN_15) == 10
        assert store.get_quota_counter("brand-1", KIND).count == 7


class TestConcurrency:
    """N concurrent consumers against limit L: exactly L succeed"""

    @pytest.mark.parametrize("callers", [11, 25, 50])
    def test_exactly_limit_successes(self, store, callers):
        _brand()
        with ThreadPoolExecutor(max_workers=16) as pool:
            decisions = list(pool.map(lambda _: try_consume("brand-1", KIND, JAN_15), range(callers)))

        granted = [d for d in decisions if d.granted]
        refused = [d for d in decisions if not d.granted]
        assert len(granted) == 10
        assert len(refused) == callers - 10
        assert all(d.reason == "quota_exceeded" for d in refused)
        assert store.get_quota_counter("brand-1", KIND).count == 10


class TestRelease:
    """Compensating decrement"""

    def test_release_restores_allowance(self):
        _brand()
        try_consume("brand-1", KIND, JAN_15, amount=3)
        assert release("brand-1", KIND, JAN_15, amount=2) == 9

    def test_release_clamps_at_zero(self, store):
        _brand()
        try_consume("brand-1", KIND, JAN_15)
        assert release("brand-1", KIND, JAN_15, amount=5) == 10
        assert store.get_quota_counter("brand-1", KIND).count == 0

    def test_release_without_counter_is_noop(self, store):
        _brand()
        assert release("brand-1", KIND, JAN_15) == 10
        assert store.get_quota_counter("brand-1", KIND) is None

    def test_release_ignores_previous_period(self, store):
        """Releasing against last month's counter does not touch it"""
        _brand()
        try_consume("brand-1", KIND, JAN_15, amount=4)
        release("brand-1", KIND, FEB_1, amount=2)
        assert store.get_quota_counter("brand-1", KIND).count == 4

    def test_release_for_earlier_month_leaves_newer_counter(self, store):
        _brand()
        try_consume("brand-1", KIND, FEB_1, amount=3)
        release("brand-1", KIND, JAN_15, amount=2)
        stored = store.get_quota_counter("brand-1", KIND)
        assert stored.anchor == FEB_1
        assert stored.count == 3


class TestQuotaSummary:
    def test_status_progression(self):
        _brand()
        assert quota_summary("brand-1", KIND, JAN_15)["status"] == "ok"
        try_consume("brand-1", KIND, JAN_15, amount=7)
        summary = quota_summary("brand-1", KIND, JAN_15)
        assert summary["status"] == "approaching_limit"
        assert summary["remaining"] == 3
        try_consume("brand-1", KIND, JAN_15, amount=3)
        assert quota_summary("brand-1", KIND, JAN_15)["status"] == "at_limit"

    def test_unlimited_summary(self):
        _brand(tier=Tier.PRO)
        summary = quota_summary("brand-1", KIND, JAN_15)
        assert summary["status"] == "unlimited"
        assert summary["limit"] == "unlimited"
        assert summary["reset_at"] == FEB_1.isoformat()
