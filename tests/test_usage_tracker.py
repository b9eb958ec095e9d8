#!/usr/bin/env python3
"""
Usage Tracking Service Tests

Counters, calendar-month resets, bounded history and storage failure
handling.
"""

import pytest
import asyncio
import sys
import os
from datetime import datetime
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription.models import SubscriptionTier
from subscription.storage import InMemoryKeyValueStore
from subscription.usage_limits import MANUAL_INTERPRETATIONS, READINGS
from subscription.usage_tracker import (
    LAST_RESET_KEY,
    MAX_HISTORY_ENTRIES,
    USAGE_HISTORY_KEY,
    UsageTrackingService,
)


# ============================================================================
# COUNTERS
# ============================================================================

class TestCounters:
    """Tests for per-feature counters"""

    @pytest.mark.asyncio
    async def test_unknown_feature_is_zero(self, usage_tracker):
        assert await usage_tracker.get_usage_count(READINGS) == 0

    @pytest.mark.asyncio
    async def test_increment_returns_new_count(self, usage_tracker, memory_store):
        assert await usage_tracker.increment_usage(READINGS) == 1
        assert await usage_tracker.increment_usage(READINGS) == 2
        assert await usage_tracker.get_usage_count(READINGS) == 2
        assert memory_store.snapshot()["usage_count_readings"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, usage_tracker):
        """Test the in-process lock serializes read-modify-write"""
        await asyncio.gather(*(usage_tracker.increment_usage(READINGS) for _ in range(20)))
        assert await usage_tracker.get_usage_count(READINGS) == 20

    @pytest.mark.asyncio
    async def test_set_usage_count_clamps_negative(self, usage_tracker):
        await usage_tracker.set_usage_count(READINGS, -4)
        assert await usage_tracker.get_usage_count(READINGS) == 0

    @pytest.mark.asyncio
    async def test_get_all_usage_counts(self, usage_tracker, memory_store):
        await usage_tracker.increment_usage(READINGS)
        await usage_tracker.set_usage_count(MANUAL_INTERPRETATIONS, 4)
        await memory_store.set_string("unrelated", "x")

        assert await usage_tracker.get_all_usage_counts() == {
            READINGS: 1,
            MANUAL_INTERPRETATIONS: 4,
        }


# ============================================================================
# MONTHLY RESET
# ============================================================================

class TestMonthlyReset:
    """Tests for calendar-month rollover"""

    @pytest.mark.asyncio
    async def test_first_run_needs_reset(self, usage_tracker):
        assert await usage_tracker.should_reset_monthly_usage()
        assert await usage_tracker.check_and_reset_if_needed()
        assert await usage_tracker.get_last_reset_date() == datetime(2026, 3, 15, 12, 0, 0)

    @pytest.mark.asyncio
    async def test_same_month_does_not_reset(self, usage_tracker, clock):
        await usage_tracker.check_and_reset_if_needed()
        await usage_tracker.increment_usage(READINGS)
        clock.set(datetime(2026, 3, 31, 23, 59, 59))

        assert not await usage_tracker.check_and_reset_if_needed()
        assert await usage_tracker.get_usage_count(READINGS) == 1

    @pytest.mark.asyncio
    async def test_new_month_resets_counters(self, usage_tracker, clock):
        await usage_tracker.check_and_reset_if_needed()
        await usage_tracker.increment_usage(READINGS)
        await usage_tracker.increment_usage(READINGS)
        clock.set(datetime(2026, 4, 1, 0, 0, 1))

        assert await usage_tracker.check_and_reset_if_needed()
        assert await usage_tracker.get_usage_count(READINGS) == 0
        assert await usage_tracker.get_usage_history() == {READINGS: [2]}
        assert await usage_tracker.get_last_reset_date() == datetime(2026, 4, 1, 0, 0, 1)

    @pytest.mark.asyncio
    async def test_same_month_next_year_resets(self, usage_tracker, clock):
        """Test the month comparison includes the year"""
        await usage_tracker.check_and_reset_if_needed()
        clock.set(datetime(2027, 3, 15, 12, 0, 0))
        assert await usage_tracker.should_reset_monthly_usage()

    @pytest.mark.asyncio
    async def test_history_bounded(self, usage_tracker, clock):
        """Test only the most recent months are kept, oldest first"""
        for month in range(1, 16):
            year, month_index = 2025 + (month - 1) // 12, (month - 1) % 12 + 1
            clock.set(datetime(year, month_index, 10))
            await usage_tracker.set_usage_count(READINGS, month)
            await usage_tracker.reset_monthly_usage()

        history = await usage_tracker.get_usage_history()
        assert len(history[READINGS]) == MAX_HISTORY_ENTRIES
        assert history[READINGS] == list(range(4, 16))

    @pytest.mark.asyncio
    async def test_reset_without_usage_keeps_history_empty(self, usage_tracker):
        await usage_tracker.reset_monthly_usage()
        assert await usage_tracker.get_usage_history() == {}

    @pytest.mark.asyncio
    async def test_malformed_reset_date_triggers_reset(self, usage_tracker, memory_store):
        await memory_store.set_string(LAST_RESET_KEY, "yesterday-ish")
        assert await usage_tracker.get_last_reset_date() is None
        assert await usage_tracker.should_reset_monthly_usage()

    @pytest.mark.asyncio
    async def test_clear_all_usage(self, usage_tracker, memory_store):
        await usage_tracker.increment_usage(READINGS)
        await usage_tracker.reset_monthly_usage()
        await usage_tracker.increment_usage(READINGS)
        await memory_store.set_string("cached_subscription_status", "{}")

        await usage_tracker.clear_all_usage()

        assert await memory_store.keys() == ["cached_subscription_status"]


# ============================================================================
# HISTORY
# ============================================================================

class TestHistory:

    @pytest.mark.asyncio
    async def test_malformed_history_reads_as_empty(self, usage_tracker, memory_store):
        await memory_store.set_string(USAGE_HISTORY_KEY, "{broken")
        assert await usage_tracker.get_usage_history() == {}

    @pytest.mark.asyncio
    async def test_wrong_shape_history_reads_as_empty(self, usage_tracker, memory_store):
        await memory_store.set_json(USAGE_HISTORY_KEY, ["not", "a", "mapping"])
        assert await usage_tracker.get_usage_history() == {}

    @pytest.mark.asyncio
    async def test_malformed_history_replaced_on_reset(self, usage_tracker, memory_store):
        await memory_store.set_string(USAGE_HISTORY_KEY, "{broken")
        await usage_tracker.increment_usage(READINGS)
        await usage_tracker.reset_monthly_usage()
        assert await usage_tracker.get_usage_history() == {READINGS: [1]}


# ============================================================================
# LIMIT QUERIES
# ============================================================================

class TestLimitQueries:
    """Tests for limit helpers bound to stored counts"""

    @pytest.mark.asyncio
    async def test_seeker_limits(self, usage_tracker):
        seeker = SubscriptionTier.SEEKER
        for _ in range(3):
            assert await usage_tracker.is_within_limit(seeker, READINGS)
            await usage_tracker.increment_usage(READINGS)

        assert await usage_tracker.has_reached_limit(seeker, READINGS)
        assert await usage_tracker.get_remaining_usage(seeker, READINGS) == 0
        assert await usage_tracker.get_usage_percentage(seeker, READINGS) == 1.0
        assert await usage_tracker.is_approaching_limit(seeker, READINGS)

    @pytest.mark.asyncio
    async def test_paid_tier_unlimited(self, usage_tracker):
        await usage_tracker.set_usage_count(READINGS, 500)
        assert await usage_tracker.is_within_limit(SubscriptionTier.MYSTIC, READINGS)
        assert await usage_tracker.get_remaining_usage(SubscriptionTier.MYSTIC, READINGS) == -1

    @pytest.mark.asyncio
    async def test_usage_summary(self, usage_tracker):
        await usage_tracker.set_usage_count(MANUAL_INTERPRETATIONS, 4)
        summary = await usage_tracker.get_usage_summary(SubscriptionTier.SEEKER)

        assert summary[MANUAL_INTERPRETATIONS] == {
            "current": 4,
            "limit": 5,
            "remaining": 1,
            "percentage": pytest.approx(0.8),
            "approaching_limit": True,
            "reached_limit": False,
        }
        assert summary[READINGS]["current"] == 0
        assert await usage_tracker.get_usage_summary(SubscriptionTier.ORACLE) == {}

    @pytest.mark.asyncio
    async def test_usage_statistics(self, usage_tracker):
        await usage_tracker.check_and_reset_if_needed()
        await usage_tracker.increment_usage(READINGS)
        await usage_tracker.set_usage_count(MANUAL_INTERPRETATIONS, 2)

        stats = await usage_tracker.get_usage_statistics()
        assert stats["total_features_tracked"] == 2
        assert stats["total_usage_this_month"] == 3
        assert stats["last_reset"] == "2026-03-15T12:00:00"


# ============================================================================
# STORAGE FAILURES
# ============================================================================

class TestStorageFailures:
    """Tests that storage errors degrade instead of raising"""

    @pytest.fixture
    def broken_store(self):
        store = InMemoryKeyValueStore()
        store.get = AsyncMock(side_effect=OSError("disk gone"))
        store.set = AsyncMock(side_effect=OSError("disk gone"))
        store.keys = AsyncMock(side_effect=OSError("disk gone"))
        return store

    @pytest.mark.asyncio
    async def test_read_failure_returns_zero(self, broken_store, clock):
        tracker = UsageTrackingService(broken_store, clock=clock)
        assert await tracker.get_usage_count(READINGS) == 0
        assert await tracker.get_all_usage_counts() == {}
        assert await tracker.get_usage_history() == {}

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self, broken_store, clock):
        tracker = UsageTrackingService(broken_store, clock=clock)
        assert await tracker.increment_usage(READINGS) == 0
        await tracker.reset_monthly_usage()
        await tracker.clear_all_usage()
