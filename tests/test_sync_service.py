#!/usr/bin/env python3
"""
Subscription Sync Service Tests

Sync state machine, linear retry, expiration downgrade, persistence of the
cached status, restore, pending purchase reconciliation and the periodic
loop.
"""

import pytest
import asyncio
import json
import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription.errors import SubscriptionErrorKind
from subscription.models import SubscriptionTier
from subscription.storage import InMemoryKeyValueStore
from subscription.sync_service import (
    CACHED_STATUS_KEY,
    LAST_SYNC_KEY,
    RestoreResult,
    SubscriptionSyncService,
    SyncStatus,
)
from tests.conftest import make_status


@pytest.fixture
def sync_service(mock_service, memory_store, clock, fake_sleep):
    service = SubscriptionSyncService(
        mock_service,
        memory_store,
        sync_interval_minutes=60,
        max_retry_attempts=3,
        retry_delay_seconds=5,
        clock=clock,
        sleep=fake_sleep,
    )
    yield service
    service.dispose()


def record(stream):
    received = []
    stream.subscribe(received.append)
    return received


# ============================================================================
# ENUMS
# ============================================================================

class TestEnums:

    def test_sync_status_flags(self):
        assert SyncStatus.SYNCING.is_active
        assert SyncStatus.RESTORING.is_active
        assert SyncStatus.FAILED.is_error
        assert SyncStatus.SUCCESS.is_success
        assert SyncStatus.EXPIRED.display_name == "Expired"

    def test_restore_result_messages(self):
        assert RestoreResult.SUCCESS.display_message == "Subscriptions restored successfully"
        assert RestoreResult.NO_SUBSCRIPTIONS_FOUND.is_error is False
        assert RestoreResult.NETWORK_ERROR.is_error


# ============================================================================
# CONSTRUCTION AND PERSISTENCE
# ============================================================================

class TestInitialization:
    """Tests for construction and cache loading"""

    @pytest.mark.parametrize("kwargs", [{"sync_interval_minutes": 0}, {"max_retry_attempts": 0}])
    def test_invalid_configuration(self, mock_service, memory_store, kwargs):
        with pytest.raises(ValueError):
            SubscriptionSyncService(mock_service, memory_store, **kwargs)

    def test_initial_state(self, sync_service):
        assert sync_service.current_sync_status == SyncStatus.IDLE
        assert sync_service.get_cached_status() is None
        assert sync_service.last_successful_sync is None
        assert sync_service.is_sync_overdue
        assert sync_service.time_until_next_sync is None
        assert not sync_service.is_running

    @pytest.mark.asyncio
    async def test_initialize_loads_persisted_cache(self, mock_service, clock, fake_sleep):
        cached = make_status(SubscriptionTier.ORACLE, clock(), usage_counts={"readings": 1})
        store = InMemoryKeyValueStore()
        await store.set_json(CACHED_STATUS_KEY, cached.to_dict())
        await store.set_string(LAST_SYNC_KEY, (clock() - timedelta(minutes=10)).isoformat())

        service = SubscriptionSyncService(mock_service, store, clock=clock, sleep=fake_sleep)
        received = record(service.cached_status_stream)
        await service.initialize()

        assert service.get_cached_status() == cached
        assert service.last_successful_sync == clock() - timedelta(minutes=10)
        assert received == [cached]
        service.dispose()

    @pytest.mark.asyncio
    async def test_initialize_with_corrupt_cache(self, sync_service, memory_store):
        await memory_store.set_string(CACHED_STATUS_KEY, "{not json")
        await sync_service.initialize()
        assert sync_service.get_cached_status() is None
        assert not sync_service.cached_status_stream.has_value


# ============================================================================
# SYNC
# ============================================================================

class TestSync:
    """Tests for a single sync pass"""

    @pytest.mark.asyncio
    async def test_successful_sync(self, sync_service, mock_service, memory_store, clock):
        statuses = record(sync_service.sync_status_stream)
        await sync_service.force_sync_now()

        assert statuses == [SyncStatus.IDLE, SyncStatus.SYNCING, SyncStatus.SUCCESS]
        assert sync_service.get_cached_status() == mock_service.current_status
        assert sync_service.last_successful_sync == clock()
        stored = json.loads(memory_store.snapshot()[CACHED_STATUS_KEY])
        assert stored["tier"] == "seeker"
        assert memory_store.snapshot()[LAST_SYNC_KEY] == clock().isoformat()
        assert mock_service.call_counts["refresh_subscription_status"] == 1

    @pytest.mark.asyncio
    async def test_linear_retry(self, sync_service, scripted_faults, fake_sleep):
        scripted_faults.fail_next("refresh_subscription_status", SubscriptionErrorKind.NETWORK_ERROR, times=2)
        await sync_service.force_sync_now()

        assert fake_sleep.delays == [5, 10]
        assert sync_service.current_sync_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_all_attempts_fail(self, sync_service, scripted_faults, fake_sleep, mock_service):
        scripted_faults.fail_next("get_subscription_status", SubscriptionErrorKind.SERVER_ERROR, times=3)
        statuses = record(sync_service.sync_status_stream)

        await sync_service.force_sync_now()

        assert statuses[-1] == SyncStatus.FAILED
        assert fake_sleep.delays == [5, 10]
        assert mock_service.call_counts["get_subscription_status"] == 3
        assert sync_service.last_successful_sync is None

    @pytest.mark.asyncio
    async def test_expired_platform_status_downgraded(self, sync_service, mock_service, clock):
        """Test an expired fetch ends in EXPIRED with usage carried over"""
        mock_service.set_status(make_status(
            SubscriptionTier.MYSTIC, clock(), days=-1, usage_counts={"readings": 2},
        ))
        statuses = record(sync_service.sync_status_stream)

        await sync_service.force_sync_now()

        assert statuses == [SyncStatus.IDLE, SyncStatus.SYNCING, SyncStatus.EXPIRED]
        cached = sync_service.get_cached_status()
        assert cached.tier == SubscriptionTier.SEEKER
        assert cached.is_active
        assert cached.expiration_date is None
        assert cached.usage_counts == {"readings": 2}
        assert sync_service.last_successful_sync == clock()

    @pytest.mark.asyncio
    async def test_failed_sync_downgrades_expired_cache(self, mock_service, scripted_faults, clock, fake_sleep):
        store = InMemoryKeyValueStore()
        stale = make_status(SubscriptionTier.ORACLE, clock(), days=-2, usage_counts={"manual_interpretations": 4})
        await store.set_json(CACHED_STATUS_KEY, stale.to_dict())
        service = SubscriptionSyncService(mock_service, store, clock=clock, sleep=fake_sleep)
        await service.initialize()

        scripted_faults.fail_next("refresh_subscription_status", SubscriptionErrorKind.NETWORK_ERROR, times=3)
        statuses = record(service.sync_status_stream)
        await service.force_sync_now()

        assert statuses[-2:] == [SyncStatus.FAILED, SyncStatus.EXPIRED]
        cached = service.get_cached_status()
        assert cached.tier == SubscriptionTier.SEEKER
        assert cached.usage_counts == {"manual_interpretations": 4}
        assert service.last_successful_sync is None
        service.dispose()

    @pytest.mark.asyncio
    async def test_failed_sync_keeps_valid_cache(self, mock_service, scripted_faults, clock, fake_sleep):
        store = InMemoryKeyValueStore()
        valid = make_status(SubscriptionTier.MYSTIC, clock(), days=10)
        await store.set_json(CACHED_STATUS_KEY, valid.to_dict())
        service = SubscriptionSyncService(mock_service, store, clock=clock, sleep=fake_sleep)
        await service.initialize()

        scripted_faults.fail_next("refresh_subscription_status", SubscriptionErrorKind.NETWORK_ERROR, times=3)
        await service.force_sync_now()

        assert service.current_sync_status == SyncStatus.FAILED
        assert service.get_cached_status() == valid
        service.dispose()

    @pytest.mark.asyncio
    async def test_cached_stream_receives_synced_status(self, sync_service, mock_service):
        received = record(sync_service.cached_status_stream)
        await mock_service.purchase_subscription("oracle_monthly")
        await sync_service.force_sync_now()
        assert received[-1].tier == SubscriptionTier.ORACLE


# ============================================================================
# TIMING
# ============================================================================

class TestSyncTiming:
    """Tests for overdue detection and next-sync estimates"""

    @pytest.mark.asyncio
    async def test_overdue_after_twice_the_interval(self, sync_service, clock):
        await sync_service.force_sync_now()
        assert not sync_service.is_sync_overdue

        clock.advance(minutes=120)
        assert not sync_service.is_sync_overdue
        clock.advance(seconds=1)
        assert sync_service.is_sync_overdue

    @pytest.mark.asyncio
    async def test_time_until_next_sync(self, sync_service, clock):
        await sync_service.force_sync_now()
        assert sync_service.time_until_next_sync == timedelta(minutes=60)
        clock.advance(minutes=45)
        assert sync_service.time_until_next_sync == timedelta(minutes=15)
        clock.advance(minutes=30)
        assert sync_service.time_until_next_sync == timedelta(0)

    def test_update_sync_interval(self, sync_service):
        sync_service.update_sync_interval(15)
        assert sync_service.sync_interval_minutes == 15
        with pytest.raises(ValueError):
            sync_service.update_sync_interval(0)


# ============================================================================
# PERIODIC LOOP
# ============================================================================

class SteppedTimer:
    """Sleep double that blocks until the test releases it"""

    def __init__(self):
        self.delays = []
        self._released = asyncio.Semaphore(0)

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await self._released.acquire()

    def tick(self):
        self._released.release()


@pytest.fixture
def timer():
    return SteppedTimer()


@pytest.fixture
def timed_sync_service(mock_service, memory_store, clock, timer):
    service = SubscriptionSyncService(
        mock_service,
        memory_store,
        sync_interval_minutes=60,
        clock=clock,
        sleep=timer,
    )
    yield service
    service.dispose()


async def wait_until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestPeriodicSync:
    """Tests for the background loop"""

    @pytest.mark.asyncio
    async def test_start_runs_initial_sync(self, timed_sync_service, timer, mock_service):
        timed_sync_service.start()
        assert timed_sync_service.is_running

        assert await wait_until(lambda: timer.delays == [0.1])
        assert mock_service.call_counts["refresh_subscription_status"] == 0

        timer.tick()
        assert await wait_until(lambda: timed_sync_service.current_sync_status == SyncStatus.SUCCESS)
        assert await wait_until(lambda: timer.delays == [0.1, 3600])
        assert mock_service.call_counts["refresh_subscription_status"] == 1

        await timed_sync_service.stop()
        assert not timed_sync_service.is_running

    @pytest.mark.asyncio
    async def test_interval_elapses_between_syncs(self, timed_sync_service, timer, mock_service):
        timed_sync_service.start_periodic_sync(initial_sync=False)
        assert await wait_until(lambda: timer.delays == [3600])
        assert mock_service.call_counts["refresh_subscription_status"] == 0

        timer.tick()
        assert await wait_until(lambda: mock_service.call_counts["refresh_subscription_status"] == 1)
        timer.tick()
        assert await wait_until(lambda: mock_service.call_counts["refresh_subscription_status"] == 2)
        assert await wait_until(lambda: timer.delays == [3600, 3600, 3600])
        await timed_sync_service.stop()

    @pytest.mark.asyncio
    async def test_interval_change_restarts_loop(self, timed_sync_service, timer, mock_service):
        timed_sync_service.start_periodic_sync(initial_sync=False)
        first_task = timed_sync_service._sync_task
        timed_sync_service.update_sync_interval(5)

        assert timed_sync_service.is_running
        assert timed_sync_service._sync_task is not first_task
        assert await wait_until(lambda: timer.delays[-1:] == [300])
        assert mock_service.call_counts["refresh_subscription_status"] == 0
        await timed_sync_service.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, sync_service):
        await sync_service.stop()
        assert not sync_service.is_running


# ============================================================================
# RESTORE AND RECONCILIATION
# ============================================================================

class TestRestore:
    """Tests for restore_subscriptions outcomes"""

    @pytest.mark.asyncio
    async def test_nothing_to_restore(self, sync_service):
        statuses = record(sync_service.sync_status_stream)
        assert await sync_service.restore_subscriptions() == RestoreResult.NO_SUBSCRIPTIONS_FOUND
        assert statuses[-2:] == [SyncStatus.RESTORING, SyncStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_restore_success_caches_status(self, sync_service, mock_service):
        mock_service.restore_tier = SubscriptionTier.ORACLE
        assert await sync_service.restore_subscriptions() == RestoreResult.SUCCESS
        assert sync_service.get_cached_status().tier == SubscriptionTier.ORACLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind,expected", [
        (SubscriptionErrorKind.NETWORK_ERROR, RestoreResult.NETWORK_ERROR),
        (SubscriptionErrorKind.PLATFORM_ERROR, RestoreResult.PLATFORM_ERROR),
        (SubscriptionErrorKind.RESTORATION_FAILED, RestoreResult.UNKNOWN_ERROR),
    ])
    async def test_restore_errors(self, sync_service, scripted_faults, kind, expected):
        scripted_faults.fail_next("restore_subscriptions", kind)
        assert await sync_service.restore_subscriptions() == expected
        assert sync_service.current_sync_status == SyncStatus.FAILED


class TestReconcilePendingChanges:
    """Tests for startup reconciliation of interrupted purchases"""

    @pytest.mark.asyncio
    async def test_nothing_pending(self, sync_service, mock_service):
        assert not await sync_service.reconcile_pending_changes()
        assert mock_service.call_counts["verify_subscription_status"] == 0

    @pytest.mark.asyncio
    async def test_pending_purchase_verified_and_cached(self, sync_service, mock_service, clock):
        mock_service.set_status(make_status(SubscriptionTier.MYSTIC, clock()))
        mock_service.pending_changes = True

        assert await sync_service.reconcile_pending_changes()
        assert sync_service.get_cached_status().tier == SubscriptionTier.MYSTIC
        assert sync_service.last_successful_sync == clock()

    @pytest.mark.asyncio
    async def test_pending_expired_purchase_downgraded(self, sync_service, mock_service, clock):
        mock_service.set_status(make_status(SubscriptionTier.MYSTIC, clock(), days=-1))
        mock_service.pending_changes = True

        assert await sync_service.reconcile_pending_changes()
        assert sync_service.get_cached_status().tier == SubscriptionTier.SEEKER
        assert sync_service.current_sync_status == SyncStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_verification_failure(self, sync_service, mock_service, scripted_faults):
        mock_service.pending_changes = True
        scripted_faults.fail_next("verify_subscription_status", SubscriptionErrorKind.VERIFICATION_FAILED)
        assert not await sync_service.reconcile_pending_changes()
        assert sync_service.get_cached_status() is None


# ============================================================================
# DISPOSAL
# ============================================================================

class TestSyncDispose:

    @pytest.mark.asyncio
    async def test_dispose(self, sync_service):
        sync_status_stream = sync_service.sync_status_stream
        sync_service.dispose()

        assert sync_service.is_disposed
        assert sync_status_stream.closed
        assert sync_service.cached_status_stream.closed
        with pytest.raises(RuntimeError):
            await sync_service.force_sync_now()

        sync_service.start()
        assert not sync_service.is_running
