"""
Subscription synchronization

Periodic reconciliation between the locally cached subscription status and
the platform's truth. An expired subscription is downgraded gracefully to
the free tier: the app keeps working, but usage counts carry over so a
lapsed subscription does not reset the month's limits.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from subscription.errors import SubscriptionErrorKind, SubscriptionException
from subscription.models import SubscriptionStatus, SubscriptionTier
from subscription.service import SubscriptionService
from subscription.storage import KeyValueStore
from subscription.streams import StatusStream
from utils.logger import logger


CACHED_STATUS_KEY = "cached_subscription_status"
LAST_SYNC_KEY = "last_sync_timestamp"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    RESTORING = "restoring"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def is_active(self) -> bool:
        return self in (SyncStatus.SYNCING, SyncStatus.RESTORING)

    @property
    def is_error(self) -> bool:
        return self == SyncStatus.FAILED

    @property
    def is_success(self) -> bool:
        return self == SyncStatus.SUCCESS


class RestoreResult(str, Enum):
    SUCCESS = "success"
    NO_SUBSCRIPTIONS_FOUND = "no_subscriptions_found"
    NETWORK_ERROR = "network_error"
    PLATFORM_ERROR = "platform_error"
    UNKNOWN_ERROR = "unknown_error"

    @property
    def display_message(self) -> str:
        return RESTORE_MESSAGES[self]

    @property
    def is_success(self) -> bool:
        return self == RestoreResult.SUCCESS

    @property
    def is_error(self) -> bool:
        return self not in (RestoreResult.SUCCESS, RestoreResult.NO_SUBSCRIPTIONS_FOUND)


RESTORE_MESSAGES = {
    RestoreResult.SUCCESS: "Subscriptions restored successfully",
    RestoreResult.NO_SUBSCRIPTIONS_FOUND: "No subscriptions found to restore",
    RestoreResult.NETWORK_ERROR: "Network error during restoration",
    RestoreResult.PLATFORM_ERROR: "Platform error during restoration",
    RestoreResult.UNKNOWN_ERROR: "Unknown error during restoration",
}


class SubscriptionSyncService:
    """
    Background synchronization of subscription status.

    State machine over SyncStatus. A sync refreshes and reads the platform
    status with a simple linear retry (``retry_delay_seconds * attempt``),
    then caches the result. Call ``initialize()`` once to load the persisted
    cache, then ``start()`` for periodic syncs.
    """

    # Delay before the first sync after start()
    initial_delay_seconds = 0.1

    def __init__(
        self,
        subscription_service: SubscriptionService,
        store: KeyValueStore,
        sync_interval_minutes: int = 60,
        max_retry_attempts: int = 3,
        retry_delay_seconds: float = 5,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if sync_interval_minutes <= 0:
            raise ValueError("Sync interval must be positive")
        if max_retry_attempts < 1:
            raise ValueError("At least one sync attempt is required")

        self._service = subscription_service
        self.store = store
        self.sync_interval_minutes = sync_interval_minutes
        self.max_retry_attempts = max_retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._clock = clock or datetime.now
        self._sleep = sleep or asyncio.sleep

        self._sync_status_stream: StatusStream[SyncStatus] = StatusStream(SyncStatus.IDLE, name="sync status stream")
        self._cached_status_stream: StatusStream[SubscriptionStatus] = StatusStream(name="cached status stream")
        self._cached_status: Optional[SubscriptionStatus] = None
        self._last_successful_sync: Optional[datetime] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._disposed = False

    # ========================================================================
    # State
    # ========================================================================

    @property
    def sync_status_stream(self) -> StatusStream[SyncStatus]:
        return self._sync_status_stream

    @property
    def cached_status_stream(self) -> StatusStream[SubscriptionStatus]:
        return self._cached_status_stream

    @property
    def current_sync_status(self) -> SyncStatus:
        return self._sync_status_stream.value

    @property
    def last_successful_sync(self) -> Optional[datetime]:
        return self._last_successful_sync

    @property
    def is_running(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def get_cached_status(self) -> Optional[SubscriptionStatus]:
        return self._cached_status

    def _ensure_not_disposed(self):
        if self._disposed:
            raise RuntimeError("Service has been disposed")

    def _update_sync_status(self, status: SyncStatus):
        if self._disposed:
            return
        logger.debug(f"Sync status: {status.value}")
        self._sync_status_stream.emit(status)

    # ========================================================================
    # Persistence
    # ========================================================================

    async def initialize(self):
        """Load the cached status and last sync time from the store"""
        try:
            data = await self.store.get_json(CACHED_STATUS_KEY)
            if data is not None:
                self._cached_status = SubscriptionStatus.from_dict(data)
            raw_sync = await self.store.get_string(LAST_SYNC_KEY)
            if raw_sync is not None:
                self._last_successful_sync = datetime.fromisoformat(raw_sync)
        except Exception as e:
            logger.warning(f"Could not load cached subscription status, starting fresh: {e}")
            self._cached_status = None
            self._last_successful_sync = None

        if self._cached_status is not None:
            logger.info(f"Loaded cached subscription: {self._cached_status.tier.value}")
            self._cached_status_stream.emit(self._cached_status)

    async def _save_cached_status(self, status: SubscriptionStatus, mark_synced: bool = True):
        now = self._clock()
        self._cached_status = status
        if mark_synced:
            self._last_successful_sync = now
        try:
            await self.store.set_json(CACHED_STATUS_KEY, status.to_dict())
            if mark_synced:
                await self.store.set_string(LAST_SYNC_KEY, now.isoformat())
        except Exception as e:
            logger.error(f"Could not persist cached subscription status: {e}")
        if not self._disposed:
            self._cached_status_stream.emit(status)

    # ========================================================================
    # Sync
    # ========================================================================

    async def _perform_sync(self):
        if self._disposed:
            return

        self._update_sync_status(SyncStatus.SYNCING)
        try:
            expired = await self._sync_with_retry()
            if not expired:
                self._update_sync_status(SyncStatus.SUCCESS)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Subscription sync failed: {e}")
            self._update_sync_status(SyncStatus.FAILED)
            await self._handle_potential_expiration()

    async def _sync_with_retry(self) -> bool:
        """
        Refresh and fetch the platform status, retrying with a linear delay.

        Returns True when the fetched status had expired and was downgraded.
        Raises the last error once every attempt failed.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retry_attempts),
            wait=wait_incrementing(start=self.retry_delay_seconds, increment=self.retry_delay_seconds),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=lambda state: logger.debug(
                f"Sync attempt {state.attempt_number} failed, retrying in "
                f"{state.next_action.sleep}s: {state.outcome.exception()}"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._service.refresh_subscription_status()
                status = await self._service.get_subscription_status()

        if status.is_expired_at(self._clock()):
            await self._handle_subscription_expiration(status, mark_synced=True)
            return True

        await self._save_cached_status(status)
        return False

    async def _handle_subscription_expiration(
        self, expired_status: SubscriptionStatus, mark_synced: bool = False
    ) -> Optional[SubscriptionStatus]:
        """Downgrade to the free tier, keeping the month's usage counts"""
        try:
            downgraded = SubscriptionStatus(
                tier=SubscriptionTier.SEEKER,
                is_active=True,
                expiration_date=None,
                platform_subscription_id=None,
                usage_counts=dict(expired_status.usage_counts),
                last_updated=self._clock(),
            )
            await self._save_cached_status(downgraded, mark_synced=mark_synced)
            logger.info(f"Subscription expired ({expired_status.tier.value}), downgraded to free tier")
            self._update_sync_status(SyncStatus.EXPIRED)
            return downgraded
        except Exception as e:
            logger.error(f"Could not handle subscription expiration: {e}")
            self._update_sync_status(SyncStatus.FAILED)
            return None

    async def _handle_potential_expiration(self):
        cached = self._cached_status
        if cached is not None and cached.is_expired_at(self._clock()):
            await self._handle_subscription_expiration(cached)

    async def force_sync_now(self):
        self._ensure_not_disposed()
        await self._perform_sync()

    # ========================================================================
    # Periodic loop
    # ========================================================================

    def start(self):
        """Start periodic synchronization (first sync after a short delay)"""
        self.start_periodic_sync()

    def start_periodic_sync(self, initial_sync: bool = True):
        if self._disposed:
            return
        self._cancel_task()
        self._sync_task = asyncio.create_task(self._sync_loop(initial_sync))
        logger.info(f"Periodic subscription sync started (every {self.sync_interval_minutes} min)")

    async def _sync_loop(self, initial_sync: bool):
        try:
            if initial_sync:
                await self._sleep(self.initial_delay_seconds)
                await self._perform_sync()
            while not self._disposed:
                await self._sleep(self.sync_interval_minutes * 60)
                await self._perform_sync()
        except asyncio.CancelledError:
            pass

    def _cancel_task(self):
        if self._sync_task is not None:
            self._sync_task.cancel()
            self._sync_task = None

    async def stop(self):
        """Stop periodic synchronization and wait for the loop to exit"""
        task = self._sync_task
        self._sync_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Periodic subscription sync stopped")

    def update_sync_interval(self, minutes: int):
        """Change the interval; a running loop restarts without an immediate sync"""
        if minutes <= 0:
            raise ValueError("Sync interval must be positive")
        self.sync_interval_minutes = minutes
        if self.is_running:
            self.start_periodic_sync(initial_sync=False)

    @property
    def is_sync_overdue(self) -> bool:
        """True when the last successful sync is older than twice the interval"""
        if self._last_successful_sync is None:
            return True
        elapsed = self._clock() - self._last_successful_sync
        return elapsed > timedelta(minutes=self.sync_interval_minutes * 2)

    @property
    def time_until_next_sync(self) -> Optional[timedelta]:
        if self._last_successful_sync is None:
            return None
        next_sync = self._last_successful_sync + timedelta(minutes=self.sync_interval_minutes)
        now = self._clock()
        if now >= next_sync:
            return timedelta(0)
        return next_sync - now

    # ========================================================================
    # Restore & reconciliation
    # ========================================================================

    async def restore_subscriptions(self) -> RestoreResult:
        """Restore purchases for users switching devices"""
        self._ensure_not_disposed()
        self._update_sync_status(SyncStatus.RESTORING)

        try:
            restored = await self._service.restore_subscriptions()
            if not restored:
                self._update_sync_status(SyncStatus.SUCCESS)
                return RestoreResult.NO_SUBSCRIPTIONS_FOUND

            await self._service.refresh_subscription_status()
            status = await self._service.get_subscription_status()
            await self._save_cached_status(status)
            self._update_sync_status(SyncStatus.SUCCESS)
            logger.info(f"Subscriptions restored: {status.tier.value}")
            return RestoreResult.SUCCESS
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Subscription restore failed: {e}")
            self._update_sync_status(SyncStatus.FAILED)
            if isinstance(e, SubscriptionException):
                if e.kind == SubscriptionErrorKind.NETWORK_ERROR:
                    return RestoreResult.NETWORK_ERROR
                if e.kind == SubscriptionErrorKind.PLATFORM_ERROR:
                    return RestoreResult.PLATFORM_ERROR
            return RestoreResult.UNKNOWN_ERROR

    async def reconcile_pending_changes(self) -> bool:
        """
        Settle purchases left ambiguous by an interrupted session.

        Meant to run once at startup. When the platform reports pending
        changes, the entitlement is verified and cached. Returns True if a
        reconciliation took place.
        """
        self._ensure_not_disposed()
        try:
            if not await self._service.has_pending_changes():
                return False
            status = await self._service.verify_subscription_status()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Pending purchase reconciliation failed: {e}")
            return False

        if status.is_expired_at(self._clock()):
            await self._handle_subscription_expiration(status, mark_synced=True)
        else:
            await self._save_cached_status(status)
        logger.info(f"Reconciled pending subscription changes: {status.tier.value}")
        return True

    def dispose(self):
        if self._disposed:
            return
        self._cancel_task()
        self._disposed = True
        self._sync_status_stream.close()
        self._cached_status_stream.close()
