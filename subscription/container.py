"""
Subscription stack wiring

Builds the full set of subscription services from a Settings instance.
Components are plain objects passed by reference; nothing here is a global.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from config import Settings
from subscription.connectivity import HttpConnectivityService, NetworkConnectivityService
from subscription.error_handler import RetryConfig, SubscriptionErrorHandler
from subscription.feature_gate import FeatureGateService
from subscription.resilient_service import ResilientSubscriptionService
from subscription.service import SubscriptionService
from subscription.storage import EncryptedJsonFileKeyValueStore, JsonFileKeyValueStore, KeyValueStore
from subscription.sync_service import SubscriptionSyncService
from subscription.usage_tracker import UsageTrackingService
from utils.logger import logger


@dataclass
class SubscriptionStack:
    """Wired subscription services"""
    store: KeyValueStore
    usage_tracker: UsageTrackingService
    feature_gate: FeatureGateService
    error_handler: SubscriptionErrorHandler
    service: ResilientSubscriptionService
    sync_service: SubscriptionSyncService
    connectivity: Optional[NetworkConnectivityService] = None
    gate_subscriptions: tuple = ()

    async def start(self):
        """Load cached state, reconcile interrupted purchases, start syncing"""
        await self.sync_service.initialize()
        await self.usage_tracker.check_and_reset_if_needed()
        await self.sync_service.reconcile_pending_changes()
        if isinstance(self.connectivity, HttpConnectivityService):
            await self.connectivity.start_monitoring()
        self.sync_service.start()

    async def stop(self):
        await self.sync_service.stop()
        if isinstance(self.connectivity, HttpConnectivityService):
            await self.connectivity.stop_monitoring()

    def dispose(self):
        for subscription in self.gate_subscriptions:
            subscription.cancel()
        self.sync_service.dispose()
        self.service.dispose()


def create_store(settings: Settings) -> KeyValueStore:
    """JSON file store, encrypted when a secret is configured"""
    settings.create_directories()
    if settings.STORE_ENCRYPTION_SECRET:
        return EncryptedJsonFileKeyValueStore(
            settings.store_path,
            secret=settings.STORE_ENCRYPTION_SECRET,
            salt=settings.STORE_ENCRYPTION_SALT,
        )
    return JsonFileKeyValueStore(settings.store_path)


def build_subscription_stack(
    settings: Settings,
    base_service: SubscriptionService,
    store: Optional[KeyValueStore] = None,
    connectivity: Optional[NetworkConnectivityService] = None,
    clock: Optional[Callable[[], datetime]] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    rng: Optional[random.Random] = None,
) -> SubscriptionStack:
    """
    Wire tracker, gate, error handler, resilient service and sync service.

    Without an explicit store the settings decide between the plain and the
    encrypted JSON file store. Without an explicit connectivity probe an
    HTTP probe over CONNECTIVITY_TEST_URLS is created.
    """
    clock = clock or datetime.now
    sleep = sleep or asyncio.sleep

    if store is None:
        store = create_store(settings)
    if connectivity is None:
        connectivity = HttpConnectivityService(
            settings.CONNECTIVITY_TEST_URLS,
            timeout=settings.CONNECTIVITY_TIMEOUT_SECONDS,
            check_interval=settings.CONNECTIVITY_CHECK_INTERVAL_SECONDS,
            clock=clock,
        )

    error_handler = SubscriptionErrorHandler(
        retry_config=RetryConfig.from_settings(settings),
        enable_fallbacks=settings.SUBSCRIPTION_ENABLE_FALLBACKS,
        enable_graceful_degradation=settings.SUBSCRIPTION_ENABLE_GRACEFUL_DEGRADATION,
        max_cache_age_minutes=settings.SUBSCRIPTION_CACHE_MAX_AGE_MINUTES,
        operation_timeout=settings.SUBSCRIPTION_OPERATION_TIMEOUT_SECONDS,
        clock=clock,
        sleep=sleep,
        rng=rng,
    )
    service = ResilientSubscriptionService(
        base_service,
        error_handler=error_handler,
        connectivity_service=connectivity,
        reconnect_settle_seconds=settings.RECONNECT_SETTLE_SECONDS,
        sleep=sleep,
    )
    usage_tracker = UsageTrackingService(store, clock=clock)
    feature_gate = FeatureGateService(usage_tracker, clock=clock)
    sync_service = SubscriptionSyncService(
        service,
        store,
        sync_interval_minutes=settings.SYNC_INTERVAL_MINUTES,
        max_retry_attempts=settings.SYNC_MAX_RETRY_ATTEMPTS,
        retry_delay_seconds=settings.SYNC_RETRY_DELAY_SECONDS,
        clock=clock,
        sleep=sleep,
    )

    # Live platform updates first, then the sync service's reconciled view
    subscriptions = (
        feature_gate.attach_to(service.subscription_status_stream()),
        feature_gate.attach_to(sync_service.cached_status_stream),
    )

    logger.info("Subscription stack built")
    return SubscriptionStack(
        store=store,
        usage_tracker=usage_tracker,
        feature_gate=feature_gate,
        error_handler=error_handler,
        service=service,
        sync_service=sync_service,
        connectivity=connectivity,
        gate_subscriptions=subscriptions,
    )
