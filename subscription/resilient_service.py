"""
Fault-tolerant subscription service

ResilientSubscriptionService decorates any SubscriptionService with:

- a connectivity gate: purchase, cancel, restore and management calls fail
  fast with a network error while offline
- an automatic refresh once the network comes back (after a settle delay)
- retry, backoff and fallbacks from SubscriptionErrorHandler on every call
- a merged status stream that forwards base updates and substitutes a
  fallback status when the base stream reports an error
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Set

from subscription.connectivity import ConnectivityInfo, NetworkConnectivityService
from subscription.error_handler import SubscriptionErrorHandler
from subscription.errors import SubscriptionException
from subscription.models import (
    SubscriptionEvent,
    SubscriptionProduct,
    SubscriptionStatus,
    SubscriptionTier,
    find_default_product,
    get_default_products,
)
from subscription.service import SubscriptionService
from subscription.streams import StatusStream, StreamSubscription
from utils.logger import logger


class ResilientSubscriptionService(SubscriptionService):
    """Drop-in SubscriptionService with connectivity awareness and recovery"""

    def __init__(
        self,
        base_service: SubscriptionService,
        error_handler: Optional[SubscriptionErrorHandler] = None,
        connectivity_service: Optional[NetworkConnectivityService] = None,
        reconnect_settle_seconds: float = 2.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._base = base_service
        self._error_handler = error_handler or SubscriptionErrorHandler()
        self._connectivity = connectivity_service
        self.reconnect_settle_seconds = reconnect_settle_seconds
        self._sleep = sleep or asyncio.sleep

        self._stream: StatusStream[SubscriptionStatus] = StatusStream(name="resilient status stream")
        self._connectivity_subscription: Optional[StreamSubscription] = None
        self._base_subscription: Optional[StreamSubscription] = None
        self._tasks: Set[asyncio.Task] = set()

        self._last_connectivity: Optional[ConnectivityInfo] = None
        self._offline = False
        self._disposed = False

        self._initialize_monitoring()

    @property
    def error_handler(self) -> SubscriptionErrorHandler:
        return self._error_handler

    # ========================================================================
    # Monitoring
    # ========================================================================

    def _initialize_monitoring(self):
        if self._connectivity is not None:
            self._connectivity_subscription = self._connectivity.connectivity_stream.subscribe(
                self._handle_connectivity_change,
                lambda error: logger.warning(f"Connectivity monitoring error: {error}"),
            )

        self._base_subscription = self._base.subscription_status_stream().subscribe(
            self._handle_base_status,
            self._handle_status_stream_error,
        )

    def _handle_base_status(self, status: SubscriptionStatus):
        self._error_handler.cache_subscription_status(status)
        if not self._disposed:
            self._stream.emit(status)

    def _handle_status_stream_error(self, error: BaseException):
        if self._disposed:
            return
        wrapped = SubscriptionException.wrap(error, "Status stream error")
        logger.warning(f"Subscription status stream error: {wrapped}")
        if self._error_handler.should_continue_operation(wrapped):
            self._stream.emit(self._error_handler.get_fallback_status())

    def _handle_connectivity_change(self, info: ConnectivityInfo):
        self._last_connectivity = info
        was_offline = self._offline
        self._offline = info.is_disconnected

        if was_offline and info.is_connected:
            logger.info("Connectivity restored, scheduling subscription refresh")
            self._schedule(self._refresh_after_reconnection())

    def _schedule(self, coro):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop, skipping background refresh")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh_after_reconnection(self):
        try:
            await self._sleep(self.reconnect_settle_seconds)
            if not self._disposed:
                await self.refresh_subscription_status()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to refresh status after reconnection: {e}")

    def _ensure_not_disposed(self):
        if self._disposed:
            raise RuntimeError("Service has been disposed")

    async def _check_connectivity_if_needed(self):
        if self._connectivity is not None and self._last_connectivity is None:
            try:
                self._last_connectivity = await self._connectivity.get_connectivity_status()
                self._offline = self._last_connectivity.is_disconnected
            except Exception as e:
                logger.debug(f"Connectivity check failed: {e}")

    async def _ensure_connectivity(self):
        await self._check_connectivity_if_needed()
        if self._offline:
            raise SubscriptionException.network_error("This operation requires an internet connection")

    # ========================================================================
    # SubscriptionService
    # ========================================================================

    async def get_subscription_status(self) -> SubscriptionStatus:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.handle_status_retrieval(self._base.get_subscription_status)
        if result.success:
            if not result.fallback_used:
                self._error_handler.cache_subscription_status(result.data)
            return result.data

        if self._error_handler.should_continue_operation(result.error):
            return self._error_handler.get_fallback_status()
        raise result.error

    def subscription_status_stream(self) -> StatusStream[SubscriptionStatus]:
        self._ensure_not_disposed()
        return self._stream

    async def get_available_products(self) -> List[SubscriptionProduct]:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.execute_with_recovery(
            self._base.get_available_products,
            fallback=get_default_products,
            operation_name="get available products",
        )
        if result.success:
            return result.data
        raise result.error

    async def purchase_subscription(self, product_id: str) -> bool:
        self._ensure_not_disposed()
        await self._ensure_connectivity()

        result = await self._error_handler.handle_purchase(
            lambda: self._base.purchase_subscription(product_id), product_id
        )
        if result.success:
            return result.data
        raise result.error

    async def restore_subscriptions(self) -> bool:
        self._ensure_not_disposed()
        await self._ensure_connectivity()

        result = await self._error_handler.handle_restoration(self._base.restore_subscriptions)
        if result.success:
            return result.data
        raise result.error

    async def refresh_subscription_status(self) -> None:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.execute_with_recovery(
            self._base.refresh_subscription_status,
            operation_name="refresh subscription status",
        )
        if not result.success and not self._error_handler.should_continue_operation(result.error):
            raise result.error

    async def is_product_available(self, product_id: str) -> bool:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.execute_with_recovery(
            lambda: self._base.is_product_available(product_id),
            fallback=lambda: find_default_product(product_id) is not None,
            operation_name="check product availability",
        )
        if result.success:
            return result.data
        raise result.error

    async def get_product_info(self, product_id: str) -> Optional[SubscriptionProduct]:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.execute_with_recovery(
            lambda: self._base.get_product_info(product_id),
            fallback=lambda: find_default_product(product_id),
            operation_name="get product info",
        )
        if result.success:
            return result.data
        raise result.error

    async def cancel_subscription(self) -> None:
        self._ensure_not_disposed()
        await self._ensure_connectivity()

        result = await self._error_handler.execute_with_recovery(
            self._base.cancel_subscription,
            operation_name="cancel subscription",
        )
        if not result.success:
            raise result.error

    async def can_manage_subscription(self) -> bool:
        self._ensure_not_disposed()

        def fallback() -> bool:
            cached = self._error_handler.get_fallback_status()
            return cached.tier != SubscriptionTier.SEEKER and cached.is_active

        result = await self._error_handler.execute_with_recovery(
            self._base.can_manage_subscription,
            fallback=fallback,
            operation_name="check subscription management availability",
        )
        if result.success:
            return result.data
        return False

    async def open_subscription_management(self) -> None:
        self._ensure_not_disposed()
        await self._ensure_connectivity()

        result = await self._error_handler.execute_with_recovery(
            self._base.open_subscription_management,
            operation_name="open subscription management",
        )
        if not result.success:
            raise result.error

    async def verify_subscription_status(self) -> SubscriptionStatus:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.handle_verification(self._base.verify_subscription_status)
        if result.success:
            if not result.fallback_used:
                self._error_handler.cache_subscription_status(result.data)
            return result.data

        if self._error_handler.should_continue_operation(result.error):
            return self._error_handler.get_fallback_status()
        raise result.error

    async def supports_verification(self) -> bool:
        self._ensure_not_disposed()
        try:
            return await self._base.supports_verification()
        except Exception as e:
            logger.debug(f"supports_verification failed, assuming supported: {e}")
            return True

    async def get_subscription_history(self) -> List[SubscriptionEvent]:
        self._ensure_not_disposed()
        await self._check_connectivity_if_needed()

        result = await self._error_handler.execute_with_recovery(
            self._base.get_subscription_history,
            fallback=list,
            operation_name="get subscription history",
        )
        if result.success:
            return result.data
        raise result.error

    async def has_pending_changes(self) -> bool:
        self._ensure_not_disposed()

        result = await self._error_handler.execute_with_recovery(
            self._base.has_pending_changes,
            fallback=lambda: False,
            operation_name="check pending changes",
        )
        if result.success:
            return result.data
        return False

    def dispose(self) -> None:
        if self._disposed:
            return
        # Subscriptions go first so nothing emits into a closed stream
        if self._connectivity_subscription is not None:
            self._connectivity_subscription.cancel()
        if self._base_subscription is not None:
            self._base_subscription.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._stream.close()
        self._base.dispose()
        if self._connectivity is not None:
            self._connectivity.dispose()
        self._disposed = True
        logger.info("Resilient subscription service disposed")

    # ========================================================================
    # Extras
    # ========================================================================

    def get_last_error_message(self, error: SubscriptionException) -> str:
        return self._error_handler.get_user_friendly_message(error)

    def get_recovery_suggestions(self, error: SubscriptionException) -> List[str]:
        return self._error_handler.get_recovery_suggestions(error)

    @property
    def is_offline_mode(self) -> bool:
        return self._offline

    @property
    def has_cached_data(self) -> bool:
        return self._error_handler.has_cached_status

    @property
    def cache_age_minutes(self) -> Optional[int]:
        return self._error_handler.cache_age_minutes()

    def clear_cache(self):
        self._error_handler.clear_cache()

    @property
    def connectivity_info(self) -> Optional[ConnectivityInfo]:
        return self._last_connectivity

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def pending_task_count(self) -> int:
        return len(self._tasks)

    async def check_connectivity(self) -> Optional[ConnectivityInfo]:
        """Force a connectivity test; None without a probe or when it fails"""
        if self._connectivity is None:
            return None
        try:
            info = await self._connectivity.perform_connectivity_test()
        except Exception as e:
            logger.warning(f"Connectivity test failed: {e}")
            return None
        self._last_connectivity = info
        self._offline = info.is_disconnected
        return info

    async def wait_for_background_tasks(self):
        """Wait for scheduled background refreshes to finish"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
