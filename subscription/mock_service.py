"""
Mock subscription platform

MockSubscriptionService simulates the billing platform for development and
tests. Failures are injected through a FaultInjector policy instead of
ambient randomness, so a test can script exactly which call fails and how.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Union

from subscription.errors import SubscriptionErrorKind, SubscriptionException
from subscription.models import (
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionProduct,
    SubscriptionStatus,
    SubscriptionTier,
    get_default_products,
)
from subscription.service import SubscriptionService
from subscription.streams import StatusStream
from utils.logger import logger


Fault = Optional[Union[SubscriptionErrorKind, BaseException]]


# ============================================================================
# Fault injection policies
# ============================================================================

class FaultInjector(ABC):
    """Decides whether a given platform call fails"""

    @abstractmethod
    def next_fault(self, operation: str) -> Optional[BaseException]:
        """Exception to raise for this call of operation, or None"""


class NoFaults(FaultInjector):
    """Every call succeeds"""

    def next_fault(self, operation: str) -> Optional[BaseException]:
        return None


class ScriptedFaults(FaultInjector):
    """
    Replays a per-operation script of outcomes.

    Each entry is consumed by one call: None lets the call through, an error
    kind raises SubscriptionException of that kind, an exception instance is
    raised as is. The ``"*"`` script applies to operations without their own.
    Once a script is exhausted the operation succeeds.
    """

    WILDCARD = "*"

    def __init__(self, script: Optional[Dict[str, Iterable[Fault]]] = None):
        self._scripts: Dict[str, Deque[Fault]] = {}
        for operation, faults in (script or {}).items():
            self.add(operation, *faults)

    def add(self, operation: str, *faults: Fault) -> 'ScriptedFaults':
        self._scripts.setdefault(operation, deque()).extend(faults)
        return self

    def fail_next(self, operation: str, kind: SubscriptionErrorKind, times: int = 1) -> 'ScriptedFaults':
        return self.add(operation, *([kind] * times))

    def remaining(self, operation: str) -> int:
        return len(self._scripts.get(operation, ()))

    def next_fault(self, operation: str) -> Optional[BaseException]:
        script = self._scripts.get(operation)
        if not script:
            script = self._scripts.get(self.WILDCARD)
        if not script:
            return None
        fault = script.popleft()
        if fault is None:
            return None
        if isinstance(fault, SubscriptionErrorKind):
            return SubscriptionException(fault, f"Injected fault in {operation}")
        return fault


class RandomFaults(FaultInjector):
    """Fails a fraction of calls with a transient error, reproducibly via seed"""

    DEFAULT_KINDS = (
        SubscriptionErrorKind.NETWORK_ERROR,
        SubscriptionErrorKind.PLATFORM_ERROR,
        SubscriptionErrorKind.VERIFICATION_FAILED,
    )

    def __init__(self, rate: float, seed: Optional[int] = None,
                 kinds: Sequence[SubscriptionErrorKind] = DEFAULT_KINDS):
        if not 0.0 <= rate <= 1.0:
            raise ValueError("Error rate must be between 0.0 and 1.0")
        if not kinds:
            raise ValueError("At least one error kind is required")
        self.rate = rate
        self.kinds = tuple(kinds)
        self._random = random.Random(seed)

    def next_fault(self, operation: str) -> Optional[BaseException]:
        if self.rate > 0.0 and self._random.random() < self.rate:
            kind = self._random.choice(self.kinds)
            return SubscriptionException(kind, f"Random fault in {operation}")
        return None


# ============================================================================
# Mock service
# ============================================================================

class MockSubscriptionService(SubscriptionService):
    """
    In-memory billing platform.

    Behaviour knobs:
        faults: FaultInjector consulted at the start of every platform call
        latency: simulated round-trip in seconds (awaited through ``sleep``)
        purchase_succeeds: False makes every purchase a user cancellation
        restore_tier: tier found by restore_subscriptions (None = nothing to restore)
        pending_changes: value reported by has_pending_changes
    """

    def __init__(
        self,
        faults: Optional[FaultInjector] = None,
        latency: float = 0.0,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        products: Optional[List[SubscriptionProduct]] = None,
    ):
        self.faults = faults or NoFaults()
        self.latency = latency
        self._clock = clock or datetime.now
        self._sleep = sleep or asyncio.sleep
        self._products = list(products) if products is not None else get_default_products()

        self.purchase_succeeds = True
        self.restore_succeeds = True
        self.restore_tier: Optional[SubscriptionTier] = None
        self.pending_changes = False

        self.call_counts: Counter = Counter()
        self._events: List[SubscriptionEvent] = []
        self._status = SubscriptionStatus.free(self._clock())
        self._stream: StatusStream[SubscriptionStatus] = StatusStream(self._status, name="mock status stream")
        self._disposed = False

    # ========================================================================
    # Internals
    # ========================================================================

    def _ensure_not_disposed(self):
        if self._disposed:
            raise RuntimeError("Service has been disposed")

    async def _platform_call(self, operation: str):
        """Bookkeeping shared by every simulated round-trip"""
        self._ensure_not_disposed()
        self.call_counts[operation] += 1
        if self.latency > 0:
            await self._sleep(self.latency)
        fault = self.faults.next_fault(operation)
        if fault is not None:
            logger.debug(f"Mock platform failing {operation}: {fault}")
            raise fault

    def _set_status(self, status: SubscriptionStatus):
        self._status = status
        self._stream.emit(status)

    def _find_product(self, product_id: str) -> Optional[SubscriptionProduct]:
        for product in self._products:
            if product.id == product_id:
                return product
        return None

    # ========================================================================
    # SubscriptionService
    # ========================================================================

    async def get_subscription_status(self) -> SubscriptionStatus:
        await self._platform_call("get_subscription_status")
        return self._status

    def subscription_status_stream(self) -> StatusStream[SubscriptionStatus]:
        self._ensure_not_disposed()
        return self._stream

    async def get_available_products(self) -> List[SubscriptionProduct]:
        await self._platform_call("get_available_products")
        return list(self._products)

    async def purchase_subscription(self, product_id: str) -> bool:
        await self._platform_call("purchase_subscription")

        product = self._find_product(product_id)
        if product is None:
            raise SubscriptionException.invalid_product(product_id)

        if not self.purchase_succeeds:
            raise SubscriptionException.purchase_cancelled()

        now = self._clock()
        current = self._status
        if current.tier.level >= product.tier.level and current.is_valid_at(now):
            raise SubscriptionException.already_subscribed(
                f"Already subscribed to {current.tier.display_name}"
            )

        days = 365 if product.period == "yearly" else 30
        new_status = SubscriptionStatus(
            tier=product.tier,
            is_active=True,
            expiration_date=now + timedelta(days=days),
            platform_subscription_id=f"mock_{product.id}_{int(now.timestamp() * 1000)}",
            usage_counts={},
            last_updated=now,
        )
        event_type = (
            SubscriptionEventType.UPGRADED if current.tier.is_paid and current.is_valid_at(now)
            else SubscriptionEventType.PURCHASED
        )
        self._events.append(SubscriptionEvent(
            type=event_type,
            timestamp=now,
            tier=product.tier,
            previous_tier=current.tier,
            expiration_date=new_status.expiration_date,
            platform_transaction_id=new_status.platform_subscription_id,
        ))
        self._set_status(new_status)
        logger.info(f"Mock purchase completed: {product.id}")
        return True

    async def restore_subscriptions(self) -> bool:
        await self._platform_call("restore_subscriptions")

        if not self.restore_succeeds:
            raise SubscriptionException.restoration_failed()

        if self.restore_tier is None or not self.restore_tier.is_paid:
            return False

        now = self._clock()
        restored = SubscriptionStatus(
            tier=self.restore_tier,
            is_active=True,
            expiration_date=now + timedelta(days=15),
            platform_subscription_id=f"restored_{self.restore_tier.value}_{int(now.timestamp() * 1000)}",
            usage_counts={},
            last_updated=now,
        )
        self._events.append(SubscriptionEvent(
            type=SubscriptionEventType.RESTORED,
            timestamp=now,
            tier=restored.tier,
            previous_tier=self._status.tier,
            expiration_date=restored.expiration_date,
            platform_transaction_id=restored.platform_subscription_id,
        ))
        self._set_status(restored)
        return True

    async def refresh_subscription_status(self) -> None:
        await self._platform_call("refresh_subscription_status")
        now = self._clock()
        if self._status.is_active and self._status.is_expired_at(now):
            self._set_status(self._status.copy_with(is_active=False, last_updated=now))

    async def is_product_available(self, product_id: str) -> bool:
        await self._platform_call("is_product_available")
        return self._find_product(product_id) is not None

    async def get_product_info(self, product_id: str) -> Optional[SubscriptionProduct]:
        await self._platform_call("get_product_info")
        return self._find_product(product_id)

    async def cancel_subscription(self) -> None:
        # Platform cancellation keeps access until the expiration date
        await self._platform_call("cancel_subscription")

    async def can_manage_subscription(self) -> bool:
        await self._platform_call("can_manage_subscription")
        return self._status.tier != SubscriptionTier.SEEKER and self._status.is_active

    async def open_subscription_management(self) -> None:
        await self._platform_call("open_subscription_management")

    async def verify_subscription_status(self) -> SubscriptionStatus:
        await self._platform_call("verify_subscription_status")
        now = self._clock()
        if self._status.is_active and self._status.is_expired_at(now):
            self._set_status(self._status.copy_with(is_active=False, last_updated=now))
        return self._status

    async def supports_verification(self) -> bool:
        self._ensure_not_disposed()
        return True

    async def get_subscription_history(self) -> List[SubscriptionEvent]:
        await self._platform_call("get_subscription_history")
        return list(self._events)

    async def has_pending_changes(self) -> bool:
        await self._platform_call("has_pending_changes")
        return self.pending_changes

    def dispose(self) -> None:
        if not self._disposed:
            self._stream.close()
            self._disposed = True

    # ========================================================================
    # Test helpers
    # ========================================================================

    @property
    def current_status(self) -> SubscriptionStatus:
        return self._status

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def set_status(self, status: SubscriptionStatus):
        self._ensure_not_disposed()
        self._set_status(status)

    def simulate_expiration(self):
        """Expire a paid subscription as of yesterday"""
        self._ensure_not_disposed()
        if self._status.tier == SubscriptionTier.SEEKER:
            return
        now = self._clock()
        self._events.append(SubscriptionEvent(
            type=SubscriptionEventType.EXPIRED,
            timestamp=now,
            tier=self._status.tier,
            expiration_date=now - timedelta(days=1),
            platform_transaction_id=self._status.platform_subscription_id,
        ))
        self._set_status(self._status.copy_with(
            expiration_date=now - timedelta(days=1),
            is_active=False,
            last_updated=now,
        ))

    def add_usage(self, feature: str, count: int):
        self._ensure_not_disposed()
        counts = dict(self._status.usage_counts)
        counts[feature] = counts.get(feature, 0) + count
        self._set_status(self._status.copy_with(usage_counts=counts, last_updated=self._clock()))

    def reset_to_free_tier(self):
        self._ensure_not_disposed()
        self._set_status(SubscriptionStatus.free(self._clock()))

    def emit_stream_error(self, error: BaseException):
        """Push an error through the status stream"""
        self._ensure_not_disposed()
        self._stream.emit_error(error)
