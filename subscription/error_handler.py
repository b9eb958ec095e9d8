"""
Subscription error handling and recovery

SubscriptionErrorHandler is the single place where retry and fallback
decisions are made for platform operations:

- Transient errors (network, platform, verification, server) are retried
  with exponential backoff plus jitter
- Every attempt is bounded by an explicit timeout; a timeout counts as a
  retryable network error
- Purchases are never retried and never timed out
- After the retries are exhausted an optional fallback supplies a value
- The last good subscription status is cached for 30 minutes so the app is
  never left without a status
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from subscription.errors import SubscriptionErrorKind, SubscriptionException
from subscription.models import SubscriptionStatus
from utils.logger import logger

T = TypeVar("T")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, SubscriptionException) and error.should_retry


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff parameters"""
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    @classmethod
    def from_settings(cls, settings) -> 'RetryConfig':
        return cls(
            max_retries=settings.SUBSCRIPTION_MAX_RETRIES,
            base_delay_ms=settings.SUBSCRIPTION_BASE_DELAY_MS,
            max_delay_ms=settings.SUBSCRIPTION_MAX_DELAY_MS,
            backoff_multiplier=settings.SUBSCRIPTION_BACKOFF_MULTIPLIER,
            jitter_factor=settings.SUBSCRIPTION_JITTER_FACTOR,
        )

    def backoff_delay_ms(self, attempt: int) -> float:
        """Delay before retry ``attempt`` without jitter, clamped to [base, max]"""
        if attempt <= 0:
            return 0.0
        delay = self.base_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(max(delay, float(self.base_delay_ms)), float(self.max_delay_ms))

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in seconds before retry ``attempt``, jitter included"""
        clamped = self.backoff_delay_ms(attempt)
        if clamped == 0.0:
            return 0.0
        rng = rng or random
        jitter = rng.random() * self.jitter_factor * clamped
        return (clamped + jitter) / 1000.0


@dataclass(frozen=True)
class RecoveryResult(Generic[T]):
    """Outcome of an operation run through the error handler"""
    success: bool
    data: Optional[T] = None
    error: Optional[SubscriptionException] = None
    fallback_used: bool = False
    retry_count: int = 0

    @classmethod
    def succeeded(cls, data: T, fallback_used: bool = False, retry_count: int = 0) -> 'RecoveryResult[T]':
        return cls(success=True, data=data, fallback_used=fallback_used, retry_count=retry_count)

    @classmethod
    def failed(cls, error: SubscriptionException, retry_count: int = 0) -> 'RecoveryResult[T]':
        return cls(success=False, error=error, retry_count=retry_count)


FRIENDLY_MESSAGES = {
    SubscriptionErrorKind.NETWORK_ERROR: (
        "Please check your internet connection and try again. "
        "Your subscription status will be updated when connection is restored."
    ),
    SubscriptionErrorKind.PLATFORM_ERROR: (
        "There was an issue connecting to the app store. Please try again in a few moments."
    ),
    SubscriptionErrorKind.VERIFICATION_FAILED: (
        "Unable to verify your subscription status. "
        "You can continue using the app, and we'll try again automatically."
    ),
    SubscriptionErrorKind.PURCHASE_CANCELLED: (
        "Subscription purchase was cancelled. You can try again anytime from the subscription settings."
    ),
    SubscriptionErrorKind.PAYMENT_FAILED: (
        "Payment could not be processed. Please check your payment method and try again."
    ),
    SubscriptionErrorKind.SUBSCRIPTION_EXPIRED: (
        "Your subscription has expired. Renew now to continue enjoying premium features."
    ),
    SubscriptionErrorKind.RESTORATION_FAILED: (
        "Unable to restore previous subscriptions. If you believe this is an error, please contact support."
    ),
    SubscriptionErrorKind.SERVER_ERROR: (
        "Our servers are experiencing issues. Please try again in a few minutes."
    ),
}

RECOVERY_SUGGESTIONS = {
    SubscriptionErrorKind.NETWORK_ERROR: [
        "Check your internet connection",
        "Try switching between WiFi and mobile data",
        "Restart the app and try again",
    ],
    SubscriptionErrorKind.PLATFORM_ERROR: [
        "Restart the app and try again",
        "Check for app updates",
        "Try again in a few minutes",
    ],
    SubscriptionErrorKind.VERIFICATION_FAILED: [
        "The app will retry automatically",
        "Check your internet connection",
        "Restart the app if the issue persists",
    ],
    SubscriptionErrorKind.PAYMENT_FAILED: [
        "Check your payment method",
        "Ensure sufficient funds are available",
        "Try a different payment method",
        "Contact your bank if needed",
    ],
    SubscriptionErrorKind.RESTORATION_FAILED: [
        "Ensure you're signed in with the correct account",
        "Check that you have active subscriptions",
        "Try again in a few minutes",
        "Contact support if the issue persists",
    ],
}

DEFAULT_SUGGESTIONS = [
    "Try again in a few minutes",
    "Restart the app if the issue persists",
    "Contact support if needed",
]


class SubscriptionErrorHandler:
    """
    Retry, fallback and status caching for subscription operations.

    Args:
        retry_config: backoff parameters
        enable_fallbacks: allow fallback values after retries are exhausted
        enable_graceful_degradation: keep serving cached data on transient errors
        max_cache_age_minutes: cached status older than this is discarded
        operation_timeout: per-attempt deadline in seconds (None or 0 disables it)
        clock / sleep / rng: injectable time, delay and jitter sources
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        enable_fallbacks: bool = True,
        enable_graceful_degradation: bool = True,
        max_cache_age_minutes: int = 30,
        operation_timeout: Optional[float] = 30.0,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.enable_fallbacks = enable_fallbacks
        self.enable_graceful_degradation = enable_graceful_degradation
        self.max_cache_age = timedelta(minutes=max_cache_age_minutes)
        self.operation_timeout = operation_timeout
        self._clock = clock or datetime.now
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._cached_status: Optional[SubscriptionStatus] = None
        self._cache_timestamp: Optional[datetime] = None

    # ========================================================================
    # Retry engine
    # ========================================================================

    def _backoff_wait(self, retry_state: RetryCallState) -> float:
        # attempt_number is the attempt that just failed, i.e. the upcoming retry
        return self.retry_config.calculate_delay(retry_state.attempt_number, self._rng)

    async def _attempt(self, operation: Callable[[], Awaitable[T]], name: str, enable_timeout: bool = True) -> T:
        if not enable_timeout or not self.operation_timeout:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=self.operation_timeout)
        except asyncio.TimeoutError as e:
            raise SubscriptionException.network_error(
                f"{name} timed out after {self.operation_timeout}s", e
            ) from e

    async def execute_with_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Optional[T]]] = None,
        operation_name: Optional[str] = None,
        enable_retry: bool = True,
        enable_timeout: bool = True,
    ) -> RecoveryResult[T]:
        """
        Run operation with retries and an optional fallback.

        With enable_timeout off, attempts are not bounded by operation_timeout.
        Never raises for operation failures; the outcome is reported through
        the returned RecoveryResult. Task cancellation propagates.
        """
        name = operation_name or "operation"
        max_retries = self.retry_config.max_retries if enable_retry else 0
        retry_count = 0
        last_error: Optional[SubscriptionException] = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=self._backoff_wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=lambda state: logger.debug(
                f"Retrying {name} (attempt {state.attempt_number}) after "
                f"{state.next_action.sleep * 1000:.0f}ms: {state.outcome.exception()}"
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    retry_count = attempt.retry_state.attempt_number - 1
                    result = await self._attempt(operation, name, enable_timeout)
            return RecoveryResult.succeeded(result, retry_count=retry_count)
        except SubscriptionException as e:
            last_error = e
        except Exception as e:
            last_error = SubscriptionException.unknown(f"Unexpected error in {name}", e)
            logger.error(f"Unexpected error in {name}: {e}")

        if self.enable_fallbacks and fallback is not None:
            try:
                value = fallback()
                if value is not None:
                    logger.warning(f"Using fallback for {name} after: {last_error}")
                    return RecoveryResult.succeeded(value, fallback_used=True, retry_count=retry_count)
            except Exception as e:
                logger.warning(f"Fallback failed for {name}: {e}")

        return RecoveryResult.failed(last_error or SubscriptionException.unknown(), retry_count=retry_count)

    async def handle_status_retrieval(
        self, get_status: Callable[[], Awaitable[SubscriptionStatus]]
    ) -> RecoveryResult[SubscriptionStatus]:
        return await self.execute_with_recovery(
            get_status,
            fallback=self.get_cached_status,
            operation_name="subscription status retrieval",
        )

    async def handle_purchase(
        self, purchase: Callable[[], Awaitable[bool]], product_id: str
    ) -> RecoveryResult[bool]:
        # The payment sheet waits on the user: never retried, never timed out
        return await self.execute_with_recovery(
            purchase,
            operation_name=f"subscription purchase ({product_id})",
            enable_retry=False,
            enable_timeout=False,
        )

    async def handle_restoration(self, restore: Callable[[], Awaitable[bool]]) -> RecoveryResult[bool]:
        return await self.execute_with_recovery(restore, operation_name="subscription restoration")

    async def handle_verification(
        self, verify: Callable[[], Awaitable[SubscriptionStatus]]
    ) -> RecoveryResult[SubscriptionStatus]:
        result = await self.execute_with_recovery(
            verify,
            fallback=self.get_cached_status,
            operation_name="subscription verification",
        )
        if not result.success and self.enable_graceful_degradation:
            cached = self.get_cached_status()
            if cached is not None:
                return RecoveryResult.succeeded(cached, fallback_used=True, retry_count=result.retry_count)
        return result

    # ========================================================================
    # Status cache
    # ========================================================================

    def cache_subscription_status(self, status: SubscriptionStatus):
        self._cached_status = status
        self._cache_timestamp = self._clock()

    def get_cached_status(self) -> Optional[SubscriptionStatus]:
        """Cached status, or None when absent or older than the max age"""
        if self._cached_status is None or self._cache_timestamp is None:
            return None
        if self._clock() - self._cache_timestamp > self.max_cache_age:
            self.clear_cache()
            return None
        return self._cached_status

    @property
    def has_cached_status(self) -> bool:
        return self.get_cached_status() is not None

    def get_fallback_status(self) -> SubscriptionStatus:
        """Fresh cached status, else the free tier; never None"""
        cached = self.get_cached_status()
        if cached is not None:
            return cached
        return SubscriptionStatus.free(self._clock())

    def clear_cache(self):
        self._cached_status = None
        self._cache_timestamp = None

    def cache_age_minutes(self) -> Optional[int]:
        if self._cache_timestamp is None:
            return None
        return int((self._clock() - self._cache_timestamp).total_seconds() // 60)

    # ========================================================================
    # User-facing guidance
    # ========================================================================

    def get_user_friendly_message(self, error: SubscriptionException) -> str:
        return FRIENDLY_MESSAGES.get(error.kind, error.kind.user_message)

    def get_recovery_suggestions(self, error: SubscriptionException) -> List[str]:
        return list(RECOVERY_SUGGESTIONS.get(error.kind, DEFAULT_SUGGESTIONS))

    def should_continue_operation(self, error: SubscriptionException) -> bool:
        """Whether the app can keep working despite error"""
        kind = error.kind
        if kind.should_retry:
            return self.enable_graceful_degradation and self.has_cached_status
        # Expiration downgrades rather than blocks
        if kind == SubscriptionErrorKind.SUBSCRIPTION_EXPIRED:
            return True
        # Failed purchases and restores leave the current entitlement intact
        if kind in (
            SubscriptionErrorKind.PURCHASE_CANCELLED,
            SubscriptionErrorKind.PAYMENT_FAILED,
            SubscriptionErrorKind.RESTORATION_FAILED,
        ):
            return True
        return False

    @property
    def is_production_ready(self) -> bool:
        return (
            self.enable_fallbacks
            and self.enable_graceful_degradation
            and self.retry_config.max_retries > 0
        )
