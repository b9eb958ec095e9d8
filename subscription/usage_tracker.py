"""
Usage Tracking for Lunanul subscriptions

Tracks monthly per-feature usage counters (readings, manual interpretations,
...) in the key-value store, resets them on calendar month rollover and keeps
a bounded history of past months for analytics.

Usage tracking is advisory: storage failures are logged and degrade to
defaults instead of raising.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from subscription.models import SubscriptionTier
from subscription.storage import KeyValueStore
from subscription.usage_limits import UsageLimits
from utils.logger import logger


USAGE_PREFIX = "usage_count_"
LAST_RESET_KEY = "usage_last_reset"
USAGE_HISTORY_KEY = "usage_history"

# Months of history kept per feature
MAX_HISTORY_ENTRIES = 12


class UsageTrackingService:
    """
    Per-feature monthly usage counters backed by a KeyValueStore.

    Counters live under ``usage_count_<feature>``. History is a single JSON
    blob mapping feature -> list of past monthly counts (oldest first).
    """

    def __init__(self, store: KeyValueStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or datetime.now
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _key(feature: str) -> str:
        return f"{USAGE_PREFIX}{feature}"

    # ========================================================================
    # Counters
    # ========================================================================

    async def get_usage_count(self, feature: str) -> int:
        """Current count for feature, 0 if never recorded"""
        try:
            count = await self.store.get_int(self._key(feature))
        except Exception as e:
            logger.error(f"Failed to read usage for {feature}: {e}")
            return 0
        return max(0, count or 0)

    async def increment_usage(self, feature: str) -> int:
        """
        Add one use of feature and return the new count.

        Read-modify-write serialised by an in-process lock; not atomic across
        processes sharing the same store.
        """
        async with self._lock:
            count = await self.get_usage_count(feature) + 1
            try:
                await self.store.set_int(self._key(feature), count)
            except Exception as e:
                logger.error(f"Failed to record usage for {feature}: {e}")
                return count - 1
        logger.debug(f"Recorded usage for {feature}: {count}")
        return count

    async def set_usage_count(self, feature: str, count: int):
        """Overwrite a counter (data migration and tests); negatives clamp to 0"""
        try:
            await self.store.set_int(self._key(feature), max(0, int(count)))
        except Exception as e:
            logger.error(f"Failed to set usage for {feature}: {e}")

    async def get_all_usage_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        try:
            keys = await self.store.keys()
            for key in keys:
                if not key.startswith(USAGE_PREFIX):
                    continue
                value = await self.store.get_int(key)
                if value is None:
                    continue
                counts[key[len(USAGE_PREFIX):]] = max(0, value)
        except Exception as e:
            logger.error(f"Failed to read usage counts: {e}")
        return counts

    # ========================================================================
    # Monthly reset
    # ========================================================================

    async def get_last_reset_date(self) -> Optional[datetime]:
        try:
            raw = await self.store.get_string(LAST_RESET_KEY)
        except Exception as e:
            logger.error(f"Failed to read last reset date: {e}")
            return None
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed last reset date: {raw!r}")
            return None

    async def set_last_reset_date(self, date: datetime):
        try:
            await self.store.set_string(LAST_RESET_KEY, date.isoformat())
        except Exception as e:
            logger.error(f"Failed to store last reset date: {e}")

    async def should_reset_monthly_usage(self) -> bool:
        """True when never reset, or the stored reset is in another calendar month"""
        last_reset = await self.get_last_reset_date()
        if last_reset is None:
            return True
        now = self._now()
        return (now.year, now.month) != (last_reset.year, last_reset.month)

    async def reset_monthly_usage(self):
        """Archive current counters into history, zero them, stamp the reset"""
        async with self._lock:
            await self._store_usage_history()
            try:
                for key in await self.store.keys():
                    if key.startswith(USAGE_PREFIX):
                        await self.store.remove(key)
            except Exception as e:
                logger.error(f"Failed to clear usage counters: {e}")
            await self.set_last_reset_date(self._now())
        logger.info("Monthly usage reset")

    async def check_and_reset_if_needed(self) -> bool:
        """Reset if a new month has started; returns whether a reset happened"""
        if await self.should_reset_monthly_usage():
            await self.reset_monthly_usage()
            return True
        return False

    async def clear_all_usage(self):
        """Remove counters, history and the reset stamp"""
        try:
            for key in await self.store.keys():
                if key.startswith(USAGE_PREFIX) or key in (LAST_RESET_KEY, USAGE_HISTORY_KEY):
                    await self.store.remove(key)
        except Exception as e:
            logger.error(f"Failed to clear usage data: {e}")
        logger.info("All usage data cleared")

    # ========================================================================
    # History
    # ========================================================================

    async def get_usage_history(self) -> Dict[str, List[int]]:
        """Past monthly counts per feature; malformed data reads as empty"""
        try:
            data = await self.store.get_json(USAGE_HISTORY_KEY)
        except Exception as e:
            logger.warning(f"Could not read usage history: {e}")
            return {}
        if data is None:
            return {}
        try:
            return {str(feature): [int(v) for v in values] for feature, values in data.items()}
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed usage history: {e}")
            return {}

    async def _store_usage_history(self):
        current = await self.get_all_usage_counts()
        if not current:
            return

        history = await self.get_usage_history()
        for feature, count in current.items():
            entries = history.setdefault(feature, [])
            entries.append(count)
            history[feature] = entries[-MAX_HISTORY_ENTRIES:]

        try:
            await self.store.set_json(USAGE_HISTORY_KEY, history)
        except Exception as e:
            logger.error(f"Failed to store usage history: {e}")

    # ========================================================================
    # Limit queries
    # ========================================================================

    async def is_within_limit(self, tier: SubscriptionTier, feature: str) -> bool:
        return UsageLimits.is_within_limit(tier, feature, await self.get_usage_count(feature))

    async def has_reached_limit(self, tier: SubscriptionTier, feature: str) -> bool:
        return UsageLimits.has_reached_limit(tier, feature, await self.get_usage_count(feature))

    async def get_remaining_usage(self, tier: SubscriptionTier, feature: str) -> int:
        return UsageLimits.remaining_usage(tier, feature, await self.get_usage_count(feature))

    async def get_usage_percentage(self, tier: SubscriptionTier, feature: str) -> float:
        return UsageLimits.usage_percentage(tier, feature, await self.get_usage_count(feature))

    async def is_approaching_limit(self, tier: SubscriptionTier, feature: str) -> bool:
        return UsageLimits.is_approaching_limit(tier, feature, await self.get_usage_count(feature))

    async def get_usage_summary(self, tier: SubscriptionTier) -> Dict[str, Dict[str, Any]]:
        """Usage snapshot for every feature the tier limits"""
        all_usage = await self.get_all_usage_counts()
        summary = {}
        for feature in UsageLimits.limited_features(tier):
            current = all_usage.get(feature, 0)
            limit = UsageLimits.limit_for(tier, feature)
            summary[feature] = {
                "current": current,
                "limit": limit,
                "remaining": UsageLimits.remaining_usage(tier, feature, current),
                "percentage": UsageLimits.usage_percentage(tier, feature, current),
                "approaching_limit": UsageLimits.is_approaching_limit(tier, feature, current),
                "reached_limit": UsageLimits.has_reached_limit(tier, feature, current),
            }
        return summary

    async def get_usage_statistics(self) -> Dict[str, Any]:
        all_usage = await self.get_all_usage_counts()
        last_reset = await self.get_last_reset_date()
        return {
            "current_usage": all_usage,
            "usage_history": await self.get_usage_history(),
            "last_reset": last_reset.isoformat() if last_reset else None,
            "total_features_tracked": len(all_usage),
            "total_usage_this_month": sum(all_usage.values()),
        }
