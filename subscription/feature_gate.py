"""
Feature Gate - controls access to features based on subscription

Combines the current subscription status with monthly usage counters to
authorize individual actions and to explain what upgrade would unlock a
blocked one.

Usage:
    gate = FeatureGateService(usage_tracker)
    gate.attach_to(sync_service.cached_status_stream)

    # Runtime check
    if await gate.can_access_spread(SpreadType.CELTIC):
        ...

    # Check and consume in one step
    if not await gate.validate_and_consume_usage(READINGS):
        requirement = await gate.get_upgrade_requirement(READINGS)

    # Decorator-based
    @feature_required(gate, 'audio_reading')
    async def play_reading(...):
        ...

Unknown feature keys are always denied.
"""

import inspect
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Dict, Optional

from subscription.errors import SubscriptionException
from subscription.models import (
    FeatureAccess,
    GuideType,
    SpreadType,
    SubscriptionStatus,
    SubscriptionTier,
    TIER_ORDER,
    UpgradeReason,
    UpgradeRequirement,
)
from subscription.streams import StatusStream, StreamSubscription
from subscription.usage_limits import MANUAL_INTERPRETATIONS, READINGS, UsageLimits
from subscription.usage_tracker import UsageTrackingService
from utils.logger import logger


# Feature keys
SPREAD_ACCESS = "spread_access"
GUIDE_ACCESS = "guide_access"
AUDIO_READING = "audio_reading"
CUSTOMIZATION = "customization"
EARLY_ACCESS = "early_access"
AD_FREE = "ad_free"

USAGE_LIMITED_FEATURES = (READINGS, MANUAL_INTERPRETATIONS)


class FeatureGateService:
    """
    Central authorization point for subscription features.

    The current status is the only mutable state; everything else is
    derived from it. An inactive or expired status grants the free tier.
    """

    # Tier hierarchy for comparison (higher = more features)
    TIER_HIERARCHY = {tier: tier.level for tier in TIER_ORDER}

    # Capability flag -> (minimum tier, reason, display name)
    CAPABILITY_REQUIREMENTS = {
        AUDIO_READING: (SubscriptionTier.ORACLE, UpgradeReason.PREMIUM_FEATURE, "Audio Readings"),
        CUSTOMIZATION: (SubscriptionTier.ORACLE, UpgradeReason.PREMIUM_FEATURE, "Customization"),
        EARLY_ACCESS: (SubscriptionTier.ORACLE, UpgradeReason.PREMIUM_FEATURE, "Early Access"),
        AD_FREE: (SubscriptionTier.MYSTIC, UpgradeReason.TIER_RESTRICTION, "Ad-Free Experience"),
    }

    USAGE_FEATURE_NAMES = {
        MANUAL_INTERPRETATIONS: "Manual Interpretations",
        READINGS: "Readings",
    }

    def __init__(
        self,
        usage_tracker: UsageTrackingService,
        initial_status: Optional[SubscriptionStatus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.usage_tracker = usage_tracker
        self._clock = clock or datetime.now
        self._current_status = initial_status or SubscriptionStatus.free(self._clock())

    # ========================================================================
    # Status
    # ========================================================================

    async def get_current_subscription_status(self) -> SubscriptionStatus:
        return self._current_status

    @property
    def current_status(self) -> SubscriptionStatus:
        return self._current_status

    def update_subscription_status(self, status: SubscriptionStatus):
        if status.tier != self._current_status.tier:
            logger.info(f"Feature gate tier: {self._current_status.tier.value} -> {status.tier.value}")
        self._current_status = status

    def attach_to(self, stream: StatusStream[SubscriptionStatus]) -> StreamSubscription:
        """Follow a status stream; the current value is applied immediately"""
        return stream.subscribe(self.update_subscription_status)

    @property
    def effective_tier(self) -> SubscriptionTier:
        """Tier whose entitlement applies right now"""
        if self._current_status.is_valid_at(self._clock()):
            return self._current_status.tier
        return SubscriptionTier.SEEKER

    def get_feature_access(self, tier: Optional[SubscriptionTier] = None) -> FeatureAccess:
        return FeatureAccess.for_tier(tier or self.effective_tier)

    # ========================================================================
    # Access checks
    # ========================================================================

    async def _check_usage_limit(self, feature: str, max_usage: int) -> bool:
        if max_usage == 0:
            return True
        return await self.usage_tracker.get_usage_count(feature) < max_usage

    def _usage_limit(self, access: FeatureAccess, feature: str) -> int:
        if feature == READINGS:
            return access.max_readings
        return access.max_manual_interpretations

    async def can_access_feature(self, feature_key: str) -> bool:
        access = self.get_feature_access()

        if feature_key in (SPREAD_ACCESS, GUIDE_ACCESS):
            # Every tier has some spreads and guides
            return True
        if feature_key in USAGE_LIMITED_FEATURES:
            return await self._check_usage_limit(feature_key, self._usage_limit(access, feature_key))
        if feature_key == AUDIO_READING:
            return access.has_audio_readings
        if feature_key == CUSTOMIZATION:
            return access.has_customization
        if feature_key == EARLY_ACCESS:
            return access.has_early_access
        if feature_key == AD_FREE:
            return access.is_ad_free

        logger.debug(f"Denying unknown feature key: {feature_key}")
        return False

    async def can_perform_action(self, action_key: str) -> bool:
        """Check an action without consuming usage"""
        return await self.can_access_feature(action_key)

    async def validate_and_consume_usage(self, action_key: str) -> bool:
        """Check access and, only when granted, record one use"""
        if not await self.can_perform_action(action_key):
            return False
        if action_key in USAGE_LIMITED_FEATURES:
            await self.usage_tracker.increment_usage(action_key)
        return True

    async def can_access_spread(self, spread: SpreadType) -> bool:
        return self.get_feature_access().can_access_spread(spread)

    async def can_access_guide(self, guide: GuideType) -> bool:
        return self.get_feature_access().can_access_guide(guide)

    async def can_perform_reading(self) -> bool:
        return await self._check_usage_limit(READINGS, self.get_feature_access().max_readings)

    async def can_perform_manual_interpretation(self) -> bool:
        return await self._check_usage_limit(
            MANUAL_INTERPRETATIONS, self.get_feature_access().max_manual_interpretations
        )

    async def should_show_ads(self) -> bool:
        return not self.get_feature_access().is_ad_free

    async def can_access_audio_readings(self) -> bool:
        return self.get_feature_access().has_audio_readings

    async def can_access_customization(self) -> bool:
        return self.get_feature_access().has_customization

    async def can_access_early_access(self) -> bool:
        return self.get_feature_access().has_early_access

    # ========================================================================
    # Upgrade requirements
    # ========================================================================

    async def get_upgrade_requirement(self, feature_key: str) -> Optional[UpgradeRequirement]:
        """None when the feature is currently available (or unknown)"""
        access = self.get_feature_access()

        if feature_key in self.CAPABILITY_REQUIREMENTS:
            if await self.can_access_feature(feature_key):
                return None
            required_tier, reason, name = self.CAPABILITY_REQUIREMENTS[feature_key]
            return UpgradeRequirement(required_tier=required_tier, reason=reason, feature_name=name)

        if feature_key in USAGE_LIMITED_FEATURES:
            limit = self._usage_limit(access, feature_key)
            if limit <= 0:
                return None
            current = await self.usage_tracker.get_usage_count(feature_key)
            if current < limit:
                return None
            return UpgradeRequirement(
                required_tier=SubscriptionTier.MYSTIC,
                reason=UpgradeReason.USAGE_LIMIT,
                feature_name=self.USAGE_FEATURE_NAMES[feature_key],
                current_usage=current,
                usage_limit=limit,
            )

        return None

    @classmethod
    def minimum_tier_for_spread(cls, spread: SpreadType) -> SubscriptionTier:
        for tier in TIER_ORDER:
            if spread in UsageLimits.available_spreads(tier):
                return tier
        return SubscriptionTier.ORACLE

    @classmethod
    def minimum_tier_for_guide(cls, guide: GuideType) -> SubscriptionTier:
        for tier in TIER_ORDER:
            if guide in UsageLimits.available_guides(tier):
                return tier
        return SubscriptionTier.ORACLE

    async def get_upgrade_requirement_for_spread(self, spread: SpreadType) -> Optional[UpgradeRequirement]:
        if await self.can_access_spread(spread):
            return None
        return UpgradeRequirement(
            required_tier=self.minimum_tier_for_spread(spread),
            reason=UpgradeReason.TIER_RESTRICTION,
            feature_name=spread.display_name,
        )

    async def get_upgrade_requirement_for_guide(self, guide: GuideType) -> Optional[UpgradeRequirement]:
        if await self.can_access_guide(guide):
            return None
        return UpgradeRequirement(
            required_tier=self.minimum_tier_for_guide(guide),
            reason=UpgradeReason.TIER_RESTRICTION,
            feature_name=f"{guide.guide_name} ({guide.title})",
        )

    def requires_upgrade(self, required_tier: SubscriptionTier) -> bool:
        current_level = self.TIER_HIERARCHY.get(self.effective_tier, 0)
        return current_level < self.TIER_HIERARCHY.get(required_tier, 0)

    def recommended_upgrade(self) -> Optional[SubscriptionTier]:
        """Next tier above the current one, None at the top"""
        level = self.effective_tier.level
        if level + 1 < len(TIER_ORDER):
            return TIER_ORDER[level + 1]
        return None

    @staticmethod
    def get_upgrade_message(requirement: UpgradeRequirement) -> str:
        """User-friendly upgrade prompt for a requirement"""
        tier_name = requirement.required_tier.display_name
        if requirement.reason == UpgradeReason.USAGE_LIMIT:
            return (
                f"You've used {requirement.current_usage} of {requirement.usage_limit} "
                f"{requirement.feature_name.lower()} this month. "
                f"Upgrade to {tier_name} for unlimited access!"
            )
        if requirement.reason == UpgradeReason.PREMIUM_FEATURE:
            return f"'{requirement.feature_name}' is a premium feature. Upgrade to {tier_name} to unlock it!"
        return f"'{requirement.feature_name}' requires a {tier_name} subscription. Upgrade now to unlock it!"

    # ========================================================================
    # Usage reporting
    # ========================================================================

    async def get_usage_info(self, feature: str) -> Dict[str, Any]:
        tier = self.effective_tier
        current = await self.usage_tracker.get_usage_count(feature)
        limit = UsageLimits.limit_for(tier, feature)
        unlimited = limit == 0

        return {
            "current": current,
            "limit": None if unlimited else limit,
            "remaining": None if unlimited else UsageLimits.remaining_usage(tier, feature, current),
            "percentage": UsageLimits.usage_percentage(tier, feature, current),
            "unlimited": unlimited,
            "approaching_limit": not unlimited and UsageLimits.is_approaching_limit(tier, feature, current),
            "reached_limit": not unlimited and current >= limit,
        }

    async def get_all_usage_info(self) -> Dict[str, Dict[str, Any]]:
        """Usage info for every feature limited on the current tier"""
        return {
            feature: await self.get_usage_info(feature)
            for feature in UsageLimits.limited_features(self.effective_tier)
        }

    async def check_and_perform_monthly_reset(self) -> bool:
        return await self.usage_tracker.check_and_reset_if_needed()

    async def get_feature_access_summary(self) -> Dict[str, Any]:
        status = self._current_status
        access = self.get_feature_access()
        return {
            "tier": status.tier.value,
            "tier_display_name": status.tier.display_name,
            "effective_tier": self.effective_tier.value,
            "is_active": status.is_active,
            "is_valid": status.is_valid_at(self._clock()),
            "features": {
                "unlimited_readings": access.has_unlimited_readings,
                "available_spreads": [s.value for s in access.available_spreads],
                "available_guides": [g.value for g in access.available_guides],
                "ad_free": access.is_ad_free,
                "audio_readings": access.has_audio_readings,
                "customization": access.has_customization,
                "early_access": access.has_early_access,
            },
            "usage": await self.get_all_usage_info(),
            "subscription_status": {
                "expiration_date": status.expiration_date.isoformat() if status.expiration_date else None,
                "platform_id": status.platform_subscription_id,
                "last_updated": status.last_updated.isoformat(),
            },
        }


def feature_required(gate: FeatureGateService, feature_key: str, consume: bool = False):
    """
    Decorator to require a feature for an async function.

    Args:
        gate: FeatureGateService to consult
        feature_key: Feature that must be available
        consume: Record one use of the feature when access is granted

    Raises SubscriptionException (usage_limit_exceeded for metered features,
    feature_not_available otherwise) when access is denied.

    Usage:
        @feature_required(gate, 'readings', consume=True)
        async def perform_reading(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("feature_required can only decorate async functions")

        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            if consume:
                allowed = await gate.validate_and_consume_usage(feature_key)
            else:
                allowed = await gate.can_access_feature(feature_key)

            if not allowed:
                logger.warning(f"Feature '{feature_key}' not available on {gate.effective_tier.value}")
                if feature_key in USAGE_LIMITED_FEATURES:
                    raise SubscriptionException.usage_limit_exceeded(feature_key)
                raise SubscriptionException.feature_not_available(feature_key)

            return await func(*args, **kwargs)

        return wrapper

    return decorator
