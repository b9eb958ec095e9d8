"""
Usage limit policy

Pure lookup and arithmetic over (tier, feature) limits. No side effects, no
errors. A limit of 0 means unlimited.
"""

from typing import Dict, List, Tuple

from subscription.models import GuideType, SpreadType, SubscriptionTier

READINGS = "readings"
MANUAL_INTERPRETATIONS = "manual_interpretations"

APPROACHING_LIMIT_THRESHOLD = 0.8
UNLIMITED = 0


class UsageLimits:
    """
    Usage limits and allow-lists per subscription tier.

    Single source of truth for tier limits; FeatureAccess derives its
    values from here.
    """

    # Monthly limits for features that are not tier-specific (0 = unlimited)
    MONTHLY_LIMITS: Dict[str, int] = {
        MANUAL_INTERPRETATIONS: 5,
        READINGS: 3,
        "daily_card_views": UNLIMITED,
        "ai_readings": UNLIMITED,
    }

    READING_LIMITS: Dict[SubscriptionTier, int] = {
        SubscriptionTier.SEEKER: 3,
        SubscriptionTier.MYSTIC: UNLIMITED,
        SubscriptionTier.ORACLE: UNLIMITED,
    }

    MANUAL_INTERPRETATION_LIMITS: Dict[SubscriptionTier, int] = {
        SubscriptionTier.SEEKER: 5,
        SubscriptionTier.MYSTIC: UNLIMITED,
        SubscriptionTier.ORACLE: UNLIMITED,
    }

    TIER_SPREADS: Dict[SubscriptionTier, Tuple[SpreadType, ...]] = {
        SubscriptionTier.SEEKER: (SpreadType.SINGLE_CARD, SpreadType.THREE_CARD),
        SubscriptionTier.MYSTIC: tuple(SpreadType),
        SubscriptionTier.ORACLE: tuple(SpreadType),
    }

    TIER_GUIDES: Dict[SubscriptionTier, Tuple[GuideType, ...]] = {
        SubscriptionTier.SEEKER: (GuideType.HEALER, GuideType.MENTOR),
        SubscriptionTier.MYSTIC: tuple(GuideType),
        SubscriptionTier.ORACLE: tuple(GuideType),
    }

    @classmethod
    def monthly_limit(cls, feature: str) -> int:
        return cls.MONTHLY_LIMITS.get(feature, UNLIMITED)

    @classmethod
    def reading_limit(cls, tier: SubscriptionTier) -> int:
        return cls.READING_LIMITS.get(tier, cls.READING_LIMITS[SubscriptionTier.SEEKER])

    @classmethod
    def manual_interpretation_limit(cls, tier: SubscriptionTier) -> int:
        return cls.MANUAL_INTERPRETATION_LIMITS.get(
            tier, cls.MANUAL_INTERPRETATION_LIMITS[SubscriptionTier.SEEKER]
        )

    @classmethod
    def available_spreads(cls, tier: SubscriptionTier) -> Tuple[SpreadType, ...]:
        return cls.TIER_SPREADS.get(tier, cls.TIER_SPREADS[SubscriptionTier.SEEKER])

    @classmethod
    def available_guides(cls, tier: SubscriptionTier) -> Tuple[GuideType, ...]:
        return cls.TIER_GUIDES.get(tier, cls.TIER_GUIDES[SubscriptionTier.SEEKER])

    @classmethod
    def limit_for(cls, tier: SubscriptionTier, feature: str) -> int:
        """Tier-specific limit for a feature (0 = unlimited)"""
        if feature == READINGS:
            return cls.reading_limit(tier)
        if feature == MANUAL_INTERPRETATIONS:
            return cls.manual_interpretation_limit(tier)
        return cls.monthly_limit(feature)

    @classmethod
    def is_unlimited(cls, tier: SubscriptionTier, feature: str) -> bool:
        return cls.limit_for(tier, feature) == UNLIMITED

    @classmethod
    def is_within_limit(cls, tier: SubscriptionTier, feature: str, current_usage: int) -> bool:
        limit = cls.limit_for(tier, feature)
        if limit == UNLIMITED:
            return True
        return current_usage < limit

    @classmethod
    def has_reached_limit(cls, tier: SubscriptionTier, feature: str, current_usage: int) -> bool:
        return not cls.is_within_limit(tier, feature, current_usage)

    @classmethod
    def remaining_usage(cls, tier: SubscriptionTier, feature: str, current_usage: int) -> int:
        """Remaining uses this month, or -1 when unlimited"""
        limit = cls.limit_for(tier, feature)
        if limit == UNLIMITED:
            return -1
        return max(0, min(limit - current_usage, limit))

    @classmethod
    def usage_percentage(cls, tier: SubscriptionTier, feature: str, current_usage: int) -> float:
        """Fraction of the limit used, clamped to [0.0, 1.0]; 0.0 when unlimited"""
        limit = cls.limit_for(tier, feature)
        if limit == UNLIMITED:
            return 0.0
        return max(0.0, min(current_usage / limit, 1.0))

    @classmethod
    def is_approaching_limit(cls, tier: SubscriptionTier, feature: str, current_usage: int) -> bool:
        return cls.usage_percentage(tier, feature, current_usage) >= APPROACHING_LIMIT_THRESHOLD

    @classmethod
    def limited_features(cls, tier: SubscriptionTier) -> List[str]:
        """Features that carry a finite limit for this tier"""
        limited = []
        if cls.reading_limit(tier) > 0:
            limited.append(READINGS)
        if cls.manual_interpretation_limit(tier) > 0:
            limited.append(MANUAL_INTERPRETATIONS)
        return limited

    @classmethod
    def has_usage_limits(cls, tier: SubscriptionTier) -> bool:
        return bool(cls.limited_features(tier))

    @classmethod
    def usage_limit_summary(cls, tier: SubscriptionTier) -> Dict[str, int]:
        return {
            READINGS: cls.reading_limit(tier),
            MANUAL_INTERPRETATIONS: cls.manual_interpretation_limit(tier),
            "available_spreads": len(cls.available_spreads(tier)),
            "available_guides": len(cls.available_guides(tier)),
        }
