"""
Subscription Data Models

Defines the core data structures for the entitlement engine: tiers, the
subscription status snapshot, per-tier feature access, upgrade requirements,
the product catalog and platform subscription events.
"""

from enum import Enum
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Mapping, Tuple
from datetime import datetime


class SubscriptionTier(str, Enum):
    """
    Subscription tiers, ordered from least to most privileged.

    - SEEKER: free tier, limited readings and interpretations
    - MYSTIC: $4.99/month, unlimited readings, all spreads and guides, no ads
    - ORACLE: $9.99/month, everything in Mystic plus premium features
    """
    SEEKER = "seeker"
    MYSTIC = "mystic"
    ORACLE = "oracle"

    @property
    def level(self) -> int:
        """Position in the tier ordering (higher = more privileged)"""
        return TIER_ORDER.index(self)

    @property
    def display_name(self) -> str:
        return TIER_DETAILS[self][0]

    @property
    def price_label(self) -> str:
        return TIER_DETAILS[self][1]

    @property
    def description(self) -> str:
        return TIER_DETAILS[self][2]

    @property
    def is_paid(self) -> bool:
        return self != SubscriptionTier.SEEKER

    @property
    def has_premium_features(self) -> bool:
        return self == SubscriptionTier.ORACLE

    @classmethod
    def from_string(cls, value: str) -> 'SubscriptionTier':
        """Parse a tier name, falling back to the free tier"""
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return cls.SEEKER


TIER_ORDER: Tuple[SubscriptionTier, ...] = (
    SubscriptionTier.SEEKER,
    SubscriptionTier.MYSTIC,
    SubscriptionTier.ORACLE,
)

TIER_DETAILS = {
    SubscriptionTier.SEEKER: ("Seeker", "Free", "Essential daily tarot experience"),
    SubscriptionTier.MYSTIC: ("Mystic", "$4.99/month", "Complete tarot experience without limits"),
    SubscriptionTier.ORACLE: ("Oracle", "$9.99/month", "Premium features and advanced capabilities"),
}


class SpreadType(str, Enum):
    """Tarot spread layouts"""
    SINGLE_CARD = "single_card"
    THREE_CARD = "three_card"
    CELTIC = "celtic"
    CELTIC_CROSS = "celtic_cross"
    HORSESHOE = "horseshoe"
    RELATIONSHIP = "relationship"
    CAREER = "career"

    @property
    def display_name(self) -> str:
        return SPREAD_DETAILS[self][0]

    @property
    def card_count(self) -> int:
        return SPREAD_DETAILS[self][1]


SPREAD_DETAILS = {
    SpreadType.SINGLE_CARD: ("Single Card", 1),
    SpreadType.THREE_CARD: ("Three Card", 3),
    SpreadType.CELTIC: ("Celtic Cross", 10),
    SpreadType.CELTIC_CROSS: ("Celtic Cross (Full)", 10),
    SpreadType.HORSESHOE: ("Horseshoe", 7),
    SpreadType.RELATIONSHIP: ("Relationship", 5),
    SpreadType.CAREER: ("Career Path", 7),
}


class GuideType(str, Enum):
    """Reading guide personalities"""
    SAGE = "sage"
    HEALER = "healer"
    MENTOR = "mentor"
    VISIONARY = "visionary"

    @property
    def guide_name(self) -> str:
        return GUIDE_DETAILS[self][0]

    @property
    def title(self) -> str:
        return GUIDE_DETAILS[self][1]


GUIDE_DETAILS = {
    GuideType.SAGE: ("Zian", "The Wise Mystic"),
    GuideType.HEALER: ("Lyra", "The Compassionate Healer"),
    GuideType.MENTOR: ("Kael", "The Practical Strategist"),
    GuideType.VISIONARY: ("Elara", "The Creative Muse"),
}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class SubscriptionStatus:
    """
    Snapshot of a user's subscription.

    Instances are never mutated; every change produces a new status.
    A status can be active yet expired at the same time (stale cached data),
    so callers must look at ``is_valid`` rather than ``is_active`` alone.
    """
    tier: SubscriptionTier
    is_active: bool
    expiration_date: Optional[datetime] = None
    platform_subscription_id: Optional[str] = None
    usage_counts: Mapping[str, int] = field(default_factory=dict)
    last_updated: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        # Each status owns a read-only copy of its counts
        object.__setattr__(self, "usage_counts", MappingProxyType(dict(self.usage_counts)))

    def __hash__(self) -> int:
        return hash((
            self.tier,
            self.is_active,
            self.expiration_date,
            self.platform_subscription_id,
            frozenset(self.usage_counts.items()),
            self.last_updated,
        ))

    def is_expired_at(self, now: datetime) -> bool:
        return self.expiration_date is not None and now > self.expiration_date

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired_at(now)

    @property
    def is_expired(self) -> bool:
        return self.is_expired_at(datetime.now())

    @property
    def is_valid(self) -> bool:
        return self.is_valid_at(datetime.now())

    def get_usage_count(self, feature: str) -> int:
        return self.usage_counts.get(feature, 0)

    def copy_with(self, **changes) -> 'SubscriptionStatus':
        """Create a copy with updated values"""
        return replace(self, **changes)

    def with_incremented_usage(self, feature: str, now: Optional[datetime] = None) -> 'SubscriptionStatus':
        counts = dict(self.usage_counts)
        counts[feature] = counts.get(feature, 0) + 1
        return replace(self, usage_counts=counts, last_updated=now or datetime.now())

    def with_reset_usage(self, now: Optional[datetime] = None) -> 'SubscriptionStatus':
        return replace(self, usage_counts={}, last_updated=now or datetime.now())

    def to_dict(self) -> dict:
        """Convert to dictionary for storage"""
        return {
            'tier': self.tier.value,
            'is_active': self.is_active,
            'expiration_date': self.expiration_date.isoformat() if self.expiration_date else None,
            'platform_subscription_id': self.platform_subscription_id,
            'usage_counts': dict(self.usage_counts),
            'last_updated': self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SubscriptionStatus':
        """Create from dictionary"""
        return cls(
            tier=SubscriptionTier.from_string(data['tier']),
            is_active=bool(data['is_active']),
            expiration_date=_parse_datetime(data.get('expiration_date')),
            platform_subscription_id=data.get('platform_subscription_id'),
            usage_counts={k: int(v) for k, v in (data.get('usage_counts') or {}).items()},
            last_updated=_parse_datetime(data.get('last_updated')) or datetime.now(),
        )

    @classmethod
    def free(cls, now: Optional[datetime] = None) -> 'SubscriptionStatus':
        """Default free tier status"""
        return cls(
            tier=SubscriptionTier.SEEKER,
            is_active=True,
            last_updated=now or datetime.now(),
        )

    def __str__(self) -> str:
        return (
            f"SubscriptionStatus(tier={self.tier.value}, active={self.is_active}, "
            f"expires={self.expiration_date}, valid={self.is_valid})"
        )


@dataclass(frozen=True)
class FeatureAccess:
    """
    Defines feature access per subscription tier.

    Derived purely from the tier; recomputed on demand and never persisted.
    Numeric limits use 0 for unlimited.
    """
    has_unlimited_readings: bool = False
    available_spreads: Tuple[SpreadType, ...] = ()
    available_guides: Tuple[GuideType, ...] = ()
    max_readings: int = 3
    max_manual_interpretations: int = 5
    is_ad_free: bool = False
    has_audio_readings: bool = False
    has_advanced_spreads: bool = False
    has_customization: bool = False
    has_early_access: bool = False

    @classmethod
    def for_tier(cls, tier: SubscriptionTier) -> 'FeatureAccess':
        """Get feature access for a specific tier"""
        if tier == SubscriptionTier.ORACLE:
            return cls.oracle_features()
        elif tier == SubscriptionTier.MYSTIC:
            return cls.mystic_features()
        return cls.seeker_features()

    @classmethod
    def seeker_features(cls) -> 'FeatureAccess':
        """Free tier: two spreads, two guides, monthly caps, ads"""
        from subscription.usage_limits import UsageLimits

        tier = SubscriptionTier.SEEKER
        return cls(
            has_unlimited_readings=False,
            available_spreads=UsageLimits.available_spreads(tier),
            available_guides=UsageLimits.available_guides(tier),
            max_readings=UsageLimits.reading_limit(tier),
            max_manual_interpretations=UsageLimits.manual_interpretation_limit(tier),
            is_ad_free=False,
        )

    @classmethod
    def mystic_features(cls) -> 'FeatureAccess':
        """Core subscription: everything unlimited, ad free"""
        from subscription.usage_limits import UsageLimits

        tier = SubscriptionTier.MYSTIC
        return cls(
            has_unlimited_readings=True,
            available_spreads=UsageLimits.available_spreads(tier),
            available_guides=UsageLimits.available_guides(tier),
            max_readings=UsageLimits.reading_limit(tier),
            max_manual_interpretations=UsageLimits.manual_interpretation_limit(tier),
            is_ad_free=True,
        )

    @classmethod
    def oracle_features(cls) -> 'FeatureAccess':
        """Premium subscription: Mystic plus audio, customization, early access"""
        from subscription.usage_limits import UsageLimits

        tier = SubscriptionTier.ORACLE
        return cls(
            has_unlimited_readings=True,
            available_spreads=UsageLimits.available_spreads(tier),
            available_guides=UsageLimits.available_guides(tier),
            max_readings=UsageLimits.reading_limit(tier),
            max_manual_interpretations=UsageLimits.manual_interpretation_limit(tier),
            is_ad_free=True,
            has_audio_readings=True,
            has_advanced_spreads=True,
            has_customization=True,
            has_early_access=True,
        )

    def can_access_spread(self, spread: SpreadType) -> bool:
        return spread in self.available_spreads

    def can_access_guide(self, guide: GuideType) -> bool:
        return guide in self.available_guides

    @property
    def has_unlimited_manual_interpretations(self) -> bool:
        return self.max_manual_interpretations == 0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return {
            'has_unlimited_readings': self.has_unlimited_readings,
            'available_spreads': [s.value for s in self.available_spreads],
            'available_guides': [g.value for g in self.available_guides],
            'max_readings': self.max_readings,
            'max_manual_interpretations': self.max_manual_interpretations,
            'is_ad_free': self.is_ad_free,
            'has_audio_readings': self.has_audio_readings,
            'has_advanced_spreads': self.has_advanced_spreads,
            'has_customization': self.has_customization,
            'has_early_access': self.has_early_access,
        }


class UpgradeReason(str, Enum):
    """Why an upgrade is being asked for"""
    TIER_RESTRICTION = "tier_restriction"
    USAGE_LIMIT = "usage_limit"
    PREMIUM_FEATURE = "premium_feature"


@dataclass(frozen=True)
class UpgradeRequirement:
    """Information about the upgrade needed to unlock a blocked feature"""
    required_tier: SubscriptionTier
    reason: UpgradeReason
    feature_name: str
    current_usage: Optional[int] = None
    usage_limit: Optional[int] = None

    @property
    def is_usage_based(self) -> bool:
        return self.reason == UpgradeReason.USAGE_LIMIT

    @property
    def is_tier_based(self) -> bool:
        return self.reason == UpgradeReason.TIER_RESTRICTION


@dataclass(frozen=True)
class SubscriptionProduct:
    """A subscription product offered by the billing platform"""
    id: str
    tier: SubscriptionTier
    title: str
    description: str
    price: str
    currency: str
    period: str  # "monthly" or "yearly"
    original_price: Optional[str] = None
    discount_percentage: Optional[int] = None
    is_popular: bool = False
    features: Tuple[str, ...] = ()
    platform_product_id: Optional[str] = None

    @property
    def has_discount(self) -> bool:
        return bool(self.discount_percentage and self.discount_percentage > 0)

    @property
    def savings_text(self) -> Optional[str]:
        if not self.has_discount:
            return None
        return f"Save {self.discount_percentage}%"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'tier': self.tier.value,
            'title': self.title,
            'description': self.description,
            'price': self.price,
            'currency': self.currency,
            'period': self.period,
            'original_price': self.original_price,
            'discount_percentage': self.discount_percentage,
            'is_popular': self.is_popular,
            'features': list(self.features),
            'platform_product_id': self.platform_product_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SubscriptionProduct':
        return cls(
            id=data['id'],
            tier=SubscriptionTier.from_string(data['tier']),
            title=data['title'],
            description=data['description'],
            price=data['price'],
            currency=data['currency'],
            period=data['period'],
            original_price=data.get('original_price'),
            discount_percentage=data.get('discount_percentage'),
            is_popular=data.get('is_popular', False),
            features=tuple(data.get('features') or ()),
            platform_product_id=data.get('platform_product_id'),
        )


_MYSTIC_FEATURES = (
    "Unlimited AI readings",
    "All tarot spreads",
    "All four guides",
    "Unlimited journal entries",
    "Ad-free experience",
    "Unlimited manual interpretations",
)

_ORACLE_FEATURES = (
    "Everything in Mystic",
    "AI-generated audio readings",
    "Personalized journal prompts",
    "Advanced tarot spreads",
    "Custom themes and card backs",
    "Early access to new features",
)

DEFAULT_PRODUCTS: Tuple[SubscriptionProduct, ...] = (
    SubscriptionProduct(
        id="mystic_monthly",
        tier=SubscriptionTier.MYSTIC,
        title="Mystic Monthly",
        description="Complete tarot experience without limits",
        price="$4.99",
        currency="USD",
        period="monthly",
        is_popular=True,
        features=_MYSTIC_FEATURES,
        platform_product_id="com.lunanul.mystic.monthly",
    ),
    SubscriptionProduct(
        id="mystic_yearly",
        tier=SubscriptionTier.MYSTIC,
        title="Mystic Yearly",
        description="Complete tarot experience - best value!",
        price="$49.99",
        currency="USD",
        period="yearly",
        original_price="$59.88",
        discount_percentage=17,
        features=_MYSTIC_FEATURES + ("Save 17% vs monthly",),
        platform_product_id="com.lunanul.mystic.yearly",
    ),
    SubscriptionProduct(
        id="oracle_monthly",
        tier=SubscriptionTier.ORACLE,
        title="Oracle Monthly",
        description="Premium features and advanced capabilities",
        price="$9.99",
        currency="USD",
        period="monthly",
        features=_ORACLE_FEATURES,
        platform_product_id="com.lunanul.oracle.monthly",
    ),
    SubscriptionProduct(
        id="oracle_yearly",
        tier=SubscriptionTier.ORACLE,
        title="Oracle Yearly",
        description="Premium experience - maximum value!",
        price="$99.99",
        currency="USD",
        period="yearly",
        original_price="$119.88",
        discount_percentage=17,
        features=_ORACLE_FEATURES + ("Save 17% vs monthly",),
        platform_product_id="com.lunanul.oracle.yearly",
    ),
)


def get_default_products() -> List[SubscriptionProduct]:
    """Products shown when the platform catalog cannot be loaded"""
    return list(DEFAULT_PRODUCTS)


def find_default_product(product_id: str) -> Optional[SubscriptionProduct]:
    for product in DEFAULT_PRODUCTS:
        if product.id == product_id:
            return product
    return None


class SubscriptionEventType(str, Enum):
    """Kinds of subscription lifecycle events reported by the platform"""
    PURCHASED = "purchased"
    RENEWED = "renewed"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    RESTORED = "restored"
    REFUNDED = "refunded"

    @property
    def is_positive(self) -> bool:
        return self in (
            SubscriptionEventType.PURCHASED,
            SubscriptionEventType.RENEWED,
            SubscriptionEventType.UPGRADED,
            SubscriptionEventType.RESTORED,
        )

    @property
    def is_negative(self) -> bool:
        return self in (
            SubscriptionEventType.CANCELLED,
            SubscriptionEventType.EXPIRED,
            SubscriptionEventType.REFUNDED,
            SubscriptionEventType.DOWNGRADED,
        )


@dataclass(frozen=True)
class SubscriptionEvent:
    """A single entry of the platform's subscription history"""
    type: SubscriptionEventType
    timestamp: datetime
    tier: SubscriptionTier
    previous_tier: Optional[SubscriptionTier] = None
    expiration_date: Optional[datetime] = None
    platform_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'timestamp': self.timestamp.isoformat(),
            'tier': self.tier.value,
            'previous_tier': self.previous_tier.value if self.previous_tier else None,
            'expiration_date': self.expiration_date.isoformat() if self.expiration_date else None,
            'platform_transaction_id': self.platform_transaction_id,
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SubscriptionEvent':
        """Create from dictionary; raises ValueError on an unknown event type"""
        previous = data.get('previous_tier')
        return cls(
            type=SubscriptionEventType(data['type']),
            timestamp=_parse_datetime(data['timestamp']),
            tier=SubscriptionTier.from_string(data['tier']),
            previous_tier=SubscriptionTier.from_string(previous) if previous else None,
            expiration_date=_parse_datetime(data.get('expiration_date')),
            platform_transaction_id=data.get('platform_transaction_id'),
            metadata=dict(data.get('metadata') or {}),
        )
