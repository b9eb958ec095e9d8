"""
Subscription Entitlement Engine for Lunanul

Decides which tarot features a user may access and meters the limited ones:
- Tiered access control (Seeker free tier, Mystic, Oracle)
- Monthly usage limits with calendar-month resets and bounded history
- Retry with exponential backoff and jitter for billing platform calls
- Graceful degradation to cached or free-tier status when offline
- Periodic reconciliation between the local cache and the platform

Architecture:
- FeatureGateService answers "can the user do X?" from the current status
  and the UsageTrackingService counters
- ResilientSubscriptionService wraps the billing platform adapter
  (SubscriptionService) with SubscriptionErrorHandler and connectivity checks
- SubscriptionSyncService refreshes the cached status on a timer and
  downgrades expired subscriptions while preserving usage counts
- build_subscription_stack wires everything from a Settings instance
"""

from subscription.models import (
    SubscriptionTier,
    SpreadType,
    GuideType,
    SubscriptionStatus,
    FeatureAccess,
    UpgradeReason,
    UpgradeRequirement,
    SubscriptionProduct,
    SubscriptionEvent,
    SubscriptionEventType,
    get_default_products,
    find_default_product,
)
from subscription.errors import SubscriptionErrorKind, SubscriptionException
from subscription.usage_limits import UsageLimits, READINGS, MANUAL_INTERPRETATIONS
from subscription.storage import (
    KeyValueStore,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    EncryptedJsonFileKeyValueStore,
)
from subscription.streams import StatusStream, StreamSubscription
from subscription.usage_tracker import UsageTrackingService
from subscription.service import SubscriptionService
from subscription.mock_service import (
    MockSubscriptionService,
    FaultInjector,
    NoFaults,
    ScriptedFaults,
    RandomFaults,
)
from subscription.connectivity import (
    ConnectivityStatus,
    ConnectivityInfo,
    NetworkConnectivityService,
    HttpConnectivityService,
    ManualConnectivityService,
)
from subscription.feature_gate import FeatureGateService, feature_required
from subscription.error_handler import RetryConfig, RecoveryResult, SubscriptionErrorHandler
from subscription.resilient_service import ResilientSubscriptionService
from subscription.sync_service import SyncStatus, RestoreResult, SubscriptionSyncService
from subscription.container import SubscriptionStack, build_subscription_stack

__all__ = [
    # Models
    'SubscriptionTier',
    'SpreadType',
    'GuideType',
    'SubscriptionStatus',
    'FeatureAccess',
    'UpgradeReason',
    'UpgradeRequirement',
    'SubscriptionProduct',
    'SubscriptionEvent',
    'SubscriptionEventType',
    'get_default_products',
    'find_default_product',
    # Errors
    'SubscriptionErrorKind',
    'SubscriptionException',
    # Usage
    'UsageLimits',
    'READINGS',
    'MANUAL_INTERPRETATIONS',
    'UsageTrackingService',
    # Storage and streams
    'KeyValueStore',
    'InMemoryKeyValueStore',
    'JsonFileKeyValueStore',
    'EncryptedJsonFileKeyValueStore',
    'StatusStream',
    'StreamSubscription',
    # Platform
    'SubscriptionService',
    'MockSubscriptionService',
    'FaultInjector',
    'NoFaults',
    'ScriptedFaults',
    'RandomFaults',
    # Connectivity
    'ConnectivityStatus',
    'ConnectivityInfo',
    'NetworkConnectivityService',
    'HttpConnectivityService',
    'ManualConnectivityService',
    # Gating
    'FeatureGateService',
    'feature_required',
    # Resilience and sync
    'RetryConfig',
    'RecoveryResult',
    'SubscriptionErrorHandler',
    'ResilientSubscriptionService',
    'SyncStatus',
    'RestoreResult',
    'SubscriptionSyncService',
    # Wiring
    'SubscriptionStack',
    'build_subscription_stack',
]
