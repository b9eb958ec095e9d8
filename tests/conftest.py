#!/usr/bin/env python3
"""
Pytest Configuration and Shared Fixtures

Provides shared fixtures and configuration for all tests.
"""

import pytest
import asyncio
import random
import sys
import os
from datetime import datetime, timedelta
from typing import List, Optional

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subscription.connectivity import ConnectivityStatus, ManualConnectivityService
from subscription.error_handler import RetryConfig, SubscriptionErrorHandler
from subscription.feature_gate import FeatureGateService
from subscription.mock_service import MockSubscriptionService, ScriptedFaults
from subscription.models import SubscriptionStatus, SubscriptionTier
from subscription.storage import InMemoryKeyValueStore
from subscription.usage_tracker import UsageTrackingService


# ============================================================================
# ASYNCIO CONFIGURATION
# ============================================================================
# Note: pytest-asyncio is configured with asyncio_mode = "auto" in pyproject.toml
# The event loop is automatically managed per-function by default


# ============================================================================
# TIME CONTROL
# ============================================================================

START_TIME = datetime(2026, 3, 15, 12, 0, 0)


class FakeClock:
    """Controllable replacement for datetime.now"""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


class RecordingSleep:
    """Async sleep that returns at once and records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


def make_status(
    tier: SubscriptionTier,
    now: datetime,
    days: Optional[int] = 30,
    is_active: bool = True,
    usage_counts: Optional[dict] = None,
) -> SubscriptionStatus:
    """Status for tier expiring ``days`` after now (negative = already expired)"""
    return SubscriptionStatus(
        tier=tier,
        is_active=is_active,
        expiration_date=now + timedelta(days=days) if days is not None else None,
        platform_subscription_id=f"test_{tier.value}" if tier.is_paid else None,
        usage_counts=usage_counts or {},
        last_updated=now,
    )


@pytest.fixture
def clock():
    """Clock frozen at START_TIME until advanced"""
    return FakeClock()


@pytest.fixture
def fake_sleep():
    """Sleep double that never actually waits"""
    return RecordingSleep()


@pytest.fixture
def seeded_rng():
    return random.Random(1234)


# ============================================================================
# STORAGE AND USAGE
# ============================================================================

@pytest.fixture
def memory_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def usage_tracker(memory_store, clock):
    return UsageTrackingService(memory_store, clock=clock)


@pytest.fixture
def feature_gate(usage_tracker, clock):
    return FeatureGateService(usage_tracker, clock=clock)


# ============================================================================
# PLATFORM FIXTURES
# ============================================================================

@pytest.fixture
def scripted_faults():
    return ScriptedFaults()


@pytest.fixture
def mock_service(clock, fake_sleep, scripted_faults):
    """Mock billing platform driven by scripted faults"""
    service = MockSubscriptionService(faults=scripted_faults, clock=clock, sleep=fake_sleep)
    yield service
    service.dispose()


@pytest.fixture
def connectivity(clock):
    """Connectivity probe controlled by the test, initially online"""
    return ManualConnectivityService(ConnectivityStatus.CONNECTED, clock=clock)


@pytest.fixture
def retry_config():
    return RetryConfig(max_retries=3, base_delay_ms=1000, max_delay_ms=30000,
                       backoff_multiplier=2.0, jitter_factor=0.1)


@pytest.fixture
def error_handler(retry_config, clock, fake_sleep, seeded_rng):
    return SubscriptionErrorHandler(
        retry_config=retry_config,
        clock=clock,
        sleep=fake_sleep,
        rng=seeded_rng,
    )
