"""
Lunanul Subscription Test Suite

Tests for:
- Tier, spread and guide models
- Usage limits and monthly usage tracking
- Key-value stores (memory, JSON file, encrypted)
- Error handling, retry/backoff and the resilient service
- Background sync, connectivity probes and the wired stack

Run tests with:
    pytest tests/ -v

Run fast tests only:
    pytest tests/ -v -m "not slow"

Skip full-stack scenarios:
    pytest tests/ -v -m "not integration"
"""
