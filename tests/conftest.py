"""
conftest.py - Shared pytest fixtures for freight ledger tests

Provides common fixtures used across unit, conformance and functional tests:
- Stores (empty, with funded marketplace)
- Notification dispatcher that records instead of delivering
- Settings isolation
"""

import pytest

from freight_ledger import (
    DetachedTaskRunner, NotificationDispatcher, RecordingNotifier, reset_settings,
)

from tests.scenario import build_marketplace, make_store


@pytest.fixture(autouse=True)
def _isolated_settings():
    """Every test starts and ends with no cached settings."""
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# STORE FIXTURES
# =============================================================================

@pytest.fixture
def store():
    """Empty store with a fixed clock."""
    return make_store()


@pytest.fixture
def market():
    """POSTED corridor load, truck, pending request, both wallets holding 10,000 ETB."""
    return build_marketplace()


@pytest.fixture
def poor_market():
    """Same as market, but the shipper can pay 1,000 ETB only."""
    return build_marketplace(shipper_balance=1000)


@pytest.fixture
def legacy_market():
    """Load without a corridor (no fee configuration)."""
    return build_marketplace(with_corridor=False)


# =============================================================================
# NOTIFICATION FIXTURES
# =============================================================================

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def notifications(notifier):
    """Dispatcher backed by a RecordingNotifier. Call .drain() before asserting."""
    runner = DetachedTaskRunner(max_workers=2)
    dispatcher = NotificationDispatcher(notifier, runner)
    yield dispatcher
    runner.shutdown()
