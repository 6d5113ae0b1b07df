"""
Shared fixtures for oauthguard tests.
"""

import random

import pytest

from oauthguard.audit import MemoryAuditLogger
from oauthguard.cache import MemoryCache
from oauthguard.core.config import RecoveryConfig, TokenLifecycleConfig
from oauthguard.core.types import User
from oauthguard.metrics import RecoveryMetrics
from oauthguard.notifications import MemoryNotificationService
from oauthguard.recovery import create_recovery_dispatcher
from oauthguard.token import MemoryTokenStore, TokenLifecycle

from .support import CountingRefresher, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user():
    return User(id="user-1", email="user@example.com")


@pytest.fixture
def refresher(clock):
    return CountingRefresher(clock)


@pytest.fixture
def token_store(clock, refresher):
    return MemoryTokenStore(refresher=refresher, clock=clock)


@pytest.fixture
def notifications():
    return MemoryNotificationService()


@pytest.fixture
def audit_logger():
    return MemoryAuditLogger()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def metrics():
    return RecoveryMetrics()


@pytest.fixture
def lifecycle(token_store, clock, metrics, audit_logger):
    return TokenLifecycle(token_store, TokenLifecycleConfig(), clock=clock, metrics=metrics,
                          audit_logger=audit_logger)


@pytest.fixture
def dispatcher(notifications, audit_logger, cache, token_store, lifecycle, metrics, clock):
    return create_recovery_dispatcher(
        notifications=notifications,
        audit_logger=audit_logger,
        cache=cache,
        token_store=token_store,
        lifecycle=lifecycle,
        config=RecoveryConfig(),
        metrics=metrics,
        clock=clock,
        rng=random.Random(42),
    )
