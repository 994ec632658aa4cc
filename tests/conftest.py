"""Shared test fixtures for the almanac test suite."""

from __future__ import annotations

import logging

import pytest
import structlog
from _test_helpers import ALICE, FixedClock

from almanac.cache import OptimisticReconciler, QueryCache
from almanac.publisher import RecordPublisher
from almanac.republish import ContainerRepublisher
from almanac.testing import InMemoryRecordNetwork, StaticSigner


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def network() -> InMemoryRecordNetwork:
    return InMemoryRecordNetwork()


@pytest.fixture
def signer() -> StaticSigner:
    return StaticSigner(ALICE)


@pytest.fixture
def publisher(network, signer, clock) -> RecordPublisher:
    return RecordPublisher(network, signer, timeout_s=1.0, client_name="almanac", clock=clock)


@pytest.fixture
def republisher(network, publisher) -> ContainerRepublisher:
    return ContainerRepublisher(network, publisher, query_timeout_s=1.0)


@pytest.fixture
def cache() -> QueryCache:
    return QueryCache()


@pytest.fixture
def reconciler(cache) -> OptimisticReconciler:
    counter = iter(range(1, 1_000_000))
    return OptimisticReconciler(cache, id_factory=lambda: f"temp-{next(counter)}")


@pytest.fixture
def restore_logging():
    """Undo root-logger changes made by configure_logging()."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.contextvars.clear_contextvars()
