"""Pytest configuration and fixtures for unit tests."""

import pytest

from calsync.services.conflict_service import ConflictService
from calsync.services.mutation_engine import MutationEngine
from calsync.services.progressive_loader import ProgressiveLoader
from calsync.services.range_ledger import RangeLedger
from calsync.services.task_cache import TaskCache
from tests.unit.mocks import FakeRemoteStore, FakeTimer


@pytest.fixture
def remote():
    """Provides a fresh FakeRemoteStore for each test."""
    return FakeRemoteStore()


@pytest.fixture
def cache():
    return TaskCache()


@pytest.fixture
def ledger():
    return RangeLedger()


@pytest.fixture
def loader(remote, cache, ledger):
    """Loader with a 7 day margin and 30 day prefetch blocks."""
    return ProgressiveLoader(remote, cache, ledger, margin_days=7, prefetch_days=30, initial_window_days=30)


@pytest.fixture
def engine(remote, cache):
    """Mutation engine without follow-up refreshes so tests control every fetch."""
    return MutationEngine(remote, cache, refresh_after_mutation=False)


@pytest.fixture
def conflict_service(remote, cache):
    return ConflictService(remote, cache)


@pytest.fixture
def timer():
    return FakeTimer()
