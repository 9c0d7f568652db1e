"""
Test Configuration and Fixtures

Shared fakes wired the way a host would wire the engine: in-memory
key/value and record stores, a manual scheduler and a deterministic clock.
"""

import os

import pytest

os.environ.setdefault("MIRRORSYNC_LOG_LEVEL", "WARNING")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers:
    - tests/connectors/conformance/** => conformance
    - everything else                 => unit
    """
    for item in items:
        if item.get_closest_marker("unit") or item.get_closest_marker("conformance"):
            continue
        path = str(getattr(item, "fspath", ""))
        if "/tests/connectors/conformance/" in path:
            item.add_marker(pytest.mark.conformance)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def fake_clock():
    from tests.support.clock import FakeClock

    return FakeClock.fixed()


@pytest.fixture
def settings():
    from mirrorsync.config import Settings

    return Settings(_env_file=None, webhook_base_url="https://sync.example.com")


@pytest.fixture
def kv_store():
    from mirrorsync.connectors.storage import InMemoryKeyValueStore

    return InMemoryKeyValueStore()


@pytest.fixture
def record_store():
    from mirrorsync.connectors.storage import InMemoryRecordStore

    return InMemoryRecordStore()


@pytest.fixture
def scheduler():
    from tests.support.scheduler import ManualTaskScheduler

    return ManualTaskScheduler()


@pytest.fixture
def connector(fake_clock):
    from tests.support.connector import FakeConnector

    return FakeConnector(fake_clock)


@pytest.fixture
def repo(kv_store):
    from mirrorsync.connectors.state_repo import StateRepository

    return StateRepository(kv_store, namespace="fake-calendar")


@pytest.fixture
def engine(connector, kv_store, record_store, scheduler, settings, fake_clock):
    from mirrorsync.connectors.engine import SyncEngine

    return SyncEngine(
        connector,
        store=kv_store,
        records=record_store,
        scheduler=scheduler,
        settings=settings,
        clock=fake_clock,
    )
