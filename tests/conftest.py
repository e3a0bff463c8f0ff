from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from offline_sync.application.delta_sync import DeltaSyncEngine
from offline_sync.application.local_data import LocalDataService
from offline_sync.application.orchestrator import RetryPolicy, SyncOrchestrator
from offline_sync.application.outbox import OutboxManager
from offline_sync.application.timeouts import TimeoutExecutor
from offline_sync.infrastructure.local_store import SQLiteLocalStore
from offline_sync.infrastructure.migrations import run_migrations
from tests.fakes import FakeClock, FakeConnectivity, FakeRemoteTransport


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(connection: sqlite3.Connection, clock: FakeClock) -> SQLiteLocalStore:
    return SQLiteLocalStore(connection, clock=clock)


@pytest.fixture
def outbox(store: SQLiteLocalStore) -> OutboxManager:
    return OutboxManager(store)


@pytest.fixture
def local_data(store: SQLiteLocalStore, outbox: OutboxManager) -> LocalDataService:
    return LocalDataService(store, outbox)


@pytest.fixture
def transport() -> FakeRemoteTransport:
    return FakeRemoteTransport()


@pytest.fixture
def connectivity() -> FakeConnectivity:
    return FakeConnectivity()


@pytest.fixture
def timeouts() -> TimeoutExecutor:
    executor = TimeoutExecutor()
    yield executor
    executor.shutdown(wait=True)


@pytest.fixture
def engine(store: SQLiteLocalStore, transport: FakeRemoteTransport, timeouts: TimeoutExecutor) -> DeltaSyncEngine:
    return DeltaSyncEngine(store, transport, timeouts=timeouts, timeout_seconds=2.0)


@pytest.fixture
def orchestrator(
    store: SQLiteLocalStore,
    outbox: OutboxManager,
    engine: DeltaSyncEngine,
    transport: FakeRemoteTransport,
    connectivity: FakeConnectivity,
    timeouts: TimeoutExecutor,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        outbox,
        engine,
        transport,
        connectivity,
        ("tasks",),
        batch_size=50,
        retry_policy=RetryPolicy(max_attempts=3, initial_backoff_seconds=10.0),
        send_timeout_seconds=2.0,
        timeouts=timeouts,
    )
