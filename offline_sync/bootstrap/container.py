from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from offline_sync.application.background import BackgroundSyncWorker
from offline_sync.application.conflicts_service import ConflictsService
from offline_sync.application.delta_sync import DeltaSyncEngine
from offline_sync.application.local_data import LocalDataService
from offline_sync.application.orchestrator import RetryPolicy, SyncOrchestrator
from offline_sync.application.outbox import OutboxManager
from offline_sync.application.timeouts import TimeoutExecutor
from offline_sync.bootstrap.settings import SyncSettings
from offline_sync.core.errors import ConfigError
from offline_sync.core.metrics import MetricsRegistry
from offline_sync.domain.models import ChangeSet, OutboxEntry, SendResult
from offline_sync.domain.ports import ConnectivityProbe, RemoteTransport
from offline_sync.infrastructure.connectivity import SocketConnectivityProbe
from offline_sync.infrastructure.db import get_connection
from offline_sync.infrastructure.local_config import SheetsConfigStore
from offline_sync.infrastructure.local_store import SQLiteLocalStore
from offline_sync.infrastructure.migrations import run_migrations
from offline_sync.infrastructure.sheets_client import SheetsClient
from offline_sync.infrastructure.sheets_transport import SheetsRemoteTransport

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], sqlite3.Connection]


class UnconfiguredTransport:
    """Ocupa el lugar del transporte mientras no haya conexión con Sheets configurada."""

    def send(self, entry: OutboxEntry) -> SendResult:
        raise ConfigError("Google Sheets no está configurado: falta spreadsheet_id o credenciales.")

    def fetch_since(self, scope: str, checkpoint: str | None) -> ChangeSet:
        raise ConfigError("Google Sheets no está configurado: falta spreadsheet_id o credenciales.")


@dataclass
class AppContainer:
    settings: SyncSettings
    connection: sqlite3.Connection
    store: SQLiteLocalStore
    outbox: OutboxManager
    engine: DeltaSyncEngine
    orchestrator: SyncOrchestrator
    local_data: LocalDataService
    conflicts_service: ConflictsService
    metrics: MetricsRegistry
    timeouts: TimeoutExecutor
    worker: BackgroundSyncWorker

    def close(self) -> None:
        if self.worker.is_running():
            self.worker.stop()
        self.timeouts.shutdown(wait=False)
        self.connection.close()


def build_transport(config_store: SheetsConfigStore) -> RemoteTransport:
    config = config_store.load()
    if config is None or not config.spreadsheet_id or not config.credentials_path:
        logger.warning("Sin configuración de Google Sheets en %s", config_store.config_path)
        return UnconfiguredTransport()
    client = SheetsClient(Path(config.credentials_path), config.spreadsheet_id)
    return SheetsRemoteTransport(client, device_id=config.device_id)


def build_container(
    settings: SyncSettings | None = None,
    *,
    connection_factory: ConnectionFactory | None = None,
    transport: RemoteTransport | None = None,
    probe: ConnectivityProbe | None = None,
    config_store: SheetsConfigStore | None = None,
) -> AppContainer:
    resolved_settings = settings or SyncSettings.from_env()
    connection = connection_factory() if connection_factory else get_connection(resolved_settings.db_path)
    run_migrations(connection)

    store = SQLiteLocalStore(connection)
    outbox = OutboxManager(store)
    metrics = MetricsRegistry()
    timeouts = TimeoutExecutor()
    resolved_transport = transport or build_transport(config_store or SheetsConfigStore())
    engine = DeltaSyncEngine(
        store,
        resolved_transport,
        conflict_policy=resolved_settings.conflict_policy,
        timeouts=timeouts,
        timeout_seconds=resolved_settings.pull_timeout_seconds,
        metrics=metrics,
    )
    scopes = resolved_settings.scopes or tuple(store.known_entity_types())
    orchestrator = SyncOrchestrator(
        store,
        outbox,
        engine,
        resolved_transport,
        probe or SocketConnectivityProbe(),
        scopes,
        batch_size=resolved_settings.batch_size,
        retry_policy=RetryPolicy(max_attempts=resolved_settings.max_attempts),
        send_timeout_seconds=resolved_settings.send_timeout_seconds,
        timeouts=timeouts,
        metrics=metrics,
        retention=resolved_settings.retention,
    )
    return AppContainer(
        settings=resolved_settings,
        connection=connection,
        store=store,
        outbox=outbox,
        engine=engine,
        orchestrator=orchestrator,
        local_data=LocalDataService(store, outbox),
        conflicts_service=ConflictsService(store, outbox),
        metrics=metrics,
        timeouts=timeouts,
        worker=BackgroundSyncWorker(orchestrator, interval_seconds=resolved_settings.interval_seconds),
    )
