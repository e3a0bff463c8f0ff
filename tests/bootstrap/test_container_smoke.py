from __future__ import annotations

import sqlite3
import time
from pathlib import Path

import pytest

from offline_sync.application.conflict_policy import ConflictPolicy
from offline_sync.bootstrap.container import UnconfiguredTransport, build_container, build_transport
from offline_sync.bootstrap.settings import SyncSettings
from offline_sync.core.errors import ConfigError
from offline_sync.domain.models import CycleOutcome, OutboxStatus
from offline_sync.infrastructure.local_config import SheetsConfigStore
from tests.fakes import FakeConnectivity, FakeRemoteTransport


def _memory_connection() -> sqlite3.Connection:
    return sqlite3.connect(":memory:", check_same_thread=False)


def _settings(tmp_path: Path, **overrides) -> SyncSettings:
    return SyncSettings(db_path=tmp_path / "sync.db", log_dir=tmp_path / "logs", **overrides)


def test_build_container_cablea_servicios_y_migra(tmp_path: Path) -> None:
    transport = FakeRemoteTransport()
    container = build_container(
        _settings(tmp_path, scopes=("tasks",), conflict_policy=ConflictPolicy.MANUAL),
        connection_factory=_memory_connection,
        transport=transport,
        probe=FakeConnectivity(),
    )
    try:
        container.local_data.save("tasks", "t-1", {"title": "Comprar pan"})

        result = container.orchestrator.run_cycle()

        assert result.outcome is CycleOutcome.COMPLETED
        assert [entry.entity_id for entry in transport.sent] == ["t-1"]
        assert container.store.count_outbox(OutboxStatus.SENT) == 1
        assert container.engine.conflict_policy is ConflictPolicy.MANUAL
        assert container.orchestrator.scopes == ("tasks",)
        assert container.metrics.counter("outbox.sent") == 1
    finally:
        container.close()


def test_scopes_por_defecto_son_los_tipos_conocidos(tmp_path: Path) -> None:
    db_path = tmp_path / "sync.db"
    first = build_container(_settings(tmp_path), transport=FakeRemoteTransport(), probe=FakeConnectivity())
    try:
        first.local_data.save("notes", "n-1", {"body": "hola"})
        first.local_data.save("tasks", "t-1", {"title": "A"})
    finally:
        first.close()

    second = build_container(_settings(tmp_path), transport=FakeRemoteTransport(), probe=FakeConnectivity())
    try:
        assert db_path.exists()
        assert second.orchestrator.scopes == ("notes", "tasks")
    finally:
        second.close()


def test_sin_configuracion_de_sheets_el_transporte_falla_con_config_error(tmp_path: Path) -> None:
    transport = build_transport(SheetsConfigStore(base_dir=tmp_path))

    assert isinstance(transport, UnconfiguredTransport)
    with pytest.raises(ConfigError):
        transport.fetch_since("tasks", None)


def test_worker_en_segundo_plano_usa_el_orquestador_y_se_para_al_cerrar(tmp_path: Path) -> None:
    transport = FakeRemoteTransport()
    container = build_container(
        _settings(tmp_path, scopes=("tasks",), interval_seconds=60.0),
        connection_factory=_memory_connection,
        transport=transport,
        probe=FakeConnectivity(),
    )
    container.local_data.save("tasks", "t-1", {"title": "Regar plantas"})

    container.worker.start()
    for _ in range(200):
        if container.worker.cycles_run >= 1:
            break
        time.sleep(0.01)
    container.close()

    assert container.worker.is_running() is False
    assert container.worker.last_result.outcome is CycleOutcome.COMPLETED
    assert [entry.entity_id for entry in transport.sent] == ["t-1"]
