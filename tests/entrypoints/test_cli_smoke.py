from __future__ import annotations

import io
import time
from pathlib import Path

import pytest

from offline_sync.bootstrap.container import AppContainer, build_container
from offline_sync.bootstrap.settings import SyncSettings
from offline_sync.core.errors import NetworkError
from offline_sync.entrypoints import cli
from offline_sync.entrypoints.cli import main
from tests.fakes import FakeConnectivity, FakeRemoteTransport


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    return SyncSettings(db_path=tmp_path / "sync.db", log_dir=tmp_path / "logs", scopes=("tasks",))


@pytest.fixture
def cli_transport() -> FakeRemoteTransport:
    return FakeRemoteTransport()


@pytest.fixture
def factory(cli_transport: FakeRemoteTransport):
    def _factory(resolved: SyncSettings) -> AppContainer:
        return build_container(resolved, transport=cli_transport, probe=FakeConnectivity())

    return _factory


def _run(argv: list[str], settings: SyncSettings, factory) -> tuple[int, str]:
    out = io.StringIO()
    code = main(argv, settings=settings, container_factory=factory, setup_logging=False, out=out)
    return code, out.getvalue()


def _seed(settings: SyncSettings, factory, *entity_ids: str) -> None:
    container = factory(settings)
    try:
        for entity_id in entity_ids:
            container.local_data.save("tasks", entity_id, {"title": entity_id})
    finally:
        container.close()


def test_status_y_pending(settings: SyncSettings, factory) -> None:
    _seed(settings, factory, "t-1", "t-2")

    code, status_output = _run(["status"], settings, factory)
    pending_code, pending_output = _run(["pending", "--limit", "1"], settings, factory)

    assert code == 0
    assert "pending: 2" in status_output
    assert "last_sync: nunca" in status_output
    assert pending_code == 0
    assert pending_output.count("\n") == 1
    assert "create\ttasks/t-1\tpending" in pending_output


def test_sync_parcial_devuelve_1_y_errors_lista_el_fallo(
    settings: SyncSettings, factory, cli_transport: FakeRemoteTransport
) -> None:
    _seed(settings, factory, "t-1")
    cli_transport.fail_next_send("tasks", "t-1", NetworkError("sin red"))

    code, output = _run(["sync"], settings, factory)
    errors_code, errors_output = _run(["errors"], settings, factory)

    assert code == 1
    assert output.startswith("partial: sent=0 failed=1")
    assert errors_code == 0
    assert "[network] sin red" in errors_output


def test_sync_completo_devuelve_0(settings: SyncSettings, factory, cli_transport: FakeRemoteTransport) -> None:
    _seed(settings, factory, "t-1")

    code, output = _run(["sync"], settings, factory)

    assert code == 0
    assert output.startswith("completed: sent=1")
    assert [entry.entity_id for entry in cli_transport.sent] == ["t-1"]


def test_requeue_de_entrada_inexistente_devuelve_2(
    settings: SyncSettings, factory, capsys: pytest.CaptureFixture[str]
) -> None:
    code, _ = _run(["requeue", "999"], settings, factory)

    assert code == 2
    assert "No existe la entrada de outbox 999" in capsys.readouterr().err


def test_conflicts_list_vacio_y_resolve_inexistente(settings: SyncSettings, factory) -> None:
    list_code, list_output = _run(["conflicts", "list"], settings, factory)
    resolve_code, _ = _run(["conflicts", "resolve", "5", "--keep", "remote"], settings, factory)

    assert list_code == 0
    assert list_output == ""
    assert resolve_code == 2


def test_migrate_status_y_down(settings: SyncSettings, factory) -> None:
    _seed(settings, factory)

    code, output = _run(["migrate", "status"], settings, factory)
    down_code, down_output = _run(["migrate", "down"], settings, factory)

    assert code == 0
    assert "[x] 0001 outbox_core" in output
    assert "[x] 0002 conflicts" in output
    assert down_code == 0
    assert "Migraciones revertidas: [2]" in down_output


def test_purge_sin_enviadas(settings: SyncSettings, factory) -> None:
    code, output = _run(["purge", "--days", "30"], settings, factory)

    assert code == 0
    assert output == "Entradas enviadas eliminadas: 0\n"


def test_sync_watch_arranca_el_worker_hasta_la_interrupcion(
    settings: SyncSettings, factory, cli_transport: FakeRemoteTransport, monkeypatch: pytest.MonkeyPatch
) -> None:
    _seed(settings, factory, "t-1")

    def _until_first_cycle(worker) -> None:
        for _ in range(200):
            if worker.cycles_run >= 1:
                return
            time.sleep(0.01)

    monkeypatch.setattr(cli, "_wait_for_interrupt", _until_first_cycle)

    code, output = _run(["sync", "--watch"], settings, factory)

    assert code == 0
    assert "Worker detenido tras 1 ciclos" in output
    assert "completed: sent=1" in output
    assert [entry.entity_id for entry in cli_transport.sent] == ["t-1"]
