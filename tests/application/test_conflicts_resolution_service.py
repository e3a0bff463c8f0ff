from __future__ import annotations

import pytest

from offline_sync.application.conflicts_service import ConflictsService
from offline_sync.application.local_data import LocalDataService
from offline_sync.application.outbox import OutboxManager
from offline_sync.core.errors import NotFoundError
from offline_sync.domain.models import OutboxAction, OutboxStatus
from offline_sync.infrastructure.local_store import SQLiteLocalStore


@pytest.fixture
def conflicts_service(store: SQLiteLocalStore, outbox: OutboxManager) -> ConflictsService:
    return ConflictsService(store, outbox)


def _register_conflict(store: SQLiteLocalStore, local: dict | None, remote: dict | None) -> int:
    with store.transaction():
        return store.conflicts.add(
            entity_type="tasks",
            entity_id="a",
            origin="pull",
            local_snapshot=local,
            remote_snapshot=remote,
            detected_at=store.now_iso(),
        )


def test_list_y_count(conflicts_service: ConflictsService, store: SQLiteLocalStore) -> None:
    _register_conflict(store, {"v": "local"}, {"v": "remote"})

    conflicts = conflicts_service.list_conflicts()

    assert conflicts_service.count() == 1
    assert conflicts[0].local_snapshot == {"v": "local"}
    assert conflicts[0].remote_snapshot == {"v": "remote"}


def test_resolver_a_favor_de_local_reencola_update(
    conflicts_service: ConflictsService, store: SQLiteLocalStore, outbox: OutboxManager, local_data: LocalDataService
) -> None:
    local_data.save("tasks", "a", {"v": "local"})
    store_entry = outbox.get_pending()[0]
    outbox.mark_as_error(store_entry.id, "conflicto", "superseded")
    conflict_id = _register_conflict(store, {"v": "local"}, {"v": "remote"})

    conflicts_service.resolve(conflict_id, keep_local=True)

    pending = outbox.get_pending()
    assert len(pending) == 1
    assert pending[0].action is OutboxAction.UPDATE
    assert pending[0].payload == {"v": "local"}
    assert store.get_entity("tasks", "a").payload == {"v": "local"}
    assert conflicts_service.count() == 0


def test_resolver_a_favor_de_remoto_escribe_snapshot_remoto(
    conflicts_service: ConflictsService, store: SQLiteLocalStore, outbox: OutboxManager, local_data: LocalDataService
) -> None:
    entry = local_data.save("tasks", "a", {"v": "local"})
    conflict_id = _register_conflict(store, {"v": "local"}, {"v": "remote"})

    conflicts_service.resolve(conflict_id, keep_local=False)

    assert store.get_entity("tasks", "a").payload == {"v": "remote"}
    discarded = outbox.get(entry.id)
    assert discarded.status is OutboxStatus.ERROR
    assert discarded.last_error_code == "superseded"
    assert outbox.get_pending() == []
    assert conflicts_service.count() == 0


def test_resolver_con_remoto_borrado_marca_borrado(
    conflicts_service: ConflictsService, store: SQLiteLocalStore, local_data: LocalDataService
) -> None:
    local_data.save("tasks", "a", {"v": "local"})
    conflict_id = _register_conflict(store, {"v": "local"}, None)

    conflicts_service.resolve(conflict_id, keep_local=False)

    assert store.get_entity("tasks", "a").deleted is True


def test_resolver_id_desconocido(conflicts_service: ConflictsService) -> None:
    with pytest.raises(NotFoundError):
        conflicts_service.resolve(404, keep_local=True)
