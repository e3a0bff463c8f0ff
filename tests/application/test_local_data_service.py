from __future__ import annotations

import pytest

from offline_sync.application.local_data import LocalDataService
from offline_sync.application.outbox import OutboxManager
from offline_sync.core.errors import NotFoundError, ValidationError
from offline_sync.domain.models import OutboxAction, StoreChange
from offline_sync.infrastructure.local_store import SQLiteLocalStore


def test_save_crea_y_luego_actualiza(local_data: LocalDataService, outbox: OutboxManager) -> None:
    created = local_data.save("tasks", "a", {"title": "uno"})
    updated = local_data.save("tasks", "a", {"title": "dos"})

    assert created.action is OutboxAction.CREATE
    assert updated.action is OutboxAction.UPDATE
    assert local_data.get("tasks", "a").payload == {"title": "dos"}
    assert outbox.pending_count() == 2


def test_delete_marca_borrado_y_encola(local_data: LocalDataService) -> None:
    local_data.save("tasks", "a", {"title": "uno"})

    entry = local_data.delete("tasks", "a")

    assert entry.action is OutboxAction.DELETE
    assert local_data.get("tasks", "a") is None
    assert local_data.list("tasks") == []
    assert local_data.save("tasks", "a", {"title": "otra vez"}).action is OutboxAction.CREATE


def test_delete_de_inexistente(local_data: LocalDataService) -> None:
    with pytest.raises(NotFoundError):
        local_data.delete("tasks", "nada")


def test_save_y_encolado_son_atomicos(local_data: LocalDataService, store: SQLiteLocalStore, outbox: OutboxManager) -> None:
    with pytest.raises(ValidationError):
        local_data.save("tasks", "a", {"raro": {1, 2}})

    assert store.get_entity("tasks", "a") is None
    assert outbox.pending_count() == 0


def test_payload_debe_ser_objeto(local_data: LocalDataService) -> None:
    with pytest.raises(ValidationError):
        local_data.save("tasks", "a", ["lista"])


def test_notificaciones_tras_commit_y_no_en_rollback(local_data: LocalDataService, store: SQLiteLocalStore) -> None:
    events: list[StoreChange] = []
    unsubscribe = store.subscribe(events.append)

    local_data.save("tasks", "a", {"title": "uno"})
    kinds = [event.kind for event in events]
    with pytest.raises(ValidationError):
        local_data.save("tasks", "b", {"raro": {1}})
    unsubscribe()
    local_data.save("tasks", "c", {"title": "tres"})

    assert kinds == ["entity_saved", "outbox_enqueued"]
    assert all(event.entity_id == "a" for event in events)
