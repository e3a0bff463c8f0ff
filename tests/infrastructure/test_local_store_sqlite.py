from __future__ import annotations

import threading

import pytest

from offline_sync.core.errors import PersistenceError
from offline_sync.domain.models import OutboxAction, OutboxStatus, RemoteMetadata, StoreChange
from offline_sync.infrastructure.local_store import SQLiteLocalStore, encode_payload
from tests.fakes import remote_change


def _enqueue(store: SQLiteLocalStore, entity_id: str, action: OutboxAction = OutboxAction.CREATE) -> int:
    with store.transaction():
        entry = store.insert_outbox_entry("tasks", entity_id, action, encode_payload({"id": entity_id}), store.now_iso())
    return entry.id


def test_escritura_fuera_de_transaccion_falla(store: SQLiteLocalStore) -> None:
    with pytest.raises(PersistenceError):
        store.save_local_entity("tasks", "a", {"n": 1}, store.now_iso())


def test_rollback_no_publica_cambios(store: SQLiteLocalStore) -> None:
    events: list[StoreChange] = []
    store.subscribe(events.append)

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.save_local_entity("tasks", "a", {"n": 1}, store.now_iso())
            raise RuntimeError("boom")

    assert events == []
    assert store.get_entity("tasks", "a") is None


def test_transacciones_anidadas_publican_al_final(store: SQLiteLocalStore) -> None:
    events: list[StoreChange] = []
    seen_inside: list[int] = []
    store.subscribe(events.append)

    with store.transaction():
        with store.transaction():
            store.save_local_entity("tasks", "a", {"n": 1}, store.now_iso())
        seen_inside.append(len(events))
        try:
            with store.transaction():
                store.save_local_entity("tasks", "b", {"n": 2}, store.now_iso())
                raise ValueError("interno")
        except ValueError:
            pass

    assert seen_inside == [0]
    assert events == [StoreChange(kind="entity_saved", entity_type="tasks", entity_id="a")]
    assert store.get_entity("tasks", "b") is None


def test_listener_que_falla_no_rompe_la_escritura(store: SQLiteLocalStore) -> None:
    def _broken(_: StoreChange) -> None:
        raise RuntimeError("listener roto")

    store.subscribe(_broken)
    with store.transaction():
        store.save_local_entity("tasks", "a", {"n": 1}, store.now_iso())

    assert store.get_entity("tasks", "a") is not None


def test_upsert_remoto_conserva_metadatos_previos(store: SQLiteLocalStore) -> None:
    with store.transaction():
        store.upsert_remote_entity(remote_change("tasks", "a", {"n": 1}, version=3), "2025-01-01T00:00:00+00:00")
        store.upsert_remote_entity(remote_change("tasks", "a", {"n": 2}, version=None), "2025-01-02T00:00:00+00:00")

    entity = store.get_entity("tasks", "a")
    assert entity.payload == {"n": 2}
    assert entity.remote_version == 3
    assert entity.remote_id == "tasks!a"


def test_apply_remote_metadata_sin_entidad(store: SQLiteLocalStore) -> None:
    with store.transaction():
        assert store.apply_remote_metadata("tasks", "nada", RemoteMetadata(remote_id="x")) is False


def test_has_unsynced_changes_ignora_superseded_y_enviadas(store: SQLiteLocalStore) -> None:
    entry_id = _enqueue(store, "a")
    assert store.has_unsynced_changes("tasks", "a") is True

    with store.transaction():
        assert store.supersede_unsynced("tasks", "a", "descartado") == 1
    assert store.has_unsynced_changes("tasks", "a") is False
    superseded = store.get_outbox_entry(entry_id)
    assert superseded.status is OutboxStatus.ERROR and superseded.last_error_code == "superseded"

    sent_id = _enqueue(store, "b")
    with store.transaction():
        store.update_outbox_entry(sent_id, status=OutboxStatus.SENT, sent_at=store.now_iso())
    assert store.has_unsynced_changes("tasks", "b") is False


def test_update_outbox_entry_rechaza_campos_desconocidos(store: SQLiteLocalStore) -> None:
    entry_id = _enqueue(store, "a")

    with pytest.raises(ValueError):
        with store.transaction():
            store.update_outbox_entry(entry_id, payload_json="{}")


def test_checkpoint_error_conserva_valor(store: SQLiteLocalStore) -> None:
    with store.transaction():
        store.save_checkpoint("tasks", "5", store.now_iso())
    store.record_checkpoint_error("tasks", "sin red")

    checkpoint = store.get_checkpoint("tasks")
    assert checkpoint.value == "5"
    assert checkpoint.last_error == "sin red"

    with store.transaction():
        store.save_checkpoint("tasks", None, store.now_iso())
    assert store.get_checkpoint("tasks").value == "5"
    assert store.get_checkpoint("tasks").last_error is None
    assert [item.scope for item in store.list_checkpoints()] == ["tasks"]


def test_record_cycle_end_solo_avanza_last_sync_si_viene_informado(store: SQLiteLocalStore) -> None:
    store.record_cycle_end(last_sync_at="2025-01-01T00:00:00+00:00", last_error=None)
    store.record_cycle_end(last_sync_at=None, last_error="falló notes")

    assert store.get_last_sync_at() == "2025-01-01T00:00:00+00:00"
    assert store.get_last_error() == "falló notes"


def test_known_entity_types(store: SQLiteLocalStore) -> None:
    _enqueue(store, "a")
    with store.transaction():
        store.save_checkpoint("notes", None, store.now_iso())

    assert store.known_entity_types() == ["notes", "tasks"]


def test_escrituras_concurrentes_no_se_pierden(store: SQLiteLocalStore) -> None:
    def _writer(prefix: str) -> None:
        for index in range(20):
            _enqueue(store, f"{prefix}-{index}")

    threads = [threading.Thread(target=_writer, args=(prefix,)) for prefix in ("x", "y", "z")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert store.count_outbox(OutboxStatus.PENDING) == 60
