from __future__ import annotations

from typing import Any

from offline_sync.application.outbox import OutboxManager
from offline_sync.core.errors import NotFoundError, ValidationError
from offline_sync.domain.models import EntityRecord, OutboxAction, OutboxEntry
from offline_sync.infrastructure.local_store import SQLiteLocalStore, encode_payload


class LocalDataService:
    """API de escritura en primer plano: nunca espera a la red.

    Guardar el registro y encolar su entrada de outbox ocurre en la misma
    transacción; si una parte falla no queda ninguna.
    """

    def __init__(self, store: SQLiteLocalStore, outbox: OutboxManager) -> None:
        self._store = store
        self._outbox = outbox

    def save(self, entity_type: str, entity_id: str, payload: dict[str, Any]) -> OutboxEntry:
        if not isinstance(payload, dict):
            raise ValidationError("El payload de una entidad debe ser un objeto JSON.")
        try:
            encode_payload(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Payload no serializable para {entity_type}/{entity_id}: {exc}") from exc
        with self._store.transaction():
            existing = self._store.get_entity(entity_type, entity_id)
            # Un borrado previo cuenta como inexistente: volver a guardar es crear.
            action = OutboxAction.UPDATE if existing is not None and not existing.deleted else OutboxAction.CREATE
            self._store.save_local_entity(entity_type, entity_id, payload, self._store.now_iso())
            return self._outbox.enqueue(entity_type, entity_id, action, payload)

    def delete(self, entity_type: str, entity_id: str) -> OutboxEntry:
        with self._store.transaction():
            existing = self._store.get_entity(entity_type, entity_id)
            if existing is None or existing.deleted:
                raise NotFoundError(f"No existe {entity_type}/{entity_id}.")
            self._store.mark_entity_deleted(entity_type, entity_id, self._store.now_iso())
            return self._outbox.enqueue(entity_type, entity_id, OutboxAction.DELETE, None)

    def get(self, entity_type: str, entity_id: str) -> EntityRecord | None:
        record = self._store.get_entity(entity_type, entity_id)
        if record is None or record.deleted:
            return None
        return record

    def list(self, entity_type: str) -> list[EntityRecord]:
        return self._store.list_entities(entity_type)
