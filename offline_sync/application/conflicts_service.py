from __future__ import annotations

import logging

from offline_sync.application.outbox import OutboxManager
from offline_sync.core.errors import NotFoundError
from offline_sync.domain.models import ConflictRecord, OutboxAction, RemoteChange
from offline_sync.infrastructure.local_store import SQLiteLocalStore

logger = logging.getLogger(__name__)


class ConflictsService:
    def __init__(self, store: SQLiteLocalStore, outbox: OutboxManager) -> None:
        self._store = store
        self._outbox = outbox

    def list_conflicts(self) -> list[ConflictRecord]:
        return self._store.conflicts.list_conflicts()

    def count(self) -> int:
        return self._store.conflicts.count_conflicts()

    def resolve(self, conflict_id: int, keep_local: bool) -> ConflictRecord:
        """Cierra un conflicto manual.

        ``keep_local`` reencola el snapshot local como ``update`` para que
        vuelva a subir; en caso contrario se escribe el snapshot remoto y las
        entradas locales sin enviar se descartan.
        """
        with self._store.transaction():
            conflict = self._store.conflicts.get(conflict_id)
            if conflict is None:
                raise NotFoundError(f"No existe el conflicto {conflict_id}.")
            now_iso = self._store.now_iso()
            if keep_local:
                self._keep_local(conflict, now_iso)
            else:
                self._keep_remote(conflict, now_iso)
            self._store.conflicts.delete(conflict_id)
        logger.info(
            "Conflicto %s (%s/%s) resuelto: %s",
            conflict_id,
            conflict.entity_type,
            conflict.entity_id,
            "local" if keep_local else "remoto",
        )
        return conflict

    def _keep_local(self, conflict: ConflictRecord, now_iso: str) -> None:
        if conflict.local_snapshot is None:
            self._store.mark_entity_deleted(conflict.entity_type, conflict.entity_id, now_iso)
            self._outbox.enqueue(conflict.entity_type, conflict.entity_id, OutboxAction.DELETE, None)
            return
        self._store.save_local_entity(conflict.entity_type, conflict.entity_id, conflict.local_snapshot, now_iso)
        self._outbox.enqueue(conflict.entity_type, conflict.entity_id, OutboxAction.UPDATE, conflict.local_snapshot)

    def _keep_remote(self, conflict: ConflictRecord, now_iso: str) -> None:
        self._store.supersede_unsynced(
            conflict.entity_type,
            conflict.entity_id,
            "Descartado al resolver el conflicto a favor del remoto.",
        )
        if conflict.remote_snapshot is None:
            self._store.mark_entity_deleted(conflict.entity_type, conflict.entity_id, now_iso)
            return
        self._store.upsert_remote_entity(
            RemoteChange(
                entity_type=conflict.entity_type,
                entity_id=conflict.entity_id,
                payload=conflict.remote_snapshot,
            ),
            now_iso,
        )
