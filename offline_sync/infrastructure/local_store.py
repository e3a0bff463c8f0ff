from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

from offline_sync.core.errors import PersistenceError
from offline_sync.domain.models import (
    EntityRecord,
    OutboxAction,
    OutboxEntry,
    OutboxStatus,
    RemoteChange,
    RemoteMetadata,
    StoreChange,
    SyncCheckpoint,
)
from offline_sync.domain.time_utils import to_iso, utc_now
from offline_sync.infrastructure.repos_conflicts_sqlite import SQLiteConflictsRepository
from offline_sync.infrastructure.sqlite_uow import transaccion

logger = logging.getLogger(__name__)

StoreListener = Callable[[StoreChange], None]

SUPERSEDED_CODE = "superseded"

_OUTBOX_COLUMNS = (
    "id, entity_type, entity_id, action, payload_json, created_at, sent_at, status, "
    "attempts, last_error, last_error_code, last_attempt_at"
)
# Una entrada en error no superada retiene a las pendientes de su entidad hasta que se reencola.
_BLOCKING_ERROR_EXISTS = """EXISTS (
    SELECT 1 FROM outbox AS blocker
    WHERE blocker.entity_type = pending.entity_type
      AND blocker.entity_id = pending.entity_id
      AND blocker.status = 'error'
      AND COALESCE(blocker.last_error_code, '') != ?
)"""
_UPDATABLE_OUTBOX_FIELDS = frozenset(
    {"status", "sent_at", "attempts", "last_error", "last_error_code", "last_attempt_at"}
)


def encode_payload(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def decode_payload(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _row_to_entry(row: sqlite3.Row) -> OutboxEntry:
    return OutboxEntry(
        id=int(row["id"]),
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        action=OutboxAction(row["action"]),
        payload=decode_payload(row["payload_json"]),
        created_at=row["created_at"],
        status=OutboxStatus(row["status"]),
        sent_at=row["sent_at"],
        last_error=row["last_error"],
        last_error_code=row["last_error_code"],
        attempts=int(row["attempts"] or 0),
        last_attempt_at=row["last_attempt_at"],
    )


def _row_to_entity(row: sqlite3.Row) -> EntityRecord:
    return EntityRecord(
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        payload=decode_payload(row["payload_json"]),
        updated_at=row["updated_at"],
        remote_id=row["remote_id"],
        remote_version=row["remote_version"],
        server_timestamp=row["server_timestamp"],
        deleted=bool(row["deleted"]),
    )


class SQLiteLocalStore:
    """Única fuente de verdad local: entidades, outbox, checkpoints y conflictos.

    Toda lectura y escritura pasa por ``_lock`` (re-entrante), que actúa como
    frontera de escritor único: nadie ve un ChangeSet a medio aplicar ni un
    ``mark_as_sent`` intercalado con un merge sobre la misma fila.
    """

    def __init__(self, connection: sqlite3.Connection, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._connection = connection
        self._connection.row_factory = sqlite3.Row
        self._clock = clock
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._staged_changes: list[StoreChange] = []
        self._listeners: list[StoreListener] = []
        self._listeners_lock = threading.Lock()
        self.cycle_guard = threading.Lock()
        self.conflicts = SQLiteConflictsRepository(connection, self._lock)

    # -- transacciones y notificaciones -------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        published: list[StoreChange] = []
        with self._lock:
            outermost = self._tx_depth == 0
            mark = len(self._staged_changes)
            self._tx_depth += 1
            try:
                with transaccion(self._connection):
                    yield
            except BaseException:
                del self._staged_changes[mark:]
                raise
            finally:
                self._tx_depth -= 1
            if outermost:
                published, self._staged_changes = self._staged_changes, []
        self._publish(published)

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _stage(self, kind: str, entity_type: str, entity_id: str) -> None:
        self._staged_changes.append(StoreChange(kind=kind, entity_type=entity_type, entity_id=entity_id))

    def _publish(self, changes: list[StoreChange]) -> None:
        if not changes:
            return
        with self._listeners_lock:
            listeners = list(self._listeners)
        for change in changes:
            for listener in listeners:
                try:
                    listener(change)
                except Exception:  # noqa: BLE001
                    logger.exception("Listener de cambios falló para %s/%s", change.entity_type, change.entity_id)

    def _require_transaction(self) -> None:
        if self._tx_depth == 0:
            raise PersistenceError("Escritura fuera de transaction() en el store local.")

    def now_iso(self) -> str:
        return to_iso(self._clock())

    # -- entidades ----------------------------------------------------------------------

    def get_entity(self, entity_type: str, entity_id: str) -> EntityRecord | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()
        return _row_to_entity(row) if row else None

    def list_entities(self, entity_type: str, *, include_deleted: bool = False) -> list[EntityRecord]:
        sql = "SELECT * FROM entities WHERE entity_type = ?"
        if not include_deleted:
            sql += " AND deleted = 0"
        sql += " ORDER BY entity_id ASC"
        with self._lock:
            rows = self._connection.execute(sql, (entity_type,)).fetchall()
        return [_row_to_entity(row) for row in rows]

    def known_entity_types(self) -> list[str]:
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT entity_type FROM entities
                UNION
                SELECT entity_type FROM outbox
                UNION
                SELECT scope AS entity_type FROM sync_checkpoints
                ORDER BY entity_type
                """
            ).fetchall()
        return [row["entity_type"] for row in rows]

    def save_local_entity(self, entity_type: str, entity_id: str, payload: Any, updated_at: str) -> None:
        with self._lock:
            self._require_transaction()
            self._connection.execute(
                """
                INSERT INTO entities (entity_type, entity_id, payload_json, updated_at, deleted)
                VALUES (?, ?, ?, ?, 0)
                ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at,
                    deleted = 0
                """,
                (entity_type, entity_id, encode_payload(payload), updated_at),
            )
            self._stage("entity_saved", entity_type, entity_id)

    def upsert_remote_entity(self, change: RemoteChange, updated_at: str) -> None:
        with self._lock:
            self._require_transaction()
            self._connection.execute(
                """
                INSERT INTO entities (
                    entity_type, entity_id, payload_json, updated_at,
                    remote_id, remote_version, server_timestamp, deleted
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at,
                    remote_id = COALESCE(excluded.remote_id, entities.remote_id),
                    remote_version = COALESCE(excluded.remote_version, entities.remote_version),
                    server_timestamp = COALESCE(excluded.server_timestamp, entities.server_timestamp),
                    deleted = 0
                """,
                (
                    change.entity_type,
                    change.entity_id,
                    encode_payload(change.payload),
                    updated_at,
                    change.remote_id,
                    change.version,
                    change.server_timestamp,
                ),
            )
            self._stage("entity_pulled", change.entity_type, change.entity_id)

    def mark_entity_deleted(
        self,
        entity_type: str,
        entity_id: str,
        updated_at: str,
        *,
        metadata: RemoteMetadata | None = None,
    ) -> None:
        meta = metadata or RemoteMetadata()
        with self._lock:
            self._require_transaction()
            self._connection.execute(
                """
                INSERT INTO entities (
                    entity_type, entity_id, payload_json, updated_at,
                    remote_id, remote_version, server_timestamp, deleted
                ) VALUES (?, ?, NULL, ?, ?, ?, ?, 1)
                ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                    updated_at = excluded.updated_at,
                    remote_id = COALESCE(excluded.remote_id, entities.remote_id),
                    remote_version = COALESCE(excluded.remote_version, entities.remote_version),
                    server_timestamp = COALESCE(excluded.server_timestamp, entities.server_timestamp),
                    deleted = 1
                """,
                (entity_type, entity_id, updated_at, meta.remote_id, meta.version, meta.server_timestamp),
            )
            self._stage("entity_deleted", entity_type, entity_id)

    def apply_remote_metadata(self, entity_type: str, entity_id: str, metadata: RemoteMetadata) -> bool:
        with self._lock:
            self._require_transaction()
            cursor = self._connection.execute(
                """
                UPDATE entities
                SET remote_id = COALESCE(?, remote_id),
                    remote_version = COALESCE(?, remote_version),
                    server_timestamp = COALESCE(?, server_timestamp)
                WHERE entity_type = ? AND entity_id = ?
                """,
                (metadata.remote_id, metadata.version, metadata.server_timestamp, entity_type, entity_id),
            )
            if cursor.rowcount:
                self._stage("entity_confirmed", entity_type, entity_id)
            return cursor.rowcount > 0

    # -- outbox -------------------------------------------------------------------------

    def insert_outbox_entry(
        self,
        entity_type: str,
        entity_id: str,
        action: OutboxAction,
        payload_json: str,
        created_at: str,
    ) -> OutboxEntry:
        with self._lock:
            self._require_transaction()
            cursor = self._connection.execute(
                """
                INSERT INTO outbox (entity_type, entity_id, action, payload_json, created_at, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (entity_type, entity_id, action.value, payload_json, created_at, OutboxStatus.PENDING.value),
            )
            entry_id = int(cursor.lastrowid)
            self._stage("outbox_enqueued", entity_type, entity_id)
            entry = self.get_outbox_entry(entry_id)
        if entry is None:
            raise PersistenceError(f"La entrada de outbox {entry_id} no se pudo releer tras insertarla.")
        return entry

    def get_outbox_entry(self, entry_id: int) -> OutboxEntry | None:
        with self._lock:
            row = self._connection.execute(
                f"SELECT {_OUTBOX_COLUMNS} FROM outbox WHERE id = ?", (entry_id,)
            ).fetchone()
        return _row_to_entry(row) if row else None

    def list_outbox(
        self,
        *,
        status: OutboxStatus | None = None,
        entity_type: str | None = None,
        limit: int | None = None,
    ) -> list[OutboxEntry]:
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        sql = f"SELECT {_OUTBOX_COLUMNS} FROM outbox"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._connection.execute(sql, tuple(params)).fetchall()
        return [_row_to_entry(row) for row in rows]

    def update_outbox_entry(self, entry_id: int, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_OUTBOX_FIELDS
        if unknown:
            raise ValueError(f"Campos de outbox no actualizables: {sorted(unknown)}")
        values = {key: (value.value if isinstance(value, OutboxStatus) else value) for key, value in fields.items()}
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._lock:
            self._require_transaction()
            row = self._connection.execute(
                "SELECT entity_type, entity_id FROM outbox WHERE id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                return
            self._connection.execute(
                f"UPDATE outbox SET {assignments} WHERE id = ?",
                (*values.values(), entry_id),
            )
            self._stage("outbox_updated", row["entity_type"], row["entity_id"])

    def count_outbox(self, status: OutboxStatus) -> int:
        with self._lock:
            row = self._connection.execute(
                "SELECT COUNT(*) AS total FROM outbox WHERE status = ?", (status.value,)
            ).fetchone()
        return int(row["total"] if row else 0)

    def has_unsynced_changes(self, entity_type: str, entity_id: str) -> bool:
        with self._lock:
            row = self._connection.execute(
                """
                SELECT COUNT(*) AS total FROM outbox
                WHERE entity_type = ? AND entity_id = ?
                  AND (status = 'pending' OR (status = 'error' AND COALESCE(last_error_code, '') != ?))
                """,
                (entity_type, entity_id, SUPERSEDED_CODE),
            ).fetchone()
        return bool(row and row["total"])

    def list_sendable_pending(self, limit: int) -> list[OutboxEntry]:
        """Pendientes cuya entidad no tiene una entrada en error que deba salir antes."""
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT {_OUTBOX_COLUMNS} FROM outbox AS pending
                WHERE pending.status = 'pending' AND NOT {_BLOCKING_ERROR_EXISTS}
                ORDER BY pending.created_at, pending.id
                LIMIT ?
                """,
                (SUPERSEDED_CODE, limit),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count_blocked_pending(self) -> int:
        with self._lock:
            row = self._connection.execute(
                f"SELECT COUNT(*) AS total FROM outbox AS pending WHERE pending.status = 'pending' AND {_BLOCKING_ERROR_EXISTS}",
                (SUPERSEDED_CODE,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def supersede_unsynced(self, entity_type: str, entity_id: str, message: str) -> int:
        """Marca como ``superseded`` las entradas locales que ya no deben enviarse."""
        with self._lock:
            self._require_transaction()
            cursor = self._connection.execute(
                """
                UPDATE outbox
                SET status = 'error', last_error = ?, last_error_code = ?, last_attempt_at = ?
                WHERE entity_type = ? AND entity_id = ?
                  AND (status = 'pending' OR (status = 'error' AND COALESCE(last_error_code, '') != ?))
                """,
                (message, SUPERSEDED_CODE, self.now_iso(), entity_type, entity_id, SUPERSEDED_CODE),
            )
            if cursor.rowcount:
                self._stage("outbox_updated", entity_type, entity_id)
            return cursor.rowcount

    def last_outbox_created_at(self) -> str | None:
        with self._lock:
            row = self._connection.execute("SELECT MAX(created_at) AS last FROM outbox").fetchone()
        return row["last"] if row else None

    def delete_sent_before(self, cutoff: str) -> int:
        with self._lock:
            self._require_transaction()
            cursor = self._connection.execute(
                "DELETE FROM outbox WHERE status = 'sent' AND sent_at IS NOT NULL AND sent_at < ?",
                (cutoff,),
            )
            return cursor.rowcount

    # -- checkpoints y estado global ------------------------------------------------------

    def get_checkpoint(self, scope: str) -> SyncCheckpoint | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT scope, checkpoint, last_synced_at, last_error FROM sync_checkpoints WHERE scope = ?",
                (scope,),
            ).fetchone()
        if row is None:
            return None
        return SyncCheckpoint(
            scope=row["scope"],
            value=row["checkpoint"],
            last_synced_at=row["last_synced_at"],
            last_error=row["last_error"],
        )

    def list_checkpoints(self) -> list[SyncCheckpoint]:
        with self._lock:
            rows = self._connection.execute(
                "SELECT scope, checkpoint, last_synced_at, last_error FROM sync_checkpoints ORDER BY scope"
            ).fetchall()
        return [
            SyncCheckpoint(
                scope=row["scope"],
                value=row["checkpoint"],
                last_synced_at=row["last_synced_at"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    def save_checkpoint(self, scope: str, value: str | None, synced_at: str) -> None:
        with self._lock:
            self._require_transaction()
            self._connection.execute(
                """
                INSERT INTO sync_checkpoints (scope, checkpoint, last_synced_at, last_error, updated_at)
                VALUES (?, ?, ?, NULL, ?)
                ON CONFLICT(scope) DO UPDATE SET
                    checkpoint = COALESCE(excluded.checkpoint, sync_checkpoints.checkpoint),
                    last_synced_at = excluded.last_synced_at,
                    last_error = NULL,
                    updated_at = excluded.updated_at
                """,
                (scope, value, synced_at, synced_at),
            )

    def record_checkpoint_error(self, scope: str, message: str) -> None:
        now_iso = self.now_iso()
        with self.transaction():
            self._connection.execute(
                """
                INSERT INTO sync_checkpoints (scope, checkpoint, last_synced_at, last_error, updated_at)
                VALUES (?, NULL, NULL, ?, ?)
                ON CONFLICT(scope) DO UPDATE SET
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (scope, message, now_iso),
            )

    def get_last_sync_at(self) -> str | None:
        with self._lock:
            row = self._connection.execute("SELECT last_sync_at FROM sync_state WHERE id = 1").fetchone()
        return row["last_sync_at"] if row else None

    def get_last_error(self) -> str | None:
        with self._lock:
            row = self._connection.execute("SELECT last_error FROM sync_state WHERE id = 1").fetchone()
        return row["last_error"] if row else None

    def record_cycle_end(self, *, last_sync_at: str | None, last_error: str | None) -> None:
        """Guarda el error del ciclo; ``last_sync_at`` solo se pisa si viene informado."""
        with self.transaction():
            self._connection.execute(
                """
                INSERT INTO sync_state (id, last_sync_at, last_error) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_sync_at = COALESCE(excluded.last_sync_at, sync_state.last_sync_at),
                    last_error = excluded.last_error
                """,
                (last_sync_at, last_error),
            )
