from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any

from offline_sync.domain.models import ConflictRecord


def _dump_snapshot(snapshot: Any) -> str:
    return json.dumps(snapshot, ensure_ascii=False, sort_keys=True)


def _load_snapshot(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def _row_to_conflict(row: sqlite3.Row) -> ConflictRecord:
    return ConflictRecord(
        id=int(row["id"]),
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        origin=row["origin"],
        local_snapshot=_load_snapshot(row["local_snapshot_json"]),
        remote_snapshot=_load_snapshot(row["remote_snapshot_json"]),
        detected_at=row["detected_at"],
    )


class SQLiteConflictsRepository:
    """Marcadores de conflicto pendientes de resolución manual.

    Comparte conexión y lock con ``SQLiteLocalStore``; las escrituras deben
    hacerse dentro de ``store.transaction()``.
    """

    def __init__(self, connection: sqlite3.Connection, lock: threading.RLock) -> None:
        self._connection = connection
        self._lock = lock

    def add(
        self,
        *,
        entity_type: str,
        entity_id: str,
        origin: str,
        local_snapshot: Any,
        remote_snapshot: Any,
        detected_at: str,
    ) -> int:
        with self._lock:
            cursor = self._connection.execute(
                """
                INSERT INTO conflicts (
                    entity_type, entity_id, origin, local_snapshot_json, remote_snapshot_json, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entity_type,
                    entity_id,
                    origin,
                    _dump_snapshot(local_snapshot),
                    _dump_snapshot(remote_snapshot),
                    detected_at,
                ),
            )
            return int(cursor.lastrowid)

    def get(self, conflict_id: int) -> ConflictRecord | None:
        with self._lock:
            row = self._connection.execute("SELECT * FROM conflicts WHERE id = ?", (conflict_id,)).fetchone()
        return _row_to_conflict(row) if row else None

    def find_for_entity(self, entity_type: str, entity_id: str) -> ConflictRecord | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM conflicts WHERE entity_type = ? AND entity_id = ? ORDER BY id DESC LIMIT 1",
                (entity_type, entity_id),
            ).fetchone()
        return _row_to_conflict(row) if row else None

    def update_remote_snapshot(self, conflict_id: int, remote_snapshot: Any, detected_at: str) -> None:
        with self._lock:
            self._connection.execute(
                "UPDATE conflicts SET remote_snapshot_json = ?, detected_at = ? WHERE id = ?",
                (_dump_snapshot(remote_snapshot), detected_at, conflict_id),
            )

    def list_conflicts(self) -> list[ConflictRecord]:
        with self._lock:
            rows = self._connection.execute("SELECT * FROM conflicts ORDER BY detected_at ASC, id ASC").fetchall()
        return [_row_to_conflict(row) for row in rows]

    def count_conflicts(self) -> int:
        with self._lock:
            row = self._connection.execute("SELECT COUNT(*) AS total FROM conflicts").fetchone()
        return int(row["total"] if row else 0)

    def delete(self, conflict_id: int) -> bool:
        with self._lock:
            cursor = self._connection.execute("DELETE FROM conflicts WHERE id = ?", (conflict_id,))
            return cursor.rowcount > 0
