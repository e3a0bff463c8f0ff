from __future__ import annotations

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from offline_sync.core.errors import PersistenceError
from offline_sync.domain.time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"
_UP_SUFFIX = ".up.sql"


@dataclass(frozen=True)
class MigrationDefinition:
    version: int
    name: str
    up_sql: Path
    down_sql: Path

    def checksum(self) -> str:
        return hashlib.sha256(self.up_sql.read_bytes()).hexdigest()


class MigrationRunner:
    """Aplica los scripts ``NNNN_nombre.up.sql`` en orden y registra cada uno en ``schema_migrations``.

    Un script ya aplicado cuyo contenido cambió después se considera deriva
    de esquema y detiene ``apply_all``.
    """

    def __init__(self, connection: sqlite3.Connection, schema_dir: Path | None = None) -> None:
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        self.schema_dir = schema_dir or SCHEMA_DIR
        self.migrations = self._discover_migrations()

    def apply_all(self) -> list[int]:
        self._ensure_history_table()
        applied_checksums = self._applied_checksums()
        applied: list[int] = []
        for migration in self.migrations:
            recorded = applied_checksums.get(migration.version)
            if recorded is None:
                self._apply_migration(migration)
                applied.append(migration.version)
            elif recorded != migration.checksum():
                raise PersistenceError(
                    f"La migración {migration.version:04d} ({migration.name}) cambió después de aplicarse."
                )
        if applied:
            logger.info("Migraciones aplicadas: %s", applied)
        return applied

    def rollback(self, steps: int = 1) -> list[int]:
        self._ensure_history_table()
        rows = self.connection.execute(
            "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT ?", (max(0, steps),)
        ).fetchall()
        by_version = {migration.version: migration for migration in self.migrations}
        rolled_back: list[int] = []
        for row in rows:
            migration = by_version.get(row["version"])
            if migration is None:
                raise PersistenceError(f"No hay script de bajada para la versión {row['version']}.")
            self._rollback_migration(migration)
            rolled_back.append(migration.version)
        return rolled_back

    def status(self) -> list[dict[str, object]]:
        self._ensure_history_table()
        rows = self.connection.execute("SELECT version, applied_at FROM schema_migrations").fetchall()
        applied_at = {row["version"]: row["applied_at"] for row in rows}
        return [
            {
                "version": migration.version,
                "name": migration.name,
                "applied": migration.version in applied_at,
                "applied_at": applied_at.get(migration.version),
            }
            for migration in self.migrations
        ]

    def _ensure_history_table(self) -> None:
        with self.connection:
            self.connection.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
                """
            )

    def _applied_checksums(self) -> dict[int, str]:
        rows = self.connection.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {row["version"]: row["checksum"] for row in rows}

    def _apply_migration(self, migration: MigrationDefinition) -> None:
        script = migration.up_sql.read_text(encoding="utf-8")
        # executescript hace COMMIT implícito: el registro va en el mismo bloque que el script.
        self._run_script(
            "BEGIN;\n"
            f"{script}\n"
            "INSERT INTO schema_migrations (version, name, checksum, applied_at) "
            f"VALUES ({migration.version}, {_quote(migration.name)}, {_quote(migration.checksum())}, "
            f"{_quote(to_iso(utc_now()))});\n"
            f"PRAGMA user_version = {migration.version};\n"
            "COMMIT;"
        )

    def _rollback_migration(self, migration: MigrationDefinition) -> None:
        script = migration.down_sql.read_text(encoding="utf-8")
        self._run_script(
            "BEGIN;\n"
            f"{script}\n"
            f"DELETE FROM schema_migrations WHERE version = {migration.version};\n"
            "COMMIT;"
        )
        previous = self.connection.execute(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
        ).fetchone()["version"]
        self.connection.execute(f"PRAGMA user_version = {int(previous)}")
        logger.info("Migración revertida: %04d %s", migration.version, migration.name)

    def _run_script(self, script: str) -> None:
        try:
            self.connection.executescript(script)
        except sqlite3.Error:
            if self.connection.in_transaction:
                self.connection.rollback()
            raise

    def _discover_migrations(self) -> list[MigrationDefinition]:
        definitions: list[MigrationDefinition] = []
        for up_file in sorted(self.schema_dir.glob(f"*{_UP_SUFFIX}")):
            stem = up_file.name[: -len(_UP_SUFFIX)]
            version_text, name = stem.split("_", maxsplit=1)
            down_file = up_file.with_name(f"{stem}.down.sql")
            if not down_file.exists():
                raise FileNotFoundError(f"Falta la migración de bajada para {up_file.name}: {down_file}")
            definitions.append(
                MigrationDefinition(version=int(version_text), name=name, up_sql=up_file, down_sql=down_file)
            )
        return definitions


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def run_migrations(connection: sqlite3.Connection) -> None:
    MigrationRunner(connection).apply_all()
