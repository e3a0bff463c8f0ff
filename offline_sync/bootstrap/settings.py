from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping

from offline_sync.application.conflict_policy import ConflictPolicy
from offline_sync.core.errors import ConfigError
from offline_sync.infrastructure.db import default_db_path
from offline_sync.infrastructure.local_config import resolve_appdata_dir

logger = logging.getLogger(__name__)

ENV_PREFIX = "OFFLINE_SYNC_"
DEFAULT_SCOPES: tuple[str, ...] = ()


def resolve_log_dir(env: Mapping[str, str] | None = None) -> Path:
    environ = os.environ if env is None else env
    candidates: list[Path] = []
    env_dir = environ.get(f"{ENV_PREFIX}LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(resolve_appdata_dir() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "OfflineSync" / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = Path.cwd() / "logs"
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def _read_int(environ: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
    raw_value = environ.get(f"{ENV_PREFIX}{name}")
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = int(raw_value)
    except ValueError:
        logger.warning("Valor inválido en %s%s=%r; se usa %s", ENV_PREFIX, name, raw_value, default)
        return default
    return value if value >= minimum else default


def _read_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw_value = environ.get(f"{ENV_PREFIX}{name}")
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = float(raw_value)
    except ValueError:
        logger.warning("Valor inválido en %s%s=%r; se usa %s", ENV_PREFIX, name, raw_value, default)
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class SyncSettings:
    db_path: Path
    log_dir: Path
    batch_size: int = 50
    send_timeout_seconds: float = 30.0
    pull_timeout_seconds: float = 30.0
    conflict_policy: ConflictPolicy = ConflictPolicy.LAST_WRITE_WINS
    retention_days: int | None = None
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    max_attempts: int = 5
    interval_seconds: float = 60.0

    @property
    def retention(self) -> timedelta | None:
        return timedelta(days=self.retention_days) if self.retention_days else None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SyncSettings":
        environ = os.environ if env is None else env
        db_path_raw = environ.get(f"{ENV_PREFIX}DB_PATH")
        try:
            policy = ConflictPolicy.parse(environ.get(f"{ENV_PREFIX}CONFLICT_POLICY"))
        except ConfigError:
            logger.warning("Política de conflictos inválida; se usa %s", ConflictPolicy.LAST_WRITE_WINS.value)
            policy = ConflictPolicy.LAST_WRITE_WINS
        retention_days = _read_int(environ, "RETENTION_DAYS", 0, minimum=0)
        scopes_raw = environ.get(f"{ENV_PREFIX}SCOPES", "")
        scopes = tuple(dict.fromkeys(scope.strip() for scope in scopes_raw.split(",") if scope.strip()))
        return cls(
            db_path=Path(db_path_raw) if db_path_raw else default_db_path(),
            log_dir=resolve_log_dir(environ),
            batch_size=_read_int(environ, "BATCH_SIZE", 50),
            send_timeout_seconds=_read_float(environ, "SEND_TIMEOUT", 30.0),
            pull_timeout_seconds=_read_float(environ, "PULL_TIMEOUT", 30.0),
            conflict_policy=policy,
            retention_days=retention_days or None,
            scopes=scopes or DEFAULT_SCOPES,
            max_attempts=_read_int(environ, "MAX_ATTEMPTS", 5),
            interval_seconds=_read_float(environ, "INTERVAL", 60.0),
        )
