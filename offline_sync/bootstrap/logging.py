from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from offline_sync.core.observability import get_correlation_id

DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10
MAIN_LOG_NAME = "sync.log"
OPERATIONAL_ERROR_LOG_NAME = "operational_error.log"
CRASH_LOG_NAME = "crash.log"

# fichero -> (nivel mínimo, nivel máximo incluido); None es sin tope.
_LOG_FILES: dict[str, tuple[int, int | None]] = {
    MAIN_LOG_NAME: (logging.DEBUG, None),
    OPERATIONAL_ERROR_LOG_NAME: (logging.ERROR, logging.ERROR),
    CRASH_LOG_NAME: (logging.CRITICAL, None),
}


class JsonLinesFormatter(logging.Formatter):
    """Una línea JSON por registro.

    Los registros de ``log_event`` llevan ``{"event", "payload", ...}`` en
    ``extra``: el nombre del evento sube a primer nivel y ``extra`` queda con
    el payload, de modo que ``sync_cycle_finished`` y compañía se filtran por
    clave sin desanidar.
    """

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and "event" in extra and "payload" in extra:
            event["event"] = extra["event"]
            extra = extra["payload"]
        if extra:
            event["extra"] = extra
        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, default=str)


class LevelBandFilter(logging.Filter):
    def __init__(self, max_level: int | None) -> None:
        super().__init__()
        self._max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return self._max_level is None or record.levelno <= self._max_level


def _max_bytes_from_env() -> int:
    try:
        return int(os.environ["OFFLINE_SYNC_LOG_MAX_BYTES"])
    except (KeyError, ValueError):
        return DEFAULT_LOG_MAX_BYTES


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
) -> None:
    """Sustituye los handlers del root por los tres ficheros rotativos de ``_LOG_FILES``."""
    log_dir.mkdir(parents=True, exist_ok=True)
    resolved_max_bytes = max_bytes or _max_bytes_from_env()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)

    formatter = JsonLinesFormatter()
    for file_name, (min_level, max_level) in _LOG_FILES.items():
        handler = RotatingFileHandler(
            log_dir / file_name,
            maxBytes=resolved_max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        handler.setLevel(max(min_level, level))
        handler.addFilter(LevelBandFilter(max_level))
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


def install_exception_hook(log_dir: Path) -> None:
    """Las excepciones no capturadas van a ``crash.log`` con datos del intérprete."""
    crash_logger = logging.getLogger("offline_sync.crash")

    def _handler(exc_type, exc, tb) -> None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            crash_logger.critical(
                "Excepción no controlada",
                exc_info=(exc_type, exc, tb),
                extra={"extra": {"python": sys.version, "executable": sys.executable, "cwd": str(Path.cwd())}},
            )
        except OSError:
            pass

    sys.excepthook = _handler
