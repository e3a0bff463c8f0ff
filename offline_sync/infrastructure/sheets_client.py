from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import gspread

from offline_sync.core.errors import RemoteError
from offline_sync.infrastructure.sheets_errors import SheetsRateLimitError, map_gspread_exception

logger = logging.getLogger(__name__)

_MAX_RETRIES = 5
_BASE_BACKOFF_SECONDS = 1.0
_MAX_BACKOFF_SECONDS = 32.0

T = TypeVar("T")


def backoff_seconds(attempt: int, base_seconds: float = _BASE_BACKOFF_SECONDS) -> float:
    return min(_MAX_BACKOFF_SECONDS, base_seconds * (2 ** (attempt - 1)))


class SheetsClient:
    """Envoltorio fino sobre gspread con reintentos ante rate limit.

    Todas las excepciones salen ya traducidas a la taxonomía de
    ``offline_sync.core.errors`` (``NetworkError`` / ``RemoteError`` / ``ConfigError``).
    """

    def __init__(
        self,
        credentials_path: Path,
        spreadsheet_id: str,
        *,
        max_retries: int = _MAX_RETRIES,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._credentials_path = credentials_path
        self._spreadsheet_id = spreadsheet_id
        self._max_retries = max_retries
        self._sleeper = sleeper
        self._spreadsheet: gspread.Spreadsheet | None = None
        self._worksheet_cache: dict[str, gspread.Worksheet] = {}
        self._lock = threading.Lock()
        self._read_calls_count = 0
        self._write_calls_count = 0

    def open_spreadsheet(self) -> gspread.Spreadsheet:
        with self._lock:
            if self._spreadsheet is not None:
                return self._spreadsheet
        logger.info("Conectando a Google Sheets (spreadsheet=%s)", self._spreadsheet_id)
        try:
            client = gspread.service_account(filename=str(self._credentials_path))
        except Exception as exc:  # noqa: BLE001
            raise map_gspread_exception(exc) from exc
        spreadsheet = self._with_rate_limit_retry("open_by_key", lambda: client.open_by_key(self._spreadsheet_id))
        with self._lock:
            self._spreadsheet = spreadsheet
            self._worksheet_cache = {}
        return spreadsheet

    def ensure_worksheet(self, title: str, headers: list[str]) -> gspread.Worksheet:
        with self._lock:
            cached = self._worksheet_cache.get(title)
        if cached is not None:
            return cached
        spreadsheet = self.open_spreadsheet()
        try:
            worksheet = self._with_rate_limit_retry(f"worksheet({title})", lambda: spreadsheet.worksheet(title))
        except RemoteError as exc:
            if exc.code != "worksheet_not_found":
                raise
            logger.info("Creando worksheet %s", title)
            worksheet = self._with_rate_limit_retry(
                f"add_worksheet({title})",
                lambda: spreadsheet.add_worksheet(title=title, rows=1000, cols=max(len(headers), 1)),
            )
            self._with_rate_limit_retry(
                f"update_headers({title})",
                lambda: worksheet.update(values=[headers], range_name="A1"),
            )
            self._write_calls_count += 1
        with self._lock:
            self._worksheet_cache[title] = worksheet
        return worksheet

    def read_all_values(self, worksheet: gspread.Worksheet) -> list[list[str]]:
        values = self._with_rate_limit_retry(
            f"get_all_values({worksheet.title})",
            worksheet.get_all_values,
        )
        self._read_calls_count += 1
        return values

    def append_row(self, worksheet: gspread.Worksheet, row: list[Any]) -> None:
        self._with_rate_limit_retry(
            f"append_rows({worksheet.title})",
            lambda: worksheet.append_rows([row], value_input_option="RAW"),
        )
        self._write_calls_count += 1

    def update_row(self, worksheet: gspread.Worksheet, row_number: int, row: list[Any]) -> None:
        self._with_rate_limit_retry(
            f"update({worksheet.title}!A{row_number})",
            lambda: worksheet.update(values=[row], range_name=f"A{row_number}", value_input_option="RAW"),
        )
        self._write_calls_count += 1

    def get_read_calls_count(self) -> int:
        return self._read_calls_count

    def get_write_calls_count(self) -> int:
        return self._write_calls_count

    def _with_rate_limit_retry(self, operation_name: str, operation: Callable[[], T]) -> T:
        for attempt in range(1, self._max_retries + 1):
            try:
                return operation()
            except Exception as exc:  # noqa: BLE001
                mapped_error = map_gspread_exception(exc)
                if not isinstance(mapped_error, SheetsRateLimitError):
                    if mapped_error is exc:
                        raise
                    raise mapped_error from exc
                if attempt >= self._max_retries:
                    logger.error(
                        "Google Sheets rate limit persistente en %s tras %s intentos.",
                        operation_name,
                        attempt,
                    )
                    if mapped_error is exc:
                        raise
                    raise mapped_error from exc
                delay = backoff_seconds(attempt)
                logger.warning(
                    "Rate limit en Google Sheets (%s). intento=%s/%s backoff=%.3fs",
                    operation_name,
                    attempt,
                    self._max_retries,
                    delay,
                )
                self._sleeper(delay)
        raise RuntimeError("unreachable")
