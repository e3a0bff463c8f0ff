from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from offline_sync.core.errors import ConflictError, RemoteError
from offline_sync.domain.models import ChangeSet, OutboxAction, OutboxEntry, RemoteChange, SendResult
from offline_sync.domain.time_utils import checkpoint_is_newer, to_iso, utc_now
from offline_sync.infrastructure.sheets_client import SheetsClient

logger = logging.getLogger(__name__)

SHEET_HEADERS = ["entity_id", "payload", "version", "updated_at", "deleted", "last_entry_id"]
_TRUE_VALUES = frozenset({"1", "true", "yes"})


def normalize_cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_rows(values: list[list[Any]]) -> list[tuple[int, dict[str, str]]]:
    """Convierte la matriz de la hoja en ``(numero_fila, {cabecera: valor})`` sin filas vacías."""
    if not values:
        return []
    headers = [normalize_cell(header) or f"col_{idx + 1}" for idx, header in enumerate(values[0])]
    rows: list[tuple[int, dict[str, str]]] = []
    for row_number, raw in enumerate(values[1:], start=2):
        payload = {header: normalize_cell(raw[idx] if idx < len(raw) else "") for idx, header in enumerate(headers)}
        if any(payload.values()):
            rows.append((row_number, payload))
    return rows


def _parse_version(raw: str) -> int | None:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class SheetsRemoteTransport:
    """Transporte remoto sobre Google Sheets: una worksheet por tipo de entidad.

    ``last_entry_id`` guarda ``device_id:entry_id`` de la última escritura, de
    modo que un reenvío de la misma entrada se confirma sin volver a escribir.
    """

    def __init__(
        self,
        client: SheetsClient,
        *,
        device_id: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._device_id = device_id
        self._clock = clock
        self._lock = threading.Lock()

    def send(self, entry: OutboxEntry) -> SendResult:
        entry_key = f"{self._device_id}:{entry.id}"
        with self._lock:
            worksheet = self._client.ensure_worksheet(entry.entity_type, SHEET_HEADERS)
            values = self._client.read_all_values(worksheet)
            rows = normalize_rows(values)
            match = next(((number, row) for number, row in rows if row.get("entity_id") == entry.entity_id), None)

            if match is not None and match[1].get("last_entry_id") == entry_key:
                row_number, row = match
                logger.info("Entrada %s ya aplicada en remoto; se confirma sin reescribir", entry.id)
                return SendResult(
                    success=True,
                    remote_id=f"{worksheet.title}!{row_number}",
                    new_version=_parse_version(row.get("version", "")),
                    server_timestamp=row.get("updated_at") or None,
                )

            if match is None and entry.action is OutboxAction.UPDATE:
                raise RemoteError(
                    f"No existe {entry.entity_type}/{entry.entity_id} en remoto para actualizar.",
                    code="not_found",
                )
            if match is not None and entry.action is OutboxAction.CREATE:
                _, row = match
                if row.get("deleted", "").lower() not in _TRUE_VALUES and not row.get("last_entry_id", "").startswith(
                    f"{self._device_id}:"
                ):
                    raise ConflictError(
                        f"{entry.entity_type}/{entry.entity_id} ya fue creado por otro dispositivo.",
                        server_timestamp=row.get("updated_at") or None,
                        remote_snapshot=self._decode_payload(row.get("payload", "")),
                    )

            version = (_parse_version(match[1].get("version", "")) or 0) + 1 if match else 1
            server_timestamp = to_iso(self._clock())
            deleted = entry.action is OutboxAction.DELETE
            payload_cell = "" if deleted else json.dumps(entry.payload, ensure_ascii=False, sort_keys=True)
            new_row = [entry.entity_id, payload_cell, version, server_timestamp, "1" if deleted else "0", entry_key]
            if match is not None:
                row_number = match[0]
                self._client.update_row(worksheet, row_number, new_row)
            else:
                row_number = max(len(values), 1) + 1
                self._client.append_row(worksheet, new_row)
        return SendResult(
            success=True,
            remote_id=f"{worksheet.title}!{row_number}",
            new_version=version,
            server_timestamp=server_timestamp,
        )

    def fetch_since(self, scope: str, checkpoint: str | None) -> ChangeSet:
        with self._lock:
            worksheet = self._client.ensure_worksheet(scope, SHEET_HEADERS)
            rows = normalize_rows(self._client.read_all_values(worksheet))
        changes: list[RemoteChange] = []
        high_water = checkpoint
        for row_number, row in rows:
            updated_at = row.get("updated_at") or None
            entity_id = row.get("entity_id", "")
            if not entity_id or updated_at is None:
                continue
            if checkpoint is not None and not checkpoint_is_newer(updated_at, checkpoint):
                continue
            deleted = row.get("deleted", "").lower() in _TRUE_VALUES
            changes.append(
                RemoteChange(
                    entity_type=scope,
                    entity_id=entity_id,
                    payload=None if deleted else self._decode_payload(row.get("payload", "")),
                    version=_parse_version(row.get("version", "")),
                    server_timestamp=updated_at,
                    remote_id=f"{worksheet.title}!{row_number}",
                    deleted=deleted,
                )
            )
            if checkpoint_is_newer(updated_at, high_water):
                high_water = updated_at
        changes.sort(key=lambda change: change.server_timestamp or "")
        return ChangeSet(scope=scope, since=checkpoint, checkpoint=high_water, changes=tuple(changes))

    @staticmethod
    def _decode_payload(raw: str) -> Any:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RemoteError(f"Payload remoto no es JSON válido: {raw[:80]!r}", code="invalid_payload") from exc
