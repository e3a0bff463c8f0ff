from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from offline_sync.core.errors import InvalidStateError, NotFoundError, ValidationError
from offline_sync.domain.models import OutboxAction, OutboxEntry, OutboxStatus, RemoteMetadata
from offline_sync.domain.time_utils import parse_iso, to_iso
from offline_sync.infrastructure.local_store import SQLiteLocalStore, encode_payload

logger = logging.getLogger(__name__)

DEFAULT_PENDING_LIMIT = 100


def _coerce_action(action: OutboxAction | str) -> OutboxAction:
    if isinstance(action, OutboxAction):
        return action
    try:
        return OutboxAction(str(action).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Acción de outbox no soportada: {action!r}") from exc


class OutboxManager:
    """Cola durable de mutaciones locales pendientes de replicar.

    Entrega al-menos-una-vez: las entradas solo se mueven
    ``pending -> sent``, ``pending -> error`` y ``error -> pending``; nunca se
    borran salvo por ``purge_sent``. Los reintentos los decide quien llama.
    """

    def __init__(self, store: SQLiteLocalStore) -> None:
        self._store = store

    def enqueue(self, entity_type: str, entity_id: str, action: OutboxAction | str, payload: Any) -> OutboxEntry:
        if not str(entity_type or "").strip():
            raise ValidationError("entity_type es obligatorio.")
        if not str(entity_id or "").strip():
            raise ValidationError("entity_id es obligatorio.")
        resolved_action = _coerce_action(action)
        if payload is None and resolved_action is not OutboxAction.DELETE:
            raise ValidationError(f"La acción {resolved_action.value} requiere payload.")
        try:
            payload_json = encode_payload(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Payload no serializable para {entity_type}/{entity_id}: {exc}") from exc

        with self._store.transaction():
            created_at = self._next_created_at()
            entry = self._store.insert_outbox_entry(entity_type, entity_id, resolved_action, payload_json, created_at)
        logger.debug("Outbox enqueue id=%s %s %s/%s", entry.id, resolved_action.value, entity_type, entity_id)
        return entry

    def get(self, entry_id: int) -> OutboxEntry:
        entry = self._store.get_outbox_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"No existe la entrada de outbox {entry_id}.")
        return entry

    def get_pending(self, entity_type: str | None = None, limit: int = DEFAULT_PENDING_LIMIT) -> list[OutboxEntry]:
        if limit <= 0:
            return []
        return self._store.list_outbox(status=OutboxStatus.PENDING, entity_type=entity_type, limit=limit)

    def get_sendable(self, limit: int = DEFAULT_PENDING_LIMIT) -> list[OutboxEntry]:
        """Pendientes en orden de creación, sin las de entidades retenidas por un error."""
        if limit <= 0:
            return []
        return self._store.list_sendable_pending(limit)

    def held_back_count(self) -> int:
        return self._store.count_blocked_pending()

    def list_errors(self, limit: int | None = None) -> list[OutboxEntry]:
        return self._store.list_outbox(status=OutboxStatus.ERROR, limit=limit)

    def pending_count(self) -> int:
        return self._store.count_outbox(OutboxStatus.PENDING)

    def error_count(self) -> int:
        return self._store.count_outbox(OutboxStatus.ERROR)

    def mark_as_sent(self, entry_id: int, remote_metadata: RemoteMetadata | None = None) -> OutboxEntry:
        metadata = remote_metadata or RemoteMetadata()
        with self._store.transaction():
            entry = self._require(entry_id, OutboxStatus.PENDING, "marcar como enviada")
            now_iso = self._store.now_iso()
            self._store.update_outbox_entry(
                entry_id,
                status=OutboxStatus.SENT,
                sent_at=now_iso,
                last_attempt_at=now_iso,
                last_error=None,
                last_error_code=None,
            )
            self._store.apply_remote_metadata(entry.entity_type, entry.entity_id, metadata)
        return self.get(entry_id)

    def mark_as_error(self, entry_id: int, error_message: str, error_code: str | None = None) -> OutboxEntry:
        with self._store.transaction():
            entry = self._require(entry_id, OutboxStatus.PENDING, "marcar como error")
            self._store.update_outbox_entry(
                entry_id,
                status=OutboxStatus.ERROR,
                last_error=error_message,
                last_error_code=error_code,
                attempts=entry.attempts + 1,
                last_attempt_at=self._store.now_iso(),
            )
        return self.get(entry_id)

    def requeue(self, entry_id: int) -> OutboxEntry:
        with self._store.transaction():
            self._require(entry_id, OutboxStatus.ERROR, "reencolar")
            self._store.update_outbox_entry(entry_id, status=OutboxStatus.PENDING)
        logger.info("Outbox requeue id=%s", entry_id)
        return self.get(entry_id)

    def purge_sent(self, older_than: timedelta) -> int:
        cutoff = parse_iso(self._store.now_iso())
        assert cutoff is not None
        with self._store.transaction():
            removed = self._store.delete_sent_before(to_iso(cutoff - older_than))
        if removed:
            logger.info("Retención de outbox: %s entradas enviadas eliminadas", removed)
        return removed

    def _require(self, entry_id: int, expected: OutboxStatus, operation: str) -> OutboxEntry:
        entry = self._store.get_outbox_entry(entry_id)
        if entry is None:
            raise NotFoundError(f"No existe la entrada de outbox {entry_id}.")
        if entry.status is not expected:
            raise InvalidStateError(
                f"No se puede {operation} la entrada {entry_id}: estado {entry.status.value}, se esperaba {expected.value}."
            )
        return entry

    def _next_created_at(self) -> str:
        # Un reloj que retrocede no puede adelantar una entrada posterior a otra anterior.
        now_iso = self._store.now_iso()
        last = self._store.last_outbox_created_at()
        if last is not None and last > now_iso:
            return last
        return now_iso
