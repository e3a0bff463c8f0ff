from __future__ import annotations

import logging
import threading

from offline_sync.application.conflict_policy import ConflictPolicy, decide_pull
from offline_sync.application.timeouts import TimeoutExecutor
from offline_sync.core.errors import InvalidStateError, RemoteError
from offline_sync.core.metrics import MetricsRegistry
from offline_sync.core.observability import log_event
from offline_sync.domain.models import (
    ApplyResult,
    ChangeSet,
    RemoteChange,
    RemoteMetadata,
    ScopeState,
)
from offline_sync.domain.ports import RemoteTransport
from offline_sync.domain.time_utils import checkpoint_is_newer
from offline_sync.infrastructure.local_store import SQLiteLocalStore

logger = logging.getLogger(__name__)

DEFAULT_PULL_TIMEOUT_SECONDS = 30.0

_APPLIED = "applied"
_DELETED = "deleted"
_STALE = "stale"
_KEPT_LOCAL = "kept_local"


class DeltaSyncEngine:
    """Trae cambios remotos desde el checkpoint de cada scope y los fusiona.

    ``apply_changes`` es todo-o-nada por scope: registros y checkpoint se
    escriben en la misma transacción. Un ChangeSet cuyo checkpoint no avanza
    respecto al guardado se ignora, así reaplicarlo no cambia nada.
    """

    def __init__(
        self,
        store: SQLiteLocalStore,
        transport: RemoteTransport,
        *,
        conflict_policy: ConflictPolicy | str = ConflictPolicy.LAST_WRITE_WINS,
        timeouts: TimeoutExecutor | None = None,
        timeout_seconds: float = DEFAULT_PULL_TIMEOUT_SECONDS,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._policy = ConflictPolicy.parse(conflict_policy)
        self._timeouts = timeouts or TimeoutExecutor()
        self._timeout_seconds = timeout_seconds
        self._metrics = metrics or MetricsRegistry()
        self._states: dict[str, ScopeState] = {}
        self._states_lock = threading.Lock()

    @property
    def conflict_policy(self) -> ConflictPolicy:
        return self._policy

    def pull_changes(self, scope: str) -> ChangeSet:
        checkpoint = self._store.get_checkpoint(scope)
        since = checkpoint.value if checkpoint else None
        change_set = self._timeouts.run(
            lambda: self._transport.fetch_since(scope, since),
            self._timeout_seconds,
            f"fetch_since({scope})",
        )
        if change_set.scope != scope:
            raise RemoteError(
                f"El remoto devolvió cambios de {change_set.scope!r} al pedir {scope!r}.",
                code="invalid_change_set",
            )
        log_event(
            logger,
            "pull_fetched",
            {"scope": scope, "since": since, "checkpoint": change_set.checkpoint, "changes": len(change_set.changes)},
        )
        return change_set

    def apply_changes(self, change_set: ChangeSet) -> ApplyResult:
        counts = {_APPLIED: 0, _DELETED: 0, _STALE: 0}
        conflicts = 0
        with self._store.transaction():
            stored = self._store.get_checkpoint(change_set.scope)
            current = stored.value if stored else None
            if not checkpoint_is_newer(change_set.checkpoint, current):
                logger.info(
                    "ChangeSet de %s ya aplicado (checkpoint=%s, guardado=%s)",
                    change_set.scope,
                    change_set.checkpoint,
                    current,
                )
                return ApplyResult(scope=change_set.scope, checkpoint=current, already_applied=True)
            now_iso = self._store.now_iso()
            for change in change_set.changes:
                outcome, had_conflict = self._merge(change, now_iso)
                if had_conflict:
                    conflicts += 1
                if outcome in counts:
                    counts[outcome] += 1
            self._store.save_checkpoint(change_set.scope, change_set.checkpoint, now_iso)
        self._metrics.increment("pull.applied", counts[_APPLIED] + counts[_DELETED])
        return ApplyResult(
            scope=change_set.scope,
            applied=counts[_APPLIED],
            deleted=counts[_DELETED],
            skipped_stale=counts[_STALE],
            conflicts=conflicts,
            checkpoint=change_set.checkpoint,
        )

    def sync_scope(self, scope: str) -> ApplyResult:
        with self._states_lock:
            if self._states.get(scope) is ScopeState.SYNCING:
                raise InvalidStateError(f"El scope {scope} ya se está sincronizando.")
            self._states[scope] = ScopeState.SYNCING
        try:
            change_set = self.pull_changes(scope)
            result = self.apply_changes(change_set)
            if result.already_applied:
                with self._store.transaction():
                    self._store.save_checkpoint(scope, None, self._store.now_iso())
        except Exception as exc:  # noqa: BLE001
            self._set_state(scope, ScopeState.SYNC_FAILED)
            self._store.record_checkpoint_error(scope, str(exc) or type(exc).__name__)
            raise
        self._set_state(scope, ScopeState.SYNCED)
        log_event(
            logger,
            "scope_synced",
            {
                "scope": scope,
                "applied": result.applied,
                "deleted": result.deleted,
                "skipped_stale": result.skipped_stale,
                "conflicts": result.conflicts,
                "checkpoint": result.checkpoint,
            },
        )
        return result

    def scope_state(self, scope: str) -> ScopeState:
        with self._states_lock:
            state = self._states.get(scope)
        if state is not None:
            return state
        checkpoint = self._store.get_checkpoint(scope)
        if checkpoint is None:
            return ScopeState.NEVER_SYNCED
        if checkpoint.last_error:
            return ScopeState.SYNC_FAILED
        return ScopeState.SYNCED if checkpoint.last_synced_at else ScopeState.NEVER_SYNCED

    def _set_state(self, scope: str, state: ScopeState) -> None:
        with self._states_lock:
            self._states[scope] = state

    def _merge(self, change: RemoteChange, now_iso: str) -> tuple[str, bool]:
        local = self._store.get_entity(change.entity_type, change.entity_id)
        if (
            local is not None
            and change.version is not None
            and local.remote_version is not None
            and change.version <= local.remote_version
        ):
            # Eco de una escritura propia ya confirmada: esa versión ya es conocida
            # y no puede chocar con cambios locales posteriores.
            return _STALE, False

        open_conflict = self._store.conflicts.find_for_entity(change.entity_type, change.entity_id)
        has_local_changes = open_conflict is not None or self._store.has_unsynced_changes(
            change.entity_type, change.entity_id
        )

        decision = decide_pull(
            self._policy,
            has_local_changes=has_local_changes,
            local_updated_at=local.updated_at if local else None,
            remote_timestamp=change.server_timestamp,
        )
        if has_local_changes:
            logger.warning(
                "Conflicto en pull %s/%s: %s",
                change.entity_type,
                change.entity_id,
                decision.outcome.value,
            )
        remote_snapshot = None if change.deleted else change.payload
        if decision.should_register_conflict:
            if open_conflict is not None:
                self._store.conflicts.update_remote_snapshot(open_conflict.id, remote_snapshot, now_iso)
            else:
                self._store.conflicts.add(
                    entity_type=change.entity_type,
                    entity_id=change.entity_id,
                    origin="pull",
                    local_snapshot=local.payload if local else None,
                    remote_snapshot=remote_snapshot,
                    detected_at=now_iso,
                )
        if decision.supersede_local:
            self._store.supersede_unsynced(
                change.entity_type,
                change.entity_id,
                f"Descartado por cambio remoto ({decision.outcome.value}).",
            )
        if not decision.apply_remote:
            return _KEPT_LOCAL, has_local_changes

        if open_conflict is not None:
            self._store.conflicts.delete(open_conflict.id)
        updated_at = change.server_timestamp or now_iso
        if change.deleted:
            self._store.mark_entity_deleted(
                change.entity_type,
                change.entity_id,
                updated_at,
                metadata=RemoteMetadata(
                    remote_id=change.remote_id,
                    version=change.version,
                    server_timestamp=change.server_timestamp,
                ),
            )
            return _DELETED, has_local_changes
        self._store.upsert_remote_entity(change, updated_at)
        return _APPLIED, has_local_changes
