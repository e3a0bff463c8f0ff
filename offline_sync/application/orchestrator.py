from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterable

from offline_sync.application.conflict_policy import ConflictPolicy, decide_push
from offline_sync.application.delta_sync import DeltaSyncEngine
from offline_sync.application.outbox import OutboxManager
from offline_sync.application.timeouts import TimeoutExecutor
from offline_sync.core.errors import AppError, ConflictError, NetworkError, RemoteError
from offline_sync.core.metrics import MetricsRegistry
from offline_sync.core.observability import OperationContext, log_event
from offline_sync.core.operational_logging import log_operational_error
from offline_sync.domain.models import CycleOutcome, CycleResult, OutboxEntry, SyncStatus
from offline_sync.domain.ports import ConnectivityProbe, RemoteTransport, StatusObserver
from offline_sync.domain.time_utils import parse_iso
from offline_sync.infrastructure.local_store import SQLiteLocalStore

logger = logging.getLogger(__name__)

CONFLICT_CODE = "conflict"
CONFLICT_RETRY_CODE = "conflict_retry"
DEFAULT_RETRYABLE_CODES = frozenset({"network", "timeout", "rate_limited", "server_error", CONFLICT_RETRY_CODE})


class CancellationToken:
    """Token cooperativo para cancelación de ciclos de sincronización."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_backoff_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 3600.0
    retryable_codes: frozenset[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_CODES)

    def backoff_for(self, attempts: int) -> float:
        exponent = max(attempts - 1, 0)
        return min(self.max_backoff_seconds, self.initial_backoff_seconds * (self.backoff_multiplier**exponent))

    def awaits_retry(self, entry: OutboxEntry) -> bool:
        return entry.last_error_code in self.retryable_codes and entry.attempts < self.max_attempts


@dataclass
class _PushStats:
    sent: int = 0
    failed: int = 0
    held_back: int = 0
    conflicts: int = 0


class SyncOrchestrator:
    """Ciclo completo: reencolar reintentos, push del outbox y pull por scope.

    Un único ciclo por store a la vez (``store.cycle_guard``); un segundo
    llamante recibe ``skipped_in_progress`` sin tocar nada. Los fallos de red
    y de servidor quedan registrados en el outbox o en el checkpoint. Un scope
    que falla, sea cual sea la excepción, no impide sincronizar los demás; un
    error inesperado durante el push se propaga.
    """

    def __init__(
        self,
        store: SQLiteLocalStore,
        outbox: OutboxManager,
        engine: DeltaSyncEngine,
        transport: RemoteTransport,
        probe: ConnectivityProbe,
        scopes: Iterable[str] = (),
        *,
        batch_size: int = 50,
        retry_policy: RetryPolicy | None = None,
        conflict_policy: ConflictPolicy | str | None = None,
        send_timeout_seconds: float = 30.0,
        timeouts: TimeoutExecutor | None = None,
        metrics: MetricsRegistry | None = None,
        retention: timedelta | None = None,
    ) -> None:
        self._store = store
        self._outbox = outbox
        self._engine = engine
        self._transport = transport
        self._probe = probe
        self._scopes = tuple(dict.fromkeys(scopes))
        self._batch_size = batch_size
        self._retry_policy = retry_policy or RetryPolicy()
        self._conflict_policy = (
            ConflictPolicy.parse(conflict_policy) if conflict_policy is not None else engine.conflict_policy
        )
        self._send_timeout_seconds = send_timeout_seconds
        self._timeouts = timeouts or TimeoutExecutor()
        self._metrics = metrics or MetricsRegistry()
        self._retention = retention
        self._observers: list[StatusObserver] = []
        self._observers_lock = threading.Lock()

    @property
    def scopes(self) -> tuple[str, ...]:
        return self._scopes

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        with self._observers_lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._observers_lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def status(self) -> SyncStatus:
        return SyncStatus(
            last_sync_timestamp=self._store.get_last_sync_at(),
            pending_count=self._outbox.pending_count(),
            is_syncing=self._store.cycle_guard.locked(),
            error_count=self._outbox.error_count(),
            conflict_count=self._store.conflicts.count_conflicts(),
            last_error=self._store.get_last_error(),
        )

    def run_cycle(self, cancellation_token: CancellationToken | None = None) -> CycleResult:
        token = cancellation_token or CancellationToken()
        started_at = self._store.now_iso()
        if not self._probe.is_online():
            logger.info("Sin conexión: se omite el ciclo de sincronización")
            return CycleResult(outcome=CycleOutcome.SKIPPED_OFFLINE, started_at=started_at, finished_at=started_at)
        if not self._store.cycle_guard.acquire(blocking=False):
            logger.info("Ya hay un ciclo de sincronización en curso: se omite")
            return CycleResult(
                outcome=CycleOutcome.SKIPPED_IN_PROGRESS,
                started_at=started_at,
                finished_at=started_at,
            )
        try:
            with OperationContext("sync_cycle") as operation, self._metrics.timed("sync.cycle"):
                self._notify()
                log_event(logger, "sync_cycle_started", {"scopes": list(self._scopes)})
                result = self._run_exclusive(token, started_at, operation.correlation_id)
                log_event(
                    logger,
                    "sync_cycle_finished",
                    {
                        "outcome": result.outcome.value,
                        "sent": result.sent,
                        "failed": result.failed,
                        "held_back": result.held_back,
                        "requeued": result.requeued,
                        "conflicts": result.conflicts,
                        "scope_errors": result.scope_errors,
                    },
                )
        finally:
            self._store.cycle_guard.release()
            self._notify()
        return result

    def _run_exclusive(self, token: CancellationToken, started_at: str, correlation_id: str) -> CycleResult:
        requeued = self._requeue_due()
        push = self._push(token)

        scopes_synced: list[str] = []
        scope_errors: dict[str, str] = {}
        pull_conflicts = 0
        for scope in self._scopes:
            if token.is_cancelled():
                break
            try:
                applied = self._engine.sync_scope(scope)
            except Exception as exc:  # noqa: BLE001
                scope_errors[scope] = str(exc) or type(exc).__name__
                log_operational_error(
                    f"Fallo al sincronizar el scope {scope}",
                    exc=exc,
                    extra={"scope": scope, "correlation_id": correlation_id},
                )
                continue
            scopes_synced.append(scope)
            pull_conflicts += applied.conflicts

        purged = 0
        if self._retention is not None and not token.is_cancelled():
            purged = self._outbox.purge_sent(self._retention)

        cancelled = token.is_cancelled()
        finished_at = self._store.now_iso()
        all_pulled = not cancelled and len(scopes_synced) == len(self._scopes)
        last_error = next(iter(scope_errors.values()), None)
        if last_error is None and push.failed:
            last_error = f"{push.failed} entradas del outbox fallaron en el envío"
        self._store.record_cycle_end(last_sync_at=finished_at if all_pulled else None, last_error=last_error)

        if cancelled:
            outcome = CycleOutcome.CANCELLED
        elif push.failed or scope_errors:
            outcome = CycleOutcome.PARTIAL
        else:
            outcome = CycleOutcome.COMPLETED
        return CycleResult(
            outcome=outcome,
            started_at=started_at,
            finished_at=finished_at,
            correlation_id=correlation_id,
            sent=push.sent,
            failed=push.failed,
            held_back=push.held_back,
            requeued=requeued,
            conflicts=push.conflicts + pull_conflicts,
            purged=purged,
            scopes_synced=tuple(scopes_synced),
            scope_errors=scope_errors,
        )

    def _requeue_due(self) -> int:
        now = parse_iso(self._store.now_iso())
        requeued = 0
        for entry in self._outbox.list_errors():
            if not self._retry_policy.awaits_retry(entry):
                continue
            last_attempt = parse_iso(entry.last_attempt_at)
            if now is not None and last_attempt is not None:
                due_at = last_attempt + timedelta(seconds=self._retry_policy.backoff_for(entry.attempts))
                if due_at > now:
                    continue
            self._outbox.requeue(entry.id)
            requeued += 1
        return requeued

    def _push(self, token: CancellationToken) -> _PushStats:
        # Las entidades con una entrada en error no salen hasta que esa entrada se reencola o se supera.
        stats = _PushStats(held_back=self._outbox.held_back_count())
        blocked: set[tuple[str, str]] = set()
        for entry in self._outbox.get_sendable(limit=self._batch_size):
            if token.is_cancelled():
                break
            if entry.entity_key in blocked:
                # El orden por entidad exige que la entrada anterior salga primero.
                stats.held_back += 1
                continue
            if not self._send_entry(entry, stats):
                blocked.add(entry.entity_key)
        return stats

    def _send_entry(self, entry: OutboxEntry, stats: _PushStats) -> bool:
        try:
            result = self._timeouts.run(
                lambda: self._transport.send(entry),
                self._send_timeout_seconds,
                f"send(outbox={entry.id})",
            )
        except ConflictError as exc:
            self._handle_push_conflict(entry, exc.server_timestamp, exc.remote_snapshot, str(exc), stats)
            return False
        except (NetworkError, RemoteError) as exc:
            self._record_failure(entry, str(exc), exc.code, exc, stats)
            return False
        except AppError as exc:
            self._record_failure(entry, str(exc) or type(exc).__name__, "config_error", exc, stats)
            return False

        if result.success:
            self._outbox.mark_as_sent(entry.id, result.remote_metadata)
            self._metrics.increment("outbox.sent")
            stats.sent += 1
            return True
        message = result.error_message or "El remoto rechazó la entrada."
        if result.error_code == CONFLICT_CODE:
            self._handle_push_conflict(entry, result.server_timestamp, None, message, stats)
            return False
        self._record_failure(entry, message, result.error_code or "remote_error", None, stats)
        return False

    def _record_failure(
        self,
        entry: OutboxEntry,
        message: str,
        code: str,
        exc: BaseException | None,
        stats: _PushStats,
    ) -> None:
        self._outbox.mark_as_error(entry.id, message, code)
        self._metrics.increment("outbox.failed")
        stats.failed += 1
        if exc is not None:
            log_operational_error(
                f"Fallo al enviar la entrada {entry.id} ({entry.entity_type}/{entry.entity_id})",
                exc=exc,
                extra={"outbox_id": entry.id},
            )
        else:
            logger.warning("Entrada %s rechazada por el remoto: %s (%s)", entry.id, message, code)

    def _handle_push_conflict(
        self,
        entry: OutboxEntry,
        server_timestamp: str | None,
        remote_snapshot: object,
        message: str,
        stats: _PushStats,
    ) -> None:
        local = self._store.get_entity(entry.entity_type, entry.entity_id)
        decision = decide_push(
            self._conflict_policy,
            local_updated_at=local.updated_at if local else entry.created_at,
            remote_timestamp=server_timestamp,
        )
        logger.warning(
            "Conflicto en push de %s/%s (outbox=%s): %s",
            entry.entity_type,
            entry.entity_id,
            entry.id,
            decision.outcome.value,
        )
        stats.conflicts += 1
        stats.failed += 1
        self._metrics.increment("outbox.failed")
        with self._store.transaction():
            code = CONFLICT_RETRY_CODE if decision.retry_local else CONFLICT_CODE
            self._outbox.mark_as_error(entry.id, message, code)
            if decision.should_register_conflict and (
                self._store.conflicts.find_for_entity(entry.entity_type, entry.entity_id) is None
            ):
                self._store.conflicts.add(
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    origin="push",
                    local_snapshot=local.payload if local else entry.payload,
                    remote_snapshot=remote_snapshot,
                    detected_at=self._store.now_iso(),
                )
            if decision.supersede_local:
                self._store.supersede_unsynced(
                    entry.entity_type,
                    entry.entity_id,
                    f"Descartado por conflicto en push ({decision.outcome.value}).",
                )

    def _notify(self) -> None:
        with self._observers_lock:
            observers = list(self._observers)
        if not observers:
            return
        snapshot = self.status()
        for observer in observers:
            try:
                observer(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Observer de estado de sincronización falló")
