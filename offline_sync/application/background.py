from __future__ import annotations

import logging
import threading

from offline_sync.application.orchestrator import CancellationToken, SyncOrchestrator
from offline_sync.core.operational_logging import log_operational_error
from offline_sync.domain.models import CycleResult

logger = logging.getLogger(__name__)


class BackgroundSyncWorker:
    """Hilo daemon que lanza ``run_cycle`` cada ``interval_seconds``."""

    def __init__(self, orchestrator: SyncOrchestrator, interval_seconds: float = 60.0) -> None:
        self._orchestrator = orchestrator
        self._interval_seconds = interval_seconds
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._token_lock = threading.Lock()
        self._current_token: CancellationToken | None = None
        self._thread: threading.Thread | None = None
        self.last_result: CycleResult | None = None
        self.cycles_run = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="offline-sync-worker", daemon=True)
        self._thread.start()
        logger.info("Worker de sincronización iniciado (intervalo=%ss)", self._interval_seconds)

    def trigger(self) -> None:
        self._wakeup.set()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stopping.set()
        with self._token_lock:
            if self._current_token is not None:
                self._current_token.cancel()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Worker de sincronización detenido")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stopping.is_set():
            self._run_once()
            self._wakeup.wait(self._interval_seconds)
            self._wakeup.clear()

    def _run_once(self) -> None:
        token = CancellationToken()
        with self._token_lock:
            if self._stopping.is_set():
                return
            self._current_token = token
        try:
            self.last_result = self._orchestrator.run_cycle(token)
        except Exception as exc:  # noqa: BLE001
            log_operational_error("Fallo inesperado en el ciclo de sincronización en segundo plano", exc=exc)
        finally:
            with self._token_lock:
                self._current_token = None
            self.cycles_run += 1
