from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, TypeVar

from offline_sync.core.errors import AppError, NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_WORKERS = 4


class TimeoutExecutor:
    """Ejecuta llamadas de red en un pool con tiempo máximo.

    Si la llamada vence, el hilo de trabajo no se interrumpe: quien llama
    recibe ``NetworkError(code="timeout")`` y sigue adelante.
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="offline-sync-net")

    def run(self, fn: Callable[[], T], timeout_seconds: float | None, operation: str) -> T:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout_seconds)
        except FuturesTimeoutError as exc:
            future.cancel()
            logger.warning("Timeout en %s tras %s segundos", operation, timeout_seconds)
            raise NetworkError(f"Timeout en {operation} tras {timeout_seconds} segundos", code="timeout") from exc
        except AppError:
            raise
        except TimeoutError as exc:
            raise NetworkError(f"Timeout en {operation}: {exc}", code="timeout") from exc
        except OSError as exc:
            raise NetworkError(f"Error de red en {operation}: {exc}") from exc

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
