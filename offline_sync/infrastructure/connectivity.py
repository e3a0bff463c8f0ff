from __future__ import annotations

import logging
import socket

logger = logging.getLogger(__name__)

DEFAULT_TARGETS: tuple[tuple[str, int], ...] = (("sheets.googleapis.com", 443), ("8.8.8.8", 53))


class SocketConnectivityProbe:
    """Considera que hay conexión si alguno de los destinos acepta un TCP connect."""

    def __init__(
        self,
        targets: tuple[tuple[str, int], ...] = DEFAULT_TARGETS,
        *,
        timeout_seconds: float = 3.0,
    ) -> None:
        self._targets = targets
        self._timeout_seconds = timeout_seconds

    def is_online(self) -> bool:
        for host, port in self._targets:
            try:
                socket.create_connection((host, port), timeout=self._timeout_seconds).close()
                return True
            except OSError:
                logger.debug("Sin conexión con %s:%s", host, port)
        return False
