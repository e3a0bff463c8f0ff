from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from offline_sync.domain.models import ChangeSet, OutboxEntry, SendResult, SyncStatus


class RemoteTransport(Protocol):
    def send(self, entry: OutboxEntry) -> SendResult:
        ...

    def fetch_since(self, scope: str, checkpoint: str | None) -> ChangeSet:
        ...


class ConnectivityProbe(Protocol):
    def is_online(self) -> bool:
        ...


StatusObserver = Callable[[SyncStatus], None]
