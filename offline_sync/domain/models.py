from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OutboxAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class ScopeState(str, Enum):
    NEVER_SYNCED = "never_synced"
    SYNCING = "syncing"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"


class CycleOutcome(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    SKIPPED_OFFLINE = "skipped_offline"
    SKIPPED_IN_PROGRESS = "skipped_in_progress"


@dataclass(frozen=True)
class OutboxEntry:
    id: int
    entity_type: str
    entity_id: str
    action: OutboxAction
    payload: Any
    created_at: str
    status: OutboxStatus
    sent_at: str | None = None
    last_error: str | None = None
    last_error_code: str | None = None
    attempts: int = 0
    last_attempt_at: str | None = None

    @property
    def entity_key(self) -> tuple[str, str]:
        return self.entity_type, self.entity_id


@dataclass(frozen=True)
class EntityRecord:
    entity_type: str
    entity_id: str
    payload: Any
    updated_at: str
    remote_id: str | None = None
    remote_version: int | None = None
    server_timestamp: str | None = None
    deleted: bool = False


@dataclass(frozen=True)
class SyncCheckpoint:
    scope: str
    value: str | None
    last_synced_at: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class RemoteMetadata:
    remote_id: str | None = None
    version: int | None = None
    server_timestamp: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    remote_id: str | None = None
    new_version: int | None = None
    server_timestamp: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def remote_metadata(self) -> RemoteMetadata:
        return RemoteMetadata(
            remote_id=self.remote_id,
            version=self.new_version,
            server_timestamp=self.server_timestamp,
        )


@dataclass(frozen=True)
class RemoteChange:
    entity_type: str
    entity_id: str
    payload: Any = None
    version: int | None = None
    server_timestamp: str | None = None
    remote_id: str | None = None
    deleted: bool = False


@dataclass(frozen=True)
class ChangeSet:
    scope: str
    since: str | None
    checkpoint: str | None
    changes: tuple[RemoteChange, ...] = ()


@dataclass(frozen=True)
class ApplyResult:
    scope: str
    applied: int = 0
    deleted: int = 0
    skipped_stale: int = 0
    conflicts: int = 0
    checkpoint: str | None = None
    already_applied: bool = False


@dataclass(frozen=True)
class ConflictRecord:
    id: int
    entity_type: str
    entity_id: str
    origin: str
    local_snapshot: Any
    remote_snapshot: Any
    detected_at: str


@dataclass(frozen=True)
class StoreChange:
    kind: str
    entity_type: str
    entity_id: str


@dataclass(frozen=True)
class SyncStatus:
    last_sync_timestamp: str | None
    pending_count: int
    is_syncing: bool
    error_count: int = 0
    conflict_count: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class CycleResult:
    outcome: CycleOutcome
    started_at: str
    finished_at: str
    correlation_id: str | None = None
    sent: int = 0
    failed: int = 0
    held_back: int = 0
    requeued: int = 0
    conflicts: int = 0
    purged: int = 0
    scopes_synced: tuple[str, ...] = ()
    scope_errors: dict[str, str] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.outcome in (CycleOutcome.SKIPPED_OFFLINE, CycleOutcome.SKIPPED_IN_PROGRESS)


@dataclass(frozen=True)
class SheetsConfig:
    spreadsheet_id: str
    credentials_path: str
    device_id: str = ""
