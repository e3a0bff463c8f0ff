from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from offline_sync.core.errors import ConfigError
from offline_sync.domain.time_utils import parse_iso


class ConflictPolicy(str, Enum):
    LAST_WRITE_WINS = "last_write_wins"
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: "ConflictPolicy | str | None") -> "ConflictPolicy":
        if isinstance(value, ConflictPolicy):
            return value
        if value is None or not str(value).strip():
            return cls.LAST_WRITE_WINS
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigError(f"Política de conflictos desconocida: {value!r}") from exc


class ConflictOutcome(str, Enum):
    NO_CONFLICT = "no_conflict"
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MANUAL = "manual"


@dataclass(frozen=True)
class ConflictDecision:
    outcome: ConflictOutcome
    apply_remote: bool
    supersede_local: bool
    should_register_conflict: bool
    retry_local: bool = False


_NO_CONFLICT = ConflictDecision(
    outcome=ConflictOutcome.NO_CONFLICT,
    apply_remote=True,
    supersede_local=False,
    should_register_conflict=False,
)
_REMOTE_WINS = ConflictDecision(
    outcome=ConflictOutcome.REMOTE_WINS,
    apply_remote=True,
    supersede_local=True,
    should_register_conflict=False,
)
_LOCAL_WINS = ConflictDecision(
    outcome=ConflictOutcome.LOCAL_WINS,
    apply_remote=False,
    supersede_local=False,
    should_register_conflict=False,
    retry_local=True,
)
# En manual los datos locales se quedan como están y el envío se congela
# hasta que alguien resuelva el marcador.
_MANUAL = ConflictDecision(
    outcome=ConflictOutcome.MANUAL,
    apply_remote=False,
    supersede_local=True,
    should_register_conflict=True,
)


def local_is_newer(local_updated_at: str | None, remote_timestamp: str | None) -> bool:
    """Local gana sólo si es estrictamente más reciente; sin fechas comparables gana remoto."""
    local_dt = parse_iso(local_updated_at)
    remote_dt = parse_iso(remote_timestamp)
    if local_dt is None:
        return False
    if remote_dt is None:
        return True
    return local_dt > remote_dt


def _decide(policy: ConflictPolicy, local_updated_at: str | None, remote_timestamp: str | None) -> ConflictDecision:
    if policy is ConflictPolicy.SERVER_WINS:
        return _REMOTE_WINS
    if policy is ConflictPolicy.CLIENT_WINS:
        return _LOCAL_WINS
    if policy is ConflictPolicy.MANUAL:
        return _MANUAL
    return _LOCAL_WINS if local_is_newer(local_updated_at, remote_timestamp) else _REMOTE_WINS


def decide_pull(
    policy: ConflictPolicy,
    *,
    has_local_changes: bool,
    local_updated_at: str | None,
    remote_timestamp: str | None,
) -> ConflictDecision:
    """Evalúa un cambio remoto entrante contra el estado local.

    Reglas:
    - Sin cambios locales sin sincronizar no hay conflicto: se aplica remoto.
    - Con cambios locales decide la política; si gana remoto, las entradas
      locales pendientes se descartan para no pisar después el dato nuevo.
    """
    if not has_local_changes:
        return _NO_CONFLICT
    return _decide(policy, local_updated_at, remote_timestamp)


def decide_push(
    policy: ConflictPolicy,
    *,
    local_updated_at: str | None,
    remote_timestamp: str | None,
) -> ConflictDecision:
    """Evalúa un rechazo por conflicto del servidor al enviar una entrada."""
    return _decide(policy, local_updated_at, remote_timestamp)
