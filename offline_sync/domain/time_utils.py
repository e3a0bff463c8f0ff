from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serializa siempre con microsegundos y zona UTC para que el orden lexicográfico sea cronológico."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _checkpoint_key(value: str) -> tuple[int, Any]:
    text = value.strip()
    try:
        return 0, int(text)
    except ValueError:
        pass
    parsed = parse_iso(text)
    if parsed is not None:
        return 1, parsed
    return 2, text


def checkpoint_is_newer(candidate: str | None, current: str | None) -> bool:
    """Indica si ``candidate`` avanza estrictamente respecto a ``current``.

    Enteros se comparan numéricamente, timestamps ISO cronológicamente y el
    resto como texto. Si los tipos no coinciden se compara el texto.
    """
    if candidate is None:
        return False
    if current is None:
        return True
    candidate_kind, candidate_value = _checkpoint_key(candidate)
    current_kind, current_value = _checkpoint_key(current)
    if candidate_kind != current_kind:
        return candidate.strip() > current.strip()
    return candidate_value > current_value
