from __future__ import annotations

import os
from typing import Iterable, List, Optional

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _read(name: str) -> Optional[str]:
    """Stripped value of ``name``; unset and blank both come back as None."""
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def env_bool(name: str, *, default: bool = False) -> bool:
    value = _read(name)
    if value is None:
        return default
    if value.lower() in _TRUTHY:
        return True
    if value.lower() in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean (true/false, 1/0, yes/no, on/off), got {value!r}")


def env_int(name: str, *, default: int, minimum: int | None = None) -> int:
    """Integer setting; values below ``minimum`` are a configuration error."""
    value = _read(name)
    if value is None:
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if minimum is not None and number < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {number}")
    return number


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    """Split ``name`` on ``separator``, dropping empty items.

    An unset variable gives ``default``; a variable set to "" gives an empty list.
    """
    raw = os.getenv(name)
    if raw is None:
        return list(default or [])
    return [part.strip() for part in raw.split(separator) if part.strip()]


__all__ = ["env_bool", "env_int", "env_list"]
