from __future__ import annotations

import os
from typing import Dict, Iterable, List, Mapping

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(name: str, *, default: bool = False) -> bool:
    """
    Read an environment variable as a boolean.

    Accepts common truthy/falsy strings; raises if the value cannot be parsed.
    """
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name!r}: {value!r}")


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    """
    Read a delimited list from an environment variable.

    Missing values resolve to the provided default.
    """
    value = os.getenv(name)
    if value is None:
        if default is None:
            return []
        return [item for item in default]
    items = [item.strip() for item in value.split(separator)]
    return [item for item in items if item]


def env_int_map(name: str, *, default: Mapping[str, int]) -> Dict[str, int]:
    """
    Read a ``key=value`` comma list (e.g. ``general=0,student=30``) into a dict.

    Keys are lower-cased. A value that is not an integer raises; an empty or
    missing variable yields a copy of ``default``.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return dict(default)
    out: Dict[str, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ValueError(f"Invalid entry for {name!r}: {part!r}")
        key, val = part.split("=", 1)
        try:
            out[key.strip().lower()] = int(val.strip())
        except ValueError:
            raise ValueError(f"Invalid integer for {name!r}[{key.strip()!r}]: {val.strip()!r}") from None
    return out


__all__ = ["env_bool", "env_list", "env_int_map"]
