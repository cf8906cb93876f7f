"""Typed environment readers used by the settings loaders."""

from __future__ import annotations

import os
from typing import Callable, Mapping, Optional, TypeVar

EnvMapping = Mapping[str, str]

T = TypeVar("T")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _lookup(name: str, env: EnvMapping | None) -> Optional[str]:
    mapping = env if env is not None else os.environ
    value = mapping.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _convert(value: str, converter: Callable[[str], T], default: T) -> T:
    try:
        return converter(value)
    except (TypeError, ValueError):
        return default


def get_str(name: str, default: str, *, env: EnvMapping | None = None) -> str:
    value = _lookup(name, env)
    return default if value is None else value


def get_optional_str(name: str, *, env: EnvMapping | None = None) -> Optional[str]:
    return _lookup(name, env)


def get_bool(name: str, default: bool, *, env: EnvMapping | None = None) -> bool:
    value = _lookup(name, env)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def get_int(name: str, default: int, *, env: EnvMapping | None = None) -> int:
    value = _lookup(name, env)
    if value is None:
        return default
    return _convert(value, int, default)


def get_float(name: str, default: float, *, env: EnvMapping | None = None) -> float:
    value = _lookup(name, env)
    if value is None:
        return default
    return _convert(value, float, default)


__all__ = [
    "EnvMapping",
    "get_bool",
    "get_float",
    "get_int",
    "get_optional_str",
    "get_str",
]
