"""clubledger - Billing ledger for club bay bookings and member payments."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from importlib.metadata import PackageNotFoundError, version
from typing import TypeVar

_logger = logging.getLogger(__name__)

try:
    __version__ = version("clubledger")
except PackageNotFoundError:
    __version__ = "unknown"

_T = TypeVar("_T", int, float)


def _parse_env(name: str, default: _T, cast: Callable[[str], _T]) -> _T:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        _logger.warning("Ignoring %s=%r (not a valid %s), using %s", name, raw, cast.__name__, default)
        return default


def parse_int_env(name: str, default: int) -> int:
    """Integer override from the environment; *default* when unset or malformed."""
    return _parse_env(name, default, int)


def parse_float_env(name: str, default: float) -> float:
    """Float counterpart of :func:`parse_int_env`."""
    return _parse_env(name, default, float)
