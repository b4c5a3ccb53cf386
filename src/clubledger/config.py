"""Configuration for the billing ledger.

Settings live in ``~/.clubledger/config.yaml`` and are resolved into a
frozen :class:`LedgerSettings`.

Precedence (highest first):
    1. Environment variables (``CLUBLEDGER_OVERAGE_RATE_CENTS``, etc.)
    2. Config file (``~/.clubledger/config.yaml``)
    3. Built-in defaults

Example config::

    pricing:
      overage_rate_cents: 2500
      guest_fee_cents: 2500
    tiers:
      Premium:
        daily_sim_minutes: 120
    reconciliation:
      interval_seconds: 900
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from clubledger import parse_float_env, parse_int_env

logger = logging.getLogger(__name__)

# Valid top-level keys in the config file.  Used for schema validation.
_KNOWN_KEYS: set[str] = {
    "tiers",
    "pricing",
    "reconciliation",
    "guest_passes",
    "stripe",
    "member_cache",
    "database",
}


def get_config_path() -> Path:
    """Return the default config file path (``~/.clubledger/config.yaml``)."""
    return Path.home() / ".clubledger" / "config.yaml"


@dataclass(frozen=True)
class LedgerSettings:
    """Resolved runtime settings.

    :param overage_rate_cents: Price of one overage block.
    :param overage_block_minutes: Size of one overage block.
    :param guest_fee_cents: Flat fee for a guest not covered by a pass.
    :param reconcile_interval_seconds: Period of each reconciliation sweep.
    :param reconcile_initial_delay_seconds: Delay before the first sweep.
    :param reconcile_batch_size: Row limit per sweep.
    :param hold_ttl_hours: Lifetime of a guest-pass hold.
    :param default_guest_passes: Allowance used when a member's tier is unknown.
    :param cache_ttl_seconds: Member cache entry lifetime.
    :param cache_max_size: Member cache size before eviction.
    :param tiers: Per-tier overrides merged over the built-in catalog.
    """

    overage_rate_cents: int = 2500
    overage_block_minutes: int = 30
    guest_fee_cents: int = 2500
    reconcile_interval_seconds: float = 900.0
    reconcile_initial_delay_seconds: float = 120.0
    reconcile_batch_size: int = 50
    hold_ttl_hours: int = 24
    default_guest_passes: int = 4
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 1000
    db_path: str | None = None
    stripe_max_network_retries: int = 2
    tiers: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _validate_config_schema(data: dict[str, Any], path: Path) -> None:
    """Log warnings for unknown keys in the config file."""
    unknown = set(data.keys()) - _KNOWN_KEYS
    for key in sorted(unknown):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_KEYS)),
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict):
            return {}
        _validate_config_schema(data, path)
        return data
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _coerce_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Config value %s=%r is not an integer, using %d", key, value, default)
        return default


def load_settings(*, config_path: Path | None = None) -> LedgerSettings:
    """Resolve :class:`LedgerSettings` from the config file and environment."""
    path = config_path or get_config_path()
    raw = _read_config_file(path)

    pricing = _section(raw, "pricing")
    recon = _section(raw, "reconciliation")
    passes = _section(raw, "guest_passes")
    cache = _section(raw, "member_cache")
    stripe_cfg = _section(raw, "stripe")
    database = _section(raw, "database")

    tiers: dict[str, dict[str, Any]] = {}
    for tier_name, overrides in _section(raw, "tiers").items():
        if isinstance(overrides, dict):
            tiers[str(tier_name)] = dict(overrides)
        else:
            logger.warning("Ignoring tier override %r: expected a mapping", tier_name)

    return LedgerSettings(
        overage_rate_cents=parse_int_env(
            "CLUBLEDGER_OVERAGE_RATE_CENTS",
            _coerce_int(pricing, "overage_rate_cents", 2500),
        ),
        overage_block_minutes=_coerce_int(pricing, "overage_block_minutes", 30),
        guest_fee_cents=parse_int_env(
            "CLUBLEDGER_GUEST_FEE_CENTS",
            _coerce_int(pricing, "guest_fee_cents", 2500),
        ),
        reconcile_interval_seconds=parse_float_env(
            "CLUBLEDGER_RECONCILE_INTERVAL",
            float(recon.get("interval_seconds", 900.0)),
        ),
        reconcile_initial_delay_seconds=parse_float_env(
            "CLUBLEDGER_RECONCILE_INITIAL_DELAY",
            float(recon.get("initial_delay_seconds", 120.0)),
        ),
        reconcile_batch_size=min(_coerce_int(recon, "batch_size", 50), 50),
        hold_ttl_hours=parse_int_env(
            "CLUBLEDGER_HOLD_TTL_HOURS",
            _coerce_int(passes, "hold_ttl_hours", 24),
        ),
        default_guest_passes=_coerce_int(passes, "default_allowance", 4),
        cache_ttl_seconds=float(cache.get("ttl_seconds", 300.0)),
        cache_max_size=_coerce_int(cache, "max_size", 1000),
        db_path=os.environ.get("CLUBLEDGER_DB_PATH") or database.get("path"),
        stripe_max_network_retries=_coerce_int(stripe_cfg, "max_network_retries", 2),
        tiers=tiers,
    )


def get_stripe_config(*, config_path: Path | None = None) -> dict[str, Any]:
    """Return the ``stripe`` section with env var overrides applied.

    - ``CLUBLEDGER_STRIPE_SECRET_KEY`` → ``secret_key``
    - ``CLUBLEDGER_STRIPE_WEBHOOK_SECRET`` → ``webhook_secret``
    """
    path = config_path or get_config_path()
    stripe_cfg = dict(_section(_read_config_file(path), "stripe"))
    env_key = os.environ.get("CLUBLEDGER_STRIPE_SECRET_KEY")
    if env_key:
        stripe_cfg["secret_key"] = env_key
    env_secret = os.environ.get("CLUBLEDGER_STRIPE_WEBHOOK_SECRET")
    if env_secret:
        stripe_cfg["webhook_secret"] = env_secret
    return stripe_cfg
