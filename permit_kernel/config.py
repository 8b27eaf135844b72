"""
Kernel configuration (``permit_kernel.config``).

Responsibility
--------------
Loads a YAML file into the frozen ``PermitKernelConfig`` consumed by the
orchestrator, the engine initializer and ``scripts/run_auto_close.py``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or out-of-range value  -> ``ValueError``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from permit_kernel.domain.numbering import PREFIX_PATTERN

DATABASE_URL_ENV = "DATABASE_URL"

DEFAULT_DATABASE_URL = "sqlite:///permit_kernel.db"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class PermitKernelConfig:
    """Runtime settings of the permit kernel."""

    database_url: str = DEFAULT_DATABASE_URL
    permit_prefix: str = "RGDGTLWP"
    # Timezone whose calendar month names the permit number bucket
    numbering_timezone: str = "UTC"
    initial_approver_role: str = "FIREMAN"
    allocation_max_attempts: int = 5
    statement_timeout_ms: int = 10_000
    lock_timeout_ms: int = 5_000
    pool_timeout_seconds: int = 30
    sqlite_busy_timeout_seconds: float = 30.0
    sweep_batch_limit: int | None = None
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if not PREFIX_PATTERN.match(self.permit_prefix or ""):
            raise ValueError(
                f"permit_prefix must be uppercase letters, got {self.permit_prefix!r}"
            )
        if self.numbering_timezone != "UTC":
            try:
                ZoneInfo(self.numbering_timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(
                    f"unknown numbering_timezone {self.numbering_timezone!r}"
                ) from None
        if not self.initial_approver_role:
            raise ValueError("initial_approver_role must not be empty")
        if self.allocation_max_attempts < 1:
            raise ValueError("allocation_max_attempts must be >= 1")
        for name in ("statement_timeout_ms", "lock_timeout_ms", "pool_timeout_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.sqlite_busy_timeout_seconds <= 0:
            raise ValueError("sqlite_busy_timeout_seconds must be > 0")
        if self.sweep_batch_limit is not None and self.sweep_batch_limit < 1:
            raise ValueError("sweep_batch_limit must be >= 1 or null")
        if str(self.log_level).upper() not in _LOG_LEVELS:
            raise ValueError(
                f"log_level must be one of {', '.join(_LOG_LEVELS)}, got {self.log_level!r}"
            )

    def engine_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``db.engine.init_engine_from_url``."""
        return {
            "pool_timeout": self.pool_timeout_seconds,
            "statement_timeout_ms": self.statement_timeout_ms or None,
            "lock_timeout_ms": self.lock_timeout_ms or None,
            "sqlite_busy_timeout_seconds": self.sqlite_busy_timeout_seconds,
        }


def config_from_dict(data: dict[str, Any] | None) -> PermitKernelConfig:
    """Build a config from a parsed mapping, rejecting unknown keys."""
    data = dict(data or {})
    known = {f.name for f in fields(PermitKernelConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown config keys: {', '.join(unknown)}")
    return PermitKernelConfig(**data)


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> PermitKernelConfig:
    """
    Load configuration from ``path`` (YAML) and the environment.

    The YAML may hold the settings at top level or under a
    ``permit_kernel:`` key.  ``DATABASE_URL`` in the environment overrides
    ``database_url`` from the file.  With no path, defaults are used.
    """
    environ = os.environ if environ is None else environ

    data: dict[str, Any] = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        data = loaded.get("permit_kernel", loaded)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: 'permit_kernel' must be a mapping")

    config = config_from_dict(data)
    override = environ.get(DATABASE_URL_ENV)
    if override:
        config = replace(config, database_url=override)
    return config
