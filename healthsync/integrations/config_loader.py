"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an admin update; no restart required.

Usage::

    from healthsync.integrations.config_loader import get_sync_config

    config = get_sync_config()
    config.rate_limits.bucket("fitbit-api").capacity   # 150
    config.sync.default_window_days                    # 30
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from healthsync.integrations.base import Provider
from healthsync.integrations.rate_limiter import (
    DEFAULT_BUCKET_LIMIT,
    DEFAULT_MAX_WAIT_ATTEMPTS,
    BucketLimit,
)

logger = logging.getLogger("healthsync.integrations.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

_DEFAULT_SYNC_INTERVAL = 3600


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class SyncSection:
    """Orchestrator settings."""

    default_window_days: int = 30
    max_concurrent_providers: int = 6


@dataclass
class RateLimitSection:
    """Rate limiter settings: per-bucket limits plus the fallback."""

    buckets: dict[str, BucketLimit] = field(default_factory=dict)
    default: BucketLimit = DEFAULT_BUCKET_LIMIT
    max_wait_attempts: int = DEFAULT_MAX_WAIT_ATTEMPTS

    def bucket(self, name: str) -> BucketLimit:
        return self.buckets.get(name, self.default)


@dataclass
class SyncConfig:
    """Top-level validated sync configuration."""

    version: str
    sync: SyncSection
    rate_limits: RateLimitSection
    sync_intervals: dict[str, int]
    _raw: dict = field(default_factory=dict, repr=False)

    def sync_interval(self, provider: str) -> int:
        """Return the scheduled pull interval (seconds) for ``provider``."""
        return self.sync_intervals.get(str(provider), _DEFAULT_SYNC_INTERVAL)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Every problem is collected first so one failed load reports all of them.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated SyncConfig instance.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _number(d: dict, key: str, where: str, default: Any = None) -> float | None:
        value = d.get(key, default)
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return None

    def _bucket_limit(d: Any, where: str) -> BucketLimit | None:
        if not isinstance(d, dict):
            errors.append(f"{where} must be a mapping")
            return None
        capacity = _number(d, "capacity", where)
        window = _number(d, "window_seconds", where)
        threshold = _number(d, "error_threshold", where)
        initial = _number(d, "initial_delay_seconds", where, 0.0)
        maximum = _number(d, "max_delay_seconds", where, initial)

        if capacity is None or capacity < 1 or not capacity.is_integer():
            errors.append(f"{where}.capacity must be a whole number >= 1")
            return None
        if window is None or window <= 0:
            errors.append(f"{where}.window_seconds must be a positive number")
            return None
        if threshold is not None and threshold < 1:
            errors.append(f"{where}.error_threshold must be >= 1")
        if initial is not None and initial < 0:
            errors.append(f"{where}.initial_delay_seconds must be >= 0")
        if initial is not None and maximum is not None and maximum < initial:
            errors.append(f"{where}.max_delay_seconds must be >= initial_delay_seconds")

        return BucketLimit(
            capacity=int(capacity),
            window_seconds=window,
            error_threshold=int(threshold) if threshold is not None else None,
            initial_delay=initial or 0.0,
            max_delay=maximum or 0.0,
        )

    version = str(raw.get("version", "1.0"))

    # ── Sync ──
    sync_raw = raw.get("sync") or {}
    window_days = _number(sync_raw, "default_window_days", "sync", 30)
    concurrency = _number(sync_raw, "max_concurrent_providers", "sync", 6)
    if window_days is not None and window_days < 1:
        errors.append("sync.default_window_days must be >= 1")
    if concurrency is not None and concurrency < 1:
        errors.append("sync.max_concurrent_providers must be >= 1")
    sync = SyncSection(
        default_window_days=int(window_days or 30),
        max_concurrent_providers=int(concurrency or 6),
    )

    # ── Rate limits ──
    limits_raw = raw.get("rate_limits") or {}
    default = DEFAULT_BUCKET_LIMIT
    if "default" in limits_raw:
        default = _bucket_limit(limits_raw["default"], "rate_limits.default") or default

    buckets: dict[str, BucketLimit] = {}
    buckets_raw = limits_raw.get("buckets") or {}
    if not isinstance(buckets_raw, dict):
        errors.append("rate_limits.buckets must be a mapping of bucket→limits")
        buckets_raw = {}
    for name, spec in buckets_raw.items():
        limit = _bucket_limit(spec, f"rate_limits.buckets.{name}")
        if limit is not None:
            buckets[str(name)] = limit

    attempts = _number(limits_raw, "max_wait_attempts", "rate_limits", DEFAULT_MAX_WAIT_ATTEMPTS)
    if attempts is not None and attempts < 1:
        errors.append("rate_limits.max_wait_attempts must be >= 1")
    rate_limits = RateLimitSection(
        buckets=buckets,
        default=default,
        max_wait_attempts=int(attempts or DEFAULT_MAX_WAIT_ATTEMPTS),
    )

    # ── Sync intervals ──
    known = {p.value for p in Provider}
    sync_intervals: dict[str, int] = {}
    for provider, seconds in (raw.get("sync_intervals") or {}).items():
        if provider not in known:
            errors.append(f"sync_intervals.{provider} is not a known provider")
            continue
        value = _number({"v": seconds}, "v", f"sync_intervals.{provider}")
        if value is None or value <= 0:
            errors.append(f"sync_intervals.{provider} must be a positive number")
            continue
        sync_intervals[provider] = int(value)

    if errors:
        raise ConfigValidationError(
            "Sync config validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        sync=sync,
        rate_limits=rate_limits,
        sync_intervals=sync_intervals,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
