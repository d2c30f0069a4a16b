"""
Configuration Loader (``capital_config.loader``).

Responsibility
--------------
Loads YAML fragments, layers deployment overrides and environment
variables over the packaged defaults, and parses the result into the
frozen ``capital_config.schema`` dataclasses.  The single public entry
point for runtime config is ``capital_config.get_active_config()``.

Invariants enforced
-------------------
* All parse errors raise ``ConfigurationError`` with the offending key;
  no silent defaults for malformed values.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  merged configuration.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown enum value, non-integer, out-of-range  -> ``ConfigurationError``.
"""

from __future__ import annotations

import copy
import hashlib
import json
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from capital_config.schema import (
    AllocationConfig,
    BatchConfig,
    CallFrequency,
    ConcurrencyConfig,
    DateConfig,
    EngineConfig,
    PaymentConfig,
    PaymentInstrument,
    TimingConfig,
)


class ConfigurationError(ValueError):
    """Configuration value is missing, malformed or out of range."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration '{key}': {reason}")


# (section, key, parser) for every supported environment override.
ENV_OVERRIDES: dict[str, tuple[str, str, str]] = {
    "CAPITAL_CALL_DUE_DAYS": ("timing", "default_lead_days", "int"),
    "CAPITAL_CALL_GRACE_DAYS": ("timing", "payment_grace_days", "int"),
    "CAPITAL_CALL_DEFAULT_PAYMENT_TYPE": (
        "payments",
        "default_payment_instrument",
        "str",
    ),
    "CAPITAL_CALL_ALLOW_OVERPAYMENTS": ("payments", "allow_overpayments", "bool"),
    "CAPITAL_CALL_TIMEZONE": ("dates", "timezone", "str"),
    "CAPITAL_CALL_ENABLE_BATCH_QUERIES": ("batch", "enable_batch_queries", "bool"),
    "CAPITAL_CALL_BATCH_SIZE": ("batch", "chunk_size", "int"),
    "CAPITAL_CALL_MAX_RETRIES": ("concurrency", "max_retries", "int"),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def merge_fragments(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge ``override`` into a copy of ``base`` (override wins)."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_fragments(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parse_env_value(env_name: str, raw: str, kind: str) -> Any:
    if kind == "int":
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(env_name, f"expected an integer, got {raw!r}")
    if kind == "bool":
        lowered = raw.strip().lower()
        if lowered not in ("true", "false"):
            raise ConfigurationError(env_name, f"expected 'true' or 'false', got {raw!r}")
        return lowered == "true"
    return raw


def apply_env_overrides(
    data: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Return ``data`` with every recognised CAPITAL_CALL_* variable applied."""
    result = copy.deepcopy(dict(data))
    for env_name, (section, key, kind) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        result.setdefault(section, {})[key] = _parse_env_value(env_name, raw, kind)
    return result


def compute_checksum(data: Mapping[str, Any]) -> str:
    """Deterministic SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def _int(section: Mapping[str, Any], name: str, key: str, default: int, minimum: int = 0) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name}.{key}", f"expected an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"{name}.{key}", f"must be >= {minimum}, got {value}")
    return value


def _bool(section: Mapping[str, Any], name: str, key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"{name}.{key}", f"expected a boolean, got {value!r}")
    return value


def _enum(section: Mapping[str, Any], name: str, key: str, enum_cls, default):
    value = section.get(key, default)
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"{name}.{key}", f"expected one of [{allowed}], got {value!r}")


def parse_timing(data: Mapping[str, Any]) -> TimingConfig:
    """Parse the ``timing`` section."""
    reminders = data.get("reminder_days_before", [7, 3, 1])
    if not isinstance(reminders, (list, tuple)) or any(
        isinstance(d, bool) or not isinstance(d, int) or d < 0 for d in reminders
    ):
        raise ConfigurationError(
            "timing.reminder_days_before",
            f"expected a list of non-negative integers, got {reminders!r}",
        )
    return TimingConfig(
        default_lead_days=_int(data, "timing", "default_lead_days", 30),
        payment_grace_days=_int(data, "timing", "payment_grace_days", 7),
        reminder_days_before=tuple(sorted(set(reminders), reverse=True)),
        default_call_frequency=_enum(
            data, "timing", "default_call_frequency", CallFrequency, "quarterly"
        ),
    )


def parse_payments(data: Mapping[str, Any]) -> PaymentConfig:
    """Parse the ``payments`` section."""
    precision = _int(data, "payments", "currency_precision", 2)
    if precision > 9:
        raise ConfigurationError(
            "payments.currency_precision", "cannot exceed the 9 stored decimal places"
        )
    return PaymentConfig(
        default_payment_instrument=_enum(
            data, "payments", "default_payment_instrument", PaymentInstrument, "wire"
        ),
        allow_overpayments=_bool(data, "payments", "allow_overpayments", False),
        currency_precision=precision,
    )


def parse_dates(data: Mapping[str, Any]) -> DateConfig:
    """Parse the ``dates`` section; the time zone must be a known IANA name."""
    tz_name = data.get("timezone", "UTC")
    try:
        ZoneInfo(str(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError("dates.timezone", f"unknown time zone {tz_name!r}")
    hour = _int(data, "dates", "normalized_hour_utc", 12)
    if hour > 23:
        raise ConfigurationError("dates.normalized_hour_utc", f"must be 0-23, got {hour}")
    return DateConfig(timezone=str(tz_name), normalized_hour_utc=hour)


def parse_batch(data: Mapping[str, Any]) -> BatchConfig:
    """Parse the ``batch`` section."""
    return BatchConfig(
        chunk_size=_int(data, "batch", "chunk_size", 100, minimum=1),
        enable_batch_queries=_bool(data, "batch", "enable_batch_queries", True),
    )


def parse_concurrency(data: Mapping[str, Any]) -> ConcurrencyConfig:
    """Parse the ``concurrency`` section."""
    return ConcurrencyConfig(
        max_retries=_int(data, "concurrency", "max_retries", 3),
        retry_backoff_ms=_int(data, "concurrency", "retry_backoff_ms", 50),
        lock_timeout_ms=_int(data, "concurrency", "lock_timeout_ms", 5000, minimum=1),
    )


def parse_allocations(data: Mapping[str, Any]) -> AllocationConfig:
    """Parse the ``allocations`` section."""
    stages = data.get("investable_stages", ["closing", "closed", "invested"])
    if not isinstance(stages, (list, tuple)) or not stages:
        raise ConfigurationError(
            "allocations.investable_stages", "expected a non-empty list of stage names"
        )
    return AllocationConfig(investable_stages=tuple(str(s) for s in stages))


def parse_engine_config(data: Mapping[str, Any]) -> EngineConfig:
    """
    Parse a merged configuration dict into an ``EngineConfig``.

    Missing sections fall back to schema defaults; present values are
    validated strictly.
    """
    for section in data:
        if section not in _SECTIONS:
            raise ConfigurationError(section, "unknown configuration section")
    return EngineConfig(
        timing=parse_timing(data.get("timing") or {}),
        payments=parse_payments(data.get("payments") or {}),
        dates=parse_dates(data.get("dates") or {}),
        batch=parse_batch(data.get("batch") or {}),
        concurrency=parse_concurrency(data.get("concurrency") or {}),
        allocations=parse_allocations(data.get("allocations") or {}),
        checksum=compute_checksum(data),
    )


_SECTIONS = frozenset(
    {"timing", "payments", "dates", "batch", "concurrency", "allocations"}
)
