"""
capital_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly; the returned
    ``EngineConfig`` is resolved once at startup and passed explicitly
    into every component.

Resolution order (later wins):
    1. ``capital_config/defaults.yaml`` (packaged defaults)
    2. An optional deployment YAML file (``config_path``)
    3. ``CAPITAL_CALL_*`` environment variables

Failure modes:
    - ``FileNotFoundError`` -- ``config_path`` does not exist.
    - ``ConfigurationError`` -- a value is malformed or out of range.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``capital_config_loaded`` log entry carrying the configuration
    checksum, lead days, overpayment policy and batch size.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

from capital_config.loader import (
    ConfigurationError,
    apply_env_overrides,
    load_yaml_file,
    merge_fragments,
    parse_engine_config,
)
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

_logger = logging.getLogger("capital_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(
    config_path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Optional deployment YAML layered over the defaults.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        A frozen, validated ``EngineConfig``.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    if config_path is not None:
        data = merge_fragments(data, load_yaml_file(Path(config_path)))
    data = apply_env_overrides(data, os.environ if environ is None else environ)

    config = parse_engine_config(data)

    _logger.info(
        "capital_config_loaded",
        extra={
            "checksum": config.checksum,
            "default_lead_days": config.timing.default_lead_days,
            "allow_overpayments": config.payments.allow_overpayments,
            "chunk_size": config.batch.chunk_size,
            "source": str(config_path) if config_path else "defaults",
        },
    )
    return config


__all__ = [
    "get_active_config",
    "ConfigurationError",
    "EngineConfig",
    "TimingConfig",
    "PaymentConfig",
    "DateConfig",
    "BatchConfig",
    "ConcurrencyConfig",
    "AllocationConfig",
    "CallFrequency",
    "PaymentInstrument",
]
