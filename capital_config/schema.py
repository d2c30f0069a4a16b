"""
Engine configuration schema.

Frozen dataclasses describing every tunable of the allocation engine.
The loader parses YAML fragments (plus environment overrides) into these
types; components receive the resulting ``EngineConfig`` at construction
and never read files or environment variables themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CallFrequency(str, Enum):
    """Spacing between calls of a scheduled capital-call series."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BIANNUAL = "biannual"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return _FREQUENCY_MONTHS[self]


_FREQUENCY_MONTHS = {
    CallFrequency.MONTHLY: 1,
    CallFrequency.QUARTERLY: 3,
    CallFrequency.BIANNUAL: 6,
    CallFrequency.ANNUAL: 12,
}


class PaymentInstrument(str, Enum):
    """How money was received."""

    WIRE = "wire"
    CHECK = "check"
    ACH = "ach"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimingConfig:
    """Capital-call lead time and reminder schedule (days)."""

    default_lead_days: int = 30
    payment_grace_days: int = 7
    reminder_days_before: tuple[int, ...] = (7, 3, 1)
    default_call_frequency: CallFrequency = CallFrequency.QUARTERLY


@dataclass(frozen=True)
class PaymentConfig:
    """Payment defaults and the overpayment policy."""

    default_payment_instrument: PaymentInstrument = PaymentInstrument.WIRE
    allow_overpayments: bool = False
    currency_precision: int = 2


@dataclass(frozen=True)
class DateConfig:
    """Time zone used to turn timestamps into calendar dates."""

    timezone: str = "UTC"
    normalized_hour_utc: int = 12


@dataclass(frozen=True)
class BatchConfig:
    """Chunking for the batch query gateway."""

    chunk_size: int = 100
    enable_batch_queries: bool = True


@dataclass(frozen=True)
class ConcurrencyConfig:
    """Bounded retry of whole operations on lock/version contention."""

    max_retries: int = 3
    retry_backoff_ms: int = 50
    lock_timeout_ms: int = 5000


@dataclass(frozen=True)
class AllocationConfig:
    """Deal stages that accept new fund allocations."""

    investable_stages: tuple[str, ...] = ("closing", "closed", "invested")


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """Complete, validated engine configuration.

    ``checksum`` is the SHA-256 of the canonical JSON form and identifies
    the exact configuration that governed a run.
    """

    timing: TimingConfig = field(default_factory=TimingConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    dates: DateConfig = field(default_factory=DateConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    allocations: AllocationConfig = field(default_factory=AllocationConfig)
    checksum: str = ""
