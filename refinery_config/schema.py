"""
Refinery settings schema.

Frozen dataclasses that YAML settings files are parsed into by the loader.
Defaults here are the documented defaults; ``defaults.yaml`` repeats them so
operators have a file to copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import tzinfo
from decimal import Decimal
from zoneinfo import ZoneInfo

DEFAULT_PIPELINES: tuple[str, ...] = ("copper", "silver", "gold")


@dataclass(frozen=True)
class AnalyticsSettings:
    """Analytics calculator knobs."""

    # Share of fine grams assumed recoverable when no expected output was captured
    assumed_recovery_ratio: Decimal = Decimal("0.995")
    # Payload key that names the chosen branch at a fork
    branch_selection_key: str = "next_node_id"


@dataclass(frozen=True)
class BusinessHoursSettings:
    # Monday=0 ... Sunday=6
    weekend_days: tuple[int, ...] = (5, 6)
    # IANA zone name; None judges each instant in its own offset
    timezone: str | None = None

    @property
    def tzinfo(self) -> tzinfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


@dataclass(frozen=True)
class ConcurrencySettings:
    max_conflict_retries: int = 3


@dataclass(frozen=True)
class TemplateSettings:
    cache_ttl_seconds: int = 300


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class RefinerySettings:
    """Complete runtime settings, as returned by get_active_settings()."""

    pipelines: tuple[str, ...] = DEFAULT_PIPELINES
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    business_hours: BusinessHoursSettings = field(
        default_factory=BusinessHoursSettings
    )
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)
    templates: TemplateSettings = field(default_factory=TemplateSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: str | None = None
