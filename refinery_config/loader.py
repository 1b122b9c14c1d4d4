"""
Settings Loader (``refinery_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the frozen dataclasses of
``refinery_config.schema``.  The runtime entry point is
``refinery_config.get_active_settings()``; this module is its parsing
back end and is used directly only by tests.

Invariants enforced
-------------------
* Every parse error raises ``ValueError`` naming the offending key.
* Missing sections and keys fall back to the schema defaults; unknown keys
  are rejected so typos do not silently revert a setting.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from refinery_config.schema import (
    AnalyticsSettings,
    BusinessHoursSettings,
    ConcurrencySettings,
    LoggingSettings,
    RefinerySettings,
    TemplateSettings,
)

_SECTIONS = frozenset(
    {"pipelines", "analytics", "business_hours", "concurrency", "templates", "logging"}
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _section(data: dict[str, Any], name: str, allowed: set[str]) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"{name}: must be a mapping")
    unknown = set(section) - allowed
    if unknown:
        raise ValueError(f"{name}: unknown key(s) {', '.join(sorted(unknown))}")
    return section


def _positive_int(value: Any, key: str, *, allow_zero: bool = True) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key}: expected an integer, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{key}: must be {'>= 0' if allow_zero else '> 0'}")
    return value


def parse_pipelines(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError("pipelines: expected a non-empty list of names")
    names = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"pipelines: invalid pipeline name {item!r}")
        names.append(item.strip().lower())
    if len(set(names)) != len(names):
        raise ValueError("pipelines: duplicate pipeline names")
    return tuple(names)


def parse_analytics(data: dict[str, Any]) -> AnalyticsSettings:
    defaults = AnalyticsSettings()
    section = _section(data, "analytics", {"assumed_recovery_ratio", "branch_selection_key"})

    ratio = defaults.assumed_recovery_ratio
    if "assumed_recovery_ratio" in section:
        raw = section["assumed_recovery_ratio"]
        try:
            ratio = Decimal(str(raw))
        except InvalidOperation:
            raise ValueError(
                f"analytics.assumed_recovery_ratio: not a number: {raw!r}"
            ) from None
        if not ratio.is_finite() or ratio <= 0 or ratio > 1:
            raise ValueError("analytics.assumed_recovery_ratio: must be in (0, 1]")

    key = section.get("branch_selection_key", defaults.branch_selection_key)
    if not isinstance(key, str) or not key.strip():
        raise ValueError("analytics.branch_selection_key: must be a non-empty string")

    return AnalyticsSettings(assumed_recovery_ratio=ratio, branch_selection_key=key)


def parse_business_hours(data: dict[str, Any]) -> BusinessHoursSettings:
    defaults = BusinessHoursSettings()
    section = _section(data, "business_hours", {"weekend_days", "timezone"})

    weekend = section.get("weekend_days", list(defaults.weekend_days))
    if not isinstance(weekend, (list, tuple)):
        raise ValueError("business_hours.weekend_days: expected a list")
    days = []
    for day in weekend:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValueError(
                f"business_hours.weekend_days: {day!r} is not a weekday number 0-6"
            )
        days.append(day)

    tz_name = section.get("timezone", defaults.timezone)
    if tz_name is not None:
        try:
            ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"business_hours.timezone: unknown zone {tz_name!r}") from None
        tz_name = str(tz_name)

    return BusinessHoursSettings(
        weekend_days=tuple(sorted(set(days))), timezone=tz_name
    )


def parse_concurrency(data: dict[str, Any]) -> ConcurrencySettings:
    section = _section(data, "concurrency", {"max_conflict_retries"})
    if "max_conflict_retries" not in section:
        return ConcurrencySettings()
    return ConcurrencySettings(
        max_conflict_retries=_positive_int(
            section["max_conflict_retries"], "concurrency.max_conflict_retries"
        )
    )


def parse_templates(data: dict[str, Any]) -> TemplateSettings:
    section = _section(data, "templates", {"cache_ttl_seconds"})
    if "cache_ttl_seconds" not in section:
        return TemplateSettings()
    return TemplateSettings(
        cache_ttl_seconds=_positive_int(
            section["cache_ttl_seconds"], "templates.cache_ttl_seconds"
        )
    )


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    section = _section(data, "logging", {"level"})
    level = str(section.get("level", LoggingSettings().level)).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"logging.level: unknown level {level!r}")
    return LoggingSettings(level=level)


def parse_settings(data: dict[str, Any], source: str | None = None) -> RefinerySettings:
    """
    Parse a settings mapping into RefinerySettings.

    Raises:
        ValueError: on unknown sections or malformed values.
    """
    unknown = set(data) - _SECTIONS
    if unknown:
        raise ValueError(f"unknown settings section(s): {', '.join(sorted(unknown))}")

    pipelines = RefinerySettings().pipelines
    if "pipelines" in data:
        pipelines = parse_pipelines(data["pipelines"])

    return RefinerySettings(
        pipelines=pipelines,
        analytics=parse_analytics(data),
        business_hours=parse_business_hours(data),
        concurrency=parse_concurrency(data),
        templates=parse_templates(data),
        logging=parse_logging(data),
        source=source,
    )


def load_settings(path: Path) -> RefinerySettings:
    """Load and parse one settings file."""
    return parse_settings(load_yaml_file(path), source=str(path))
