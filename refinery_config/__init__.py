"""
refinery_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No kernel component reads settings files or
    environment variables directly; services receive plain values, wired up
    by ``refinery_config.bridges``.

Architecture position:
    Configuration -- sits above ``refinery_kernel``.  The kernel MUST NEVER
    import from ``refinery_config``.

Failure modes:
    - ``FileNotFoundError`` -- the explicit or REFINERY_CONFIG path does not
      exist.
    - ``ValueError`` -- a setting is malformed; the message names the key.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from refinery_config.loader import load_settings, parse_settings
from refinery_config.schema import (
    AnalyticsSettings,
    BusinessHoursSettings,
    ConcurrencySettings,
    LoggingSettings,
    RefinerySettings,
    TemplateSettings,
)

_logger = logging.getLogger("refinery_kernel.config")

CONFIG_ENV_VAR = "REFINERY_CONFIG"

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_settings(path: str | Path | None = None) -> RefinerySettings:
    """The ONLY public settings entrypoint.

    Resolution order: explicit ``path``, then the REFINERY_CONFIG
    environment variable, then the packaged ``defaults.yaml``.

    Returns:
        Frozen RefinerySettings.  A ``refinery_config_loaded`` log entry is
        emitted on every call.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else DEFAULTS_PATH
    settings = load_settings(Path(path))

    _logger.info(
        "refinery_config_loaded",
        extra={
            "source": settings.source,
            "pipelines": list(settings.pipelines),
            "max_conflict_retries": settings.concurrency.max_conflict_retries,
        },
    )
    return settings


__all__ = [
    "AnalyticsSettings",
    "BusinessHoursSettings",
    "CONFIG_ENV_VAR",
    "ConcurrencySettings",
    "DEFAULTS_PATH",
    "LoggingSettings",
    "RefinerySettings",
    "TemplateSettings",
    "get_active_settings",
    "parse_settings",
]
