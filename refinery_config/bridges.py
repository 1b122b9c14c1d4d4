"""
Config -> Kernel Bridges.

Functions that turn RefinerySettings into configured kernel objects.  These
live in refinery_config (the producer) because the kernel must NEVER import
refinery_config.

Usage:
    from refinery_config import get_active_settings
    from refinery_config.bridges import build_step_runner

    settings = get_active_settings()
    runner = build_step_runner(settings, get_session_factory(), SystemClock())
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from refinery_config.schema import RefinerySettings
from refinery_kernel.domain.analytics import AnalyticsCalculator
from refinery_kernel.domain.clock import Clock
from refinery_kernel.domain.templates import CachedTemplateCatalog, TemplateCatalog
from refinery_kernel.logging_config import configure_logging
from refinery_kernel.selectors.template_selector import SqlTemplateCatalog
from refinery_kernel.services.batch_service import BatchService
from refinery_kernel.services.flow_service import FlowService
from refinery_kernel.services.step_completion_service import StepCompletionService


def apply_logging_settings(settings: RefinerySettings) -> None:
    """Configure the kernel logger hierarchy at the configured level."""
    configure_logging(level=settings.logging.level)


def build_template_catalog(
    settings: RefinerySettings,
    session_factory: Callable[[], Session],
    clock: Clock,
    inner: TemplateCatalog | None = None,
) -> TemplateCatalog:
    """SQL-backed catalog behind the configured TTL cache.

    ``inner`` replaces the SQL catalog (tests pass an in-memory one).
    """
    return CachedTemplateCatalog(
        inner or SqlTemplateCatalog(session_factory),
        ttl_seconds=settings.templates.cache_ttl_seconds,
        clock=clock,
    )


def build_calculator(
    settings: RefinerySettings,
    catalog: TemplateCatalog,
    clock: Clock,
) -> AnalyticsCalculator:
    return AnalyticsCalculator(
        catalog,
        clock,
        assumed_recovery_ratio=settings.analytics.assumed_recovery_ratio,
        weekend_days=settings.business_hours.weekend_days,
        business_timezone=settings.business_hours.tzinfo,
    )


def build_flow_service(
    settings: RefinerySettings, session: Session, clock: Clock
) -> FlowService:
    return FlowService(session, clock, allowed_pipelines=settings.pipelines)


def build_batch_service(
    settings: RefinerySettings,
    session: Session,
    clock: Clock,
    calculator: AnalyticsCalculator,
) -> BatchService:
    return BatchService(
        session,
        clock,
        calculator,
        branch_selection_key=settings.analytics.branch_selection_key,
        allowed_pipelines=settings.pipelines,
    )


def build_step_runner(
    settings: RefinerySettings,
    session_factory: Callable[[], Session],
    clock: Clock,
    calculator: AnalyticsCalculator | None = None,
) -> StepCompletionService:
    """StepCompletionService with every knob taken from ``settings``.

    Builds the cached SQL template catalog and calculator when no
    calculator is given.
    """
    if calculator is None:
        catalog = build_template_catalog(settings, session_factory, clock)
        calculator = build_calculator(settings, catalog, clock)
    return StepCompletionService(
        session_factory,
        clock,
        calculator,
        branch_selection_key=settings.analytics.branch_selection_key,
        allowed_pipelines=settings.pipelines,
        max_conflict_retries=settings.concurrency.max_conflict_retries,
    )
