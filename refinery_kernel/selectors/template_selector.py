"""
Module: refinery_kernel.selectors.template_selector
Responsibility: SQL-backed Template Catalog over the step_templates table.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    and selectors/base.py.  MUST NOT import from services/.

Two entry points:
    - TemplateSelector reads through a caller-owned session.
    - SqlTemplateCatalog opens a short-lived session per lookup, so one
      instance (usually wrapped in CachedTemplateCatalog) can be shared by
      every worker thread.

Failure modes:
    - TemplateNotFoundError from ``get_template`` on an unknown id.
    - ValueError when a stored row carries an unknown template type or
      tolerance unit.
"""

from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from refinery_kernel.domain.templates import (
    TemplateCatalog,
    TemplateInfo,
    TemplateType,
    ToleranceUnit,
)
from refinery_kernel.exceptions import TemplateNotFoundError
from refinery_kernel.models.template import StepTemplate
from refinery_kernel.selectors.base import BaseSelector


def to_template_info(row: StepTemplate) -> TemplateInfo:
    return TemplateInfo(
        template_id=row.template_id,
        name=row.name,
        type=TemplateType(row.template_type),
        expected_mass=row.expected_mass,
        tolerance=row.tolerance,
        tolerance_unit=ToleranceUnit(row.tolerance_unit or ToleranceUnit.GRAMS.value),
    )


class TemplateSelector(BaseSelector[StepTemplate], TemplateCatalog):
    """Template lookups through the caller's session."""

    def __init__(self, session: Session):
        super().__init__(session)

    def get_template(self, template_id: str) -> TemplateInfo:
        row = self.session.execute(
            select(StepTemplate).where(StepTemplate.template_id == template_id)
        ).scalar_one_or_none()
        if row is None:
            raise TemplateNotFoundError(template_id)
        return to_template_info(row)

    def list_templates(self) -> list[TemplateInfo]:
        rows = self.session.execute(
            select(StepTemplate).order_by(StepTemplate.template_id)
        ).scalars()
        return [to_template_info(row) for row in rows]


class SqlTemplateCatalog(TemplateCatalog):
    """Template lookups in their own read-only session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def get_template(self, template_id: str) -> TemplateInfo:
        session = self._session_factory()
        try:
            return TemplateSelector(session).get_template(template_id)
        finally:
            session.close()
