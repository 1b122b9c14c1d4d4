"""
Module: refinery_kernel.models.template
Responsibility: Read-only source rows for the SQL-backed template catalog.
Architecture position: Kernel > Models.  May import from db/ and domain/
    values only.

Template CRUD happens outside the kernel; this table is only read, through
TemplateSelector.
"""

from decimal import Decimal

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from refinery_kernel.db.base import TrackedBase


class StepTemplate(TrackedBase):
    """Station or check template as stored by the template administration."""

    __tablename__ = "step_templates"
    __table_args__ = (
        UniqueConstraint("template_id", name="uq_step_template_id"),
    )

    template_id: Mapped[str] = mapped_column(String(100), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # instruction | checklist | mass_check | signature | photo
    template_type: Mapped[str] = mapped_column(String(30), nullable=False)

    expected_mass: Mapped[Decimal | None] = mapped_column(nullable=True)

    tolerance: Mapped[Decimal | None] = mapped_column(nullable=True)

    # g | %
    tolerance_unit: Mapped[str] = mapped_column(
        String(5), default="g", nullable=False
    )

    def __repr__(self) -> str:
        return f"<StepTemplate {self.template_id}: {self.name}>"
