"""
Tests for the SQL-backed template catalog.
"""

from decimal import Decimal

import pytest

from refinery_kernel.domain.templates import (
    CachedTemplateCatalog,
    TemplateType,
    ToleranceUnit,
)
from refinery_kernel.exceptions import TemplateNotFoundError
from refinery_kernel.models.template import StepTemplate
from refinery_kernel.selectors.template_selector import (
    SqlTemplateCatalog,
    TemplateSelector,
)


def template_rows():
    return [
        StepTemplate(
            template_id="tpl-crucible",
            name="Crucible Weigh",
            template_type="mass_check",
            expected_mass=Decimal("500"),
            tolerance=Decimal("5"),
            tolerance_unit="g",
            created_by="admin",
        ),
        StepTemplate(
            template_id="tpl-casting",
            name="Casting",
            template_type="mass_check",
            created_by="admin",
        ),
        StepTemplate(
            template_id="tpl-inspection",
            name="Final Inspection",
            template_type="checklist",
            tolerance_unit="%",
            created_by="admin",
        ),
    ]


class TestTemplateSelector:
    def test_get_template(self, session):
        session.add_all(template_rows())
        session.flush()

        info = TemplateSelector(session).get_template("tpl-crucible")

        assert info.name == "Crucible Weigh"
        assert info.type == TemplateType.MASS_CHECK
        assert info.is_mass_check
        assert info.expected_mass == Decimal("500")
        assert info.tolerance == Decimal("5")
        assert info.tolerance_unit == ToleranceUnit.GRAMS

    def test_optional_fields_default(self, session):
        session.add_all(template_rows())
        session.flush()

        info = TemplateSelector(session).get_template("tpl-casting")

        assert info.expected_mass is None
        assert info.tolerance is None
        assert info.tolerance_unit == ToleranceUnit.GRAMS

    def test_unknown_template(self, session):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            TemplateSelector(session).get_template("tpl-missing")

        assert exc_info.value.template_id == "tpl-missing"
        assert exc_info.value.code == "TEMPLATE_NOT_FOUND"

    def test_list_templates_by_id(self, session):
        session.add_all(template_rows())
        session.flush()

        templates = TemplateSelector(session).list_templates()

        assert [t.template_id for t in templates] == [
            "tpl-casting",
            "tpl-crucible",
            "tpl-inspection",
        ]
        assert templates[2].tolerance_unit == ToleranceUnit.PERCENT

    def test_unknown_type_in_row_is_rejected(self, session):
        session.add(
            StepTemplate(
                template_id="tpl-odd",
                name="Odd",
                template_type="hologram",
                created_by="admin",
            )
        )
        session.flush()

        with pytest.raises(ValueError):
            TemplateSelector(session).get_template("tpl-odd")


class TestSqlTemplateCatalog:
    @pytest.fixture
    def committed_templates(self, session_factory):
        session = session_factory()
        session.add_all(template_rows())
        session.commit()
        session.close()

    def test_reads_committed_rows(self, committed_templates, session_factory):
        catalog = SqlTemplateCatalog(session_factory)

        assert catalog.get_template("tpl-inspection").type == TemplateType.CHECKLIST

    def test_unknown_template(self, committed_templates, session_factory):
        catalog = SqlTemplateCatalog(session_factory)

        with pytest.raises(TemplateNotFoundError):
            catalog.get_template("tpl-missing")

    def test_behind_cache(self, committed_templates, session_factory, clock):
        catalog = CachedTemplateCatalog(
            SqlTemplateCatalog(session_factory), ttl_seconds=60, clock=clock
        )

        first = catalog.get_template("tpl-crucible")
        second = catalog.get_template("tpl-crucible")

        assert first is second
