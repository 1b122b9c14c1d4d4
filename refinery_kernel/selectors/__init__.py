"""Selectors for the refinery kernel (read side)."""

from refinery_kernel.selectors.analytics_selector import AnalyticsSelector
from refinery_kernel.selectors.batch_selector import BatchSelector, to_batch_info
from refinery_kernel.selectors.template_selector import (
    SqlTemplateCatalog,
    TemplateSelector,
)

__all__ = [
    "AnalyticsSelector",
    "BatchSelector",
    "SqlTemplateCatalog",
    "TemplateSelector",
    "to_batch_info",
]
