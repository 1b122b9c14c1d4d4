"""
Template Catalog -- read-only lookup of station and check definitions.

Responsibility:
    Defines the contract through which the analytics calculator resolves a
    template id into its name, type and tolerance, plus two in-process
    implementations: a dictionary-backed catalog and a TTL cache wrapper.
    The SQL-backed catalog lives in ``refinery_kernel.selectors``.

Architecture position:
    Kernel > Domain -- pure contract.  CachedTemplateCatalog reads time only
    through an injected Clock.

Invariants enforced:
    - ``TemplateInfo.name`` is compared lower-cased; the catalog never
      mutates templates.
    - CachedTemplateCatalog is safe to share between threads.  Entries older
      than the TTL are re-fetched; misses are never cached.

Failure modes:
    - TemplateNotFoundError from ``get_template`` on an unknown id.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum, unique

from refinery_kernel.domain.clock import Clock, SystemClock
from refinery_kernel.exceptions import TemplateNotFoundError


@unique
class TemplateType(str, Enum):
    INSTRUCTION = "instruction"
    CHECKLIST = "checklist"
    MASS_CHECK = "mass_check"
    SIGNATURE = "signature"
    PHOTO = "photo"


@unique
class ToleranceUnit(str, Enum):
    GRAMS = "g"
    PERCENT = "%"


@dataclass(frozen=True)
class TemplateInfo:
    """Metadata of one station or check template."""

    template_id: str
    name: str
    type: TemplateType
    expected_mass: Decimal | None = None
    tolerance: Decimal | None = None
    tolerance_unit: ToleranceUnit = ToleranceUnit.GRAMS

    @property
    def normalized_name(self) -> str:
        return self.name.lower()

    @property
    def is_mass_check(self) -> bool:
        return self.type == TemplateType.MASS_CHECK


class TemplateCatalog(ABC):
    """Read-only template lookup."""

    @abstractmethod
    def get_template(self, template_id: str) -> TemplateInfo:
        """
        Resolve a template id.

        Raises:
            TemplateNotFoundError: Unknown template id.
        """
        ...


class InMemoryTemplateCatalog(TemplateCatalog):
    """Dictionary-backed catalog, used by tests and embedded callers."""

    def __init__(self, templates: Iterable[TemplateInfo] = ()):
        self._templates = {t.template_id: t for t in templates}

    def add(self, template: TemplateInfo) -> None:
        self._templates[template.template_id] = template

    def get_template(self, template_id: str) -> TemplateInfo:
        try:
            return self._templates[template_id]
        except KeyError:
            raise TemplateNotFoundError(template_id) from None


class CachedTemplateCatalog(TemplateCatalog):
    """
    TTL cache in front of another catalog.

    Template catalogs change rarely and out of band, so a stale entry for up
    to ``ttl_seconds`` is acceptable.  A TTL of 0 disables caching.
    """

    def __init__(
        self,
        inner: TemplateCatalog,
        ttl_seconds: int = 300,
        clock: Clock | None = None,
    ):
        self._inner = inner
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[TemplateInfo, datetime]] = {}
        self._lock = threading.Lock()

    def get_template(self, template_id: str) -> TemplateInfo:
        now = self._clock.now()
        with self._lock:
            entry = self._entries.get(template_id)
            if entry is not None and now - entry[1] < self._ttl:
                return entry[0]

        template = self._inner.get_template(template_id)
        if self._ttl > timedelta(0):
            with self._lock:
                self._entries[template_id] = (template, now)
        return template

    def invalidate(self, template_id: str | None = None) -> None:
        """Drop one entry, or the whole cache when no id is given."""
        with self._lock:
            if template_id is None:
                self._entries.clear()
            else:
                self._entries.pop(template_id, None)
