"""
Module: refinery_kernel.models.flow
Responsibility: ORM persistence for versioned process definitions (flows).
Architecture position: Kernel > Models.  May import from db/ and domain/
    values only.

Invariants enforced:
    - (flow_id, version) is unique (uq_flow_version).
    - At most one ACTIVE flow per pipeline (uq_flow_active_pipeline, a
      partial unique index on PostgreSQL and SQLite).  FlowService archives
      the previous active version in the same transaction before activating.
    - Structure (nodes, edges, entry_node_id, version, pipeline) is immutable
      once the flow leaves DRAFT (db/immutability.py).

Failure modes:
    - IntegrityError on duplicate (flow_id, version) or a second active flow
      for a pipeline when the service-level checks are bypassed.
    - ImmutabilityViolationError on structural edits of a non-draft flow.
"""

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, Index, String, UniqueConstraint, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from refinery_kernel.db.base import TrackedBase
from refinery_kernel.domain.flow_graph import FlowGraph
from refinery_kernel.domain.values import FlowStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Flow(TrackedBase):
    """
    One version of a pipeline's process definition.

    Contract:
        nodes and edges are stored as ordered JSON lists in the shape
        accepted by ``FlowGraph.from_definition``.  Lists are always
        reassigned, never mutated in place, so change tracking sees them.

    Guarantees:
        - ``graph`` rebuilds an immutable FlowGraph from the stored JSON.
        - ``ref`` is the stable "<flow_id>@<version>" label used in errors
          and logs.
    """

    __tablename__ = "flows"
    __table_args__ = (
        UniqueConstraint("flow_id", "version", name="uq_flow_version"),
        Index(
            "uq_flow_active_pipeline",
            "pipeline",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_flow_pipeline_status", "pipeline", "status"),
    )

    # Stable identity across versions
    flow_id: Mapped[str] = mapped_column(String(100), nullable=False)

    version: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    pipeline: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[FlowStatus] = mapped_column(
        SAEnum(
            FlowStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        default=FlowStatus.DRAFT,
        nullable=False,
    )

    nodes: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    edges: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    # Optional declared entry; otherwise the single node without incoming edges
    entry_node_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    description: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    activated_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Flow {self.ref}: {self.status.value}>"

    @property
    def ref(self) -> str:
        return f"{self.flow_id}@{self.version}"

    @property
    def is_draft(self) -> bool:
        return self.status == FlowStatus.DRAFT

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    @property
    def graph(self) -> FlowGraph:
        return FlowGraph.from_definition(
            self.ref,
            self.nodes or [],
            self.edges or [],
            self.entry_node_id,
        )
