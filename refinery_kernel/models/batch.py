"""
Module: refinery_kernel.models.batch
Responsibility: ORM persistence for the batch aggregate: the batch row, its
    recovery pour sub-ledger and its exception flags.
Architecture position: Kernel > Models.  May import from db/, domain/values
    and sibling models only.

Invariants enforced:
    - batch_number is globally unique (uq_batch_number).
    - version_id is SQLAlchemy's optimistic version counter.  Every write to
      the batch row checks it, so two writers that read the same version
      cannot both commit.  Every aggregate mutation touches the row (at
      least last_event_sequence), so the check covers child-row changes too.
    - completed_node_ids is append-only and duplicate-free.
    - RecoveryPour.pour_number is 1-based and contiguous per batch
      (uq_pour_number).  Pour rows are immutable (db/immutability.py).

Failure modes:
    - StaleDataError on flush when another transaction committed first;
      services translate it to ConcurrencyConflictError.
    - IntegrityError on duplicate batch_number or pour_number.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from refinery_kernel.db.base import Base, TrackedBase, UUIDString
from refinery_kernel.domain.values import (
    BatchPriority,
    BatchStatus,
    FlagType,
)
from refinery_kernel.models.batch_event import BatchEvent
from refinery_kernel.models.flow import Flow


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Batch(TrackedBase):
    """
    One physical unit of material flowing through a pinned flow version.

    Contract:
        The batch is mutated only by BatchService.  Analytics fields are
        written by the AnalyticsCalculator, which reaches the pour ledger and
        flags through ``add_recovery_pour`` and ``raise_flag``.

    Guarantees:
        - flow_id and flow_version are a snapshot taken at creation; they
          never follow later edits or activations.
        - current_node_id is a node of the pinned graph, or "__end__" once
          the batch is completed.
    """

    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint("batch_number", name="uq_batch_number"),
        Index("idx_batch_status", "status"),
        Index("idx_batch_pipeline_status", "pipeline", "status"),
        Index("idx_batch_flow", "flow_pk"),
        Index("idx_batch_completed_at", "completed_at"),
    )

    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    pipeline: Mapped[str] = mapped_column(String(50), nullable=False)

    # Pinned flow version
    flow_pk: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("flows.id"), nullable=False
    )
    flow_id: Mapped[str] = mapped_column(String(100), nullable=False)
    flow_version: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[BatchStatus] = mapped_column(
        SAEnum(
            BatchStatus,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        default=BatchStatus.CREATED,
        nullable=False,
    )

    priority: Mapped[BatchPriority] = mapped_column(
        SAEnum(
            BatchPriority,
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        default=BatchPriority.NORMAL,
        nullable=False,
    )

    current_node_id: Mapped[str] = mapped_column(String(100), nullable=False)

    completed_node_ids: Mapped[list[str]] = mapped_column(
        JSON, default=list, nullable=False
    )

    assigned_to: Mapped[str | None] = mapped_column(String(100), nullable=True)

    initial_weight_g: Mapped[Decimal | None] = mapped_column(nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(nullable=True)

    # Arrival metadata captured by the first receiving/melting step
    melting_received_at: Mapped[datetime | None] = mapped_column(nullable=True)
    supplier: Mapped[str | None] = mapped_column(String(100), nullable=True)
    drill_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    destination: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Weights and recovery
    received_weight_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    fine_content_percent: Mapped[Decimal | None] = mapped_column(nullable=True)
    fine_grams_received: Mapped[Decimal | None] = mapped_column(nullable=True)
    expected_output_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    expected_output_source: Mapped[str | None] = mapped_column(
        String(20), nullable=True
    )
    first_export_at: Mapped[datetime | None] = mapped_column(nullable=True)
    output_weight_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    first_time_recovery_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    ftt_hours: Mapped[int | None] = mapped_column(nullable=True)
    total_recovery_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    overall_recovery_percent: Mapped[Decimal | None] = mapped_column(nullable=True)
    actual_output_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    loss_gain_g: Mapped[Decimal | None] = mapped_column(nullable=True)
    loss_gain_percent: Mapped[Decimal | None] = mapped_column(nullable=True)

    # Highest event sequence appended so far
    last_event_sequence: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )

    version_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    flow: Mapped[Flow] = relationship(Flow)

    recovery_pours: Mapped[list["RecoveryPour"]] = relationship(
        back_populates="batch",
        order_by="RecoveryPour.pour_number",
        cascade="all, delete-orphan",
    )

    flags: Mapped[list["BatchFlag"]] = relationship(
        back_populates="batch",
        order_by="BatchFlag.sequence",
        cascade="all, delete-orphan",
    )

    events: Mapped[list[BatchEvent]] = relationship(
        BatchEvent,
        order_by=BatchEvent.sequence,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Batch {self.batch_number}: {self.status} @ {self.current_node_id}>"

    @property
    def is_completed(self) -> bool:
        return self.status == BatchStatus.COMPLETED

    # -- pour ledger ---------------------------------------------------------

    def pour_weights(self) -> list[Decimal]:
        return [pour.weight_g for pour in self.recovery_pours]

    def add_recovery_pour(self, weight_g: Decimal, timestamp: datetime) -> int:
        """Append the next pour and return its 1-based pour number."""
        pour_number = len(self.recovery_pours) + 1
        self.recovery_pours.append(
            RecoveryPour(
                pour_number=pour_number,
                weight_g=weight_g,
                poured_at=timestamp,
            )
        )
        return pour_number

    # -- flags ---------------------------------------------------------------

    def raise_flag(
        self,
        flag_type: FlagType,
        reason: str,
        *,
        flagged_at: datetime,
        flagged_by: str | None,
        derived: bool = False,
        notes: str | None = None,
    ) -> "BatchFlag":
        flag = BatchFlag(
            sequence=len(self.flags) + 1,
            flag_type=FlagType(flag_type).value,
            reason=reason,
            notes=notes,
            flagged_at=flagged_at,
            flagged_by=flagged_by,
            derived=derived,
        )
        self.flags.append(flag)
        return flag

    def open_flags(self) -> list["BatchFlag"]:
        """Operator flags that still await approval, oldest first."""
        return [f for f in self.flags if not f.derived and f.is_open]

    # -- event log -----------------------------------------------------------

    def append_event(
        self,
        event_type: str,
        *,
        occurred_at: datetime,
        user_id: str | None,
        username: str | None = None,
        node_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> BatchEvent:
        self.last_event_sequence = (self.last_event_sequence or 0) + 1
        event = BatchEvent(
            sequence=self.last_event_sequence,
            event_type=event_type,
            user_id=user_id,
            username=username,
            node_id=node_id,
            occurred_at=occurred_at,
            data=dict(data or {}),
        )
        self.events.append(event)
        return event

    def mark_node_completed(self, node_id: str) -> None:
        completed = list(self.completed_node_ids or [])
        if node_id not in completed:
            completed.append(node_id)
        self.completed_node_ids = completed


class RecoveryPour(Base):
    """
    One weighed output event.  Immutable from creation.
    """

    __tablename__ = "recovery_pours"
    __table_args__ = (
        UniqueConstraint("batch_id", "pour_number", name="uq_pour_number"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("batches.id"), nullable=False
    )

    pour_number: Mapped[int] = mapped_column(nullable=False)

    weight_g: Mapped[Decimal] = mapped_column(nullable=False)

    poured_at: Mapped[datetime] = mapped_column(nullable=False)

    batch: Mapped[Batch] = relationship(back_populates="recovery_pours")

    def __repr__(self) -> str:
        return f"<RecoveryPour #{self.pour_number}: {self.weight_g} g>"


class BatchFlag(Base):
    """
    Exception marker on a batch.

    Operator flags put the batch on hold until approved.  Derived flags are
    raised by the analytics calculator and never change the batch status.
    Only the approval fields may change after creation.
    """

    __tablename__ = "batch_flags"
    __table_args__ = (
        UniqueConstraint("batch_id", "sequence", name="uq_flag_sequence"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("batches.id"), nullable=False
    )

    sequence: Mapped[int] = mapped_column(nullable=False)

    flag_type: Mapped[str] = mapped_column(String(30), nullable=False)

    reason: Mapped[str] = mapped_column(String(4000), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    flagged_at: Mapped[datetime] = mapped_column(nullable=False)

    flagged_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    derived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    approval_notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    batch: Mapped[Batch] = relationship(back_populates="flags")

    @property
    def is_open(self) -> bool:
        return self.approved_at is None
