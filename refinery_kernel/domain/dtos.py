"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable snapshots handed across the service boundary: the
    StepCompletion command and Actor on the way in, FlowInfo, BatchInfo,
    EventRecord and the analytics rows on the way out.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  from_model() class methods are
    boundary converters, invoked only from services and selectors.

Invariants enforced:
    - Payloads are deep-frozen on StepCompletion, so the analytics rules
      cannot mutate the caller's observation.
    - Callers never receive live ORM objects; a DTO survives its session.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from uuid import UUID

from refinery_kernel.domain.values import (
    BatchPriority,
    BatchStatus,
    FlowStatus,
)

if TYPE_CHECKING:
    from refinery_kernel.models.batch import Batch as BatchModel
    from refinery_kernel.models.batch import BatchFlag as BatchFlagModel
    from refinery_kernel.models.batch import RecoveryPour as RecoveryPourModel
    from refinery_kernel.models.batch_event import BatchEvent as BatchEventModel
    from refinery_kernel.models.flow import Flow as FlowModel


def _deep_freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _deep_freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_deep_freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of the payload freeze, producing JSON-serializable containers."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass(frozen=True)
class Actor:
    """Who is acting: external user id and display name."""

    user_id: str
    username: str | None = None


@dataclass(frozen=True)
class StepCompletion:
    """
    Command: an operator completed ``node_id`` on ``batch_number``.

    ``template_id`` is optional; when omitted the node's own template is
    used.  ``payload`` is the free-form observation map.
    """

    batch_number: str
    node_id: str
    actor: Actor
    payload: Mapping[str, Any] = field(default_factory=dict)
    template_id: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "payload", _deep_freeze(dict(self.payload or {})))


@dataclass(frozen=True)
class FlowInfo:
    id: UUID
    flow_id: str
    version: str
    name: str
    pipeline: str
    status: FlowStatus
    nodes: tuple[Mapping[str, Any], ...]
    edges: tuple[Mapping[str, Any], ...]
    entry_node_id: str | None
    effective_date: date | None
    created_by: str
    activated_at: datetime | None = None
    archived_at: datetime | None = None

    @property
    def ref(self) -> str:
        return f"{self.flow_id}@{self.version}"

    @classmethod
    def from_model(cls, model: FlowModel) -> FlowInfo:
        return cls(
            id=model.id,
            flow_id=model.flow_id,
            version=model.version,
            name=model.name,
            pipeline=model.pipeline,
            status=FlowStatus(model.status),
            nodes=tuple(_deep_freeze(n) for n in model.nodes or []),
            edges=tuple(_deep_freeze(e) for e in model.edges or []),
            entry_node_id=model.entry_node_id,
            effective_date=model.effective_date,
            created_by=model.created_by,
            activated_at=model.activated_at,
            archived_at=model.archived_at,
        )


@dataclass(frozen=True)
class RecoveryPourInfo:
    pour_number: int
    weight_g: Decimal
    poured_at: datetime

    @classmethod
    def from_model(cls, model: RecoveryPourModel) -> RecoveryPourInfo:
        return cls(
            pour_number=model.pour_number,
            weight_g=model.weight_g,
            poured_at=model.poured_at,
        )


@dataclass(frozen=True)
class FlagInfo:
    sequence: int
    flag_type: str
    reason: str
    flagged_at: datetime
    flagged_by: str | None
    derived: bool
    notes: str | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.approved_at is None

    @classmethod
    def from_model(cls, model: BatchFlagModel) -> FlagInfo:
        return cls(
            sequence=model.sequence,
            flag_type=model.flag_type,
            reason=model.reason,
            flagged_at=model.flagged_at,
            flagged_by=model.flagged_by,
            derived=model.derived,
            notes=model.notes,
            approved_by=model.approved_by,
            approved_at=model.approved_at,
        )


@dataclass(frozen=True)
class EventRecord:
    """One entry of a batch's event log."""

    event_id: UUID
    sequence: int
    type: str
    user_id: str | None
    username: str | None
    timestamp: datetime
    node_id: str | None
    data: Mapping[str, Any]

    @classmethod
    def from_model(cls, model: BatchEventModel) -> EventRecord:
        return cls(
            event_id=model.id,
            sequence=model.sequence,
            type=model.event_type,
            user_id=model.user_id,
            username=model.username,
            timestamp=model.occurred_at,
            node_id=model.node_id,
            data=_deep_freeze(model.data or {}),
        )


@dataclass(frozen=True)
class BatchInfo:
    """
    Read model of a batch.

    ``ftt_recovery_percent`` and ``progress_percent`` are read-time
    projections supplied by the caller; they are not stored on the batch.
    """

    id: UUID
    batch_number: str
    pipeline: str
    flow_id: str
    flow_version: str
    status: BatchStatus
    priority: BatchPriority
    current_node_id: str
    completed_node_ids: tuple[str, ...]
    created_by: str
    created_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    duration_minutes: int | None
    assigned_to: str | None
    initial_weight_g: Decimal | None
    melting_received_at: datetime | None
    supplier: str | None
    drill_number: str | None
    destination: str | None
    received_weight_g: Decimal | None
    fine_content_percent: Decimal | None
    fine_grams_received: Decimal | None
    expected_output_g: Decimal | None
    expected_output_source: str | None
    first_export_at: datetime | None
    output_weight_g: Decimal | None
    first_time_recovery_g: Decimal | None
    ftt_hours: int | None
    total_recovery_g: Decimal | None
    overall_recovery_percent: Decimal | None
    actual_output_g: Decimal | None
    loss_gain_g: Decimal | None
    loss_gain_percent: Decimal | None
    recovery_pours: tuple[RecoveryPourInfo, ...]
    flags: tuple[FlagInfo, ...]
    version: int
    ftt_recovery_percent: Decimal | None = None
    progress_percent: Decimal | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == BatchStatus.COMPLETED

    @property
    def open_flags(self) -> tuple[FlagInfo, ...]:
        return tuple(f for f in self.flags if not f.derived and f.is_open)

    @classmethod
    def from_model(
        cls,
        model: BatchModel,
        *,
        ftt_recovery_percent: Decimal | None = None,
        progress_percent: Decimal | None = None,
    ) -> BatchInfo:
        return cls(
            id=model.id,
            batch_number=model.batch_number,
            pipeline=model.pipeline,
            flow_id=model.flow_id,
            flow_version=model.flow_version,
            status=BatchStatus(model.status),
            priority=BatchPriority(model.priority),
            current_node_id=model.current_node_id,
            completed_node_ids=tuple(model.completed_node_ids or ()),
            created_by=model.created_by,
            created_at=model.created_at,
            started_at=model.started_at,
            completed_at=model.completed_at,
            duration_minutes=model.duration_minutes,
            assigned_to=model.assigned_to,
            initial_weight_g=model.initial_weight_g,
            melting_received_at=model.melting_received_at,
            supplier=model.supplier,
            drill_number=model.drill_number,
            destination=model.destination,
            received_weight_g=model.received_weight_g,
            fine_content_percent=model.fine_content_percent,
            fine_grams_received=model.fine_grams_received,
            expected_output_g=model.expected_output_g,
            expected_output_source=model.expected_output_source,
            first_export_at=model.first_export_at,
            output_weight_g=model.output_weight_g,
            first_time_recovery_g=model.first_time_recovery_g,
            ftt_hours=model.ftt_hours,
            total_recovery_g=model.total_recovery_g,
            overall_recovery_percent=model.overall_recovery_percent,
            actual_output_g=model.actual_output_g,
            loss_gain_g=model.loss_gain_g,
            loss_gain_percent=model.loss_gain_percent,
            recovery_pours=tuple(
                RecoveryPourInfo.from_model(p) for p in model.recovery_pours
            ),
            flags=tuple(FlagInfo.from_model(f) for f in model.flags),
            version=model.version_id,
            ftt_recovery_percent=ftt_recovery_percent,
            progress_percent=progress_percent,
        )


@dataclass(frozen=True)
class StepOutcome:
    """What a successful step completion did."""

    batch: BatchInfo
    completed_node_id: str
    next_node_id: str
    applied_rules: tuple[str, ...]
    attempts: int = 1

    @property
    def batch_completed(self) -> bool:
        return self.batch.is_completed


@dataclass(frozen=True)
class PipelineStats:
    pipeline: str
    batch_count: int
    total_fine_grams: Decimal
    total_loss_gain_g: Decimal
    avg_recovery_percent: Decimal | None


@dataclass(frozen=True)
class YtdSummary:
    """Year-to-date aggregates over completed batches."""

    year: int
    pipeline: str | None
    batch_count: int
    total_fine_grams: Decimal
    total_loss_gain_g: Decimal
    avg_recovery_percent: Decimal | None
    avg_ftt_hours: Decimal | None
    avg_ftt_recovery_percent: Decimal | None
    max_gain_g: Decimal | None
    max_loss_g: Decimal | None
    gain_loss_spread_g: Decimal | None
    monthly_counts: tuple[int, ...]
    by_pipeline: tuple[PipelineStats, ...]


@dataclass(frozen=True)
class TurnaroundRow:
    batch_number: str
    pipeline: str
    started_at: datetime | None
    completed_at: datetime | None
    total_hours: Decimal | None
    ftt_hours: int | None
    pour_count: int


@dataclass(frozen=True)
class TurnaroundReport:
    pipeline: str | None
    rows: tuple[TurnaroundRow, ...]
    avg_total_hours: Decimal | None
    avg_ftt_hours: Decimal | None
    avg_pour_count: Decimal | None
