"""
Module: refinery_kernel.selectors.batch_selector
Responsibility: Read-only query access to batches and their event logs.
    Converts ORM models to frozen BatchInfo / EventRecord DTOs with the
    read-time projections (FTT recovery %, progress %) filled in.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: No mutations performed on any queried data.
    - Listings are ordered deterministically (created_at, then batch_number;
      in-progress views by priority first).

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import case, select
from sqlalchemy.orm import Session, selectinload

from refinery_kernel.domain.analytics import ftt_recovery_percent
from refinery_kernel.domain.batch_lifecycle import progress_percent
from refinery_kernel.domain.dtos import BatchInfo, EventRecord
from refinery_kernel.domain.values import BatchPriority, BatchStatus
from refinery_kernel.models.batch import Batch
from refinery_kernel.models.batch_event import BatchEvent
from refinery_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_SIZE = 100

_PRIORITY_RANK = case(
    (Batch.priority == BatchPriority.URGENT, 0),
    (Batch.priority == BatchPriority.HIGH, 1),
    else_=2,
)


def to_batch_info(batch: Batch) -> BatchInfo:
    """Snapshot a batch with its read-time projections."""
    if batch.is_completed:
        progress = Decimal("100.0")
    else:
        progress = progress_percent(
            len(batch.completed_node_ids or ()), len(batch.flow.nodes or ())
        )
    return BatchInfo.from_model(
        batch,
        ftt_recovery_percent=ftt_recovery_percent(batch),
        progress_percent=progress,
    )


class BatchSelector(BaseSelector[Batch]):
    """
    Selector for batch queries.

    Guarantees:
        - Pours, flags and the pinned flow are loaded with selectinload to
          avoid N+1 queries on listings.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def _base_query(self):
        return select(Batch).options(
            selectinload(Batch.flow),
            selectinload(Batch.recovery_pours),
            selectinload(Batch.flags),
        )

    def get(self, batch_number: str) -> BatchInfo | None:
        """The batch, or None if no batch has that number."""
        batch = self.session.execute(
            self._base_query().where(Batch.batch_number == batch_number)
        ).scalar_one_or_none()
        if batch is None:
            return None
        return to_batch_info(batch)

    def list(
        self,
        status: BatchStatus | str | None = None,
        pipeline: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[BatchInfo]:
        """
        Page through batches, oldest first.

        Args:
            status: Only batches in this status.
            pipeline: Only batches of this pipeline.
            limit: Page size.
            offset: Rows to skip.
        """
        stmt = self._base_query()
        if status is not None:
            stmt = stmt.where(Batch.status == BatchStatus(status))
        if pipeline is not None:
            stmt = stmt.where(Batch.pipeline == pipeline.lower())
        stmt = (
            stmt.order_by(Batch.created_at, Batch.batch_number)
            .limit(limit)
            .offset(offset)
        )
        return [to_batch_info(b) for b in self.session.execute(stmt).scalars()]

    def in_progress(
        self,
        pipeline: str | None = None,
        priority: BatchPriority | str | None = None,
    ) -> list[BatchInfo]:
        """Open work: batches in progress, most urgent first."""
        stmt = self._base_query().where(Batch.status == BatchStatus.IN_PROGRESS)
        if pipeline is not None:
            stmt = stmt.where(Batch.pipeline == pipeline.lower())
        if priority is not None:
            stmt = stmt.where(Batch.priority == BatchPriority(priority))
        stmt = stmt.order_by(_PRIORITY_RANK, Batch.started_at, Batch.batch_number)
        return [to_batch_info(b) for b in self.session.execute(stmt).scalars()]

    def events(self, batch_number: str) -> list[EventRecord]:
        """The batch's event log in sequence order; empty for unknown batches."""
        rows = self.session.execute(
            select(BatchEvent)
            .join(Batch, Batch.id == BatchEvent.batch_id)
            .where(Batch.batch_number == batch_number)
            .order_by(BatchEvent.sequence)
        ).scalars()
        return [EventRecord.from_model(row) for row in rows]
