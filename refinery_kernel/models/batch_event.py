"""
Module: refinery_kernel.models.batch_event
Responsibility: ORM persistence for the append-only batch event log.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Rows are immutable from creation; updates and deletes raise
      ImmutabilityViolationError (db/immutability.py).  Corrections are new
      events.
    - (batch_id, sequence) is unique, giving every batch a gap-free ordering.

Audit relevance:
    The event log is the record from which a batch's history is read back:
    who completed which node, when, and with which observation payload.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from refinery_kernel.db.base import Base, UUIDString


class BatchEvent(Base):
    """
    One immutable fact about a batch.

    ``id`` doubles as the event id.  ``data`` holds the step payload for
    ``step_completed`` and command details for lifecycle events.
    """

    __tablename__ = "batch_events"
    __table_args__ = (
        UniqueConstraint("batch_id", "sequence", name="uq_batch_event_sequence"),
        Index("idx_batch_event_type", "event_type"),
        Index("idx_batch_event_occurred", "occurred_at"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("batches.id"), nullable=False
    )

    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    username: Mapped[str | None] = mapped_column(String(200), nullable=True)

    node_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<BatchEvent #{self.sequence} {self.event_type}>"
