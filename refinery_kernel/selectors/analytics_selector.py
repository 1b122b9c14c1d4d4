"""
Module: refinery_kernel.selectors.analytics_selector
Responsibility: Aggregate read models over completed batches: the
    year-to-date summary and the turnaround report.
Architecture position: Kernel > Selectors.  May import from models/, domain/
    and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Only COMPLETED batches are aggregated, selected by completed_at (UTC).
    - Sums and averages are computed in Decimal.  Averages skip batches that
      lack the metric and are None when no batch has it.
    - Hour figures in the turnaround report are rounded half-up to one
      decimal place.

Failure modes:
    - An empty period yields zero counts and None averages, never an error.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from refinery_kernel.domain.analytics import ftt_recovery_percent
from refinery_kernel.domain.dtos import (
    PipelineStats,
    TurnaroundReport,
    TurnaroundRow,
    YtdSummary,
)
from refinery_kernel.domain.values import BatchStatus
from refinery_kernel.models.batch import Batch
from refinery_kernel.selectors.base import BaseSelector

ZERO = Decimal("0")
ONE_PLACE = Decimal("0.1")
SECONDS_PER_HOUR = Decimal("3600")


def _mean(values: Iterable[Decimal | int | None]) -> Decimal | None:
    present = [Decimal(v) for v in values if v is not None]
    if not present:
        return None
    return sum(present, ZERO) / len(present)


def _one_place(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return value.quantize(ONE_PLACE, rounding=ROUND_HALF_UP)


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class AnalyticsSelector(BaseSelector[Batch]):
    """Year-to-date and turnaround aggregates."""

    def __init__(self, session: Session):
        super().__init__(session)

    def _completed(
        self,
        start: datetime | None,
        end: datetime | None,
        pipeline: str | None,
    ) -> list[Batch]:
        stmt = (
            select(Batch)
            .options(selectinload(Batch.recovery_pours))
            .where(Batch.status == BatchStatus.COMPLETED)
        )
        if start is not None:
            stmt = stmt.where(Batch.completed_at >= start)
        if end is not None:
            stmt = stmt.where(Batch.completed_at < end)
        if pipeline is not None:
            stmt = stmt.where(Batch.pipeline == pipeline.lower())
        stmt = stmt.order_by(Batch.completed_at, Batch.batch_number)
        return list(self.session.execute(stmt).scalars())

    def ytd_summary(self, year: int, pipeline: str | None = None) -> YtdSummary:
        """
        Aggregates over batches completed in calendar ``year`` (UTC).

        max_gain_g / max_loss_g are the largest and smallest loss/gain
        values seen; the spread is their difference.
        """
        batches = self._completed(
            _start_of(date(year, 1, 1)), _start_of(date(year + 1, 1, 1)), pipeline
        )

        loss_gains = [b.loss_gain_g for b in batches if b.loss_gain_g is not None]
        max_gain = max(loss_gains) if loss_gains else None
        max_loss = min(loss_gains) if loss_gains else None

        monthly = [0] * 12
        for batch in batches:
            monthly[batch.completed_at.astimezone(timezone.utc).month - 1] += 1

        by_pipeline: dict[str, list[Batch]] = {}
        for batch in batches:
            by_pipeline.setdefault(batch.pipeline, []).append(batch)

        return YtdSummary(
            year=year,
            pipeline=pipeline.lower() if pipeline else None,
            batch_count=len(batches),
            total_fine_grams=sum(
                (b.fine_grams_received or ZERO for b in batches), ZERO
            ),
            total_loss_gain_g=sum(loss_gains, ZERO),
            avg_recovery_percent=_mean(b.overall_recovery_percent for b in batches),
            avg_ftt_hours=_mean(b.ftt_hours for b in batches),
            avg_ftt_recovery_percent=_mean(ftt_recovery_percent(b) for b in batches),
            max_gain_g=max_gain,
            max_loss_g=max_loss,
            gain_loss_spread_g=(
                max_gain - max_loss if max_gain is not None else None
            ),
            monthly_counts=tuple(monthly),
            by_pipeline=tuple(
                self._pipeline_stats(name, group)
                for name, group in sorted(by_pipeline.items())
            ),
        )

    @staticmethod
    def _pipeline_stats(pipeline: str, batches: list[Batch]) -> PipelineStats:
        return PipelineStats(
            pipeline=pipeline,
            batch_count=len(batches),
            total_fine_grams=sum(
                (b.fine_grams_received or ZERO for b in batches), ZERO
            ),
            total_loss_gain_g=sum((b.loss_gain_g or ZERO for b in batches), ZERO),
            avg_recovery_percent=_mean(b.overall_recovery_percent for b in batches),
        )

    def turnaround(
        self,
        pipeline: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> TurnaroundReport:
        """
        Per-batch turnaround for batches completed between ``date_from`` and
        ``date_to`` inclusive (UTC days).  Batches never started are left
        out.
        """
        start = _start_of(date_from) if date_from else None
        end = _start_of(date_to + timedelta(days=1)) if date_to else None

        rows = []
        for batch in self._completed(start, end, pipeline):
            if batch.started_at is None:
                continue
            elapsed = batch.completed_at - batch.started_at
            total_hours = Decimal(int(elapsed.total_seconds())) / SECONDS_PER_HOUR
            rows.append(
                TurnaroundRow(
                    batch_number=batch.batch_number,
                    pipeline=batch.pipeline,
                    started_at=batch.started_at,
                    completed_at=batch.completed_at,
                    total_hours=_one_place(total_hours),
                    ftt_hours=batch.ftt_hours,
                    pour_count=len(batch.recovery_pours),
                )
            )

        return TurnaroundReport(
            pipeline=pipeline.lower() if pipeline else None,
            rows=tuple(rows),
            avg_total_hours=_one_place(_mean(r.total_hours for r in rows)),
            avg_ftt_hours=_one_place(_mean(r.ftt_hours for r in rows)),
            avg_pour_count=_one_place(_mean(r.pour_count for r in rows)),
        )
