"""
Tests for BatchSelector read models.
"""

from decimal import Decimal

import pytest

from refinery_kernel.domain.values import BatchPriority, BatchStatus, FlagType
from tests.conftest import OPERATOR, SUPERVISOR, complete, run_gold_batch


class TestGet:
    def test_unknown_batch_is_none(self, batch_selector):
        assert batch_selector.get("B-404") is None

    def test_snapshot_includes_projections(
        self, gold_flow, batch_service, batch_selector
    ):
        batch_service.create_batch("B-1", "gold", OPERATOR)
        complete(
            batch_service,
            "B-1",
            "receiving",
            {"measured_mass": "200000", "fine_content_percent": "95"},
        )
        complete(batch_service, "B-1", "casting", {"output_weight": "185000"})

        info = batch_selector.get("B-1")

        assert info.progress_percent == Decimal("50.0")
        assert float(info.ftt_recovery_percent) == pytest.approx(97.368421, abs=1e-5)
        assert info.recovery_pours[0].weight_g == Decimal("185000")

    def test_flags_are_listed(self, gold_flow, batch_service, batch_selector):
        batch_service.create_batch("B-1", "gold", OPERATOR)
        batch_service.flag_exception("B-1", FlagType.OTHER, "check", OPERATOR)

        info = batch_selector.get("B-1")

        assert info.status == BatchStatus.ON_HOLD
        assert [f.reason for f in info.open_flags] == ["check"]


class TestList:
    def seed(self, batch_service, clock):
        for number in ("B-3", "B-1", "B-2"):
            batch_service.create_batch(number, "gold", OPERATOR)
            clock.advance(60)
        complete(batch_service, "B-2", "receiving")

    def test_oldest_first(self, gold_flow, batch_service, batch_selector, clock):
        self.seed(batch_service, clock)

        assert [b.batch_number for b in batch_selector.list()] == ["B-3", "B-1", "B-2"]

    def test_filters(self, gold_flow, batch_service, batch_selector, clock):
        self.seed(batch_service, clock)

        created = batch_selector.list(status="created")
        in_progress = batch_selector.list(status=BatchStatus.IN_PROGRESS, pipeline="GOLD")

        assert [b.batch_number for b in created] == ["B-3", "B-1"]
        assert [b.batch_number for b in in_progress] == ["B-2"]
        assert batch_selector.list(pipeline="silver") == []

    def test_pagination(self, gold_flow, batch_service, batch_selector, clock):
        self.seed(batch_service, clock)

        page = batch_selector.list(limit=2, offset=1)

        assert [b.batch_number for b in page] == ["B-1", "B-2"]


class TestInProgress:
    def test_most_urgent_first(self, gold_flow, batch_service, batch_selector, clock):
        for number, priority in (
            ("B-1", BatchPriority.NORMAL),
            ("B-2", BatchPriority.URGENT),
            ("B-3", BatchPriority.HIGH),
            ("B-4", BatchPriority.URGENT),
        ):
            batch_service.create_batch(number, "gold", OPERATOR, priority=priority)
            batch_service.start_batch(number, OPERATOR)
            clock.advance(60)
        batch_service.create_batch("B-5", "gold", OPERATOR, priority=BatchPriority.URGENT)

        ordered = [b.batch_number for b in batch_selector.in_progress()]

        assert ordered == ["B-2", "B-4", "B-3", "B-1"]

    def test_priority_filter(self, gold_flow, batch_service, batch_selector):
        batch_service.create_batch("B-1", "gold", OPERATOR)
        batch_service.start_batch("B-1", OPERATOR)
        batch_service.create_batch("B-2", "gold", OPERATOR, priority="high")
        batch_service.start_batch("B-2", OPERATOR)

        assert [
            b.batch_number for b in batch_selector.in_progress(priority="high")
        ] == ["B-2"]

    def test_completed_batches_are_not_in_progress(
        self, gold_flow, batch_service, batch_selector
    ):
        run_gold_batch(batch_service, "B-1")

        assert batch_selector.in_progress() == []


class TestEvents:
    def test_event_log_in_sequence(self, gold_flow, batch_service, batch_selector):
        batch_service.create_batch("B-1", "gold", OPERATOR)
        complete(batch_service, "B-1", "receiving")
        batch_service.set_priority("B-1", "high", SUPERVISOR)

        events = batch_selector.events("B-1")

        assert [(e.sequence, e.type) for e in events] == [
            (1, "batch_created"),
            (2, "batch_started"),
            (3, "step_completed"),
            (4, "priority_changed"),
        ]
        assert events[-1].user_id == SUPERVISOR.user_id

    def test_unknown_batch_has_no_events(self, batch_selector):
        assert batch_selector.events("B-404") == []
