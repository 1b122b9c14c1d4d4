"""
Concurrency tests for step completion.

Covers:
- A lost optimistic race surfaces as ConcurrencyConflictError
- StepCompletionService retries a lost race from a fresh read
- Retry exhaustion reports the number of attempts
- Two threads completing the same node: exactly one commits
- Two threads on different batches: both commit on the first attempt

The interleaving tests commit a competing change from inside the first
session's before_flush hook.  On PostgreSQL the first session already holds
the row lock at that point, so those tests run on SQLite only.
"""

import threading

import pytest
from sqlalchemy import event, func, select

from refinery_kernel.db.engine import is_postgres
from refinery_kernel.domain.dtos import StepCompletion
from refinery_kernel.exceptions import (
    ConcurrencyConflictError,
    NodeMismatchError,
)
from refinery_kernel.models.batch import RecoveryPour
from refinery_kernel.models.batch_event import BatchEvent
from refinery_kernel.services.batch_service import BatchService
from refinery_kernel.services.flow_service import FlowService
from refinery_kernel.services.step_completion_service import StepCompletionService
from tests.conftest import LINEAR_EDGES, LINEAR_NODES, OPERATOR, SUPERVISOR


@pytest.fixture
def seeded(session_factory, clock, calculator):
    """Committed active gold flow and batch B-1 waiting at casting."""
    session = session_factory()
    flows = FlowService(session, clock)
    flows.create_flow(
        "gold-standard",
        "v1",
        "Gold",
        "gold",
        SUPERVISOR.user_id,
        nodes=LINEAR_NODES,
        edges=LINEAR_EDGES,
    )
    flows.activate("gold-standard", "v1", SUPERVISOR.user_id)
    batches = BatchService(session, clock, calculator)
    batches.create_batch("B-1", "gold", OPERATOR)
    batches.complete_step(
        StepCompletion(
            "B-1",
            "receiving",
            OPERATOR,
            {"measured_mass": "200000", "fine_content_percent": "95"},
        )
    )
    session.commit()
    session.close()
    return "B-1"


@pytest.fixture
def seeded_pair(seeded, session_factory, clock, calculator):
    """B-1 plus a second committed batch B-2, both waiting at casting."""
    session = session_factory()
    batches = BatchService(session, clock, calculator)
    batches.create_batch("B-2", "gold", OPERATOR)
    batches.complete_step(
        StepCompletion(
            "B-2",
            "receiving",
            OPERATOR,
            {"measured_mass": "50000", "fine_content_percent": "90"},
        )
    )
    session.commit()
    session.close()
    return ("B-1", "B-2")


@pytest.fixture
def sqlite_only():
    if is_postgres():
        pytest.skip("interleaving hook would deadlock on row locks")


def casting(payload=None, batch_number="B-1") -> StepCompletion:
    return StepCompletion(
        batch_number, "casting", OPERATOR, payload or {"output_weight": "185000"}
    )


def commit_competitor_before_flush(session, session_factory, clock, calculator, action):
    """Run ``action(BatchService)`` in another session and commit it, once,
    just before ``session`` flushes."""
    fired = []

    def _interfere(sess, flush_context, instances):
        if fired:
            return
        fired.append(True)
        other = session_factory()
        try:
            action(BatchService(other, clock, calculator))
            other.commit()
        finally:
            other.close()

    event.listen(session, "before_flush", _interfere)
    return fired


def count(session_factory, stmt) -> int:
    session = session_factory()
    try:
        return session.execute(stmt).scalar_one()
    finally:
        session.close()


class TestOptimisticConflict:
    def test_lost_race_raises_conflict(
        self, seeded, sqlite_only, session_factory, clock, calculator, captured_logs
    ):
        session = session_factory()
        fired = commit_competitor_before_flush(
            session,
            session_factory,
            clock,
            calculator,
            lambda service: service.reassign("B-1", "op-2", SUPERVISOR),
        )

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            BatchService(session, clock, calculator).complete_step(casting())
        session.rollback()

        assert fired
        assert exc_info.value.entity_type == "Batch"
        assert exc_info.value.entity_id == "B-1"
        assert exc_info.value.code == "CONCURRENCY_CONFLICT"
        assert count(session_factory, select(func.count()).select_from(RecoveryPour)) == 0
        assert any(
            r["message"] == "batch_concurrency_conflict" for r in captured_logs()
        )


class TestRetry:
    def test_retry_succeeds_after_unrelated_change(
        self, seeded, sqlite_only, session_factory, clock, calculator, captured_logs
    ):
        attempts = []

        def service_factory(session):
            attempts.append(session)
            if len(attempts) == 1:
                commit_competitor_before_flush(
                    session,
                    session_factory,
                    clock,
                    calculator,
                    lambda service: service.reassign("B-1", "op-2", SUPERVISOR),
                )
            return BatchService(session, clock, calculator)

        runner = StepCompletionService(
            session_factory, clock, calculator, service_factory=service_factory
        )

        outcome = runner.complete_step(casting())

        assert outcome.attempts == 2
        assert outcome.next_node_id == "recovery"
        assert outcome.batch.assigned_to == "op-2"
        assert len(outcome.batch.recovery_pours) == 1
        retries = [r for r in captured_logs() if r["message"] == "concurrency_conflict_retry"]
        assert len(retries) == 1
        assert retries[0]["batch_number"] == "B-1"

    def test_retry_after_same_step_reports_node_mismatch(
        self, seeded, sqlite_only, session_factory, clock, calculator
    ):
        attempts = []

        def service_factory(session):
            attempts.append(session)
            if len(attempts) == 1:
                commit_competitor_before_flush(
                    session,
                    session_factory,
                    clock,
                    calculator,
                    lambda service: service.complete_step(casting()),
                )
            return BatchService(session, clock, calculator)

        runner = StepCompletionService(
            session_factory, clock, calculator, service_factory=service_factory
        )

        with pytest.raises(NodeMismatchError):
            runner.complete_step(casting())

        assert len(attempts) == 2
        assert count(session_factory, select(func.count()).select_from(RecoveryPour)) == 1
        step_events = count(
            session_factory,
            select(func.count())
            .select_from(BatchEvent)
            .where(BatchEvent.event_type == "step_completed", BatchEvent.node_id == "casting"),
        )
        assert step_events == 1

    def test_retries_are_bounded(self, session_factory, clock, calculator, captured_logs):
        calls = []

        class AlwaysConflicts:
            def complete_step(self, command):
                calls.append(command)
                raise ConcurrencyConflictError("Batch", command.batch_number)

        runner = StepCompletionService(
            session_factory,
            clock,
            calculator,
            max_conflict_retries=2,
            service_factory=lambda session: AlwaysConflicts(),
        )

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            runner.complete_step(casting())

        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("concurrency_conflict_retry") == 2
        assert messages.count("concurrency_conflict_exhausted") == 1

    def test_zero_retries_means_one_attempt(self, session_factory, clock, calculator):
        calls = []

        class AlwaysConflicts:
            def complete_step(self, command):
                calls.append(command)
                raise ConcurrencyConflictError("Batch", command.batch_number)

        runner = StepCompletionService(
            session_factory,
            clock,
            calculator,
            max_conflict_retries=0,
            service_factory=lambda session: AlwaysConflicts(),
        )

        with pytest.raises(ConcurrencyConflictError):
            runner.complete_step(casting())

        assert len(calls) == 1

    def test_validation_errors_are_not_retried(self, session_factory, clock, calculator):
        calls = []

        class Stale:
            def complete_step(self, command):
                calls.append(command)
                raise NodeMismatchError(command.batch_number, "recovery", command.node_id)

        runner = StepCompletionService(
            session_factory, clock, calculator, service_factory=lambda session: Stale()
        )

        with pytest.raises(NodeMismatchError):
            runner.complete_step(casting())

        assert len(calls) == 1

    def test_negative_retries_rejected(self, session_factory, clock, calculator):
        with pytest.raises(ValueError):
            StepCompletionService(
                session_factory, clock, calculator, max_conflict_retries=-1
            )

    def test_default_retry_budget(self, session_factory, clock, calculator):
        runner = StepCompletionService(session_factory, clock, calculator)

        assert runner.max_conflict_retries == 3


class TestParallelCompletion:
    @pytest.mark.slow_locks
    def test_same_node_from_two_threads(self, seeded, session_factory, clock, calculator):
        runner = StepCompletionService(session_factory, clock, calculator)
        barrier = threading.Barrier(2)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                outcome = runner.complete_step(casting())
            except NodeMismatchError as exc:
                result = exc
            else:
                result = outcome
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(results) == 2
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, NodeMismatchError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert successes[0].next_node_id == "recovery"
        assert count(session_factory, select(func.count()).select_from(RecoveryPour)) == 1

    @pytest.mark.slow_locks
    def test_different_batches_complete_independently(
        self, seeded_pair, session_factory, clock, calculator, captured_logs
    ):
        runner = StepCompletionService(session_factory, clock, calculator)
        barrier = threading.Barrier(2)
        outcomes = {}
        errors = []
        lock = threading.Lock()

        def worker(batch_number):
            barrier.wait()
            try:
                outcome = runner.complete_step(casting(batch_number=batch_number))
            except Exception as exc:
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    outcomes[batch_number] = outcome

        threads = [
            threading.Thread(target=worker, args=(number,)) for number in seeded_pair
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert sorted(outcomes) == ["B-1", "B-2"]
        for outcome in outcomes.values():
            assert outcome.attempts == 1
            assert outcome.next_node_id == "recovery"
        assert count(session_factory, select(func.count()).select_from(RecoveryPour)) == 2
        assert not any(
            r["message"] == "concurrency_conflict_retry" for r in captured_logs()
        )
