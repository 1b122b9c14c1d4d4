"""
StepCompletionService -- unit of work around BatchService.complete_step.

Responsibility:
    Owns the transaction for a step completion: opens a fresh session per
    attempt, commits on success, rolls back on any failure, and retries the
    whole attempt when the optimistic version check reports a lost race.

Architecture position:
    Kernel > Services -- the one service in the kernel that commits.
    Callers (HTTP handlers, floor terminals, tests) submit a StepCompletion
    command and receive a StepOutcome.

Invariants enforced:
    - At most one concurrent completion of a given batch commits; the other
      re-reads the committed state on retry and fails with the ordinary
      validation error (usually NodeMismatchError).
    - A rolled-back attempt leaves no trace: its session is discarded with
      every pour, flag, event and metric it touched.
    - Only ConcurrencyConflictError is retried, at most
      ``max_conflict_retries`` times.

Failure modes:
    - ConcurrencyConflictError once the retries are exhausted; ``attempts``
      carries the number of attempts made.
    - Every other error from BatchService propagates after rollback.

Usage:
    runner = StepCompletionService(get_session_factory(), clock, calculator)
    outcome = runner.complete_step(
        StepCompletion(
            batch_number="AU-2024-0042",
            node_id="casting",
            actor=Actor("op-17", "Sam"),
            payload={"output_weight": "185000"},
        )
    )
    assert outcome.completed_node_id == "casting"
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from typing import Callable

from sqlalchemy.orm import Session

from refinery_kernel.db.engine import session_scope
from refinery_kernel.domain.analytics import AnalyticsCalculator
from refinery_kernel.domain.batch_lifecycle import DEFAULT_BRANCH_SELECTION_KEY
from refinery_kernel.domain.clock import Clock
from refinery_kernel.domain.dtos import StepCompletion, StepOutcome
from refinery_kernel.exceptions import ConcurrencyConflictError
from refinery_kernel.logging_config import LogContext, get_logger
from refinery_kernel.services.batch_service import BatchService

logger = get_logger("services.step_completion")


class StepCompletionService:
    """Runs step completions in their own transactions with bounded retry.

    Contract:
        ``complete_step`` is safe to call from many threads at once, each
        with its own session from ``session_factory``.

    Guarantees:
        - Returned outcomes are committed.
        - ``StepOutcome.attempts`` reports how many attempts it took.
    """

    DEFAULT_MAX_CONFLICT_RETRIES = 3

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        calculator: AnalyticsCalculator,
        *,
        branch_selection_key: str = DEFAULT_BRANCH_SELECTION_KEY,
        allowed_pipelines: Iterable[str] | None = None,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        service_factory: Callable[[Session], BatchService] | None = None,
    ):
        if max_conflict_retries < 0:
            raise ValueError("max_conflict_retries must be >= 0")
        self._session_factory = session_factory
        self._clock = clock
        self._calculator = calculator
        self._branch_key = branch_selection_key
        self._pipelines = tuple(allowed_pipelines) if allowed_pipelines else None
        self._max_retries = max_conflict_retries
        self._service_factory = service_factory or self._default_service

    @property
    def max_conflict_retries(self) -> int:
        return self._max_retries

    def _default_service(self, session: Session) -> BatchService:
        return BatchService(
            session,
            self._clock,
            self._calculator,
            branch_selection_key=self._branch_key,
            allowed_pipelines=self._pipelines,
        )

    def complete_step(self, command: StepCompletion) -> StepOutcome:
        """Complete one step, committing the result.

        Raises:
            ConcurrencyConflictError: Every attempt lost its race.
            RefineryKernelError: Any validation failure from BatchService.
        """
        max_attempts = self._max_retries + 1
        with LogContext.bind(
            batch_number=command.batch_number,
            node_id=command.node_id,
            actor_id=command.actor.user_id,
        ):
            for attempt in range(1, max_attempts + 1):
                try:
                    with session_scope(self._session_factory) as session:
                        outcome = self._service_factory(session).complete_step(command)
                except ConcurrencyConflictError as exc:
                    if attempt >= max_attempts:
                        logger.error(
                            "concurrency_conflict_exhausted",
                            extra={"attempts": attempt},
                        )
                        raise ConcurrencyConflictError(
                            exc.entity_type, exc.entity_id, attempts=attempt
                        ) from exc
                    logger.warning(
                        "concurrency_conflict_retry",
                        extra={"attempt": attempt, "max_attempts": max_attempts},
                    )
                    continue

                if attempt > 1:
                    outcome = dataclasses.replace(outcome, attempts=attempt)
                return outcome

        # Unreachable: the loop either returns or raises
        raise AssertionError("retry loop exited without an outcome")
