"""
BatchService -- the batch state machine applied to persisted batches.

Responsibility:
    Creates batches against the pipeline's active flow and advances them
    through the pinned graph one step completion at a time, running the
    analytics calculator on each step.  Also owns the administrative
    operations: start, exception flag/approve, priority, reassignment and
    free-form log entries.

Architecture position:
    Kernel > Services -- imperative shell, flush-only (BaseService).  A
    single call is a single attempt; StepCompletionService wraps
    ``complete_step`` in a unit of work with bounded retry.

Invariants enforced:
    - Every mutation loads the batch row FOR UPDATE (refreshing any copy
      already in the identity map) and is checked by the optimistic
      version_id on flush.
    - The next node is resolved before anything is written, so a rejected
      branch selection leaves the batch untouched.
    - completed_node_ids only grows, and only with the node just completed.
    - COMPLETED is terminal for everything except reassignment.

Failure modes:
    - BatchNotFoundError, BatchAlreadyExistsError, StateError,
      NodeMismatchError, AmbiguousBranchError, InvalidBranchError,
      FlagNotFoundError, NoActiveFlowError, UnknownPipelineError,
      GraphError.
    - ConcurrencyConflictError when another transaction committed a change
      to the same batch first.  In-memory effects must be discarded by the
      caller's rollback.

Audit relevance:
    Every state change appends an immutable BatchEvent in the same flush as
    the change itself.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from refinery_kernel.domain.analytics import AnalyticsCalculator
from refinery_kernel.domain.batch_lifecycle import (
    DEFAULT_BRANCH_SELECTION_KEY,
    ensure_step_allowed,
    resolve_next_node,
    validate_transition,
)
from refinery_kernel.domain.clock import Clock
from refinery_kernel.domain.dtos import (
    Actor,
    BatchInfo,
    StepCompletion,
    StepOutcome,
    thaw,
)
from refinery_kernel.domain.flow_graph import validate
from refinery_kernel.domain.values import (
    TERMINAL_NODE_ID,
    BatchEventType,
    BatchPriority,
    BatchStatus,
    FlagType,
)
from refinery_kernel.exceptions import (
    BatchAlreadyExistsError,
    BatchNotFoundError,
    ConcurrencyConflictError,
    FlagNotFoundError,
    NodeMismatchError,
    StateError,
)
from refinery_kernel.logging_config import LogContext, get_logger
from refinery_kernel.models.batch import Batch
from refinery_kernel.selectors.batch_selector import to_batch_info
from refinery_kernel.services.base import BaseService
from refinery_kernel.services.flow_service import FlowService

logger = get_logger("services.batch")

# Event types only the state machine may write
LIFECYCLE_EVENT_TYPES = frozenset(t.value for t in BatchEventType)


class BatchService(BaseService[Batch]):
    """
    Write service for batches.

    Contract:
        Public methods return BatchInfo / StepOutcome snapshots.  Nothing is
        committed here.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock,
        calculator: AnalyticsCalculator,
        *,
        branch_selection_key: str = DEFAULT_BRANCH_SELECTION_KEY,
        allowed_pipelines: Iterable[str] | None = None,
    ):
        super().__init__(session)
        self._clock = clock
        self._calculator = calculator
        self._branch_key = branch_selection_key
        self._flows = FlowService(session, clock, allowed_pipelines=allowed_pipelines)

    # -- loading -------------------------------------------------------------

    def _load_for_update(self, batch_number: str) -> Batch:
        batch = self.session.execute(
            select(Batch)
            .where(Batch.batch_number == batch_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundError(batch_number)
        return batch

    def _flush(self, batch: Batch) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            logger.warning(
                "batch_concurrency_conflict",
                extra={"batch_number": batch.batch_number},
            )
            raise ConcurrencyConflictError("Batch", batch.batch_number) from exc

    def get_batch(self, batch_number: str) -> BatchInfo:
        batch = self.session.execute(
            select(Batch).where(Batch.batch_number == batch_number)
        ).scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundError(batch_number)
        return to_batch_info(batch)

    # -- creation ------------------------------------------------------------

    def create_batch(
        self,
        batch_number: str,
        pipeline: str,
        actor: Actor,
        *,
        initial_weight_g: Decimal | None = None,
        priority: BatchPriority = BatchPriority.NORMAL,
        assigned_to: str | None = None,
    ) -> BatchInfo:
        """
        Create a batch bound to the pipeline's active flow.

        Postconditions:
            Status CREATED at the flow's entry node; flow_id/flow_version
            snapshot taken; one batch_created event.

        Raises:
            UnknownPipelineError, NoActiveFlowError, GraphError,
            BatchAlreadyExistsError.
        """
        exists = self.session.execute(
            select(Batch.id).where(Batch.batch_number == batch_number)
        ).first()
        if exists is not None:
            raise BatchAlreadyExistsError(batch_number)

        flow = self._flows.get_active_flow_model(pipeline)
        graph = validate(flow.graph)
        entry = graph.entry_node()
        priority = BatchPriority(priority)
        now = self._clock.now_utc()

        batch = Batch(
            batch_number=batch_number,
            pipeline=flow.pipeline,
            flow=flow,
            flow_id=flow.flow_id,
            flow_version=flow.version,
            status=BatchStatus.CREATED,
            priority=priority,
            current_node_id=entry.id,
            completed_node_ids=[],
            assigned_to=assigned_to,
            initial_weight_g=initial_weight_g,
            last_event_sequence=0,
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
        )
        batch.append_event(
            BatchEventType.BATCH_CREATED.value,
            occurred_at=now,
            user_id=actor.user_id,
            username=actor.username,
            data={
                "pipeline": flow.pipeline,
                "flow_id": flow.flow_id,
                "flow_version": flow.version,
                "entry_node_id": entry.id,
                "priority": priority.value,
                "initial_weight_g": thaw(initial_weight_g),
            },
        )
        self.session.add(batch)
        try:
            self.session.flush()
        except IntegrityError as exc:
            # Lost a race on uq_batch_number
            raise BatchAlreadyExistsError(batch_number) from exc

        logger.info(
            "batch_created",
            extra={
                "batch_number": batch_number,
                "pipeline": flow.pipeline,
                "flow_ref": flow.ref,
                "actor_id": actor.user_id,
            },
        )
        return to_batch_info(batch)

    def _begin_work(self, batch: Batch, actor: Actor, now) -> None:
        validate_transition(
            batch.batch_number, batch.status, BatchStatus.IN_PROGRESS, "start"
        )
        batch.status = BatchStatus.IN_PROGRESS
        if batch.started_at is None:
            batch.started_at = now
        batch.append_event(
            BatchEventType.BATCH_STARTED.value,
            occurred_at=now,
            user_id=actor.user_id,
            username=actor.username,
            node_id=batch.current_node_id,
        )

    def start_batch(self, batch_number: str, actor: Actor) -> BatchInfo:
        """created -> in_progress.  A batch already in progress is returned as is."""
        batch = self._load_for_update(batch_number)
        if batch.status == BatchStatus.IN_PROGRESS:
            return to_batch_info(batch)
        if batch.status != BatchStatus.CREATED:
            raise StateError(batch_number, BatchStatus(batch.status).value, "start")

        with self.session.no_autoflush:
            self._begin_work(batch, actor, self._clock.now_utc())
        self._flush(batch)
        logger.info(
            "batch_started",
            extra={"batch_number": batch_number, "actor_id": actor.user_id},
        )
        return to_batch_info(batch)

    # -- step completion -----------------------------------------------------

    def complete_step(self, command: StepCompletion) -> StepOutcome:
        """
        Apply one step completion to a batch.  Single attempt.

        Order of effects: analytics, step_completed event, node marked
        completed, advance (or complete).  A CREATED batch is started first.

        Raises:
            BatchNotFoundError, StateError (completed or on hold),
            NodeMismatchError (stale node or foreign template),
            AmbiguousBranchError / InvalidBranchError,
            ConcurrencyConflictError.
        """
        batch_number = command.batch_number
        actor = command.actor
        batch = self._load_for_update(batch_number)

        with LogContext.bind(
            batch_number=batch_number, node_id=command.node_id, actor_id=actor.user_id
        ):
            ensure_step_allowed(batch_number, batch.status)
            if command.node_id != batch.current_node_id:
                raise NodeMismatchError(
                    batch_number, batch.current_node_id, command.node_id
                )

            graph = batch.flow.graph
            node = graph.node(command.node_id)
            template_id = command.template_id or node.template_id
            if (
                command.template_id
                and node.template_id
                and command.template_id != node.template_id
            ):
                raise NodeMismatchError(
                    batch_number,
                    batch.current_node_id,
                    command.node_id,
                    reason=(
                        f"template {command.template_id} does not belong to "
                        f"node {node.id} (expects {node.template_id})"
                    ),
                )

            next_node_id = resolve_next_node(
                graph, batch_number, node.id, command.payload, self._branch_key
            )
            now = self._clock.now_utc()

            with self.session.no_autoflush:
                if batch.status == BatchStatus.CREATED:
                    self._begin_work(batch, actor, now)

                applied = self._calculator.apply(
                    batch, template_id, command.payload, actor.user_id
                )
                batch.append_event(
                    BatchEventType.STEP_COMPLETED.value,
                    occurred_at=now,
                    user_id=actor.user_id,
                    username=actor.username,
                    node_id=node.id,
                    data=thaw(command.payload),
                )
                batch.mark_node_completed(node.id)

                if next_node_id == TERMINAL_NODE_ID:
                    self._complete(batch, actor, now)
                else:
                    batch.current_node_id = next_node_id
                batch.updated_at = now

            self._flush(batch)

            logger.info(
                "step_completed",
                extra={
                    "template_id": template_id,
                    "next_node_id": next_node_id,
                    "applied_rules": list(applied),
                },
            )
            if batch.is_completed:
                logger.info(
                    "batch_completed",
                    extra={
                        "duration_minutes": batch.duration_minutes,
                        "total_recovery_g": batch.total_recovery_g,
                        "loss_gain_g": batch.loss_gain_g,
                    },
                )

        return StepOutcome(
            batch=to_batch_info(batch),
            completed_node_id=node.id,
            next_node_id=next_node_id,
            applied_rules=applied,
        )

    def _complete(self, batch: Batch, actor: Actor, now) -> None:
        validate_transition(
            batch.batch_number, batch.status, BatchStatus.COMPLETED, "complete"
        )
        batch.status = BatchStatus.COMPLETED
        batch.completed_at = now
        batch.current_node_id = TERMINAL_NODE_ID
        self._calculator.finalize_analytics(batch)
        if batch.started_at is not None:
            elapsed = batch.completed_at - batch.started_at
            batch.duration_minutes = int(elapsed.total_seconds() // 60)
        batch.append_event(
            BatchEventType.BATCH_COMPLETED.value,
            occurred_at=now,
            user_id=actor.user_id,
            username=actor.username,
            data={
                "duration_minutes": batch.duration_minutes,
                "total_recovery_g": thaw(batch.total_recovery_g),
                "loss_gain_g": thaw(batch.loss_gain_g),
            },
        )

    # -- exceptions ----------------------------------------------------------

    def flag_exception(
        self,
        batch_number: str,
        flag_type: FlagType | str,
        reason: str,
        actor: Actor,
        *,
        notes: str | None = None,
    ) -> BatchInfo:
        """
        Raise an operator flag and put the batch on hold.

        A batch already on hold collects the additional flag and stays on
        hold.

        Raises:
            BatchNotFoundError, StateError (completed), ValueError (unknown
            flag type).
        """
        flag_type = FlagType(flag_type)
        batch = self._load_for_update(batch_number)
        if batch.status != BatchStatus.ON_HOLD:
            validate_transition(
                batch_number, batch.status, BatchStatus.ON_HOLD, "flag an exception on"
            )

        now = self._clock.now_utc()
        with self.session.no_autoflush:
            flag = batch.raise_flag(
                flag_type,
                reason,
                flagged_at=now,
                flagged_by=actor.user_id,
                notes=notes,
            )
            batch.status = BatchStatus.ON_HOLD
            batch.append_event(
                BatchEventType.EXCEPTION_FLAGGED.value,
                occurred_at=now,
                user_id=actor.user_id,
                username=actor.username,
                node_id=batch.current_node_id,
                data={
                    "flag_sequence": flag.sequence,
                    "flag_type": flag_type.value,
                    "reason": reason,
                    "notes": notes,
                },
            )
            batch.updated_at = now
        self._flush(batch)

        logger.warning(
            "batch_exception_flagged",
            extra={
                "batch_number": batch_number,
                "flag_type": flag_type.value,
                "actor_id": actor.user_id,
            },
        )
        return to_batch_info(batch)

    def approve_exception(
        self,
        batch_number: str,
        actor: Actor,
        *,
        flag_index: int | None = None,
        notes: str | None = None,
    ) -> BatchInfo:
        """
        Approve the latest open operator flag, or the one numbered
        ``flag_index``.  The batch resumes once no operator flag is open.

        Raises:
            BatchNotFoundError, StateError (not on hold), FlagNotFoundError.
        """
        batch = self._load_for_update(batch_number)
        if batch.status != BatchStatus.ON_HOLD:
            raise StateError(
                batch_number, BatchStatus(batch.status).value, "approve an exception on"
            )

        open_flags = batch.open_flags()
        if flag_index is None:
            flag = open_flags[-1] if open_flags else None
        else:
            flag = next((f for f in open_flags if f.sequence == flag_index), None)
        if flag is None:
            raise FlagNotFoundError(batch_number, flag_index)

        now = self._clock.now_utc()
        with self.session.no_autoflush:
            flag.approved_by = actor.user_id
            flag.approved_at = now
            flag.approval_notes = notes
            resumed = not batch.open_flags()
            if resumed:
                validate_transition(
                    batch_number, batch.status, BatchStatus.IN_PROGRESS, "resume"
                )
                batch.status = BatchStatus.IN_PROGRESS
                if batch.started_at is None:
                    batch.started_at = now
            batch.append_event(
                BatchEventType.EXCEPTION_APPROVED.value,
                occurred_at=now,
                user_id=actor.user_id,
                username=actor.username,
                node_id=batch.current_node_id,
                data={
                    "flag_sequence": flag.sequence,
                    "notes": notes,
                    "resumed": resumed,
                },
            )
            batch.updated_at = now
        self._flush(batch)

        logger.info(
            "batch_exception_approved",
            extra={
                "batch_number": batch_number,
                "flag_sequence": flag.sequence,
                "resumed": resumed,
                "actor_id": actor.user_id,
            },
        )
        return to_batch_info(batch)

    # -- administration ------------------------------------------------------

    def set_priority(
        self, batch_number: str, priority: BatchPriority | str, actor: Actor
    ) -> BatchInfo:
        """Change priority of an open batch.  Same priority is a no-op."""
        priority = BatchPriority(priority)
        batch = self._load_for_update(batch_number)
        if batch.is_completed:
            raise StateError(batch_number, BatchStatus.COMPLETED.value, "reprioritize")
        previous = BatchPriority(batch.priority)
        if previous == priority:
            return to_batch_info(batch)

        now = self._clock.now_utc()
        with self.session.no_autoflush:
            batch.priority = priority
            batch.append_event(
                BatchEventType.PRIORITY_CHANGED.value,
                occurred_at=now,
                user_id=actor.user_id,
                username=actor.username,
                data={"from": previous.value, "to": priority.value},
            )
            batch.updated_at = now
        self._flush(batch)
        return to_batch_info(batch)

    def reassign(self, batch_number: str, assignee: str | None, actor: Actor) -> BatchInfo:
        """Change who the batch is assigned to.  Allowed in any status."""
        batch = self._load_for_update(batch_number)
        previous = batch.assigned_to
        now = self._clock.now_utc()
        with self.session.no_autoflush:
            batch.assigned_to = assignee
            batch.append_event(
                BatchEventType.BATCH_REASSIGNED.value,
                occurred_at=now,
                user_id=actor.user_id,
                username=actor.username,
                data={"from": previous, "to": assignee},
            )
            batch.updated_at = now
        self._flush(batch)

        logger.info(
            "batch_reassigned",
            extra={
                "batch_number": batch_number,
                "assigned_to": assignee,
                "actor_id": actor.user_id,
            },
        )
        return to_batch_info(batch)

    def log_event(
        self,
        batch_number: str,
        event_type: str,
        actor: Actor,
        *,
        data: Mapping[str, Any] | None = None,
        node_id: str | None = None,
    ) -> BatchInfo:
        """
        Append a free-form entry (operator note, external reference) to an
        open batch's event log.

        Raises:
            ValueError: ``event_type`` is empty or a lifecycle event type.
            StateError: the batch is completed.
        """
        event_type = (event_type or "").strip()
        if not event_type:
            raise ValueError("event_type must not be empty")
        if event_type in LIFECYCLE_EVENT_TYPES:
            raise ValueError(f"event_type {event_type!r} is reserved")

        batch = self._load_for_update(batch_number)
        if batch.is_completed:
            raise StateError(batch_number, BatchStatus.COMPLETED.value, "log an event on")

        now = self._clock.now_utc()
        with self.session.no_autoflush:
            batch.append_event(
                event_type,
                occurred_at=now,
                user_id=actor.user_id,
                username=actor.username,
                node_id=node_id or batch.current_node_id,
                data=thaw(dict(data or {})),
            )
            batch.updated_at = now
        self._flush(batch)
        return to_batch_info(batch)
