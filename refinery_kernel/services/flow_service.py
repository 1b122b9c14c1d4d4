"""
FlowService -- lifecycle of versioned process definitions.

Responsibility:
    Creates, edits, activates, deactivates, clones and deletes flow
    versions, and resolves the active flow of a pipeline for batch creation.

Architecture position:
    Kernel > Services -- imperative shell, flush-only (BaseService).

Invariants enforced:
    - (flow_id, version) is unique.
    - Only DRAFT flows may be edited.
    - At most one ACTIVE flow per pipeline: ``activate`` archives the
      previous active version (locked FOR UPDATE) and flushes that change
      before promoting the new one, all in the caller's transaction.  The
      partial unique index uq_flow_active_pipeline backs this up.
    - A flow is validated (flow_graph.validate) before it becomes active.
    - A flow pinned by an open batch cannot be deactivated; a flow
      referenced by any batch cannot be deleted.

Failure modes:
    - UnknownPipelineError, FlowVersionExistsError, FlowNotFoundError,
      FlowNotEditableError, FlowNotActiveError, FlowInUseError, GraphError.
      Every failure leaves the flow unchanged.

Audit relevance:
    flow_created / flow_updated / flow_activated / flow_deactivated /
    flow_deleted log entries carry the flow reference and the actor.
"""

from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from refinery_kernel.domain.batch_lifecycle import OPEN_STATUSES
from refinery_kernel.domain.clock import Clock, SystemClock
from refinery_kernel.domain.dtos import FlowInfo
from refinery_kernel.domain.flow_graph import FlowGraph, validate
from refinery_kernel.domain.values import FlowStatus, Pipeline
from refinery_kernel.exceptions import (
    FlowInUseError,
    FlowNotActiveError,
    FlowNotEditableError,
    FlowNotFoundError,
    FlowVersionExistsError,
    NoActiveFlowError,
    UnknownPipelineError,
)
from refinery_kernel.logging_config import LogContext, get_logger
from refinery_kernel.models.batch import Batch
from refinery_kernel.models.flow import Flow
from refinery_kernel.services.base import BaseService

logger = get_logger("services.flow")

_UNSET: Any = object()


class FlowService(BaseService[Flow]):
    """
    Write service for flows.

    Contract:
        Public methods return FlowInfo snapshots.  ``get_active_flow_model``
        is the one ORM-returning entry point, used by BatchService inside
        the same session.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        *,
        allowed_pipelines: Iterable[str] | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._pipelines = tuple(allowed_pipelines or (p.value for p in Pipeline))

    # -- lookups -------------------------------------------------------------

    def check_pipeline(self, pipeline: str) -> str:
        """Normalize ``pipeline`` and reject unknown names."""
        name = (pipeline or "").strip().lower()
        if name not in self._pipelines:
            raise UnknownPipelineError(pipeline, self._pipelines)
        return name

    def _get(self, flow_id: str, version: str, *, for_update: bool = False) -> Flow:
        stmt = select(Flow).where(Flow.flow_id == flow_id, Flow.version == version)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        flow = self.session.execute(stmt).scalar_one_or_none()
        if flow is None:
            raise FlowNotFoundError(f"{flow_id}@{version}")
        return flow

    def get_flow(self, flow_id: str, version: str) -> FlowInfo:
        return FlowInfo.from_model(self._get(flow_id, version))

    def list_versions(self, flow_id: str) -> list[FlowInfo]:
        rows = self.session.execute(
            select(Flow).where(Flow.flow_id == flow_id).order_by(Flow.created_at)
        ).scalars()
        return [FlowInfo.from_model(row) for row in rows]

    def get_active_flow_model(self, pipeline: str) -> Flow:
        """
        The ACTIVE flow of ``pipeline``.

        Raises:
            UnknownPipelineError: Pipeline not configured.
            NoActiveFlowError: No active version exists.
        """
        name = self.check_pipeline(pipeline)
        flow = self.session.execute(
            select(Flow).where(
                Flow.pipeline == name,
                Flow.status == FlowStatus.ACTIVE,
            )
        ).scalar_one_or_none()
        if flow is None:
            raise NoActiveFlowError(name)
        return flow

    def get_active_flow(self, pipeline: str) -> FlowInfo:
        return FlowInfo.from_model(self.get_active_flow_model(pipeline))

    def _batch_count(self, flow: Flow, open_only: bool = False) -> int:
        stmt = select(func.count()).select_from(Batch).where(Batch.flow_pk == flow.id)
        if open_only:
            stmt = stmt.where(Batch.status.in_(list(OPEN_STATUSES)))
        return self.session.execute(stmt).scalar_one()

    # -- authoring -----------------------------------------------------------

    def _normalized_graph(
        self,
        ref: str,
        nodes: Iterable[Mapping[str, Any]],
        edges: Iterable[Mapping[str, Any]],
        entry_node_id: str | None,
    ) -> FlowGraph:
        # Parsing only; full validation runs at activation
        return FlowGraph.from_definition(ref, nodes, edges, entry_node_id)

    def create_flow(
        self,
        flow_id: str,
        version: str,
        name: str,
        pipeline: str,
        actor_id: str,
        *,
        nodes: Iterable[Mapping[str, Any]] = (),
        edges: Iterable[Mapping[str, Any]] = (),
        entry_node_id: str | None = None,
        effective_date: date | None = None,
        description: str | None = None,
    ) -> FlowInfo:
        """
        Create a new DRAFT flow version.

        Raises:
            UnknownPipelineError, FlowVersionExistsError, GraphError (a node
            or edge that cannot be parsed).
        """
        pipeline = self.check_pipeline(pipeline)
        exists = self.session.execute(
            select(Flow.id).where(Flow.flow_id == flow_id, Flow.version == version)
        ).first()
        if exists is not None:
            raise FlowVersionExistsError(flow_id, version)

        graph = self._normalized_graph(f"{flow_id}@{version}", nodes, edges, entry_node_id)
        now = self._clock.now_utc()
        flow = Flow(
            flow_id=flow_id,
            version=version,
            name=name,
            pipeline=pipeline,
            status=FlowStatus.DRAFT,
            nodes=graph.nodes_definition(),
            edges=graph.edges_definition(),
            entry_node_id=entry_node_id,
            effective_date=effective_date,
            description=description,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(flow)
        self.session.flush()

        logger.info(
            "flow_created",
            extra={
                "flow_id": flow_id,
                "version": version,
                "pipeline": pipeline,
                "actor_id": actor_id,
                "node_count": len(graph.nodes),
            },
        )
        return FlowInfo.from_model(flow)

    def update_flow(
        self,
        flow_id: str,
        version: str,
        actor_id: str,
        *,
        name: str | None = None,
        nodes: Iterable[Mapping[str, Any]] | None = None,
        edges: Iterable[Mapping[str, Any]] | None = None,
        entry_node_id: str | None = _UNSET,
        effective_date: date | None = _UNSET,
        description: str | None = _UNSET,
    ) -> FlowInfo:
        """
        Edit a DRAFT flow.  Arguments left out keep their current value.

        Raises:
            FlowNotFoundError, FlowNotEditableError, GraphError.
        """
        flow = self._get(flow_id, version, for_update=True)
        if not flow.is_draft:
            raise FlowNotEditableError(flow.ref, flow.status.value)

        new_entry = flow.entry_node_id if entry_node_id is _UNSET else entry_node_id
        graph = self._normalized_graph(
            flow.ref,
            flow.nodes if nodes is None else nodes,
            flow.edges if edges is None else edges,
            new_entry,
        )
        flow.nodes = graph.nodes_definition()
        flow.edges = graph.edges_definition()
        flow.entry_node_id = new_entry
        if name is not None:
            flow.name = name
        if effective_date is not _UNSET:
            flow.effective_date = effective_date
        if description is not _UNSET:
            flow.description = description
        flow.updated_at = self._clock.now_utc()
        self.session.flush()

        logger.info(
            "flow_updated",
            extra={"flow_id": flow_id, "version": version, "actor_id": actor_id},
        )
        return FlowInfo.from_model(flow)

    def clone_as_draft(
        self,
        flow_id: str,
        version: str,
        new_version: str,
        actor_id: str,
        *,
        name: str | None = None,
    ) -> FlowInfo:
        """Copy any existing version into a new editable DRAFT version."""
        source = self._get(flow_id, version)
        return self.create_flow(
            flow_id,
            new_version,
            name or source.name,
            source.pipeline,
            actor_id,
            nodes=source.nodes,
            edges=source.edges,
            entry_node_id=source.entry_node_id,
            effective_date=source.effective_date,
            description=source.description,
        )

    # -- lifecycle -----------------------------------------------------------

    def activate(self, flow_id: str, version: str, actor_id: str) -> FlowInfo:
        """
        Make this version the pipeline's single active flow.

        Preconditions: flow is DRAFT or ARCHIVED and its graph validates.
        Postconditions: the previous active flow of the pipeline (if any) is
            ARCHIVED; this flow is ACTIVE.  Activating an already active
            flow is a no-op.

        Raises:
            FlowNotFoundError, GraphError.
        """
        flow = self._get(flow_id, version, for_update=True)
        with LogContext.bind(flow_id=flow_id, actor_id=actor_id):
            if flow.is_active:
                return FlowInfo.from_model(flow)

            validate(flow.graph)

            now = self._clock.now_utc()
            previous = self.session.execute(
                select(Flow)
                .where(
                    Flow.pipeline == flow.pipeline,
                    Flow.status == FlowStatus.ACTIVE,
                    Flow.id != flow.id,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().all()
            for prior in previous:
                prior.status = FlowStatus.ARCHIVED
                prior.archived_at = now
                prior.updated_at = now
            # Prior versions must leave ACTIVE before the partial unique index
            # sees the new one.
            self.session.flush()

            flow.status = FlowStatus.ACTIVE
            flow.activated_at = now
            flow.activated_by = actor_id
            flow.archived_at = None
            flow.updated_at = now
            self.session.flush()

            logger.info(
                "flow_activated",
                extra={
                    "flow_ref": flow.ref,
                    "pipeline": flow.pipeline,
                    "archived": [prior.ref for prior in previous],
                },
            )
        return FlowInfo.from_model(flow)

    def deactivate(self, flow_id: str, version: str, actor_id: str) -> FlowInfo:
        """
        Take an active flow out of service.

        The flow returns to DRAFT when no batch ever referenced it, otherwise
        it becomes ARCHIVED (its structure stays frozen for the batches that
        pinned it).

        Raises:
            FlowNotFoundError, FlowNotActiveError, FlowInUseError (open
            batches pin the flow; status unchanged).
        """
        flow = self._get(flow_id, version, for_update=True)
        if not flow.is_active:
            raise FlowNotActiveError(flow.ref, flow.status.value)

        open_batches = self._batch_count(flow, open_only=True)
        if open_batches:
            logger.warning(
                "flow_deactivate_blocked",
                extra={"flow_ref": flow.ref, "open_batches": open_batches},
            )
            raise FlowInUseError(flow.ref, "deactivate", open_batches)

        now = self._clock.now_utc()
        if self._batch_count(flow):
            flow.status = FlowStatus.ARCHIVED
            flow.archived_at = now
        else:
            flow.status = FlowStatus.DRAFT
        flow.updated_at = now
        self.session.flush()

        logger.info(
            "flow_deactivated",
            extra={
                "flow_ref": flow.ref,
                "status": flow.status.value,
                "actor_id": actor_id,
            },
        )
        return FlowInfo.from_model(flow)

    def delete_flow(self, flow_id: str, version: str, actor_id: str) -> None:
        """
        Delete a flow version that no batch references.

        Raises:
            FlowNotFoundError, FlowInUseError.
        """
        flow = self._get(flow_id, version, for_update=True)
        referencing = self._batch_count(flow)
        if referencing:
            raise FlowInUseError(flow.ref, "delete", referencing)

        self.session.delete(flow)
        self.session.flush()
        logger.info(
            "flow_deleted",
            extra={"flow_ref": flow.ref, "actor_id": actor_id},
        )
