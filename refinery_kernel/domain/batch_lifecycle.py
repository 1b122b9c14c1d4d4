"""
Batch lifecycle -- status transitions and next-node resolution.

Responsibility:
    Declares which batch status changes are legal and decides where a batch
    goes after completing a node.  The BatchService applies these decisions
    to the persisted aggregate.

Architecture position:
    Kernel > Domain -- pure functions, zero I/O.

Invariants enforced:
    - COMPLETED is terminal.
    - A node with one outgoing edge advances there unconditionally.
    - A node with several outgoing edges needs the branch named in the
      payload under the configured selection key; the named node must be one
      of the edge targets.
    - A node without outgoing edges resolves to TERMINAL_NODE_ID.

Failure modes:
    - StateError for an illegal status change.
    - AmbiguousBranchError when a branch is required but not given.
    - InvalidBranchError when the given branch is not a candidate.
"""

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from refinery_kernel.domain.flow_graph import FlowGraph
from refinery_kernel.domain.values import TERMINAL_NODE_ID, BatchStatus
from refinery_kernel.exceptions import (
    AmbiguousBranchError,
    InvalidBranchError,
    StateError,
)

DEFAULT_BRANCH_SELECTION_KEY = "next_node_id"

# Allowed status transitions (from -> set of valid next states)
ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.CREATED: frozenset(
        {BatchStatus.IN_PROGRESS, BatchStatus.ON_HOLD, BatchStatus.COMPLETED}
    ),
    BatchStatus.IN_PROGRESS: frozenset({BatchStatus.ON_HOLD, BatchStatus.COMPLETED}),
    BatchStatus.ON_HOLD: frozenset({BatchStatus.IN_PROGRESS}),
    BatchStatus.COMPLETED: frozenset(),  # Terminal
}

# Statuses in which a batch still pins its flow version
OPEN_STATUSES: frozenset[BatchStatus] = frozenset(
    {BatchStatus.CREATED, BatchStatus.IN_PROGRESS, BatchStatus.ON_HOLD}
)


def can_transition(current: BatchStatus, target: BatchStatus) -> bool:
    """Check if a status transition is valid."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(
    batch_number: str,
    current: BatchStatus | str,
    target: BatchStatus,
    operation: str,
) -> None:
    """Raise StateError unless ``current -> target`` is allowed."""
    current = BatchStatus(current)
    if not can_transition(current, target):
        raise StateError(batch_number, current.value, operation)


def ensure_step_allowed(batch_number: str, status: BatchStatus | str) -> None:
    """
    Step completion is accepted only from CREATED or IN_PROGRESS.

    ON_HOLD batches wait for an exception approval first.
    """
    status = BatchStatus(status)
    if status not in (BatchStatus.CREATED, BatchStatus.IN_PROGRESS):
        raise StateError(batch_number, status.value, "complete a step on")


def resolve_next_node(
    graph: FlowGraph,
    batch_number: str,
    node_id: str,
    payload: Mapping[str, Any] | None,
    selection_key: str = DEFAULT_BRANCH_SELECTION_KEY,
) -> str:
    """
    Decide the node a batch moves to after completing ``node_id``.

    Returns:
        The next node id, or TERMINAL_NODE_ID when ``node_id`` is terminal.
    """
    candidates = graph.next_nodes(node_id)
    if not candidates:
        return TERMINAL_NODE_ID
    if len(candidates) == 1:
        return candidates[0]

    selected = (payload or {}).get(selection_key)
    if selected is None or (isinstance(selected, str) and not selected.strip()):
        raise AmbiguousBranchError(batch_number, node_id, list(candidates))
    selected = str(selected).strip()
    if selected not in candidates:
        raise InvalidBranchError(batch_number, node_id, list(candidates), selected)
    return selected


def progress_percent(completed_count: int, node_count: int) -> Decimal:
    """Share of the flow's nodes completed, 0-100, one decimal place."""
    if node_count <= 0:
        return Decimal("0")
    ratio = Decimal(min(completed_count, node_count)) / Decimal(node_count)
    return (ratio * 100).quantize(Decimal("0.1"))
