"""
Typed Exception Hierarchy for the Refinery Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Operators submit step completions from the floor, often from tablets that
hold stale state. Callers must be able to tell a stale client apart from a
broken process definition or a lost write race without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (batch number, node ids, counts)

Example:
    try:
        runner.complete_step(command)
    except NodeMismatchError as e:
        refresh_client(e.batch_number, e.current_node_id)
    except ConcurrencyConflictError:
        ask_operator_to_resubmit()

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    RefineryKernelError (base)
    |
    +-- FlowError
    |   +-- GraphError
    |   +-- FlowNotFoundError
    |   +-- FlowVersionExistsError
    |   +-- FlowNotEditableError
    |   +-- FlowNotActiveError
    |   +-- FlowInUseError
    |   +-- NoActiveFlowError
    |   +-- UnknownPipelineError
    |
    +-- BatchError
    |   +-- BatchNotFoundError
    |   +-- BatchAlreadyExistsError
    |   +-- StateError
    |   +-- NodeMismatchError
    |   +-- AmbiguousBranchError
    |   |   +-- InvalidBranchError
    |   +-- FlagNotFoundError
    |
    +-- ConcurrencyError
    |   +-- ConcurrencyConflictError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- TemplateError
        +-- TemplateNotFoundError

===============================================================================
HANDLING PATTERNS
===============================================================================

- GraphError is fatal to the activation (or batch creation) request only.
- StateError / NodeMismatchError leave the batch unchanged; the client
  should re-read the batch.
- AmbiguousBranchError is surfaced so the operator can pick a branch.
- ConcurrencyConflictError is the ONLY error retried automatically, and
  only by StepCompletionService (bounded).
- TemplateNotFoundError never escapes a step completion: the analytics
  calculator logs it and skips derivation.
===============================================================================
"""


class RefineryKernelError(Exception):
    """
    Base exception for all refinery kernel errors.

    All subclasses define a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "REFINERY_KERNEL_ERROR"


# Flow-related exceptions


class FlowError(RefineryKernelError):
    """Base exception for flow definition errors."""

    code: str = "FLOW_ERROR"


class GraphError(FlowError):
    """A flow graph is malformed: missing nodes, bad entry, or a cycle."""

    code: str = "FLOW_GRAPH_INVALID"

    def __init__(self, flow_ref: str, reason: str):
        self.flow_ref = flow_ref
        self.reason = reason
        super().__init__(f"Invalid flow graph {flow_ref}: {reason}")


class FlowNotFoundError(FlowError):
    """Flow with the given reference does not exist."""

    code: str = "FLOW_NOT_FOUND"

    def __init__(self, flow_ref: str):
        self.flow_ref = flow_ref
        super().__init__(f"Flow not found: {flow_ref}")


class FlowVersionExistsError(FlowError):
    """A flow with the same flow_id and version already exists."""

    code: str = "FLOW_VERSION_EXISTS"

    def __init__(self, flow_id: str, version: str):
        self.flow_id = flow_id
        self.version = version
        super().__init__(f"Flow {flow_id} version {version} already exists")


class FlowNotEditableError(FlowError):
    """Only draft flows may have their structure edited."""

    code: str = "FLOW_NOT_EDITABLE"

    def __init__(self, flow_ref: str, status: str):
        self.flow_ref = flow_ref
        self.status = status
        super().__init__(
            f"Flow {flow_ref} is {status}; only draft flows can be edited"
        )


class FlowNotActiveError(FlowError):
    """Operation requires an active flow."""

    code: str = "FLOW_NOT_ACTIVE"

    def __init__(self, flow_ref: str, status: str):
        self.flow_ref = flow_ref
        self.status = status
        super().__init__(f"Flow {flow_ref} is not active (status: {status})")


class FlowInUseError(FlowError):
    """Flow cannot be deleted or deactivated while batches reference it."""

    code: str = "FLOW_IN_USE"

    def __init__(self, flow_ref: str, operation: str, batch_count: int):
        self.flow_ref = flow_ref
        self.operation = operation
        self.batch_count = batch_count
        super().__init__(
            f"Cannot {operation} flow {flow_ref}: {batch_count} batch(es) "
            "are using this flow. Wait for them to complete or reassign them."
        )


class NoActiveFlowError(FlowError):
    """No active flow exists for the pipeline."""

    code: str = "NO_ACTIVE_FLOW"

    def __init__(self, pipeline: str):
        self.pipeline = pipeline
        super().__init__(f"No active flow found for {pipeline} pipeline")


class UnknownPipelineError(FlowError):
    """Pipeline is not one of the configured pipelines."""

    code: str = "UNKNOWN_PIPELINE"

    def __init__(self, pipeline: str, allowed: tuple[str, ...]):
        self.pipeline = pipeline
        self.allowed = list(allowed)
        super().__init__(
            f"Unknown pipeline '{pipeline}'; expected one of {', '.join(allowed)}"
        )


# Batch-related exceptions


class BatchError(RefineryKernelError):
    """Base exception for batch lifecycle errors."""

    code: str = "BATCH_ERROR"


class BatchNotFoundError(BatchError):
    """Batch with the given number does not exist."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_number: str):
        self.batch_number = batch_number
        super().__init__(f"Batch not found: {batch_number}")


class BatchAlreadyExistsError(BatchError):
    """Batch numbers are globally unique."""

    code: str = "BATCH_ALREADY_EXISTS"

    def __init__(self, batch_number: str):
        self.batch_number = batch_number
        super().__init__(f"Batch number already exists: {batch_number}")


class StateError(BatchError):
    """
    Operation is not allowed in the batch's current status.

    Raised for step completion on a completed or on-hold batch, and for
    lifecycle commands whose transition is not permitted. The batch is
    left unchanged.
    """

    code: str = "BATCH_STATE_INVALID"

    def __init__(self, batch_number: str, status: str, operation: str):
        self.batch_number = batch_number
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} batch {batch_number} in status {status}"
        )


class NodeMismatchError(BatchError):
    """
    Step submitted against a node that is not the batch's current node.

    Usually a stale client. The batch is left unchanged.
    """

    code: str = "NODE_MISMATCH"

    def __init__(
        self,
        batch_number: str,
        current_node_id: str | None,
        submitted_node_id: str,
        reason: str | None = None,
    ):
        self.batch_number = batch_number
        self.current_node_id = current_node_id
        self.submitted_node_id = submitted_node_id
        message = (
            f"Batch {batch_number} is at node {current_node_id}, "
            f"not {submitted_node_id}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class AmbiguousBranchError(BatchError):
    """A node has several outgoing edges and no branch was selected."""

    code: str = "AMBIGUOUS_BRANCH"

    def __init__(self, batch_number: str, node_id: str, candidates: list[str]):
        self.batch_number = batch_number
        self.node_id = node_id
        self.candidates = candidates
        super().__init__(
            f"Node {node_id} on batch {batch_number} branches to "
            f"{', '.join(candidates)}; select one"
        )


class InvalidBranchError(AmbiguousBranchError):
    """The selected branch is not an outgoing edge of the node."""

    code: str = "INVALID_BRANCH"

    def __init__(
        self,
        batch_number: str,
        node_id: str,
        candidates: list[str],
        selected: str,
    ):
        super().__init__(batch_number, node_id, candidates)
        self.selected = selected
        self.args = (
            f"Branch {selected} is not reachable from node {node_id} on batch "
            f"{batch_number}; candidates: {', '.join(candidates)}",
        )


class FlagNotFoundError(BatchError):
    """No open flag matches the approval request."""

    code: str = "FLAG_NOT_FOUND"

    def __init__(self, batch_number: str, flag_index: int | None):
        self.batch_number = batch_number
        self.flag_index = flag_index
        target = "latest open flag" if flag_index is None else f"flag #{flag_index}"
        super().__init__(f"No {target} to approve on batch {batch_number}")


# Concurrency-related exceptions


class ConcurrencyError(RefineryKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrencyConflictError(ConcurrencyError):
    """
    Optimistic write lost a race against a concurrent writer.

    The caller should retry the whole operation from a fresh read.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, attempts: int = 1):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Concurrency conflict on {entity_type} {entity_id} after "
            f"{attempts} attempt(s): entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(RefineryKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Batch events and recovery pours are immutable from creation; flow
    structure is immutable once the flow leaves draft.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Template catalog exceptions


class TemplateError(RefineryKernelError):
    """Base exception for template catalog errors."""

    code: str = "TEMPLATE_ERROR"


class TemplateNotFoundError(TemplateError):
    """Template id is not present in the catalog."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")
