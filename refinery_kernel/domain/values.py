"""
Domain value enums shared by the pure core, the ORM models and the services.

Architecture position:
    Kernel > Domain -- pure values, zero I/O.  Models import these enums so
    that the domain and the persistence layer agree on one spelling of each
    status.
"""

from enum import Enum, unique


@unique
class Pipeline(str, Enum):
    """Built-in refining pipelines.

    The set is extensible: configuration may add pipelines, so columns store
    plain strings and services validate against the configured tuple.
    """

    COPPER = "copper"
    SILVER = "silver"
    GOLD = "gold"


@unique
class FlowStatus(str, Enum):
    """Lifecycle status of a flow version.

    Contract: DRAFT -> ACTIVE -> ARCHIVED.  ACTIVE may return to DRAFT on
    deactivation only while no batch has ever referenced the version.
    """

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


@unique
class NodeKind(str, Enum):
    """Kind of node in a flow graph."""

    STATION = "station"
    CHECK = "check"


@unique
class BatchStatus(str, Enum):
    """Lifecycle status of a batch.  COMPLETED is terminal."""

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"


@unique
class BatchPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@unique
class FlagType(str, Enum):
    """Exception categories an operator (or the calculator) may raise."""

    OUT_OF_TOLERANCE = "out_of_tolerance"
    EQUIPMENT_ISSUE = "equipment_issue"
    QUALITY_CONCERN = "quality_concern"
    SAFETY_INCIDENT = "safety_incident"
    OTHER = "other"


@unique
class BatchEventType(str, Enum):
    BATCH_CREATED = "batch_created"
    BATCH_STARTED = "batch_started"
    STEP_COMPLETED = "step_completed"
    BATCH_COMPLETED = "batch_completed"
    EXCEPTION_FLAGGED = "exception_flagged"
    EXCEPTION_APPROVED = "exception_approved"
    PRIORITY_CHANGED = "priority_changed"
    BATCH_REASSIGNED = "batch_reassigned"


@unique
class ExpectedOutputSource(str, Enum):
    """Where a batch's expected_output_g came from."""

    CAPTURED = "captured"
    ASSUMED = "assumed"


# current_node_id of a completed batch
TERMINAL_NODE_ID = "__end__"
