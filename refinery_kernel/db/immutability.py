"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The batch event log is the record auditors and supervisors read back when a
yield figure is questioned.  Recovery pours are the weighed facts behind
every recovery percentage.  Neither may be edited after the fact; a
correction is a new event.

A flow version that has left DRAFT is the process definition batches are
pinned to.  Editing its nodes or edges would silently change the meaning of
every completed_node_ids list recorded against it.

A completed batch is closed, except for administrative reassignment.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements are emitted:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete] --> _check_*_delete() ---------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

The transaction is aborted on violation; the database is never modified.
Bulk Core statements (``session.execute(update(...))``) bypass these
listeners, as do the table cleanups in the test suite.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity        | When Immutable                 | Mutable fields
--------------|--------------------------------|-----------------------------
BatchEvent    | ALWAYS (from creation)         | none
RecoveryPour  | ALWAYS (from creation)         | none
Flow          | After status leaves DRAFT      | status, lifecycle stamps
Batch         | After status = COMPLETED       | assigned_to, event sequence

===============================================================================
USAGE
===============================================================================

    from refinery_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    # ... do forbidden operation ...
    register_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from refinery_kernel.exceptions import ImmutabilityViolationError
from refinery_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Flow columns that define the process graph
FLOW_STRUCTURAL_FIELDS = frozenset(
    {"flow_id", "version", "pipeline", "nodes", "edges", "entry_node_id"}
)

# Batch columns that may still change after completion
BATCH_POST_COMPLETION_FIELDS = frozenset(
    {"assigned_to", "last_event_sequence", "version_id", "updated_at"}
)


def _status_before_flush(target) -> str | None:
    """
    The status the row had before the pending change, as a plain string.

    If status is changing, history.deleted holds the old value; if it is
    unchanged, the current value is the old value.
    """
    history = get_history(target, "status")
    if history.deleted:
        old = history.deleted[0]
    elif not history.added:
        old = target.status
    else:
        return None
    return getattr(old, "value", old)


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _has_column_changes(target) -> bool:
    insp = inspect(target)
    return any(
        insp.attrs[attr.key].history.has_changes()
        for attr in insp.mapper.column_attrs
    )


def _check_batch_event_immutability(mapper, connection, target):
    if _has_column_changes(target):
        _block("BatchEvent", target, "UPDATE", "batch events are append-only")


def _check_batch_event_delete(mapper, connection, target):
    _block("BatchEvent", target, "DELETE", "batch events cannot be deleted")


def _check_recovery_pour_immutability(mapper, connection, target):
    if _has_column_changes(target):
        _block("RecoveryPour", target, "UPDATE", "recovery pours are immutable")


def _check_recovery_pour_delete(mapper, connection, target):
    _block("RecoveryPour", target, "DELETE", "recovery pours cannot be deleted")


def _check_flow_structural_immutability(mapper, connection, target):
    """
    Block structural edits of a flow that is no longer a draft.

    The DRAFT -> ACTIVE transition itself is allowed, including structural
    edits flushed together with it, because the OLD status is still draft.
    """
    if _status_before_flush(target) in (None, "draft"):
        return

    insp = inspect(target)
    for field in FLOW_STRUCTURAL_FIELDS:
        if insp.attrs[field].history.has_changes():
            _block(
                "Flow",
                target,
                "UPDATE",
                f"Cannot modify field '{field}' on a flow that has left draft",
            )


def _check_batch_completed_immutability(mapper, connection, target):
    if _status_before_flush(target) != "completed":
        return

    insp = inspect(target)
    for attr in insp.mapper.column_attrs:
        if attr.key in BATCH_POST_COMPLETION_FIELDS:
            continue
        if insp.attrs[attr.key].history.has_changes():
            _block(
                "Batch",
                target,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on a completed batch",
            )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Registering twice is harmless.
    """
    from refinery_kernel.models.batch import Batch, RecoveryPour
    from refinery_kernel.models.batch_event import BatchEvent
    from refinery_kernel.models.flow import Flow

    for target, event_name, listener_fn in _listeners(
        Batch, BatchEvent, Flow, RecoveryPour
    ):
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    from refinery_kernel.models.batch import Batch, RecoveryPour
    from refinery_kernel.models.batch_event import BatchEvent
    from refinery_kernel.models.flow import Flow

    for target, event_name, listener_fn in _listeners(
        Batch, BatchEvent, Flow, RecoveryPour
    ):
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)


def _listeners(Batch, BatchEvent, Flow, RecoveryPour):
    return (
        (BatchEvent, "before_update", _check_batch_event_immutability),
        (BatchEvent, "before_delete", _check_batch_event_delete),
        (RecoveryPour, "before_update", _check_recovery_pour_immutability),
        (RecoveryPour, "before_delete", _check_recovery_pour_delete),
        (Flow, "before_update", _check_flow_structural_immutability),
        (Batch, "before_update", _check_batch_completed_immutability),
    )
