"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service in the kernel.  Concrete services receive a
    SQLAlchemy ``Session`` and persist with ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell.  StepCompletionService is the one
    exception: it owns its unit of work and therefore takes a session
    factory instead of a session.

Invariants enforced:
    - Services flush within the caller's transaction and never commit or
      roll back themselves.  The caller (StepCompletionService,
      session_scope(), or the test harness) owns commit/rollback.

Failure modes:
    - A subclass that commits breaks the all-or-nothing guarantee of step
      completion.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from refinery_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel write services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read models -- those belong in
          ``refinery_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
