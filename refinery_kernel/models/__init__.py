"""SQLAlchemy models for the refinery kernel."""

from refinery_kernel.models.batch import Batch, BatchFlag, RecoveryPour
from refinery_kernel.models.batch_event import BatchEvent
from refinery_kernel.models.flow import Flow
from refinery_kernel.models.template import StepTemplate

__all__ = [
    "Batch",
    "BatchEvent",
    "BatchFlag",
    "Flow",
    "RecoveryPour",
    "StepTemplate",
]
