"""Services for the refinery kernel (write side)."""

from refinery_kernel.services.batch_service import BatchService
from refinery_kernel.services.flow_service import FlowService
from refinery_kernel.services.step_completion_service import StepCompletionService

__all__ = [
    "BatchService",
    "FlowService",
    "StepCompletionService",
]
