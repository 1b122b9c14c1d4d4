"""
Pure domain layer.

Flow graphs, the batch lifecycle rules, the analytics calculator and the
DTOs that cross the service boundary.  Nothing here touches a session or a
database; time comes from an injected Clock.
"""

from refinery_kernel.domain.analytics import (
    ANALYTICS_RULES,
    AnalyticsCalculator,
    AnalyticsRule,
    ftt_recovery_percent,
)
from refinery_kernel.domain.batch_lifecycle import (
    ALLOWED_TRANSITIONS,
    can_transition,
    resolve_next_node,
)
from refinery_kernel.domain.business_hours import business_hours
from refinery_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from refinery_kernel.domain.dtos import (
    Actor,
    BatchInfo,
    EventRecord,
    FlowInfo,
    StepCompletion,
    StepOutcome,
    TurnaroundReport,
    YtdSummary,
)
from refinery_kernel.domain.flow_graph import (
    FlowEdge,
    FlowGraph,
    FlowNode,
    is_terminal,
    next_nodes,
    validate,
)
from refinery_kernel.domain.templates import (
    CachedTemplateCatalog,
    InMemoryTemplateCatalog,
    TemplateCatalog,
    TemplateInfo,
    TemplateType,
    ToleranceUnit,
)
from refinery_kernel.domain.values import (
    TERMINAL_NODE_ID,
    BatchEventType,
    BatchPriority,
    BatchStatus,
    FlagType,
    FlowStatus,
    NodeKind,
    Pipeline,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ANALYTICS_RULES",
    "Actor",
    "AnalyticsCalculator",
    "AnalyticsRule",
    "BatchEventType",
    "BatchInfo",
    "BatchPriority",
    "BatchStatus",
    "CachedTemplateCatalog",
    "Clock",
    "DeterministicClock",
    "EventRecord",
    "FlagType",
    "FlowEdge",
    "FlowGraph",
    "FlowInfo",
    "FlowNode",
    "FlowStatus",
    "InMemoryTemplateCatalog",
    "NodeKind",
    "Pipeline",
    "StepCompletion",
    "StepOutcome",
    "SystemClock",
    "TERMINAL_NODE_ID",
    "TemplateCatalog",
    "TemplateInfo",
    "TemplateType",
    "ToleranceUnit",
    "TurnaroundReport",
    "YtdSummary",
    "business_hours",
    "can_transition",
    "ftt_recovery_percent",
    "is_terminal",
    "next_nodes",
    "resolve_next_node",
    "validate",
]
