"""Pydantic data models for the pipeline."""

from .enums import (
    ACTIVE_STATES,
    AWAITING_DECISION,
    RESOLVED_STATUSES,
    RETRYABLE_STATES,
    TERMINAL_STATES,
    BlockingItemType,
    EntityKind,
    EntityStatus,
    PipelineState,
    PipelineTemplate,
    Priority,
    RegionSubstate,
    ReviewDecision,
    Stage,
    StepStatus,
    TerminalOutcome,
    Urgency,
)
from .pipeline import (
    AttemptSnapshot,
    BlockingItem,
    EntityProcessingRecord,
    PipelineMetrics,
    PipelineOptions,
    PipelineRun,
    PipelineStep,
    generate_run_id,
    utc_now,
)
from .events import (
    AllReviewed,
    Cancel,
    EntityReviewed,
    Pause,
    PipelineEvent,
    ProgressTick,
    Resume,
    Retry,
    StageFailed,
    StageSucceeded,
    Start,
    StepFailed,
    parse_event,
)
from .commands import (
    BlockingItemsChanged,
    CleanupResources,
    PipelineCommand,
    ProgressChanged,
    RunStageCommand,
    RunTerminal,
)

__all__ = [
    # Enums
    "PipelineState",
    "PipelineTemplate",
    "Stage",
    "EntityKind",
    "EntityStatus",
    "StepStatus",
    "BlockingItemType",
    "Priority",
    "ReviewDecision",
    "RegionSubstate",
    "TerminalOutcome",
    "Urgency",
    "ACTIVE_STATES",
    "AWAITING_DECISION",
    "RESOLVED_STATUSES",
    "RETRYABLE_STATES",
    "TERMINAL_STATES",
    # Run aggregate
    "PipelineOptions",
    "PipelineStep",
    "EntityProcessingRecord",
    "BlockingItem",
    "PipelineMetrics",
    "AttemptSnapshot",
    "PipelineRun",
    "generate_run_id",
    "utc_now",
    # Inbound events
    "Start",
    "Pause",
    "Resume",
    "Cancel",
    "Retry",
    "StageSucceeded",
    "StageFailed",
    "EntityReviewed",
    "AllReviewed",
    "StepFailed",
    "ProgressTick",
    "PipelineEvent",
    "parse_event",
    # Outbound commands
    "RunStageCommand",
    "BlockingItemsChanged",
    "ProgressChanged",
    "RunTerminal",
    "CleanupResources",
    "PipelineCommand",
]
