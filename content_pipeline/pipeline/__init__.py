"""Orchestration engine: state machine, bookkeeping, metrics and runner."""

from .errors import (
    EntityTransitionError,
    InvalidTransitionError,
    PipelineError,
    RejectionInfo,
    RetryExhaustedError,
    RunNotFoundError,
    UnknownEntityError,
)
from .ledger import BlockingItemLedger, intervention_item_id, review_item_id
from .tracker import EntityProgressTracker
from .policy import can_retry, recommend_template, should_auto_approve
from .metrics import (
    BlockingSummary,
    HistoricalMetrics,
    PerformanceRecommendation,
    RunHistory,
    StepMetrics,
    TrendPoint,
    blocking_summary,
    calculate_progress,
    calculate_run_metrics,
    estimate_completion,
    historical_metrics,
    performance_recommendations,
    performance_trend,
    step_duration,
    step_metrics,
)
from .machine import PipelineStateMachine, TransitionResult, replay
from .runner import PipelineRunner, run_concurrently

__all__ = [
    # Errors
    "PipelineError",
    "InvalidTransitionError",
    "UnknownEntityError",
    "EntityTransitionError",
    "RetryExhaustedError",
    "RunNotFoundError",
    "RejectionInfo",
    # Bookkeeping
    "BlockingItemLedger",
    "intervention_item_id",
    "review_item_id",
    "EntityProgressTracker",
    # Policy
    "should_auto_approve",
    "can_retry",
    "recommend_template",
    # Metrics
    "calculate_progress",
    "calculate_run_metrics",
    "estimate_completion",
    "historical_metrics",
    "step_duration",
    "blocking_summary",
    "performance_recommendations",
    "step_metrics",
    "performance_trend",
    "HistoricalMetrics",
    "PerformanceRecommendation",
    "StepMetrics",
    "TrendPoint",
    "BlockingSummary",
    "RunHistory",
    # Engine
    "PipelineStateMachine",
    "TransitionResult",
    "replay",
    "PipelineRunner",
    "run_concurrently",
]
