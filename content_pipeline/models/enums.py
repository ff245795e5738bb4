"""Enumeration types for the pipeline models."""

from enum import Enum


class PipelineState(str, Enum):
    """Top-level states of a pipeline run."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    CLEANING_TRANSCRIPT = "cleaning_transcript"
    EXTRACTING_INSIGHTS = "extracting_insights"
    REVIEWING_INSIGHTS = "reviewing_insights"
    GENERATING_POSTS = "generating_posts"
    REVIEWING_POSTS = "reviewing_posts"
    READY_TO_SCHEDULE = "ready_to_schedule"
    SCHEDULING = "scheduling"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PipelineTemplate(str, Enum):
    """Named configuration bundles."""

    STANDARD = "standard"
    FAST_TRACK = "fast_track"
    PODCAST = "podcast"
    VIDEO = "video"
    ARTICLE = "article"
    CUSTOM = "custom"


class Stage(str, Enum):
    """Stages whose work is executed by the external driver."""

    CLEAN = "clean"
    EXTRACT = "extract"
    GENERATE = "generate"
    SCHEDULE = "schedule"


class EntityKind(str, Enum):
    """Kinds of entities tracked per run."""

    INSIGHT = "insight"
    POST = "post"


class EntityStatus(str, Enum):
    """Processing status of an insight or post.

    WORKING stands for "extracting" on insights and "generating" on posts.
    """

    PENDING = "pending"
    WORKING = "working"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a pipeline step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class BlockingItemType(str, Enum):
    """Kinds of human attention that gate progress."""

    INSIGHT_REVIEW = "insight_review"
    POST_REVIEW = "post_review"
    MANUAL_INTERVENTION = "manual_intervention"


class Priority(str, Enum):
    """Blocking item priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewDecision(str, Enum):
    """Reviewer decision on one entity."""

    APPROVE = "approve"
    REJECT = "reject"


class RegionSubstate(str, Enum):
    """Substates of the parallel regions inside compound states."""

    # review-process region
    REVIEWING = "reviewing"
    REVIEW_COMPLETE = "review_complete"
    # auto-approval region
    CHECKING = "checking"
    AUTO_APPROVING = "auto_approving"
    WAITING = "waiting"
    COMPLETE = "complete"
    # post generation compound state
    GENERATING = "generating"
    MONITORING = "monitoring"


class TerminalOutcome(str, Enum):
    """Outcome reported when a run stops making progress on its own."""

    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Urgency(str, Enum):
    """Urgency hint used for template recommendation."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


TERMINAL_STATES = frozenset({PipelineState.COMPLETED, PipelineState.CANCELLED})

RETRYABLE_STATES = frozenset({PipelineState.FAILED, PipelineState.PARTIALLY_COMPLETED})

ACTIVE_STATES = frozenset(
    {
        PipelineState.INITIALIZING,
        PipelineState.CLEANING_TRANSCRIPT,
        PipelineState.EXTRACTING_INSIGHTS,
        PipelineState.REVIEWING_INSIGHTS,
        PipelineState.GENERATING_POSTS,
        PipelineState.REVIEWING_POSTS,
        PipelineState.READY_TO_SCHEDULE,
        PipelineState.SCHEDULING,
    }
)

# Statuses that still need a human (or auto-approval) decision.
AWAITING_DECISION = frozenset(
    {EntityStatus.PENDING, EntityStatus.WORKING, EntityStatus.REVIEWING}
)

RESOLVED_STATUSES = frozenset(
    {EntityStatus.APPROVED, EntityStatus.REJECTED, EntityStatus.FAILED}
)
