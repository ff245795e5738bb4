"""Pipeline run aggregate and the records it owns.

A PipelineRun owns its entity records, blocking items and steps for its whole
lifetime. Nothing in here is shared between runs; the state machine works on a
deep copy of the run for every event.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from .enums import (
    TERMINAL_STATES,
    BlockingItemType,
    EntityKind,
    EntityStatus,
    PipelineState,
    PipelineTemplate,
    Priority,
    RegionSubstate,
    StepStatus,
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_run_id() -> str:
    """Generate a unique pipeline run id."""
    return f"pipeline-{uuid.uuid4().hex[:12]}"


class PipelineOptions(BaseModel):
    """Per-run behaviour switches, seeded from the template."""

    auto_approve: bool = Field(default=False, description="Approve every review automatically")
    skip_insight_review: bool = Field(default=False, description="Auto-approve insights only")
    skip_post_review: bool = Field(default=False, description="Auto-approve posts only")
    platforms: list[str] = Field(
        default_factory=lambda: ["linkedin", "x"],
        description="Platforms posts are generated for",
    )
    max_retries: int = Field(default=3, ge=0, description="Maximum RETRY attempts")
    parallel_insights: int = Field(default=3, ge=1, description="Concurrent insight jobs hint")
    parallel_posts: int = Field(default=5, ge=1, description="Concurrent post jobs hint")
    notify_on_completion: bool = True
    notify_on_failure: bool = True


class PipelineStep(BaseModel):
    """One entry of the ordered step list used for progress."""

    id: str = Field(..., description="Step id (init, clean, extract, ...)")
    name: str = Field(..., description="Human readable step name")
    status: StepStatus = StepStatus.PENDING
    estimated_duration: float = Field(default=0.0, ge=0, description="Seconds")
    required: bool = True
    parallel: bool = False
    retry_count: int = Field(default=0, ge=0)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class EntityProcessingRecord(BaseModel):
    """Processing state of one insight or post within a run."""

    id: str = Field(..., description="Insight or post id")
    pipeline_id: str = Field(..., description="Owning run")
    kind: EntityKind
    status: EntityStatus = EntityStatus.PENDING
    parent_id: Optional[str] = Field(None, description="Insight a post was generated from")
    platform: Optional[str] = Field(None, description="Target platform of a post")
    retry_count: int = Field(default=0, ge=0)
    error: Optional[str] = None
    reviewed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class BlockingItem(BaseModel):
    """A unit of required human attention that gates the run."""

    id: str
    type: BlockingItemType
    entity_id: str
    entity_kind: Optional[EntityKind] = None
    priority: Priority = Priority.MEDIUM
    description: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None


class PipelineMetrics(BaseModel):
    """Snapshot of run performance. Durations are in seconds."""

    transcript_processing_time: float = Field(default=0.0, ge=0)
    insight_extraction_time: float = Field(default=0.0, ge=0)
    average_insight_review_time: float = Field(default=0.0, ge=0)
    post_generation_time: float = Field(default=0.0, ge=0)
    average_post_review_time: float = Field(default=0.0, ge=0)
    total_processing_time: float = Field(default=0.0, ge=0)
    success_rate: float = Field(default=0.0, ge=0, le=100)
    failure_rate: float = Field(default=0.0, ge=0, le=100)
    insight_count: int = Field(default=0, ge=0)
    post_count: int = Field(default=0, ge=0)
    approved_insight_count: int = Field(default=0, ge=0)
    approved_post_count: int = Field(default=0, ge=0)


class AttemptSnapshot(BaseModel):
    """Bookkeeping of an attempt that was discarded by RETRY."""

    attempt: int = Field(..., ge=0)
    final_state: PipelineState
    error: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    insights: dict[str, EntityProcessingRecord] = Field(default_factory=dict)
    posts: dict[str, EntityProcessingRecord] = Field(default_factory=dict)
    steps: list[PipelineStep] = Field(default_factory=list)
    ended_at: Optional[datetime] = None


class PipelineRun(BaseModel):
    """One execution of the workflow for one transcript."""

    id: str = Field(default_factory=generate_run_id)
    transcript_id: str = Field(..., min_length=1)
    state: PipelineState = PipelineState.IDLE
    template: PipelineTemplate = PipelineTemplate.STANDARD
    options: PipelineOptions = Field(default_factory=PipelineOptions)

    retry_count: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0, le=100)
    current_step: Optional[str] = None
    paused_from: Optional[PipelineState] = Field(
        None, description="State that was active when PAUSE arrived"
    )
    regions: dict[str, RegionSubstate] = Field(
        default_factory=dict, description="Substate per region of the active compound state"
    )

    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    actual_duration: Optional[float] = Field(None, ge=0, description="Seconds")
    last_error: Optional[str] = None
    metrics: Optional[PipelineMetrics] = None

    # Owned collections, mutated only through the tracker and ledger
    insights: dict[str, EntityProcessingRecord] = Field(default_factory=dict)
    posts: dict[str, EntityProcessingRecord] = Field(default_factory=dict)
    blocking_items: list[BlockingItem] = Field(default_factory=list)
    steps: list[PipelineStep] = Field(default_factory=list)

    insight_ids: list[str] = Field(default_factory=list)
    post_ids: list[str] = Field(default_factory=list)
    schedule_input: list[str] = Field(default_factory=list)
    scheduled_post_ids: list[str] = Field(default_factory=list)
    generation_failures: dict[str, str] = Field(default_factory=dict)
    successful_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    attempts: list[AttemptSnapshot] = Field(default_factory=list)

    @property
    def completed_steps(self) -> int:
        return sum(1 for step in self.steps if step.status == StepStatus.COMPLETED)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def get_step(self, step_id: str) -> Optional[PipelineStep]:
        """Return the step with the given id, if the template has it."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
