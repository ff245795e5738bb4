"""Inbound events delivered by the driver to a pipeline run."""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from .enums import EntityKind, ReviewDecision, Stage
from .pipeline import PipelineOptions


class Start(BaseModel):
    """Start a run, or release READY_TO_SCHEDULE into SCHEDULING."""

    type: Literal["start"] = "start"
    transcript_id: Optional[str] = None
    options: Optional[PipelineOptions] = None


class Pause(BaseModel):
    type: Literal["pause"] = "pause"
    reason: Optional[str] = None


class Resume(BaseModel):
    type: Literal["resume"] = "resume"


class Cancel(BaseModel):
    type: Literal["cancel"] = "cancel"
    reason: Optional[str] = None


class Retry(BaseModel):
    type: Literal["retry"] = "retry"


class StageSucceeded(BaseModel):
    """External stage work finished.

    For the generate stage ``source_id`` names the insight the posts were
    generated from; the event may arrive once per insight in any order. Posts
    reported after the last approved insight got its first post are treated
    as a redelivery, so a worker should report all of an insight's posts
    together.
    """

    type: Literal["stage_succeeded"] = "stage_succeeded"
    stage: Stage
    output_ids: list[str] = Field(default_factory=list)
    source_id: Optional[str] = None
    platform: Optional[str] = None


class StageFailed(BaseModel):
    type: Literal["stage_failed"] = "stage_failed"
    stage: Stage
    error: str = "Unknown error"
    source_id: Optional[str] = None


class EntityReviewed(BaseModel):
    """A reviewer approved or rejected one insight or post."""

    type: Literal["entity_reviewed"] = "entity_reviewed"
    entity_id: str = Field(..., min_length=1)
    kind: EntityKind
    decision: ReviewDecision
    reviewer: Optional[str] = None
    reason: Optional[str] = None


class AllReviewed(BaseModel):
    type: Literal["all_reviewed"] = "all_reviewed"
    kind: EntityKind


class StepFailed(BaseModel):
    type: Literal["step_failed"] = "step_failed"
    step_id: str = Field(..., min_length=1)
    error: str = "Unknown error"


class ProgressTick(BaseModel):
    """Progress refresh from the post generation monitor."""

    type: Literal["progress_tick"] = "progress_tick"


PipelineEvent = Annotated[
    Union[
        Start,
        Pause,
        Resume,
        Cancel,
        Retry,
        StageSucceeded,
        StageFailed,
        EntityReviewed,
        AllReviewed,
        StepFailed,
        ProgressTick,
    ],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(PipelineEvent)


def parse_event(data: dict[str, Any]) -> PipelineEvent:
    """Validate a raw event payload into its typed event model.

    Raises:
        pydantic.ValidationError: If the payload is not a known event.
    """
    return _event_adapter.validate_python(data)
