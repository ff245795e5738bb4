"""Outbound commands the state machine asks the driver to act on."""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from .enums import Priority, Stage, TerminalOutcome


class RunStageCommand(BaseModel):
    """Ask the driver to execute a stage and report back exactly once."""

    type: Literal["run_stage"] = "run_stage"
    run_id: str
    stage: Stage
    input_ids: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)


class BlockingItemsChanged(BaseModel):
    type: Literal["blocking_items_changed"] = "blocking_items_changed"
    run_id: str
    count: int = Field(..., ge=0)
    by_priority: dict[Priority, int] = Field(default_factory=dict)
    item_ids: list[str] = Field(default_factory=list)


class ProgressChanged(BaseModel):
    type: Literal["progress_changed"] = "progress_changed"
    run_id: str
    percent: int = Field(..., ge=0, le=100)
    completed_steps: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)


class RunTerminal(BaseModel):
    """The run stopped on its own: completed, partial, failed or cancelled."""

    type: Literal["run_terminal"] = "run_terminal"
    run_id: str
    outcome: TerminalOutcome
    can_retry: bool = False
    error: Optional[str] = None
    summary: dict[str, Any] = Field(default_factory=dict)


class CleanupResources(BaseModel):
    type: Literal["cleanup_resources"] = "cleanup_resources"
    run_id: str


PipelineCommand = Annotated[
    Union[RunStageCommand, BlockingItemsChanged, ProgressChanged, RunTerminal, CleanupResources],
    Field(discriminator="type"),
]
