"""Errors raised by the pipeline engine.

The ledger and tracker raise these; the state machine catches them at the
run-to-completion boundary and turns them into a rejected transition.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class PipelineError(Exception):
    """Base error for the orchestration engine."""

    code = "pipeline_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidTransitionError(PipelineError):
    """Event is not valid for the run's current state."""

    code = "invalid_transition"

    def __init__(self, state: str, event_type: str, reason: Optional[str] = None) -> None:
        message = f"Event '{event_type}' is not accepted in state '{state}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, state=state, event_type=event_type, reason=reason)
        self.state = state
        self.event_type = event_type


class UnknownEntityError(PipelineError):
    """Event references an entity the run does not track."""

    code = "unknown_entity"

    def __init__(self, entity_id: str, kind: str) -> None:
        super().__init__(f"Unknown {kind} '{entity_id}'", entity_id=entity_id, kind=kind)
        self.entity_id = entity_id
        self.kind = kind


class EntityTransitionError(PipelineError):
    """Entity status change would move backwards."""

    code = "entity_transition"

    def __init__(self, entity_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move entity '{entity_id}' from {current} to {requested}",
            entity_id=entity_id,
            current=current,
            requested=requested,
        )
        self.entity_id = entity_id
        self.current = current
        self.requested = requested


class RetryExhaustedError(PipelineError):
    """RETRY arrived after max_retries attempts."""

    code = "retry_exhausted"

    def __init__(self, retry_count: int, max_retries: int) -> None:
        super().__init__(
            f"Retry limit reached ({retry_count}/{max_retries})",
            retry_count=retry_count,
            max_retries=max_retries,
        )
        self.retry_count = retry_count
        self.max_retries = max_retries


class RunNotFoundError(PipelineError):
    """The runner has no run with the given id."""

    code = "run_not_found"

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Pipeline run '{run_id}' not found", run_id=run_id)
        self.run_id = run_id


class RejectionInfo(BaseModel):
    """Structured description of a rejected event."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: PipelineError) -> "RejectionInfo":
        return cls(
            code=error.code,
            message=error.message,
            details={k: v for k, v in error.details.items() if v is not None},
        )
