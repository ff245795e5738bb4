"""Content pipeline state machine.

Orchestrates one run from transcript to scheduled posts:

    IDLE -> INITIALIZING -> CLEANING_TRANSCRIPT -> EXTRACTING_INSIGHTS
         -> REVIEWING_INSIGHTS -> GENERATING_POSTS -> REVIEWING_POSTS
         -> READY_TO_SCHEDULE -> SCHEDULING -> COMPLETED

plus PARTIALLY_COMPLETED, FAILED, PAUSED and CANCELLED.

The review stages are compound states with two regions tracked side by side:
the review-process region (human decisions) and the auto-approval region. The
stage is done when both regions reached their final substate. GENERATING_POSTS
holds a generation region and a monitor region and leaves through a guard
re-evaluated after every event.

``process`` is run-to-completion and pure with respect to its input: it works
on a deep copy of the run and returns the new run with the commands the driver
must act on. Rejected events leave the original run untouched.
"""

from datetime import datetime
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from content_pipeline.config.settings import Settings, get_settings
from content_pipeline.config.templates import (
    STEP_CLEAN,
    STEP_EXTRACT,
    STEP_GENERATE,
    STEP_INIT,
    STEP_REVIEW_INSIGHTS,
    STEP_REVIEW_POSTS,
    STEP_SCHEDULE,
    build_steps,
    merge_template_options,
)
from content_pipeline.models import (
    ACTIVE_STATES,
    RETRYABLE_STATES,
    AllReviewed,
    AttemptSnapshot,
    BlockingItemType,
    BlockingItemsChanged,
    Cancel,
    CleanupResources,
    EntityKind,
    EntityReviewed,
    EntityStatus,
    Pause,
    PipelineCommand,
    PipelineEvent,
    PipelineOptions,
    PipelineRun,
    PipelineState,
    PipelineTemplate,
    ProgressChanged,
    ProgressTick,
    RegionSubstate,
    Resume,
    Retry,
    ReviewDecision,
    RunStageCommand,
    RunTerminal,
    Stage,
    StageFailed,
    StageSucceeded,
    Start,
    StepFailed,
    StepStatus,
    TerminalOutcome,
    utc_now,
)

from .errors import (
    InvalidTransitionError,
    PipelineError,
    RejectionInfo,
    RetryExhaustedError,
    UnknownEntityError,
)
from .ledger import REVIEW_ITEM_TYPES, BlockingItemLedger, intervention_item_id
from .metrics import calculate_run_metrics, elapsed_seconds, run_progress
from .policy import can_retry, should_auto_approve
from .tracker import EntityProgressTracker

logger = structlog.get_logger(__name__)

AUTO_APPROVER = "auto-approval"

# Region names inside compound states
REVIEW_REGION = "review_process"
AUTO_APPROVAL_REGION = "auto_approval"
GENERATION_REGION = "post_generation"
MONITOR_REGION = "progress_monitor"

STAGE_STATES = {
    Stage.CLEAN: PipelineState.CLEANING_TRANSCRIPT,
    Stage.EXTRACT: PipelineState.EXTRACTING_INSIGHTS,
    Stage.GENERATE: PipelineState.GENERATING_POSTS,
    Stage.SCHEDULE: PipelineState.SCHEDULING,
}

STAGE_STEPS = {
    Stage.CLEAN: STEP_CLEAN,
    Stage.EXTRACT: STEP_EXTRACT,
    Stage.GENERATE: STEP_GENERATE,
    Stage.SCHEDULE: STEP_SCHEDULE,
}

STATE_STEPS = {
    PipelineState.INITIALIZING: STEP_INIT,
    PipelineState.CLEANING_TRANSCRIPT: STEP_CLEAN,
    PipelineState.EXTRACTING_INSIGHTS: STEP_EXTRACT,
    PipelineState.REVIEWING_INSIGHTS: STEP_REVIEW_INSIGHTS,
    PipelineState.GENERATING_POSTS: STEP_GENERATE,
    PipelineState.REVIEWING_POSTS: STEP_REVIEW_POSTS,
    PipelineState.SCHEDULING: STEP_SCHEDULE,
}

REVIEW_STATES = {
    PipelineState.REVIEWING_INSIGHTS: EntityKind.INSIGHT,
    PipelineState.REVIEWING_POSTS: EntityKind.POST,
}

AFTER_REVIEW = {
    EntityKind.INSIGHT: PipelineState.GENERATING_POSTS,
    EntityKind.POST: PipelineState.READY_TO_SCHEDULE,
}

# Every state PAUSE may come from, mapped to the state RESUME re-enters.
RESUME_TARGETS = {
    PipelineState.CLEANING_TRANSCRIPT: PipelineState.CLEANING_TRANSCRIPT,
    PipelineState.EXTRACTING_INSIGHTS: PipelineState.EXTRACTING_INSIGHTS,
    PipelineState.REVIEWING_INSIGHTS: PipelineState.REVIEWING_INSIGHTS,
    PipelineState.GENERATING_POSTS: PipelineState.GENERATING_POSTS,
    PipelineState.REVIEWING_POSTS: PipelineState.REVIEWING_POSTS,
    PipelineState.READY_TO_SCHEDULE: PipelineState.READY_TO_SCHEDULE,
    PipelineState.SCHEDULING: PipelineState.SCHEDULING,
}

TERMINAL_OUTCOMES = {
    PipelineState.COMPLETED: TerminalOutcome.COMPLETED,
    PipelineState.PARTIALLY_COMPLETED: TerminalOutcome.PARTIALLY_COMPLETED,
    PipelineState.FAILED: TerminalOutcome.FAILED,
    PipelineState.CANCELLED: TerminalOutcome.CANCELLED,
}


class TransitionResult(BaseModel):
    """Outcome of processing one event."""

    run: PipelineRun
    commands: list[PipelineCommand] = Field(default_factory=list)
    accepted: bool = True
    error: Optional[RejectionInfo] = None
    previous_state: PipelineState
    states_entered: list[PipelineState] = Field(default_factory=list)

    @property
    def state(self) -> PipelineState:
        return self.run.state


class _Macrostep:
    """Mutable scratch space for one run-to-completion step."""

    def __init__(self, run: PipelineRun, now: datetime) -> None:
        self.run = run
        self.now = now
        self.tracker = EntityProgressTracker(run.id, run.insights, run.posts)
        self.ledger = BlockingItemLedger(run.blocking_items)
        self.commands: list[PipelineCommand] = []
        self.terminal_commands: list[PipelineCommand] = []
        self.states_entered: list[PipelineState] = []


class PipelineStateMachine:
    """Stateless transition engine; all state lives on the PipelineRun."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self._clock = clock

    def create_run(
        self,
        transcript_id: str,
        template: Optional[PipelineTemplate | str] = None,
        options: Optional[dict] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        """Create an IDLE run with options merged over the template defaults."""
        template = PipelineTemplate(template or self.settings.default_template)
        fields = {
            "transcript_id": transcript_id,
            "template": template,
            "options": merge_template_options(
                template,
                options,
                default_max_retries=self.settings.default_max_retries,
            ),
            "created_at": self._clock(),
        }
        if run_id:
            fields["id"] = run_id
        return PipelineRun(**fields)

    # -------------------------------------------------------------------------
    # Event processing
    # -------------------------------------------------------------------------

    def process(self, run: PipelineRun, event: PipelineEvent) -> TransitionResult:
        """Apply one event to a run and return the new run plus commands."""
        now = self._clock()
        step = _Macrostep(run.model_copy(deep=True), now)

        try:
            self._dispatch(step, event)
        except PipelineError as exc:
            logger.warning(
                "pipeline_event_rejected",
                run_id=run.id,
                state=run.state.value,
                event_type=event.type,
                code=exc.code,
                reason=exc.message,
            )
            return TransitionResult(
                run=run,
                accepted=False,
                error=RejectionInfo.from_error(exc),
                previous_state=run.state,
            )
        except Exception as exc:
            # An action blew up: never leave the run half-applied
            logger.exception(
                "pipeline_action_failed",
                run_id=run.id,
                state=run.state.value,
                event_type=event.type,
            )
            step = _Macrostep(run.model_copy(deep=True), now)
            self._fail(step, f"{type(exc).__name__}: {exc}")

        return TransitionResult(
            run=step.run,
            commands=self._collect_commands(run, step),
            previous_state=run.state,
            states_entered=step.states_entered,
        )

    def _dispatch(self, step: _Macrostep, event: PipelineEvent) -> None:
        run = step.run
        state = run.state

        if run.is_terminal:
            raise InvalidTransitionError(state.value, event.type, "run is terminal")

        if isinstance(event, Cancel):
            self._cancel(step, event)
            return

        if isinstance(event, Pause) and state in RESUME_TARGETS:
            self._pause(step, event)
            return

        if isinstance(event, StepFailed) and state in ACTIVE_STATES:
            self._step_failed(step, event)
            return

        if isinstance(event, StageSucceeded) and self._is_duplicate_result(run, event):
            logger.info(
                "duplicate_stage_result_ignored",
                run_id=run.id,
                stage=event.stage.value,
                state=state.value,
            )
            return

        if state == PipelineState.IDLE and isinstance(event, Start):
            self._start(step, event)
        elif state == PipelineState.CLEANING_TRANSCRIPT and self._is_stage_event(event, Stage.CLEAN):
            self._on_cleaning_result(step, event)
        elif state == PipelineState.EXTRACTING_INSIGHTS and self._is_stage_event(event, Stage.EXTRACT):
            self._on_extraction_result(step, event)
        elif state in REVIEW_STATES and isinstance(event, (EntityReviewed, AllReviewed)):
            self._on_review_event(step, event)
        elif state == PipelineState.GENERATING_POSTS and self._is_stage_event(event, Stage.GENERATE):
            self._on_generation_result(step, event)
        elif state == PipelineState.GENERATING_POSTS and isinstance(event, ProgressTick):
            self._update_progress(step)
        elif state == PipelineState.READY_TO_SCHEDULE and isinstance(event, Start):
            self._enter(step, PipelineState.SCHEDULING)
        elif state == PipelineState.SCHEDULING and self._is_stage_event(event, Stage.SCHEDULE):
            self._on_scheduling_result(step, event)
        elif state == PipelineState.PAUSED and isinstance(event, Resume):
            self._resume(step)
        elif state in RETRYABLE_STATES and isinstance(event, Retry):
            self._retry(step)
        else:
            raise InvalidTransitionError(state.value, event.type)

    @staticmethod
    def _is_stage_event(event: PipelineEvent, stage: Stage) -> bool:
        return isinstance(event, (StageSucceeded, StageFailed)) and event.stage == stage

    @staticmethod
    def _is_duplicate_result(run: PipelineRun, event: StageSucceeded) -> bool:
        """A success for a stage whose step already completed is a redelivery."""
        if run.state == STAGE_STATES[event.stage]:
            return False
        step = run.get_step(STAGE_STEPS[event.stage])
        return step is not None and step.status == StepStatus.COMPLETED

    # -------------------------------------------------------------------------
    # Control events
    # -------------------------------------------------------------------------

    def _start(self, step: _Macrostep, event: Start) -> None:
        run = step.run
        if event.transcript_id and event.transcript_id != run.transcript_id:
            raise InvalidTransitionError(
                run.state.value, event.type, f"run belongs to transcript {run.transcript_id}"
            )
        if event.options is not None:
            # Only the fields the caller set override the run's options
            merged = run.options.model_dump()
            merged.update(event.options.model_dump(exclude_unset=True))
            run.options = PipelineOptions.model_validate(merged)

        run.started_at = step.now
        run.progress = 0
        self._enter(step, PipelineState.INITIALIZING)

    def _pause(self, step: _Macrostep, event: Pause) -> None:
        run = step.run
        run.paused_from = run.state
        run.paused_at = step.now
        self._enter(step, PipelineState.PAUSED)
        logger.info("pipeline_paused", run_id=run.id, paused_from=run.paused_from.value, reason=event.reason)

    def _resume(self, step: _Macrostep) -> None:
        run = step.run
        target = RESUME_TARGETS.get(run.paused_from) if run.paused_from else None
        if target is None:
            self._fail(step, f"Cannot resume: no resumable state recorded (paused_from={run.paused_from})")
            return

        run.paused_from = None
        run.paused_at = None
        self._enter(step, target)

    def _cancel(self, step: _Macrostep, event: Cancel) -> None:
        step.run.paused_from = None
        # Nobody needs to act on a cancelled run
        step.run.blocking_items.clear()
        self._enter(step, PipelineState.CANCELLED, reason=event.reason)

    def _retry(self, step: _Macrostep) -> None:
        run = step.run
        if not can_retry(run.retry_count, run.options.max_retries):
            raise RetryExhaustedError(run.retry_count, run.options.max_retries)

        run.attempts.append(
            AttemptSnapshot(
                attempt=run.retry_count,
                final_state=run.state,
                error=run.last_error,
                progress=run.progress,
                insights=dict(run.insights),
                posts=dict(run.posts),
                steps=list(run.steps),
                ended_at=run.failed_at or run.completed_at,
            )
        )

        # Whole-pipeline restart: the new attempt starts from empty bookkeeping
        run.insights.clear()
        run.posts.clear()
        run.blocking_items.clear()
        run.steps = []
        run.insight_ids = []
        run.post_ids = []
        run.schedule_input = []
        run.scheduled_post_ids = []
        run.generation_failures = {}
        run.successful_steps = []
        run.failed_steps = []
        run.last_error = None
        run.failed_at = None
        run.completed_at = None
        run.actual_duration = None
        run.metrics = None
        run.progress = 0
        run.retry_count += 1
        run.started_at = step.now

        logger.info("pipeline_retry", run_id=run.id, retry_count=run.retry_count)
        self._enter(step, PipelineState.INITIALIZING)

    def _step_failed(self, step: _Macrostep, event: StepFailed) -> None:
        pipeline_step = step.run.get_step(event.step_id)
        if pipeline_step is None:
            raise InvalidTransitionError(step.run.state.value, event.type, f"unknown step '{event.step_id}'")
        if pipeline_step.status == StepStatus.COMPLETED:
            raise InvalidTransitionError(
                step.run.state.value, event.type, f"step '{event.step_id}' already completed"
            )
        self._fail(step, event.error, step_id=event.step_id)

    # -------------------------------------------------------------------------
    # Linear stages
    # -------------------------------------------------------------------------

    def _on_cleaning_result(self, step: _Macrostep, event: StageSucceeded | StageFailed) -> None:
        if isinstance(event, StageFailed):
            self._fail(step, event.error)
            return
        self._complete_step(step, STEP_CLEAN)
        self._enter(step, PipelineState.EXTRACTING_INSIGHTS)

    def _on_extraction_result(self, step: _Macrostep, event: StageSucceeded | StageFailed) -> None:
        if isinstance(event, StageFailed):
            self._fail(step, event.error)
            return

        run = step.run
        registered = step.tracker.register_batch(event.output_ids, EntityKind.INSIGHT, now=step.now)
        run.insight_ids.extend(registered)
        self._complete_step(step, STEP_EXTRACT)

        if not run.insight_ids:
            logger.info("no_insights_extracted", run_id=run.id)
            self._enter(step, PipelineState.PARTIALLY_COMPLETED, reason="No insights were extracted")
            return
        self._enter(step, PipelineState.REVIEWING_INSIGHTS)

    def _on_scheduling_result(self, step: _Macrostep, event: StageSucceeded | StageFailed) -> None:
        if isinstance(event, StageFailed):
            self._fail(step, event.error)
            return
        step.run.scheduled_post_ids = list(dict.fromkeys(event.output_ids))
        self._complete_step(step, STEP_SCHEDULE)
        self._enter(step, PipelineState.COMPLETED)

    # -------------------------------------------------------------------------
    # Review compound states
    # -------------------------------------------------------------------------

    def _enter_review(self, step: _Macrostep, kind: EntityKind) -> None:
        run = step.run
        run.regions = {
            REVIEW_REGION: RegionSubstate.REVIEWING,
            AUTO_APPROVAL_REGION: RegionSubstate.CHECKING,
        }

        # Review-process region entry
        step.ledger.add_for_review(step.tracker.records(kind), kind, now=step.now)

        # Auto-approval region entry
        if should_auto_approve(run.options, kind):
            run.regions[AUTO_APPROVAL_REGION] = RegionSubstate.AUTO_APPROVING
            self._auto_approve(step, kind)
            run.regions[AUTO_APPROVAL_REGION] = RegionSubstate.COMPLETE
        else:
            run.regions[AUTO_APPROVAL_REGION] = RegionSubstate.WAITING

        self._evaluate_review_regions(step, kind)

    def _auto_approve(self, step: _Macrostep, kind: EntityKind) -> None:
        """Approve every undecided entity through the same path reviewers use."""
        pending = step.tracker.awaiting_decision(kind)
        for entity_id in pending:
            self._resolve_entity(step, kind, entity_id, EntityStatus.APPROVED, AUTO_APPROVER)
        swept = step.ledger.clear_by_type(REVIEW_ITEM_TYPES[kind])
        logger.info(
            "entities_auto_approved",
            run_id=step.run.id,
            kind=kind.value,
            approved=len(pending),
            items_swept=swept,
        )

    def _resolve_entity(
        self,
        step: _Macrostep,
        kind: EntityKind,
        entity_id: str,
        status: EntityStatus,
        reviewer: Optional[str],
    ) -> bool:
        changed = step.tracker.transition(
            entity_id, kind, status, timestamp=step.now, reviewed_by=reviewer
        )
        step.ledger.resolve(entity_id=entity_id, kind=kind, resolved_by=reviewer)
        return changed

    def _on_review_event(self, step: _Macrostep, event: EntityReviewed | AllReviewed) -> None:
        run = step.run
        kind = REVIEW_STATES[run.state]
        if event.kind != kind:
            raise InvalidTransitionError(
                run.state.value, event.type, f"expected {kind.value} events, got {event.kind.value}"
            )

        if isinstance(event, AllReviewed):
            if not step.tracker.all_resolved(kind):
                raise InvalidTransitionError(
                    run.state.value,
                    event.type,
                    f"{len(step.tracker.awaiting_decision(kind))} {kind.value}s still await review",
                )
        else:
            status = (
                EntityStatus.APPROVED
                if event.decision == ReviewDecision.APPROVE
                else EntityStatus.REJECTED
            )
            record = step.tracker.get(event.entity_id, kind)
            if event.reason and status == EntityStatus.REJECTED:
                record.error = event.reason
            self._resolve_entity(step, kind, event.entity_id, status, event.reviewer)

        self._evaluate_review_regions(step, kind)

    def _evaluate_review_regions(self, step: _Macrostep, kind: EntityKind) -> None:
        run = step.run
        regions = run.regions

        if regions[REVIEW_REGION] == RegionSubstate.REVIEWING and step.tracker.all_resolved(kind):
            regions[REVIEW_REGION] = RegionSubstate.REVIEW_COMPLETE

        # Nothing left to auto-approve once every entity has a decision
        if (
            regions[REVIEW_REGION] == RegionSubstate.REVIEW_COMPLETE
            and regions[AUTO_APPROVAL_REGION] == RegionSubstate.WAITING
        ):
            regions[AUTO_APPROVAL_REGION] = RegionSubstate.COMPLETE

        if (
            regions[REVIEW_REGION] == RegionSubstate.REVIEW_COMPLETE
            and regions[AUTO_APPROVAL_REGION] == RegionSubstate.COMPLETE
        ):
            self._complete_review(step, kind)

    def _complete_review(self, step: _Macrostep, kind: EntityKind) -> None:
        run = step.run
        self._complete_step(step, STATE_STEPS[run.state])

        if not step.tracker.approved_ids(kind):
            self._enter(
                step,
                PipelineState.PARTIALLY_COMPLETED,
                reason=f"No {kind.value}s were approved",
            )
            return
        self._enter(step, AFTER_REVIEW[kind])

    # -------------------------------------------------------------------------
    # Post generation compound state
    # -------------------------------------------------------------------------

    def _enter_generation(self, step: _Macrostep) -> None:
        run = step.run
        run.regions = {
            GENERATION_REGION: RegionSubstate.GENERATING,
            MONITOR_REGION: RegionSubstate.MONITORING,
        }

        outstanding = [
            insight_id
            for insight_id in step.tracker.approved_insight_ids_without_posts()
            if insight_id not in run.generation_failures
        ]
        if outstanding:
            step.commands.append(
                RunStageCommand(
                    run_id=run.id,
                    stage=Stage.GENERATE,
                    input_ids=outstanding,
                    platforms=list(run.options.platforms),
                )
            )
        self._evaluate_generation_guard(step)

    def _on_generation_result(self, step: _Macrostep, event: StageSucceeded | StageFailed) -> None:
        run = step.run

        if event.source_id is None:
            if isinstance(event, StageFailed):
                self._fail(step, event.error)
                return
            raise InvalidTransitionError(run.state.value, event.type, "post results need a source insight id")

        insight = step.tracker.get(event.source_id, EntityKind.INSIGHT)
        if insight.status != EntityStatus.APPROVED:
            raise UnknownEntityError(event.source_id, "approved insight")

        if isinstance(event, StageFailed):
            run.generation_failures[event.source_id] = event.error
            step.ledger.add_manual_intervention(
                event.source_id,
                f"Post generation failed for insight {event.source_id}: {event.error}",
                kind=EntityKind.INSIGHT,
                now=step.now,
            )
            logger.warning(
                "post_generation_failed",
                run_id=run.id,
                insight_id=event.source_id,
                error=event.error,
            )
        else:
            registered = step.tracker.register_batch(
                event.output_ids,
                EntityKind.POST,
                parent_id=event.source_id,
                platform=event.platform,
                now=step.now,
            )
            run.post_ids.extend(registered)
            if run.generation_failures.pop(event.source_id, None) is not None:
                step.ledger.resolve(item_id=intervention_item_id(event.source_id))

        self._update_progress(step)
        self._evaluate_generation_guard(step)

    def _evaluate_generation_guard(self, step: _Macrostep) -> None:
        """Leave once every approved insight has posts or a recorded failure."""
        run = step.run
        waiting = [
            insight_id
            for insight_id in step.tracker.approved_insight_ids_without_posts()
            if insight_id not in run.generation_failures
        ]
        if waiting:
            return

        if step.tracker.count(EntityKind.POST) == 0:
            self._fail(step, "Post generation failed for every approved insight", step_id=STEP_GENERATE)
            return
        # Failed insights can no longer be regenerated once the stage is done
        step.ledger.clear_by_type(BlockingItemType.MANUAL_INTERVENTION)
        self._complete_step(step, STEP_GENERATE)
        self._enter(step, PipelineState.REVIEWING_POSTS)

    # -------------------------------------------------------------------------
    # Entry actions
    # -------------------------------------------------------------------------

    def _enter(self, step: _Macrostep, state: PipelineState, reason: Optional[str] = None) -> None:
        run = step.run
        previous = run.state
        run.state = state
        run.regions = {}
        step.states_entered.append(state)
        logger.info(
            "pipeline_transition",
            run_id=run.id,
            from_state=previous.value,
            to_state=state.value,
        )

        if state in STATE_STEPS and state != PipelineState.INITIALIZING:
            self._begin_step(step, STATE_STEPS[state])

        if state == PipelineState.INITIALIZING:
            run.steps = build_steps(run.template)
            self._begin_step(step, STEP_INIT)
            self._complete_step(step, STEP_INIT)
            self._enter(step, PipelineState.CLEANING_TRANSCRIPT)
        elif state == PipelineState.CLEANING_TRANSCRIPT:
            self._command_stage(step, Stage.CLEAN, [run.transcript_id])
        elif state == PipelineState.EXTRACTING_INSIGHTS:
            self._command_stage(step, Stage.EXTRACT, [run.transcript_id])
        elif state in REVIEW_STATES:
            self._enter_review(step, REVIEW_STATES[state])
        elif state == PipelineState.GENERATING_POSTS:
            self._enter_generation(step)
        elif state == PipelineState.READY_TO_SCHEDULE:
            run.current_step = None
            run.schedule_input = step.tracker.approved_ids(EntityKind.POST)
        elif state == PipelineState.SCHEDULING:
            self._command_stage(step, Stage.SCHEDULE, list(run.schedule_input))
        elif state in TERMINAL_OUTCOMES:
            self._enter_outcome(step, state, reason)

    def _enter_outcome(self, step: _Macrostep, state: PipelineState, reason: Optional[str]) -> None:
        run = step.run

        if state == PipelineState.FAILED:
            run.failed_at = step.now
        elif state in (PipelineState.COMPLETED, PipelineState.CANCELLED):
            run.completed_at = step.now

        if state == PipelineState.PARTIALLY_COMPLETED and reason:
            run.last_error = reason

        run.actual_duration = elapsed_seconds(run, step.now)
        if state != PipelineState.FAILED:
            run.metrics = calculate_run_metrics(run, step.now)
        if state == PipelineState.COMPLETED:
            self._update_progress(step)

        retryable = state in RETRYABLE_STATES
        step.terminal_commands.append(
            RunTerminal(
                run_id=run.id,
                outcome=TERMINAL_OUTCOMES[state],
                can_retry=retryable and can_retry(run.retry_count, run.options.max_retries),
                error=reason if state == PipelineState.CANCELLED else run.last_error,
                summary={
                    "insight_count": len(run.insight_ids),
                    "post_count": len(run.post_ids),
                    "scheduled_post_count": len(run.scheduled_post_ids),
                    "retry_count": run.retry_count,
                    "successful_steps": list(run.successful_steps),
                    "failed_steps": list(run.failed_steps),
                    "duration_seconds": run.actual_duration,
                },
            )
        )
        if state in (PipelineState.COMPLETED, PipelineState.CANCELLED):
            step.terminal_commands.append(CleanupResources(run_id=run.id))

    def _command_stage(self, step: _Macrostep, stage: Stage, input_ids: list[str]) -> None:
        step.commands.append(
            RunStageCommand(
                run_id=step.run.id,
                stage=stage,
                input_ids=input_ids,
                platforms=list(step.run.options.platforms),
            )
        )

    # -------------------------------------------------------------------------
    # Steps and progress
    # -------------------------------------------------------------------------

    def _begin_step(self, step: _Macrostep, step_id: str) -> None:
        run = step.run
        run.current_step = step_id
        pipeline_step = run.get_step(step_id)
        if pipeline_step is None or pipeline_step.status == StepStatus.COMPLETED:
            return
        pipeline_step.status = StepStatus.IN_PROGRESS
        if pipeline_step.started_at is None:
            pipeline_step.started_at = step.now

    def _complete_step(self, step: _Macrostep, step_id: str) -> None:
        """Mark a step complete; steps the template lacks are ignored."""
        run = step.run
        pipeline_step = run.get_step(step_id)
        if pipeline_step is None or pipeline_step.status == StepStatus.COMPLETED:
            return
        pipeline_step.status = StepStatus.COMPLETED
        pipeline_step.completed_at = step.now
        pipeline_step.error = None
        run.successful_steps.append(step_id)
        self._update_progress(step)

    def _fail(self, step: _Macrostep, error: str, step_id: Optional[str] = None) -> None:
        run = step.run
        step_id = step_id or run.current_step
        run.last_error = error

        pipeline_step = run.get_step(step_id) if step_id else None
        if pipeline_step is not None:
            pipeline_step.status = StepStatus.FAILED
            pipeline_step.error = error
            pipeline_step.completed_at = step.now
        if step_id and step_id not in run.failed_steps:
            run.failed_steps.append(step_id)

        logger.error("pipeline_failed", run_id=run.id, state=run.state.value, step=step_id, error=error)
        self._enter(step, PipelineState.FAILED)

    def _update_progress(self, step: _Macrostep) -> None:
        step.run.progress = run_progress(step.run)

    # -------------------------------------------------------------------------
    # Outbound notifications
    # -------------------------------------------------------------------------

    def _collect_commands(self, before: PipelineRun, step: _Macrostep) -> list[PipelineCommand]:
        """Stage commands, then change notifications, then terminal commands.

        Notifications compare the run before and after the whole step, so
        intermediate states inside one step are never reported.
        """
        after = step.run
        commands = list(step.commands)

        if [item.id for item in before.blocking_items] != [item.id for item in after.blocking_items]:
            ledger = BlockingItemLedger(after.blocking_items)
            commands.append(
                BlockingItemsChanged(
                    run_id=after.id,
                    count=ledger.count(),
                    by_priority=ledger.by_priority(),
                    item_ids=ledger.ids(),
                )
            )

        if before.progress != after.progress:
            commands.append(
                ProgressChanged(
                    run_id=after.id,
                    percent=after.progress,
                    completed_steps=after.completed_steps,
                    total_steps=after.total_steps,
                )
            )

        commands.extend(step.terminal_commands)
        return commands


def replay(
    machine: PipelineStateMachine,
    run: PipelineRun,
    events: list[PipelineEvent],
) -> tuple[PipelineRun, list[TransitionResult]]:
    """Feed events one by one; handy for drivers rebuilding a run and tests."""
    results = []
    for event in events:
        result = machine.process(run, event)
        results.append(result)
        run = result.run
    return run, results
