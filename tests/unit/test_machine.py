"""Unit tests for the pipeline state machine."""

import pytest

from content_pipeline.config.settings import Settings
from content_pipeline.models import (
    AllReviewed,
    BlockingItemsChanged,
    BlockingItemType,
    Cancel,
    CleanupResources,
    EntityKind,
    EntityReviewed,
    EntityStatus,
    Pause,
    PipelineOptions,
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
)
from content_pipeline.pipeline import (
    PipelineStateMachine,
    calculate_progress,
    intervention_item_id,
    replay,
)
from content_pipeline.pipeline.machine import AUTO_APPROVAL_REGION, REVIEW_REGION


def review(kind, decision, *ids):
    return [EntityReviewed(entity_id=i, kind=kind, decision=decision, reviewer="ana") for i in ids]


def approve_insights(*ids):
    return review(EntityKind.INSIGHT, ReviewDecision.APPROVE, *ids)


def approve_posts(*ids):
    return review(EntityKind.POST, ReviewDecision.APPROVE, *ids)


def generated(insight_id, *post_ids, platform="linkedin"):
    return StageSucceeded(
        stage=Stage.GENERATE,
        source_id=insight_id,
        platform=platform,
        output_ids=list(post_ids),
    )


def to_reviewing_insights(machine, run, ids=("i1", "i2")):
    run, _ = replay(
        machine,
        run,
        [
            Start(),
            StageSucceeded(stage=Stage.CLEAN, output_ids=["transcript-1"]),
            StageSucceeded(stage=Stage.EXTRACT, output_ids=list(ids)),
        ],
    )
    return run


def to_generating(machine, run):
    run = to_reviewing_insights(machine, run)
    run, _ = replay(machine, run, approve_insights("i1", "i2"))
    return run


def to_reviewing_posts(machine, run):
    run = to_generating(machine, run)
    run, _ = replay(machine, run, [generated("i1", "p1"), generated("i2", "p2")])
    return run


def to_ready_to_schedule(machine, run):
    run = to_reviewing_posts(machine, run)
    run, _ = replay(machine, run, approve_posts("p1", "p2"))
    return run


def commands_of(result, command_type):
    return [c for c in result.commands if isinstance(c, command_type)]


class TestCreateRun:
    """Tests for creating runs."""

    def test_new_run_is_idle_with_template_options(self, machine, start_time):
        run = machine.create_run("transcript-9", template=PipelineTemplate.FAST_TRACK)

        assert run.state == PipelineState.IDLE
        assert run.created_at == start_time
        assert run.options.skip_insight_review
        assert run.options.max_retries == 2

    def test_settings_supply_default_template_and_retry_limit(self, clock):
        settings = Settings(_env_file=None, default_template=PipelineTemplate.VIDEO, default_max_retries=1)
        machine = PipelineStateMachine(settings=settings, clock=clock)

        run = machine.create_run("transcript-9")

        assert run.template == PipelineTemplate.VIDEO
        assert run.options.max_retries == 1


class TestStart:
    """Tests for starting a run."""

    def test_start_runs_initialization_and_requests_cleaning(self, machine, run, start_time):
        result = machine.process(run, Start())

        assert result.accepted
        assert result.state == PipelineState.CLEANING_TRANSCRIPT
        assert result.states_entered == [
            PipelineState.INITIALIZING,
            PipelineState.CLEANING_TRANSCRIPT,
        ]
        assert result.run.started_at == start_time
        assert result.run.get_step("init").status == StepStatus.COMPLETED
        assert result.run.get_step("clean").status == StepStatus.IN_PROGRESS

        stage_commands = commands_of(result, RunStageCommand)
        assert len(stage_commands) == 1
        assert stage_commands[0].stage == Stage.CLEAN
        assert stage_commands[0].input_ids == ["transcript-1"]

    def test_start_options_merge_over_template_options(self, clock):
        settings = Settings(_env_file=None, default_max_retries=7)
        machine = PipelineStateMachine(settings=settings, clock=clock)
        run = machine.create_run("transcript-1", template=PipelineTemplate.FAST_TRACK)

        result = machine.process(run, Start(options=PipelineOptions(platforms=["linkedin"])))

        options = result.run.options
        assert options.platforms == ["linkedin"]
        assert options.skip_insight_review
        assert options.max_retries == 2
        assert options.parallel_posts == 10

    def test_start_options_keep_options_given_at_creation(self, machine):
        run = machine.create_run("transcript-1", options={"auto_approve": True})

        result = machine.process(run, Start(options=PipelineOptions(max_retries=1)))

        assert result.run.options.auto_approve
        assert result.run.options.max_retries == 1

    def test_fast_track_start_with_options_skips_insight_review(self, machine):
        run = machine.create_run("transcript-1", template=PipelineTemplate.FAST_TRACK)

        run, _ = replay(
            machine,
            run,
            [
                Start(options=PipelineOptions(platforms=["linkedin"])),
                StageSucceeded(stage=Stage.CLEAN),
                StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1"]),
            ],
        )

        assert run.state == PipelineState.GENERATING_POSTS
        assert run.blocking_items == []

    def test_start_reports_progress_of_init_step(self, machine, run):
        result = machine.process(run, Start())

        progress = commands_of(result, ProgressChanged)
        assert len(progress) == 1
        assert progress[0].percent == 14
        assert progress[0].completed_steps == 1
        assert progress[0].total_steps == 7

    def test_input_run_is_not_mutated(self, machine, run):
        machine.process(run, Start())

        assert run.state == PipelineState.IDLE
        assert run.steps == []

    def test_start_with_other_transcript_is_rejected(self, machine, run):
        result = machine.process(run, Start(transcript_id="someone-else"))

        assert not result.accepted
        assert result.error.code == "invalid_transition"
        assert result.run is run

    def test_start_twice_is_rejected(self, machine, run):
        run, _ = replay(machine, run, [Start()])

        result = machine.process(run, Start())

        assert not result.accepted
        assert result.state == PipelineState.CLEANING_TRANSCRIPT


class TestScenarios:
    """End-to-end event sequences through the main workflow."""

    def test_extraction_opens_insight_review(self, machine, run):
        run = to_reviewing_insights(machine, run)

        assert run.state == PipelineState.REVIEWING_INSIGHTS
        assert [r.status for r in run.insights.values()] == [EntityStatus.PENDING] * 2
        assert len(run.blocking_items) == 2
        assert {item.type for item in run.blocking_items} == {BlockingItemType.INSIGHT_REVIEW}
        assert run.regions[REVIEW_REGION] == RegionSubstate.REVIEWING
        assert run.regions[AUTO_APPROVAL_REGION] == RegionSubstate.WAITING

    def test_extraction_reports_blocking_items_once(self, machine, run):
        run, _ = replay(machine, run, [Start(), StageSucceeded(stage=Stage.CLEAN)])

        result = machine.process(run, StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1", "i2"]))

        changes = commands_of(result, BlockingItemsChanged)
        assert len(changes) == 1
        assert changes[0].count == 2
        assert changes[0].item_ids == ["review-insight-i1", "review-insight-i2"]

    def test_auto_approve_passes_straight_through_review(self, machine, auto_run):
        run, results = replay(
            machine,
            auto_run,
            [
                Start(),
                StageSucceeded(stage=Stage.CLEAN),
                StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1", "i2"]),
            ],
        )

        assert run.state == PipelineState.GENERATING_POSTS
        assert PipelineState.REVIEWING_INSIGHTS in results[-1].states_entered
        assert run.blocking_items == []
        assert all(not commands_of(r, BlockingItemsChanged) for r in results)
        assert {r.status for r in run.insights.values()} == {EntityStatus.APPROVED}
        assert {r.reviewed_by for r in run.insights.values()} == {"auto-approval"}

        generate = commands_of(results[-1], RunStageCommand)
        assert generate[0].stage == Stage.GENERATE
        assert generate[0].input_ids == ["i1", "i2"]
        assert generate[0].platforms == ["linkedin", "x"]

    def test_no_insights_ends_partially_completed(self, machine, run):
        run, results = replay(
            machine,
            run,
            [Start(), StageSucceeded(stage=Stage.CLEAN), StageSucceeded(stage=Stage.EXTRACT, output_ids=[])],
        )

        assert run.state == PipelineState.PARTIALLY_COMPLETED
        assert run.metrics.insight_count == 0
        terminal = commands_of(results[-1], RunTerminal)
        assert terminal[0].outcome == TerminalOutcome.PARTIALLY_COMPLETED
        assert terminal[0].can_retry is True

    def test_pause_during_extraction_resumes_extraction(self, machine, run):
        run, _ = replay(machine, run, [Start(), StageSucceeded(stage=Stage.CLEAN)])
        assert run.state == PipelineState.EXTRACTING_INSIGHTS

        run, results = replay(machine, run, [Pause(reason="lunch"), Resume()])

        assert results[0].state == PipelineState.PAUSED
        assert results[0].run.paused_from == PipelineState.EXTRACTING_INSIGHTS
        assert run.state == PipelineState.EXTRACTING_INSIGHTS
        assert run.paused_from is None
        assert commands_of(results[1], RunStageCommand)[0].stage == Stage.EXTRACT

    def test_generation_waits_for_every_approved_insight(self, machine, run):
        run = to_generating(machine, run)
        assert run.state == PipelineState.GENERATING_POSTS

        result = machine.process(run, generated("i1", "p1"))

        assert result.state == PipelineState.GENERATING_POSTS
        assert result.run.regions

        result = machine.process(result.run, generated("i2", "p2"))

        assert result.state == PipelineState.REVIEWING_POSTS
        assert result.run.posts["p2"].parent_id == "i2"
        assert len(result.run.blocking_items) == 2

    def test_happy_path_completes(self, machine, run):
        run = to_ready_to_schedule(machine, run)
        assert run.state == PipelineState.READY_TO_SCHEDULE
        assert run.schedule_input == ["p1", "p2"]

        run, results = replay(
            machine,
            run,
            [Start(), StageSucceeded(stage=Stage.SCHEDULE, output_ids=["p1", "p2"])],
        )

        assert commands_of(results[0], RunStageCommand)[0].stage == Stage.SCHEDULE
        assert run.state == PipelineState.COMPLETED
        assert run.progress == 100
        assert run.scheduled_post_ids == ["p1", "p2"]
        assert run.completed_at is not None
        assert run.metrics.approved_post_count == 2

        final = results[-1].commands
        assert isinstance(final[-2], RunTerminal)
        assert final[-2].outcome == TerminalOutcome.COMPLETED
        assert isinstance(final[-1], CleanupResources)

    def test_ready_to_schedule_waits_for_start(self, machine, run):
        run = to_ready_to_schedule(machine, run)

        result = machine.process(run, StageSucceeded(stage=Stage.SCHEDULE, output_ids=["p1"]))

        assert not result.accepted
        assert result.run.state == PipelineState.READY_TO_SCHEDULE


class TestReview:
    """Tests for the review compound states."""

    def test_rejecting_every_insight_ends_partially_completed(self, machine, run):
        run = to_reviewing_insights(machine, run)

        run, _ = replay(machine, run, review(EntityKind.INSIGHT, ReviewDecision.REJECT, "i1", "i2"))

        assert run.state == PipelineState.PARTIALLY_COMPLETED
        assert "No insights were approved" in run.last_error

    def test_rejected_insight_gets_no_posts(self, machine, run):
        run = to_reviewing_insights(machine, run)

        run, results = replay(
            machine,
            run,
            approve_insights("i1") + review(EntityKind.INSIGHT, ReviewDecision.REJECT, "i2"),
        )

        assert run.state == PipelineState.GENERATING_POSTS
        assert commands_of(results[-1], RunStageCommand)[0].input_ids == ["i1"]

    def test_duplicate_decision_is_a_no_op(self, machine, run):
        run = to_reviewing_insights(machine, run)
        run, _ = replay(machine, run, approve_insights("i1"))

        result = machine.process(run, approve_insights("i1")[0])

        assert result.accepted
        assert result.commands == []
        assert len(result.run.blocking_items) == 1

    def test_changing_a_decision_is_rejected(self, machine, run):
        run = to_reviewing_insights(machine, run)
        run, _ = replay(machine, run, approve_insights("i1"))

        result = machine.process(run, review(EntityKind.INSIGHT, ReviewDecision.REJECT, "i1")[0])

        assert not result.accepted
        assert result.error.code == "entity_transition"
        assert result.run.insights["i1"].status == EntityStatus.APPROVED

    def test_unknown_entity_is_rejected(self, machine, run):
        run = to_reviewing_insights(machine, run)

        result = machine.process(run, approve_insights("missing")[0])

        assert not result.accepted
        assert result.error.code == "unknown_entity"
        assert result.error.details["entity_id"] == "missing"

    def test_post_decision_during_insight_review_is_rejected(self, machine, run):
        run = to_reviewing_insights(machine, run)

        result = machine.process(run, approve_posts("i1")[0])

        assert not result.accepted
        assert result.error.code == "invalid_transition"

    def test_all_reviewed_with_pending_entities_is_rejected(self, machine, run):
        run = to_reviewing_insights(machine, run)

        result = machine.process(run, AllReviewed(kind=EntityKind.INSIGHT))

        assert not result.accepted
        assert "still await review" in result.error.message

    def test_rejection_reason_is_kept(self, machine, run):
        run = to_reviewing_insights(machine, run)
        event = EntityReviewed(
            entity_id="i2",
            kind=EntityKind.INSIGHT,
            decision=ReviewDecision.REJECT,
            reviewer="ana",
            reason="off-topic",
        )

        run, _ = replay(machine, run, [event])

        assert run.insights["i2"].error == "off-topic"
        assert run.insights["i2"].reviewed_by == "ana"

    def test_skip_insight_review_template_has_no_review_step(self, machine):
        run = machine.create_run("transcript-1", template=PipelineTemplate.FAST_TRACK)

        run = to_reviewing_insights(machine, run)

        assert run.state == PipelineState.GENERATING_POSTS
        assert run.get_step("review-insights") is None
        assert run.progress == 50

    def test_rejecting_every_post_ends_partially_completed(self, machine, run):
        run = to_reviewing_posts(machine, run)

        run, results = replay(machine, run, review(EntityKind.POST, ReviewDecision.REJECT, "p1", "p2"))

        assert run.state == PipelineState.PARTIALLY_COMPLETED
        assert commands_of(results[-1], RunTerminal)[0].outcome == TerminalOutcome.PARTIALLY_COMPLETED


class TestGeneration:
    """Tests for post generation and its exit guard."""

    def test_failure_for_one_insight_still_reaches_review(self, machine, run):
        run = to_generating(machine, run)

        run, _ = replay(
            machine,
            run,
            [generated("i1", "p1"), StageFailed(stage=Stage.GENERATE, source_id="i2", error="rate limited")],
        )

        assert run.state == PipelineState.REVIEWING_POSTS
        assert run.generation_failures == {"i2": "rate limited"}

    def test_failure_for_every_insight_fails_the_run(self, machine, run):
        run = to_generating(machine, run)

        run, results = replay(
            machine,
            run,
            [
                StageFailed(stage=Stage.GENERATE, source_id="i1"),
                StageFailed(stage=Stage.GENERATE, source_id="i2"),
            ],
        )

        assert run.state == PipelineState.FAILED
        assert run.get_step("generate").status == StepStatus.FAILED
        assert commands_of(results[-1], RunTerminal)[0].outcome == TerminalOutcome.FAILED

    def test_failed_insight_needs_manual_intervention_while_others_generate(self, machine, run):
        run = to_generating(machine, run)

        result = machine.process(run, StageFailed(stage=Stage.GENERATE, source_id="i2", error="rate limited"))

        assert result.state == PipelineState.GENERATING_POSTS
        items = result.run.blocking_items
        assert [item.id for item in items] == [intervention_item_id("i2")]
        assert items[0].type == BlockingItemType.MANUAL_INTERVENTION
        assert items[0].entity_id == "i2"
        assert "rate limited" in items[0].description
        assert commands_of(result, BlockingItemsChanged)[0].count == 1

    def test_regenerated_insight_resolves_its_intervention(self, machine, run):
        run = to_generating(machine, run)
        run, _ = replay(machine, run, [StageFailed(stage=Stage.GENERATE, source_id="i2", error="rate limited")])

        result = machine.process(run, generated("i2", "p2"))

        assert result.state == PipelineState.GENERATING_POSTS
        assert result.run.blocking_items == []
        assert result.run.generation_failures == {}

    def test_interventions_are_cleared_when_generation_completes(self, machine, run):
        run = to_generating(machine, run)
        run, _ = replay(machine, run, [StageFailed(stage=Stage.GENERATE, source_id="i2", error="rate limited")])

        result = machine.process(run, generated("i1", "p1"))

        assert result.state == PipelineState.REVIEWING_POSTS
        assert {item.type for item in result.run.blocking_items} == {BlockingItemType.POST_REVIEW}

    def test_interventions_stay_on_failed_run(self, machine, run):
        run = to_generating(machine, run)

        run, _ = replay(
            machine,
            run,
            [
                StageFailed(stage=Stage.GENERATE, source_id="i1"),
                StageFailed(stage=Stage.GENERATE, source_id="i2"),
            ],
        )

        assert run.state == PipelineState.FAILED
        assert sorted(item.entity_id for item in run.blocking_items) == ["i1", "i2"]

    def test_whole_stage_failure_fails_the_run(self, machine, run):
        run = to_generating(machine, run)

        result = machine.process(run, StageFailed(stage=Stage.GENERATE, error="model offline"))

        assert result.state == PipelineState.FAILED
        assert result.run.last_error == "model offline"

    def test_posts_for_unapproved_insight_are_rejected(self, machine, run):
        run = to_reviewing_insights(machine, run)
        run, _ = replay(
            machine,
            run,
            approve_insights("i1") + review(EntityKind.INSIGHT, ReviewDecision.REJECT, "i2"),
        )

        result = machine.process(run, generated("i2", "p9"))

        assert not result.accepted
        assert result.error.code == "unknown_entity"

    def test_one_event_per_platform(self, machine, run):
        run = to_generating(machine, run)

        run, _ = replay(
            machine,
            run,
            [
                generated("i1", "p1-li", platform="linkedin"),
                generated("i1", "p1-x", platform="x"),
                generated("i2", "p2-li"),
            ],
        )

        assert run.state == PipelineState.REVIEWING_POSTS
        assert run.posts["p1-x"].platform == "x"
        assert run.post_ids == ["p1-li", "p1-x", "p2-li"]

    def test_progress_tick_is_accepted_without_changes(self, machine, run):
        run = to_generating(machine, run)

        result = machine.process(run, ProgressTick())

        assert result.accepted
        assert result.commands == []

    def test_resume_requests_only_missing_posts(self, machine, run):
        run = to_generating(machine, run)

        run, results = replay(machine, run, [generated("i1", "p1"), Pause(), Resume()])

        assert run.state == PipelineState.GENERATING_POSTS
        assert commands_of(results[-1], RunStageCommand)[0].input_ids == ["i2"]


class TestPauseResume:
    """Tests for pausing and resuming."""

    @pytest.mark.parametrize("reach", [to_reviewing_insights, to_generating, to_reviewing_posts, to_ready_to_schedule])
    def test_resume_returns_to_paused_state(self, machine, run, reach):
        run = reach(machine, run)
        before = run.state

        run, _ = replay(machine, run, [Pause(), Resume()])

        assert run.state == before

    def test_review_items_are_not_duplicated_on_resume(self, machine, run):
        run = to_reviewing_insights(machine, run)

        run, results = replay(machine, run, [Pause(), Resume()])

        assert len(run.blocking_items) == 2
        assert all(not commands_of(r, BlockingItemsChanged) for r in results)

    def test_pause_from_idle_is_rejected(self, machine, run):
        result = machine.process(run, Pause())

        assert not result.accepted

    def test_resume_without_recorded_state_fails_loudly(self, machine, run):
        run = run.model_copy(update={"state": PipelineState.PAUSED, "paused_from": None})

        result = machine.process(run, Resume())

        assert result.state == PipelineState.FAILED
        assert "Cannot resume" in result.run.last_error

    def test_events_while_paused_are_rejected(self, machine, run):
        run, _ = replay(machine, run, [Start(), Pause()])

        result = machine.process(run, StageSucceeded(stage=Stage.CLEAN))

        assert not result.accepted
        assert result.run.state == PipelineState.PAUSED


class TestCancel:
    """Tests for cancellation."""

    def test_cancel_from_review_clears_blocking_items(self, machine, run):
        run = to_reviewing_insights(machine, run)

        result = machine.process(run, Cancel(reason="duplicate upload"))

        assert result.state == PipelineState.CANCELLED
        assert result.run.blocking_items == []
        assert commands_of(result, BlockingItemsChanged)[0].count == 0
        terminal = commands_of(result, RunTerminal)[0]
        assert terminal.outcome == TerminalOutcome.CANCELLED
        assert terminal.error == "duplicate upload"
        assert isinstance(result.commands[-1], CleanupResources)

    @pytest.mark.parametrize("events", [[], [Start(), Pause()], [Start(), StageFailed(stage=Stage.CLEAN)]])
    def test_cancel_from_any_non_terminal_state(self, machine, run, events):
        run, _ = replay(machine, run, events)

        result = machine.process(run, Cancel())

        assert result.state == PipelineState.CANCELLED

    def test_cancelled_run_rejects_everything(self, machine, run):
        run, _ = replay(machine, run, [Cancel()])

        for event in (Start(), Retry(), Cancel(), Resume()):
            result = machine.process(run, event)
            assert not result.accepted
            assert result.error.code == "invalid_transition"


class TestFailureAndRetry:
    """Tests for failures, retries and retry limits."""

    def test_stage_failure_fails_the_step(self, machine, run, clock):
        run, _ = replay(machine, run, [Start()])
        clock.advance(30)

        result = machine.process(run, StageFailed(stage=Stage.CLEAN, error="unreadable transcript"))

        failed = result.run
        assert failed.state == PipelineState.FAILED
        assert failed.failed_at == clock.now
        assert failed.get_step("clean").status == StepStatus.FAILED
        assert failed.failed_steps == ["clean"]
        terminal = commands_of(result, RunTerminal)[0]
        assert terminal.can_retry is True
        assert terminal.error == "unreadable transcript"

    def test_step_failed_marks_named_step(self, machine, run):
        run = to_reviewing_insights(machine, run)

        result = machine.process(run, StepFailed(step_id="review-insights", error="reviewer tool down"))

        assert result.state == PipelineState.FAILED
        assert result.run.get_step("review-insights").error == "reviewer tool down"

    def test_step_failed_for_completed_step_is_rejected(self, machine, run):
        run, _ = replay(
            machine,
            run,
            [Start(), StageSucceeded(stage=Stage.CLEAN), StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1"])],
        )

        result = machine.process(run, StepFailed(step_id="clean", error="late failure report"))

        assert not result.accepted
        assert result.error.code == "invalid_transition"
        assert result.run is run
        assert run.get_step("clean").status == StepStatus.COMPLETED
        assert run.failed_steps == []
        assert run.progress == calculate_progress(run.completed_steps, run.total_steps)

    def test_step_failed_for_unknown_step_is_rejected(self, machine, run):
        run, _ = replay(machine, run, [Start()])

        result = machine.process(run, StepFailed(step_id="render-video"))

        assert not result.accepted

    def test_retry_restarts_and_keeps_attempt_history(self, machine, run):
        run = to_reviewing_insights(machine, run)
        run, _ = replay(machine, run, [StepFailed(step_id="review-insights", error="boom")])

        result = machine.process(run, Retry())

        retried = result.run
        assert retried.state == PipelineState.CLEANING_TRANSCRIPT
        assert retried.retry_count == 1
        assert retried.insights == {}
        assert retried.blocking_items == []
        assert retried.last_error is None
        assert retried.progress == 14
        assert len(retried.attempts) == 1
        assert retried.attempts[0].final_state == PipelineState.FAILED
        assert set(retried.attempts[0].insights) == {"i1", "i2"}
        assert commands_of(result, RunStageCommand)[0].stage == Stage.CLEAN

    def test_retry_limit(self, machine):
        run = machine.create_run("transcript-1", options={"max_retries": 1})
        events = [Start(), StageFailed(stage=Stage.CLEAN), Retry(), StageFailed(stage=Stage.CLEAN)]
        run, results = replay(machine, run, events)

        assert commands_of(results[-1], RunTerminal)[0].can_retry is False

        result = machine.process(run, Retry())

        assert not result.accepted
        assert result.error.code == "retry_exhausted"
        assert result.run.state == PipelineState.FAILED

    def test_retry_from_running_state_is_rejected(self, machine, run):
        run, _ = replay(machine, run, [Start()])

        result = machine.process(run, Retry())

        assert not result.accepted

    def test_progress_never_regresses_within_an_attempt(self, machine, run):
        run = to_ready_to_schedule(machine, run)
        run, results = replay(machine, run, [Start(), StageSucceeded(stage=Stage.SCHEDULE)])

        history = [r.run.progress for r in results]
        assert history == sorted(history)

    def test_unexpected_error_becomes_failure(self, machine, run, monkeypatch):
        run, _ = replay(machine, run, [Start(), StageSucceeded(stage=Stage.CLEAN)])

        def explode(step, kind):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(machine, "_enter_review", explode)
        result = machine.process(run, StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1"]))

        assert result.accepted
        assert result.state == PipelineState.FAILED
        assert result.run.last_error == "RuntimeError: ledger unavailable"
        assert result.run.insights == {}
        assert result.run.get_step("extract").status == StepStatus.FAILED


class TestRedelivery:
    """Tests for at-least-once delivery of stage results."""

    def test_repeated_extraction_result_is_ignored(self, machine, run):
        run = to_reviewing_insights(machine, run)

        result = machine.process(run, StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1", "i2", "i3"]))

        assert result.accepted
        assert result.commands == []
        assert len(result.run.insights) == 2
        assert len(result.run.blocking_items) == 2

    def test_repeated_post_result_does_not_duplicate_posts(self, machine, run):
        run = to_generating(machine, run)

        run, _ = replay(machine, run, [generated("i1", "p1"), generated("i1", "p1")])

        assert run.post_ids == ["p1"]
        assert run.state == PipelineState.GENERATING_POSTS

    def test_stage_result_for_future_stage_is_rejected(self, machine, run):
        run, _ = replay(machine, run, [Start()])

        result = machine.process(run, StageSucceeded(stage=Stage.EXTRACT, output_ids=["i1"]))

        assert not result.accepted
        assert result.run.state == PipelineState.CLEANING_TRANSCRIPT
