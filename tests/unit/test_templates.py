"""Unit tests for pipeline templates."""

from content_pipeline.config import (
    PIPELINE_TEMPLATES,
    StepDefinition,
    build_steps,
    calculate_estimated_duration,
    get_template_config,
    merge_template_options,
    validate_template_config,
)
from content_pipeline.models import PipelineTemplate, StepStatus


class TestTemplateConfigs:
    """Tests for the built-in templates."""

    def test_every_template_is_valid(self):
        for config in PIPELINE_TEMPLATES.values():
            assert validate_template_config(config), config.name

    def test_fast_track_skips_insight_review(self):
        config = get_template_config(PipelineTemplate.FAST_TRACK)

        assert config.options.skip_insight_review
        assert not config.options.skip_post_review
        assert "review-insights" not in [step.id for step in config.steps]

    def test_unknown_template_falls_back_to_standard(self):
        assert get_template_config("nonexistent").template == PipelineTemplate.STANDARD

    def test_invalid_config_is_detected(self):
        config = get_template_config(PipelineTemplate.STANDARD).model_copy(deep=True)
        config.steps[0].estimated_duration = -1

        assert not validate_template_config(config)


class TestDurations:
    """Tests for duration estimates."""

    def test_parallel_steps_count_half(self):
        steps = [
            StepDefinition(id="a", name="A", estimated_duration=60),
            StepDefinition(id="b", name="B", estimated_duration=40, parallel=True),
        ]

        assert calculate_estimated_duration(steps) == 80

    def test_empty_step_list(self):
        assert calculate_estimated_duration([]) == 0


class TestOptions:
    """Tests for merging option overrides."""

    def test_overrides_win(self):
        options = merge_template_options(PipelineTemplate.FAST_TRACK, {"max_retries": 5, "platforms": ["x"]})

        assert options.max_retries == 5
        assert options.platforms == ["x"]
        assert options.skip_insight_review

    def test_none_overrides_are_ignored(self):
        options = merge_template_options(PipelineTemplate.STANDARD, {"max_retries": None})

        assert options.max_retries == 3

    def test_default_max_retries_fills_unset_template_limit(self):
        options = merge_template_options(PipelineTemplate.STANDARD, default_max_retries=5)

        assert options.max_retries == 5

    def test_template_retry_limit_beats_default(self):
        options = merge_template_options(PipelineTemplate.FAST_TRACK, default_max_retries=5)

        assert options.max_retries == 2

    def test_template_options_are_not_shared(self):
        options = merge_template_options(PipelineTemplate.STANDARD)
        options.platforms.append("threads")

        assert get_template_config(PipelineTemplate.STANDARD).options.platforms == ["linkedin", "x"]


class TestBuildSteps:
    """Tests for building run steps."""

    def test_steps_start_pending(self):
        steps = build_steps(PipelineTemplate.STANDARD)

        assert [step.id for step in steps] == [
            "init",
            "clean",
            "extract",
            "review-insights",
            "generate",
            "review-posts",
            "schedule",
        ]
        assert {step.status for step in steps} == {StepStatus.PENDING}

    def test_custom_template_uses_standard_steps(self):
        assert len(build_steps(PipelineTemplate.CUSTOM)) == 7
