"""Pipeline templates.

Pre-configured option bundles and step lists for different content types.
Durations are in seconds.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from content_pipeline.models.enums import PipelineTemplate
from content_pipeline.models.pipeline import PipelineOptions, PipelineStep


class StepDefinition(BaseModel):
    """Template entry describing one pipeline step."""

    id: str
    name: str
    estimated_duration: float = Field(..., description="Seconds")
    required: bool = True
    parallel: bool = False


class TemplateConfig(BaseModel):
    """Named configuration bundle for a pipeline run."""

    name: str
    description: str
    template: PipelineTemplate
    options: PipelineOptions
    estimated_duration: float = Field(..., ge=0, description="Seconds")
    steps: list[StepDefinition] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# Step id for every state that owns a step
STEP_INIT = "init"
STEP_CLEAN = "clean"
STEP_EXTRACT = "extract"
STEP_REVIEW_INSIGHTS = "review-insights"
STEP_GENERATE = "generate"
STEP_REVIEW_POSTS = "review-posts"
STEP_SCHEDULE = "schedule"


STANDARD_TEMPLATE = TemplateConfig(
    name="Standard Pipeline",
    description="Complete content pipeline with manual review at each stage",
    template=PipelineTemplate.STANDARD,
    options=PipelineOptions(parallel_insights=3, parallel_posts=5),
    estimated_duration=15 * 60,
    steps=[
        StepDefinition(id=STEP_INIT, name="Initialize Pipeline", estimated_duration=1),
        StepDefinition(id=STEP_CLEAN, name="Clean Transcript", estimated_duration=30),
        StepDefinition(id=STEP_EXTRACT, name="Extract Insights", estimated_duration=60),
        StepDefinition(id=STEP_REVIEW_INSIGHTS, name="Review Insights", estimated_duration=300),
        StepDefinition(id=STEP_GENERATE, name="Generate Posts", estimated_duration=45, parallel=True),
        StepDefinition(id=STEP_REVIEW_POSTS, name="Review Posts", estimated_duration=180),
        StepDefinition(id=STEP_SCHEDULE, name="Schedule Posts", estimated_duration=10, required=False),
    ],
)

FAST_TRACK_TEMPLATE = TemplateConfig(
    name="Fast Track Pipeline",
    description="Accelerated pipeline with automatic approvals",
    template=PipelineTemplate.FAST_TRACK,
    # Posts are still reviewed for quality
    options=PipelineOptions(
        auto_approve=False,
        skip_insight_review=True,
        skip_post_review=False,
        max_retries=2,
        parallel_insights=5,
        parallel_posts=10,
    ),
    estimated_duration=5 * 60,
    steps=[
        StepDefinition(id=STEP_INIT, name="Initialize Pipeline", estimated_duration=1),
        StepDefinition(id=STEP_CLEAN, name="Clean Transcript", estimated_duration=30),
        StepDefinition(id=STEP_EXTRACT, name="Extract Insights", estimated_duration=60),
        StepDefinition(id=STEP_GENERATE, name="Generate Posts", estimated_duration=45, parallel=True),
        StepDefinition(id=STEP_REVIEW_POSTS, name="Quick Post Review", estimated_duration=60),
        StepDefinition(id=STEP_SCHEDULE, name="Auto-Schedule Posts", estimated_duration=10),
    ],
)

PODCAST_TEMPLATE = TemplateConfig(
    name="Podcast Pipeline",
    description="Optimized for extracting insights from podcast conversations",
    template=PipelineTemplate.PODCAST,
    options=PipelineOptions(parallel_insights=5, parallel_posts=8),
    estimated_duration=20 * 60,
    steps=[
        StepDefinition(id=STEP_INIT, name="Initialize Pipeline", estimated_duration=1),
        StepDefinition(id=STEP_CLEAN, name="Clean Podcast Transcript", estimated_duration=45),
        StepDefinition(id=STEP_EXTRACT, name="Extract Conversation Insights", estimated_duration=90),
        StepDefinition(id=STEP_REVIEW_INSIGHTS, name="Review Key Moments", estimated_duration=300),
        StepDefinition(id=STEP_GENERATE, name="Generate Episode Posts", estimated_duration=60, parallel=True),
        StepDefinition(id=STEP_REVIEW_POSTS, name="Review Social Posts", estimated_duration=180),
        StepDefinition(id=STEP_SCHEDULE, name="Schedule Episode Promotion", estimated_duration=15, required=False),
    ],
    metadata={
        "content_type": "podcast",
        "expected_insights": 8,
        "focus_areas": ["quotes", "key_takeaways", "guest_expertise", "actionable_advice"],
    },
)

VIDEO_TEMPLATE = TemplateConfig(
    name="Video Pipeline",
    description="Optimized for video content with visual elements",
    template=PipelineTemplate.VIDEO,
    options=PipelineOptions(parallel_insights=4, parallel_posts=6),
    estimated_duration=18 * 60,
    steps=[
        StepDefinition(id=STEP_INIT, name="Initialize Pipeline", estimated_duration=1),
        StepDefinition(id=STEP_CLEAN, name="Clean Video Transcript", estimated_duration=40),
        StepDefinition(id=STEP_EXTRACT, name="Extract Visual & Audio Insights", estimated_duration=80),
        StepDefinition(id=STEP_REVIEW_INSIGHTS, name="Review Key Scenes", estimated_duration=240),
        StepDefinition(id=STEP_GENERATE, name="Generate Video Clips Posts", estimated_duration=50, parallel=True),
        StepDefinition(id=STEP_REVIEW_POSTS, name="Review Video Posts", estimated_duration=150),
        StepDefinition(id=STEP_SCHEDULE, name="Schedule Video Series", estimated_duration=12, required=False),
    ],
    metadata={
        "content_type": "video",
        "expected_insights": 6,
        "focus_areas": ["visual_moments", "demonstrations", "key_points", "calls_to_action"],
    },
)

ARTICLE_TEMPLATE = TemplateConfig(
    name="Article Pipeline",
    description="Optimized for written articles and blog posts",
    template=PipelineTemplate.ARTICLE,
    # Articles are already edited
    options=PipelineOptions(
        skip_insight_review=True,
        parallel_insights=3,
        parallel_posts=4,
    ),
    estimated_duration=10 * 60,
    steps=[
        StepDefinition(id=STEP_INIT, name="Initialize Pipeline", estimated_duration=1),
        StepDefinition(id=STEP_CLEAN, name="Process Article Text", estimated_duration=20),
        StepDefinition(id=STEP_EXTRACT, name="Extract Key Points", estimated_duration=50),
        StepDefinition(id=STEP_GENERATE, name="Generate Summary Posts", estimated_duration=40, parallel=True),
        StepDefinition(id=STEP_REVIEW_POSTS, name="Review Article Posts", estimated_duration=120),
        StepDefinition(id=STEP_SCHEDULE, name="Schedule Article Promotion", estimated_duration=8, required=False),
    ],
    metadata={
        "content_type": "article",
        "expected_insights": 4,
        "focus_areas": ["main_thesis", "supporting_points", "statistics", "conclusions"],
    },
)

CUSTOM_TEMPLATE = TemplateConfig(
    name="Custom Pipeline",
    description="User-defined pipeline configuration",
    template=PipelineTemplate.CUSTOM,
    options=PipelineOptions(platforms=["linkedin"]),
    estimated_duration=0,
    steps=[],
)

PIPELINE_TEMPLATES: dict[PipelineTemplate, TemplateConfig] = {
    PipelineTemplate.STANDARD: STANDARD_TEMPLATE,
    PipelineTemplate.FAST_TRACK: FAST_TRACK_TEMPLATE,
    PipelineTemplate.PODCAST: PODCAST_TEMPLATE,
    PipelineTemplate.VIDEO: VIDEO_TEMPLATE,
    PipelineTemplate.ARTICLE: ARTICLE_TEMPLATE,
    PipelineTemplate.CUSTOM: CUSTOM_TEMPLATE,
}


def get_template_config(template: PipelineTemplate | str) -> TemplateConfig:
    """Get a template configuration, falling back to the standard template."""
    try:
        return PIPELINE_TEMPLATES[PipelineTemplate(template)]
    except ValueError:
        return STANDARD_TEMPLATE


def calculate_estimated_duration(steps: list[StepDefinition]) -> float:
    """Estimate total duration of a step list.

    Parallel steps are assumed to overlap by half.
    """
    total = 0.0
    for step in steps:
        total += step.estimated_duration / 2 if step.parallel else step.estimated_duration
    return total


def merge_template_options(
    template: PipelineTemplate | str,
    overrides: Optional[dict[str, Any]] = None,
    default_max_retries: Optional[int] = None,
) -> PipelineOptions:
    """Merge explicit option overrides over a template's defaults.

    ``default_max_retries`` applies only when neither the template nor the
    overrides set a retry limit.
    """
    template_options = get_template_config(template).options
    base = template_options.model_dump()
    if default_max_retries is not None and "max_retries" not in template_options.model_fields_set:
        base["max_retries"] = default_max_retries
    base.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return PipelineOptions.model_validate(base)


def validate_template_config(config: TemplateConfig) -> bool:
    """Check a template configuration for obviously broken values."""
    if not config.name or not config.template:
        return False

    for step in config.steps:
        if not step.id or not step.name or step.estimated_duration < 0:
            return False

    return (
        config.options.max_retries >= 0
        and config.options.parallel_insights >= 1
        and config.options.parallel_posts >= 1
    )


def build_steps(template: PipelineTemplate | str) -> list[PipelineStep]:
    """Create fresh pending steps for a run.

    Templates without steps of their own run with the standard step list.
    """
    definitions = get_template_config(template).steps or STANDARD_TEMPLATE.steps
    return [
        PipelineStep(
            id=definition.id,
            name=definition.name,
            estimated_duration=definition.estimated_duration,
            required=definition.required,
            parallel=definition.parallel,
        )
        for definition in definitions
    ]
