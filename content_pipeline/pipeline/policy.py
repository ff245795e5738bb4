"""Stage policy evaluation: auto-approval, retry and template choice."""

from typing import Optional

from content_pipeline.config.settings import Settings, get_settings
from content_pipeline.models import EntityKind, PipelineOptions, PipelineTemplate, Urgency

SOURCE_TYPE_TEMPLATES = {
    "podcast": PipelineTemplate.PODCAST,
    "audio": PipelineTemplate.PODCAST,
    "video": PipelineTemplate.VIDEO,
    "youtube": PipelineTemplate.VIDEO,
    "article": PipelineTemplate.ARTICLE,
    "blog": PipelineTemplate.ARTICLE,
    "text": PipelineTemplate.ARTICLE,
}


def should_auto_approve(options: PipelineOptions, kind: EntityKind) -> bool:
    """Whether a review stage resolves its entities without a human."""
    if options.auto_approve:
        return True
    if kind == EntityKind.INSIGHT:
        return options.skip_insight_review
    return options.skip_post_review


def can_retry(retry_count: int, max_retries: int) -> bool:
    return retry_count < max_retries


def recommend_template(
    content_length: int,
    source_type: Optional[str] = None,
    urgency: Optional[Urgency | str] = None,
    settings: Optional[Settings] = None,
) -> PipelineTemplate:
    """Recommend a template from content characteristics.

    Urgent content always goes fast track; otherwise the source type decides,
    and content length is the last resort.
    """
    settings = settings or get_settings()

    if urgency is not None and Urgency(urgency) == Urgency.HIGH:
        return PipelineTemplate.FAST_TRACK

    if source_type:
        template = SOURCE_TYPE_TEMPLATES.get(source_type.strip().lower())
        if template is not None:
            return template

    if content_length < settings.recommend_short_content_chars:
        return PipelineTemplate.ARTICLE
    if content_length < settings.recommend_long_content_chars:
        return PipelineTemplate.STANDARD
    # Longer content is likely conversational
    return PipelineTemplate.PODCAST
