"""Application settings using Pydantic."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from content_pipeline.models.enums import PipelineTemplate


class Settings(BaseSettings):
    """Pipeline configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Run defaults
    default_template: PipelineTemplate = PipelineTemplate.STANDARD
    default_max_retries: int = 3

    # Estimation fallbacks when there is no history (seconds)
    default_average_duration_seconds: float = 15 * 60
    default_review_time_seconds: float = 5 * 60
    default_insight_count: float = 5
    default_post_count: float = 10

    # Historical metrics
    history_sample_limit: int = 100
    metrics_cache_ttl_seconds: float = 5 * 60
    history_retention_days: int = 30

    # Template recommendation thresholds (characters)
    recommend_short_content_chars: int = 5000
    recommend_long_content_chars: int = 15000

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
