"""Configuration: settings, templates and logging."""

from .logging import configure_logging
from .settings import Settings, get_settings
from .templates import (
    PIPELINE_TEMPLATES,
    StepDefinition,
    TemplateConfig,
    build_steps,
    calculate_estimated_duration,
    get_template_config,
    merge_template_options,
    validate_template_config,
)

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "PIPELINE_TEMPLATES",
    "StepDefinition",
    "TemplateConfig",
    "build_steps",
    "calculate_estimated_duration",
    "get_template_config",
    "merge_template_options",
    "validate_template_config",
]
