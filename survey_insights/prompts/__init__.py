"""Prompt templates: definitions, packaged content, selection and rendering."""

from survey_insights.prompts.feedback import update_metrics
from survey_insights.prompts.loader import TemplateContent, clear_content_cache, load_content
from survey_insights.prompts.registry import (
    TemplatePerformance,
    TemplateRegistry,
    TemplateVersion,
    default_templates,
)
from survey_insights.prompts.renderer import (
    RenderCache,
    RenderedPrompt,
    TemplateRenderer,
    estimate_tokens,
    render_text,
)
from survey_insights.prompts.selector import select_optimal

__all__ = [
    "RenderCache",
    "RenderedPrompt",
    "TemplateContent",
    "TemplatePerformance",
    "TemplateRegistry",
    "TemplateRenderer",
    "TemplateVersion",
    "clear_content_cache",
    "default_templates",
    "estimate_tokens",
    "load_content",
    "render_text",
    "select_optimal",
    "update_metrics",
]
