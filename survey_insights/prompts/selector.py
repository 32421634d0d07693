"""Performance-driven template selection."""

from __future__ import annotations

from typing import Optional

import structlog

from survey_insights.prompts.registry import TemplateRegistry, TemplateVersion

_logger = structlog.get_logger()


def select_optimal(
    registry: TemplateRegistry,
    category: str,
    language: str,
) -> Optional[TemplateVersion]:
    """
    Pick the best template for an analysis category and language.

    Candidates are active templates of the category whose language is the
    requested one or "both". The highest avg_confidence * success_rate wins;
    ties go to the lowest template id. `ab_testing` is not consulted.

    Returns:
        The winning TemplateVersion, or None when nothing matches.
    """
    candidates = [
        t for t in registry.snapshot()
        if t.is_active and t.category == category and t.supports(language)
    ]
    if not candidates:
        _logger.warning("template.select.none", category=category, language=language)
        return None

    best = min(candidates, key=lambda t: (-t.performance.score, t.id))
    _logger.debug(
        "template.select",
        category=category,
        language=language,
        template_id=best.id,
        score=round(best.performance.score, 4),
        candidates=len(candidates),
    )
    return best
