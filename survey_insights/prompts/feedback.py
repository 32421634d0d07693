"""Performance feedback: running averages written back into the registry."""

from __future__ import annotations

from typing import Optional

import structlog

from survey_insights.prompts.registry import TemplatePerformance, TemplateRegistry

_logger = structlog.get_logger()


def update_metrics(
    registry: TemplateRegistry,
    template_id: str,
    *,
    confidence: float,
    processing_time_ms: float,
    success: bool,
) -> Optional[TemplatePerformance]:
    """
    Fold one observation into a template's performance block.

    Each average becomes (old * n + x) / (n + 1) with n the current usage
    count, then usage_count becomes n + 1. Unknown ids are ignored.

    Returns:
        The new performance block, or None for an unknown template.
    """
    def _fold(current: TemplatePerformance) -> TemplatePerformance:
        n = current.usage_count
        return TemplatePerformance(
            avg_confidence=(current.avg_confidence * n + confidence) / (n + 1),
            avg_processing_time=(current.avg_processing_time * n + processing_time_ms) / (n + 1),
            usage_count=n + 1,
            success_rate=(current.success_rate * n + (1.0 if success else 0.0)) / (n + 1),
        )

    updated = registry.apply(template_id, _fold)
    if updated is None:
        _logger.warning("template.feedback.unknown", template_id=template_id)
        return None

    _logger.info(
        "template.feedback",
        template_id=template_id,
        success=success,
        avg_confidence=round(updated.avg_confidence, 4),
        success_rate=round(updated.success_rate, 4),
        usage_count=updated.usage_count,
    )
    return updated
