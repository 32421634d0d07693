"""
Template registry: catalog of prompt template definitions.

A definition (`TemplateVersion`) describes a template and carries its running
performance block; the renderable text lives in packaged files and is loaded
separately by `survey_insights.prompts.loader`.

The registry is an explicit object injected into the pipeline. All mutations
go through a lock so feedback updates from concurrent workers stay atomic.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

_logger = structlog.get_logger()

TEMPLATE_CATEGORIES = ("thematic", "clustering", "contradictions", "insights", "recommendations")
TOP_PERFORMERS = 5

# Thresholds for performance_report() recommendations.
MIN_CONFIDENCE = 0.8
MIN_SUCCESS_RATE = 0.9
MIN_USAGE = 10


@dataclass(frozen=True)
class TemplatePerformance:
    avg_confidence: float = 0.0
    avg_processing_time: float = 0.0
    usage_count: int = 0
    success_rate: float = 0.0

    @property
    def score(self) -> float:
        return self.avg_confidence * self.success_rate


@dataclass(frozen=True)
class ABTesting:
    variant: str
    traffic_split: float


@dataclass
class TemplateVersion:
    id: str
    version: str
    name: str
    description: str
    language: str
    category: str
    is_active: bool = True
    performance: TemplatePerformance = field(default_factory=TemplatePerformance)
    ab_testing: Optional[ABTesting] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def supports(self, language: str) -> bool:
        return self.language == language or self.language == "both"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


class TemplateRegistry:
    """Thread-safe in-memory catalog keyed by template id."""

    def __init__(self, templates: Optional[List[TemplateVersion]] = None):
        self._lock = threading.RLock()
        self._templates: Dict[str, TemplateVersion] = {}
        for template in templates or []:
            self.register(template)

    @classmethod
    def with_defaults(cls) -> "TemplateRegistry":
        return cls(default_templates())

    def register(self, template: TemplateVersion) -> None:
        with self._lock:
            self._templates[template.id] = template
        _logger.debug("template.registered", template_id=template.id, category=template.category)

    def get(self, template_id: str) -> Optional[TemplateVersion]:
        with self._lock:
            return self._templates.get(template_id)

    def all(self) -> List[TemplateVersion]:
        with self._lock:
            return list(self._templates.values())

    def __contains__(self, template_id: str) -> bool:
        with self._lock:
            return template_id in self._templates

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)

    def apply(self, template_id: str, update) -> Optional[TemplatePerformance]:
        """
        Atomically compute and store a new performance block.

        `update` receives the current block and returns the new one. Runs under
        the registry lock so concurrent read-modify-write cycles do not interleave.
        """
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                return None
            template.performance = update(template.performance)
            template.updated_at = datetime.now(timezone.utc)
            return template.performance

    def deactivate(self, template_id: str) -> bool:
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                return False
            template.is_active = False
            template.updated_at = datetime.now(timezone.utc)
        _logger.info("template.deactivated", template_id=template_id)
        return True

    def snapshot(self) -> List[TemplateVersion]:
        """Copies of every definition, safe to read without the lock."""
        with self._lock:
            return [replace(t) for t in self._templates.values()]

    def performance_report(self) -> Dict[str, Any]:
        templates = self.snapshot()
        active = [t for t in templates if t.is_active]

        categories: Dict[str, Dict[str, Any]] = {}
        for template in active:
            cat = categories.setdefault(template.category, {
                "count": 0,
                "avg_confidence": 0.0,
                "avg_success_rate": 0.0,
                "total_usage": 0,
            })
            cat["count"] += 1
            cat["avg_confidence"] += template.performance.avg_confidence
            cat["avg_success_rate"] += template.performance.success_rate
            cat["total_usage"] += template.performance.usage_count

        for cat in categories.values():
            cat["avg_confidence"] /= cat["count"]
            cat["avg_success_rate"] /= cat["count"]

        top = sorted(active, key=lambda t: (-t.performance.score, t.id))[:TOP_PERFORMERS]

        recommendations: List[str] = []
        for category, perf in categories.items():
            if perf["avg_confidence"] < MIN_CONFIDENCE:
                recommendations.append(
                    f"Consider updating {category} templates to improve confidence scores"
                )
            if perf["avg_success_rate"] < MIN_SUCCESS_RATE:
                recommendations.append(f"Review {category} templates for better success rates")
            if perf["total_usage"] < MIN_USAGE:
                recommendations.append(
                    f"Consider A/B testing {category} templates to gather more performance data"
                )

        return {
            "total_templates": len(templates),
            "active_templates": len(active),
            "category_performance": categories,
            "top_performers": [t.to_dict() for t in top],
            "recommendations": recommendations,
        }

    def export_configuration(self) -> str:
        config = {
            "templates": [t.to_dict() for t in self.snapshot()],
            "metadata": {
                "export_date": datetime.now(timezone.utc).isoformat(),
                "version": "2.0",
                "categories": list(TEMPLATE_CATEGORIES),
            },
        }
        return json.dumps(config, indent=2, ensure_ascii=False)


def default_templates() -> List[TemplateVersion]:
    """Built-in template definitions with their seed performance."""
    return [
        TemplateVersion(
            id="thematic_analysis_v2_pl",
            version="2.0",
            name="Zaawansowana Analiza Tematyczna (PL)",
            description="Thematic analysis with cultural context for Polish responses",
            language="pl",
            category="thematic",
            performance=TemplatePerformance(0.85, 2500, 0, 0.95),
        ),
        TemplateVersion(
            id="thematic_analysis_v2_en",
            version="2.0",
            name="Advanced Thematic Analysis (EN)",
            description="Thematic analysis with cultural context for English responses",
            language="en",
            category="thematic",
            performance=TemplatePerformance(0.85, 2500, 0, 0.95),
        ),
        TemplateVersion(
            id="hierarchical_clustering_v2",
            version="2.0",
            name="Advanced Hierarchical Clustering",
            description="Clustering with semantic similarity and cultural context",
            language="both",
            category="clustering",
            performance=TemplatePerformance(0.82, 3200, 0, 0.92),
        ),
        TemplateVersion(
            id="contradiction_detection_v2",
            version="2.0",
            name="Advanced Contradiction Detection",
            description="Contradiction detection with context awareness",
            language="both",
            category="contradictions",
            performance=TemplatePerformance(0.78, 2800, 0, 0.88),
        ),
        TemplateVersion(
            id="insights_generation_v2",
            version="2.0",
            name="Advanced Insights Generation",
            description="Cross-question insights with pattern recognition",
            language="both",
            category="insights",
            performance=TemplatePerformance(0.8, 3500, 0, 0.9),
        ),
        TemplateVersion(
            id="recommendations_engine_v2",
            version="2.0",
            name="SMART Recommendations Engine",
            description="Recommendations with impact assessment",
            language="both",
            category="recommendations",
            performance=TemplatePerformance(0.88, 4000, 0, 0.94),
        ),
    ]
