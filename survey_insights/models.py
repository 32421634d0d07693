"""
Domain records shared by the queue, the pipeline and the stores.

Jobs and results are plain dataclasses; the HTTP layer converts them with
`to_dict()`. Enum values are the strings persisted in PostgreSQL.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    Priority.LOW: 1,
    Priority.MEDIUM: 5,
    Priority.HIGH: 10,
    Priority.URGENT: 20,
}


class AnalysisType(str, Enum):
    THEMATIC = "thematic"
    CLUSTERING = "clustering"
    CONTRADICTIONS = "contradictions"
    INSIGHTS = "insights"
    RECOMMENDATIONS = "recommendations"

    @classmethod
    def parse(cls, value: "str | AnalysisType") -> "AnalysisType":
        """Accept enum members, canonical names and the legacy "clusters" alias."""
        if isinstance(value, cls):
            return value
        raw = str(value).strip().lower()
        raw = ANALYSIS_TYPE_ALIASES.get(raw, raw)
        return cls(raw)

    @property
    def required_field(self) -> str:
        return REQUIRED_FIELDS[self]


ANALYSIS_TYPE_ALIASES = {"clusters": "clustering"}

# Top-level key each analysis payload must carry.
REQUIRED_FIELDS = {
    AnalysisType.THEMATIC: "themes",
    AnalysisType.CLUSTERING: "clusters",
    AnalysisType.CONTRADICTIONS: "contradictions",
    AnalysisType.INSIGHTS: "insights",
    AnalysisType.RECOMMENDATIONS: "recommendations",
}

SUPPORTED_LANGUAGES = ("en", "pl")
ANONYMIZATION_LEVELS = ("partial", "full")

# Questionnaire ids are opaque tokens (uuid, slug or numeric key).
QUESTIONNAIRE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


def is_valid_questionnaire_id(value: Any) -> bool:
    return isinstance(value, str) and bool(QUESTIONNAIRE_ID_PATTERN.match(value))


@dataclass
class AnalysisOptions:
    """Per-job knobs forwarded to rendering and anonymization."""
    min_cluster_size: int = 3
    min_theme_frequency: int = 2
    include_sentiment: bool = True
    anonymization_level: str = "full"
    custom_prompt: Optional[str] = None
    language: str = "en"
    topic: Optional[str] = None
    questionnaire_type: Optional[str] = None
    custom_variables: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AnalysisOptions":
        if not data:
            return cls()
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    id: str
    questionnaire_id: str
    analysis_types: List[AnalysisType]
    priority: Priority = Priority.MEDIUM
    options: AnalysisOptions = field(default_factory=AnalysisOptions)
    triggered_by: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    attempts: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # Set while a failed attempt waits for its retry (job stays processing).
    next_retry_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "questionnaire_id": self.questionnaire_id,
            "analysis_types": [t.value for t in self.analysis_types],
            "priority": self.priority.value,
            "options": self.options.to_dict(),
            "triggered_by": self.triggered_by,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "error": self.error,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "next_retry_at": _iso(self.next_retry_at),
        }


@dataclass
class AnalysisResult:
    """One analysis type's outcome for one job attempt. Insert-only."""
    job_id: str
    questionnaire_id: str
    analysis_type: AnalysisType
    status: str
    results: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = False
    attempt: int = 1
    created_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "questionnaire_id": self.questionnaire_id,
            "analysis_type": self.analysis_type.value,
            "status": self.status,
            "results": self.results,
            "metadata": self.metadata,
            "error": self.error,
            "retryable": self.retryable,
            "attempt": self.attempt,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Questionnaire:
    id: str
    title: str
    questionnaire_type: str = "community"
    topic: Optional[str] = None
    language: str = "en"


@dataclass
class QuestionnaireResponse:
    """A respondent's answers keyed by question id."""
    id: str
    questionnaire_id: str
    answers: Dict[str, Any]
    respondent: Dict[str, Any] = field(default_factory=dict)
    submitted_at: Optional[datetime] = None


@dataclass
class AnonymizedResponse:
    anonymous_id: str
    response_id: str
    answers: Dict[str, str]
    level: str = "full"

    def as_text(self) -> str:
        lines = [f"[{self.anonymous_id}]"]
        for question_id, answer in self.answers.items():
            lines.append(f"{question_id}: {answer}")
        return "\n".join(lines)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
