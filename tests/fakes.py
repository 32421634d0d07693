"""Test doubles shared across the suite."""

from __future__ import annotations

import json
import threading
from typing import Any, Dict, List

from survey_insights.anonymization import RegexAnonymizer
from survey_insights.llm import InvocationOptions, ModelInvoker, ModelResponse
from survey_insights.models import AnalysisType

QUESTIONNAIRE_ID = "q-community-2024"


def payload_for(analysis_type: AnalysisType, **extra: Any) -> str:
    """Minimal valid model reply for an analysis type."""
    body: Dict[str, Any] = {
        analysis_type.required_field: [{"id": f"{analysis_type.value}_1", "name": "Shared spaces"}],
        "summary": "Residents want more shared spaces.",
    }
    body.update(extra)
    return json.dumps(body)


class ScriptedInvoker(ModelInvoker):
    """Returns queued replies in call order; exceptions in the queue are raised."""

    def __init__(self, *replies: Any, default: Any = None):
        self.replies = list(replies)
        self.default = default
        self.calls: List[Dict[str, str]] = []
        self._lock = threading.Lock()

    def invoke(self, system_prompt: str, user_prompt: str, options: InvocationOptions) -> ModelResponse:
        with self._lock:
            self.calls.append({"system": system_prompt, "user": user_prompt})
            reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            raise AssertionError("ScriptedInvoker ran out of replies")
        return ModelResponse(text=reply, tokens_used=42, model=options.model)


class FlakyAnonymizer(RegexAnonymizer):
    """Raises `error` for the first `failures` calls, then anonymizes normally."""

    def __init__(self, error: Exception, failures: int = 1):
        super().__init__(salt="test-salt")
        self.error = error
        self.failures = failures
        self.calls = 0

    def anonymize(self, response, level):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return super().anonymize(response, level)
