"""
Response anonymization.

The pipeline never hands a raw response to rendering or to the model: every
response goes through an `Anonymizer` first. `RegexAnonymizer` is the default
implementation.

Levels:
    partial  direct contact identifiers (email, phone, national id, bank account)
    full     partial + postal codes, capitalized name pairs and any value
             found in the respondent's profile

Anonymous ids are stable per (salt, response id) so that repeated runs over
the same data reference respondents consistently.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Pattern, Tuple

from survey_insights.models import ANONYMIZATION_LEVELS, AnonymizedResponse, QuestionnaireResponse

# Order matters: longer numeric identifiers go before phone numbers.
PARTIAL_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b[A-Z]{2}\d{2}(?:[ ]?\d{4}){5,7}\b"), "[ACCOUNT]"),
    (re.compile(r"\b\d{26}\b"), "[ACCOUNT]"),
    (re.compile(r"\b\d{11}\b"), "[NATIONAL_ID]"),
    (re.compile(r"(?:\+\d{2}[ -]?)?\b\d{3}[ -]\d{3}[ -]\d{3,4}\b"), "[PHONE]"),
]

FULL_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\b\d{2}-\d{3}\b"), "[POSTAL_CODE]"),
    (re.compile(r"\b[A-ZŁŚŻŹĆŃÓĘĄ][a-ząćęłńóśźż]+ [A-ZŁŚŻŹĆŃÓĘĄ][a-ząćęłńóśźż]+(?:-[A-ZŁŚŻŹĆŃÓĘĄ][a-ząćęłńóśźż]+)?\b"), "[NAME]"),
]


class Anonymizer(ABC):
    @abstractmethod
    def anonymize(self, response: QuestionnaireResponse, level: str) -> AnonymizedResponse:
        ...


class RegexAnonymizer(Anonymizer):
    def __init__(self, salt: Optional[str] = None):
        self._salt = salt or secrets.token_hex(16)

    def anonymous_id(self, response_id: str) -> str:
        digest = hashlib.sha256(f"{self._salt}:{response_id}".encode("utf-8")).hexdigest()
        return f"resp_{digest[:12]}"

    def anonymize(self, response: QuestionnaireResponse, level: str) -> AnonymizedResponse:
        if level not in ANONYMIZATION_LEVELS:
            raise ValueError(f"Unknown anonymization level: {level}")

        known_values = _profile_values(response.respondent) if level == "full" else []
        answers = {
            str(question_id): self.scrub(_as_text(answer), level, known_values)
            for question_id, answer in response.answers.items()
        }
        return AnonymizedResponse(
            anonymous_id=self.anonymous_id(response.id),
            response_id=response.id,
            answers=answers,
            level=level,
        )

    def scrub(self, text: str, level: str, known_values: Optional[List[str]] = None) -> str:
        for value in known_values or []:
            text = re.sub(re.escape(value), "[REDACTED]", text, flags=re.IGNORECASE)
        for pattern, replacement in PARTIAL_PATTERNS:
            text = pattern.sub(replacement, text)
        if level == "full":
            for pattern, replacement in FULL_PATTERNS:
                text = pattern.sub(replacement, text)
        return text


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_as_text(v) for v in value)
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_as_text(v)}" for k, v in value.items())
    return str(value)


def _profile_values(respondent: Dict[str, Any]) -> List[str]:
    values = []
    for value in respondent.values():
        text = _as_text(value).strip()
        # Very short values ("a", "12") would redact ordinary words.
        if len(text) >= 3:
            values.append(text)
    # Longest first so "Jan Kowalski" wins over "Jan".
    return sorted(set(values), key=len, reverse=True)
