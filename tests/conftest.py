from __future__ import annotations

from typing import List, Optional

import pytest

from fakes import QUESTIONNAIRE_ID, ScriptedInvoker
from survey_insights.anonymization import RegexAnonymizer
from survey_insights.llm import ModelInvoker
from survey_insights.models import Questionnaire, QuestionnaireResponse
from survey_insights.prompts import clear_content_cache
from survey_insights.runtime import build_runtime
from survey_insights.settings import (
    AppSettings,
    LLMSettings,
    PostgresSettings,
    QueueSettings,
    RedisSettings,
)
from survey_insights.store import InMemoryJobStore, InMemoryQuestionnaireSource


@pytest.fixture(autouse=True)
def _clear_prompt_cache():
    clear_content_cache()
    yield
    clear_content_cache()


@pytest.fixture
def queue_settings() -> QueueSettings:
    return QueueSettings(
        concurrency=2,
        rate_limit_max=100,
        rate_limit_window=1.0,
        max_attempts=3,
        backoff_seconds=0.01,
        job_timeout=5.0,
    )


@pytest.fixture
def app_settings(queue_settings) -> AppSettings:
    return AppSettings(
        llm=LLMSettings(api_key="sk-test-key-1234567890", model="test-model"),
        queue=queue_settings,
        postgres=PostgresSettings(
            host="localhost", port=5432, username="postgres", password="secret", database="test"
        ),
        redis=RedisSettings(url="redis://localhost:6379/0"),
        anonymization_salt="test-salt",
    )


@pytest.fixture
def responses() -> List[QuestionnaireResponse]:
    return [
        QuestionnaireResponse(
            id="r1",
            questionnaire_id=QUESTIONNAIRE_ID,
            answers={"q1": "We need a shared garden. Write to jan.kowalski@example.com"},
            respondent={"name": "Jan Kowalski"},
        ),
        QuestionnaireResponse(
            id="r2",
            questionnaire_id=QUESTIONNAIRE_ID,
            answers={"q1": "More evening meetings, call 555-123-4567"},
        ),
        QuestionnaireResponse(
            id="r3",
            questionnaire_id=QUESTIONNAIRE_ID,
            answers={"q1": "A common kitchen would help", "q2": "Safety at night"},
        ),
    ]


@pytest.fixture
def source(responses) -> InMemoryQuestionnaireSource:
    src = InMemoryQuestionnaireSource()
    src.add(
        Questionnaire(id=QUESTIONNAIRE_ID, title="Community survey", topic="shared spaces"),
        responses,
    )
    src.add(Questionnaire(id="q-empty", title="Nobody answered"), [])
    return src


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def make_runtime(app_settings, store, source):
    """Factory for a fully wired runtime on in-memory stores."""

    def _make(invoker: Optional[ModelInvoker] = None, anonymizer=None, **kwargs):
        return build_runtime(
            app_settings,
            store=store,
            source=source,
            invoker=invoker or ScriptedInvoker(),
            anonymizer=anonymizer or RegexAnonymizer(salt="test-salt"),
            embedding_store=kwargs.pop("embedding_store", None),
            **kwargs,
        )

    return _make
