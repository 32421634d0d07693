"""
Process wiring: builds the pipeline, the job runner and the dispatcher.

The API process and each Celery worker process call `build_runtime()` once.
Every collaborator can be injected, which is how tests run the full pipeline
against in-memory stores and a fake model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from survey_insights.anonymization import Anonymizer, RegexAnonymizer
from survey_insights.clients import build_llm_client, get_pg_pool
from survey_insights.embeddings import EmbeddingStore, OpenAIEmbeddingStore
from survey_insights.job_queue import InProcessJobQueue, JobDispatcher, JobRunner
from survey_insights.llm import InvocationOptions, ModelInvoker, OpenAIModelInvoker
from survey_insights.pipeline import AnalysisPipeline
from survey_insights.prompts import RenderCache, TemplateRegistry, TemplateRenderer
from survey_insights.quality import QualityValidator
from survey_insights.settings import AppSettings
from survey_insights.store import (
    JobStore,
    PostgresJobStore,
    PostgresQuestionnaireSource,
    QuestionnaireSource,
)

_logger = structlog.get_logger()

_UNSET = object()


@dataclass
class PipelineRuntime:
    settings: AppSettings
    store: JobStore
    source: QuestionnaireSource
    registry: TemplateRegistry
    cache: RenderCache
    validator: QualityValidator
    pipeline: AnalysisPipeline
    runner: JobRunner


def build_runtime(
    settings: AppSettings,
    *,
    store: Optional[JobStore] = None,
    source: Optional[QuestionnaireSource] = None,
    invoker: Optional[ModelInvoker] = None,
    anonymizer: Optional[Anonymizer] = None,
    registry: Optional[TemplateRegistry] = None,
    validator: Optional[QualityValidator] = None,
    embedding_store=_UNSET,
) -> PipelineRuntime:
    """
    Assemble the pipeline for this process.

    PostgreSQL backs the store and questionnaire source unless both are given;
    the OpenAI client backs the invoker and the embedding store unless given.
    Pass `embedding_store=None` to disable embedding storage.
    """
    pool = None
    if store is None or source is None:
        pool = get_pg_pool(settings)
        store = store or PostgresJobStore(pool)
        source = source or PostgresQuestionnaireSource(pool)

    llm_client = None
    if invoker is None or (embedding_store is _UNSET and pool is not None):
        llm_client = build_llm_client(settings.llm)
    if invoker is None:
        invoker = OpenAIModelInvoker(llm_client)
    if embedding_store is _UNSET:
        embedding_store = OpenAIEmbeddingStore(llm_client, pool) if pool is not None else None

    registry = registry or TemplateRegistry.with_defaults()
    validator = validator or QualityValidator()
    cache = RenderCache()
    pipeline = AnalysisPipeline(
        store=store,
        source=source,
        anonymizer=anonymizer or RegexAnonymizer(settings.anonymization_salt),
        invoker=invoker,
        registry=registry,
        renderer=TemplateRenderer(registry, cache),
        invocation=InvocationOptions.from_settings(settings.llm),
        validator=validator,
        embedding_store=embedding_store,
        embedding_model=settings.llm.embedding_model,
    )
    runner = JobRunner(store, pipeline, settings.queue)
    _logger.info(
        "runtime.ready",
        store=type(store).__name__,
        templates=len(registry),
        embeddings=embedding_store is not None,
    )
    return PipelineRuntime(
        settings=settings,
        store=store,
        source=source,
        registry=registry,
        cache=cache,
        validator=validator,
        pipeline=pipeline,
        runner=runner,
    )


def build_dispatcher(runtime: PipelineRuntime) -> JobDispatcher:
    """Pick the dispatch backend named by QUEUE_BACKEND."""
    backend = runtime.settings.queue.backend
    if backend == "celery":
        from survey_insights.tasks import CeleryJobDispatcher

        return CeleryJobDispatcher(runtime.store)
    if backend != "local":
        raise ValueError(f"Unknown queue backend: {backend}")
    return InProcessJobQueue(runtime.store, runtime.runner, runtime.settings.queue)
