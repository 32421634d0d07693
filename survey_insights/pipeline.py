"""
Multi-stage analysis pipeline for one job attempt.

Flow:
    1. Load questionnaire and responses (fatal if missing or empty)
    2. Anonymize every response at the job's level (never skipped)
    3. Submit embeddings per anonymized answer to a background pool
       (best-effort, never awaited, outside the job's time budget)
    4. For each requested analysis type, in order:
         select template → render → invoke model → parse and shape-check
         → validate output → persist AnalysisResult → performance feedback
         → advance progress
    5. Finish the job as completed with a result summary

A failure inside step 4 is recorded as that type's failed result and the loop
continues. Errors in steps 1-3 propagate to the queue, which decides between
retry and job failure.

Progress after type i of N is round((i+1)/N*100); the last step is written by
the completion itself so that 100 is only ever seen on a completed job.

A run abandoned by the job timeout stops writing performance feedback: the
registry is only updated while the run still owns a processing job.
"""

from __future__ import annotations

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

import structlog

from survey_insights.anonymization import Anonymizer
from survey_insights.embeddings import EmbeddingStore
from survey_insights.error_handling import (
    FatalJobError,
    JobTimeoutError,
    OutputValidationError,
    TemplateNotFoundError,
    is_retryable_error,
    log_and_continue,
)
from survey_insights.llm import InvocationOptions, ModelInvoker, check_required_fields, parse_json_payload
from survey_insights.models import (
    AnalysisResult,
    AnalysisType,
    AnonymizedResponse,
    Job,
    JobStatus,
    Questionnaire,
)
from survey_insights.prompts.feedback import update_metrics
from survey_insights.prompts.registry import TemplateRegistry, TemplateVersion
from survey_insights.prompts.renderer import TemplateRenderer, render_text
from survey_insights.prompts.selector import select_optimal
from survey_insights.quality import QualityValidator
from survey_insights.store import JobStore, QuestionnaireSource

_logger = structlog.get_logger()

# Payload keys that raise the confidence score when non-empty.
CONFIDENCE_SECTIONS = ("themes", "clusters", "insights", "recommendations")

EMBEDDING_WORKERS = 2


def compute_progress(index: int, total: int) -> int:
    """round((index+1)/total*100) with halves rounded up."""
    return int(math.floor((index + 1) / total * 100 + 0.5))


def confidence_score(payload: Dict[str, Any], response_count: int) -> float:
    score = 0.5
    if response_count >= 50:
        score += 0.2
    elif response_count >= 20:
        score += 0.1
    for key in CONFIDENCE_SECTIONS:
        if payload.get(key):
            score += 0.1
    return round(min(score, 1.0), 4)


class AnalysisPipeline:
    """Runs every requested analysis type for a claimed job."""

    def __init__(
        self,
        *,
        store: JobStore,
        source: QuestionnaireSource,
        anonymizer: Anonymizer,
        invoker: ModelInvoker,
        registry: TemplateRegistry,
        renderer: TemplateRenderer,
        invocation: InvocationOptions,
        validator: Optional[QualityValidator] = None,
        embedding_store: Optional[EmbeddingStore] = None,
        embedding_model: str = "text-embedding-3-small",
        embedding_workers: int = EMBEDDING_WORKERS,
    ):
        self.store = store
        self.source = source
        self.anonymizer = anonymizer
        self.invoker = invoker
        self.registry = registry
        self.renderer = renderer
        self.invocation = invocation
        self.validator = validator or QualityValidator()
        self.embedding_store = embedding_store
        self.embedding_model = embedding_model
        self.embedding_workers = embedding_workers
        self._embedding_executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def run(self, job: Job, *, deadline: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Execute one attempt of `job` (already claimed, status processing).

        Args:
            job: The claimed job record
            deadline: time.monotonic() value after which no further type starts

        Returns:
            The result summary stored on the job, or None when the store
            rejected the run's writes (job no longer processing).

        Raises:
            FatalJobError: questionnaire missing or without responses
            JobTimeoutError: deadline passed between analysis types
            Exception: anonymization errors, for the queue to classify
        """
        log = _logger.bind(job_id=job.id, questionnaire_id=job.questionnaire_id, attempt=job.attempts)
        started = time.perf_counter()

        questionnaire = self.source.get_questionnaire(job.questionnaire_id)
        if questionnaire is None:
            raise FatalJobError(
                f"Questionnaire not found: {job.questionnaire_id}",
                {"questionnaire_id": job.questionnaire_id},
            )
        responses = self.source.list_responses(job.questionnaire_id)
        if not responses:
            raise FatalJobError(
                f"No responses available for questionnaire {job.questionnaire_id}",
                {"questionnaire_id": job.questionnaire_id},
            )

        level = job.options.anonymization_level
        anonymized = [self.anonymizer.anonymize(r, level) for r in responses]
        log.info("analysis.anonymized", responses=len(anonymized), level=level)

        self._store_embeddings(anonymized)

        context, variables = self._render_inputs(job, questionnaire, anonymized)
        types = list(job.analysis_types)
        results: List[AnalysisResult] = []

        for index, analysis_type in enumerate(types):
            if deadline is not None and time.monotonic() > deadline:
                raise JobTimeoutError(job.id, round(time.perf_counter() - started, 1))

            result = self._run_type(job, analysis_type, context, variables, len(anonymized), deadline)
            if not self.store.append_result(result):
                log.warning("analysis.write_rejected", analysis_type=analysis_type.value)
                return None
            results.append(result)

            if index < len(types) - 1:
                self.store.update_progress(job.id, compute_progress(index, len(types)))

        summary = self._summary(job, results, len(responses), len(anonymized), started)
        if not self.store.finish(job.id, JobStatus.COMPLETED, result=summary):
            log.warning("analysis.finish_rejected")
            return None

        log.info(
            "analysis.job.completed",
            succeeded=len(summary["analyses"]),
            failed=len(summary["errors"]),
            processing_time_ms=summary["statistics"]["processing_time_ms"],
        )
        return summary

    # ------------------------------------------------------------------
    # per-type step
    # ------------------------------------------------------------------

    def _run_type(
        self,
        job: Job,
        analysis_type: AnalysisType,
        context: Dict[str, Any],
        variables: Dict[str, Any],
        response_count: int,
        deadline: Optional[float] = None,
    ) -> AnalysisResult:
        log = _logger.bind(job_id=job.id, analysis_type=analysis_type.value)
        started = time.perf_counter()
        template: Optional[TemplateVersion] = None
        language = context["language"]

        try:
            template = select_optimal(self.registry, analysis_type.value, language)
            if template is None:
                raise TemplateNotFoundError(
                    f"No active template for {analysis_type.value} ({language})",
                    {"category": analysis_type.value, "language": language},
                )

            rendered = self.renderer.render(
                template.id,
                context,
                variables,
                {"custom_variables": job.options.custom_variables},
            )
            user_prompt = rendered.user
            if job.options.custom_prompt:
                values = {**context, **variables, **job.options.custom_variables}
                user_prompt = (
                    f"{render_text(job.options.custom_prompt, values)}\n\n"
                    f"{variables['responses']}"
                )

            response = self.invoker.invoke(rendered.system, user_prompt, self.invocation)
            payload = parse_json_payload(response.text)
            required = analysis_type.required_field
            check_required_fields(payload, [required])

            report = self.validator.validate_output(
                payload,
                schema={"required": [required]},
                context={"language": language, "expected_sections": [required]},
            )
            if not report.passed:
                raise OutputValidationError(
                    "Output rejected by quality gate: " + "; ".join(i.message for i in report.errors),
                    {"failed_rules": [i.rule for i in report.errors]},
                )

            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            confidence = confidence_score(payload, response_count)
            if self._owns(job, deadline):
                update_metrics(
                    self.registry,
                    template.id,
                    confidence=confidence,
                    processing_time_ms=elapsed_ms,
                    success=True,
                )
            log.info(
                "analysis.type.completed",
                template_id=template.id,
                tokens=response.tokens_used,
                confidence=confidence,
                elapsed_ms=elapsed_ms,
            )
            return AnalysisResult(
                job_id=job.id,
                questionnaire_id=job.questionnaire_id,
                analysis_type=analysis_type,
                status="completed",
                results=payload,
                metadata={
                    "model": response.model,
                    "template_id": template.id,
                    "template_version": template.version,
                    "tokens_used": response.tokens_used,
                    "prompt_tokens_estimate": rendered.token_estimate,
                    "processing_time_ms": elapsed_ms,
                    "confidence_score": confidence,
                    "response_count": response_count,
                    "validation_score": report.overall_score,
                    "validation_warnings": [i.rule for i in report.warnings],
                },
                attempt=job.attempts,
            )

        except Exception as exc:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            retryable = is_retryable_error(exc)
            log.warning(
                "analysis.type.failed",
                error_type=type(exc).__name__,
                error=str(exc),
                retryable=retryable,
            )
            if template is not None and self._owns(job, deadline):
                update_metrics(
                    self.registry,
                    template.id,
                    confidence=0.0,
                    processing_time_ms=elapsed_ms,
                    success=False,
                )
            return AnalysisResult(
                job_id=job.id,
                questionnaire_id=job.questionnaire_id,
                analysis_type=analysis_type,
                status="failed",
                metadata={
                    "template_id": template.id if template else None,
                    "template_version": template.version if template else None,
                    "processing_time_ms": elapsed_ms,
                    "response_count": response_count,
                },
                error=str(exc),
                retryable=retryable,
                attempt=job.attempts,
            )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def close(self, wait: bool = False) -> None:
        """Shut down the embedding pool. With wait=False queued embeddings are dropped."""
        with self._executor_lock:
            executor, self._embedding_executor = self._embedding_executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)

    def _executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._embedding_executor is None:
                self._embedding_executor = ThreadPoolExecutor(
                    max_workers=self.embedding_workers,
                    thread_name_prefix="embedding",
                )
            return self._embedding_executor

    def _store_embeddings(self, anonymized: Sequence[AnonymizedResponse]) -> None:
        if self.embedding_store is None:
            return
        executor = self._executor()
        submitted = 0
        for response in anonymized:
            for question_id, text in response.answers.items():
                executor.submit(self._store_one_embedding, response.anonymous_id, question_id, text)
                submitted += 1
        _logger.debug("embed.submitted", count=submitted)

    def _owns(self, job: Job, deadline: Optional[float]) -> bool:
        if deadline is not None and time.monotonic() > deadline:
            return False
        current = self.store.get(job.id)
        return current is not None and current.status == JobStatus.PROCESSING

    @log_and_continue("embed", default=None)
    def _store_one_embedding(self, response_id: str, question_id: str, text: str) -> None:
        self.embedding_store.store_embedding(response_id, question_id, text, self.embedding_model)

    def _render_inputs(self, job: Job, questionnaire: Questionnaire, anonymized: Sequence[AnonymizedResponse]):
        options = job.options
        context = {
            "language": options.language,
            "questionnaire_type": options.questionnaire_type or questionnaire.questionnaire_type,
            "response_count": len(anonymized),
            "topic": options.topic or questionnaire.topic,
        }
        response_texts = [r.as_text() for r in anonymized]
        variables = {
            "responses": "\n\n".join(response_texts),
            "response_list": response_texts,
            "min_cluster_size": options.min_cluster_size,
            "min_theme_frequency": options.min_theme_frequency,
            "include_sentiment": options.include_sentiment,
            "anonymization_level": options.anonymization_level,
        }
        return context, variables

    @staticmethod
    def _summary(
        job: Job,
        results: Sequence[AnalysisResult],
        total_responses: int,
        anonymized_responses: int,
        started: float,
    ) -> Dict[str, Any]:
        succeeded = [r for r in results if r.succeeded]
        return {
            "job_id": job.id,
            "status": "completed" if succeeded else "failed",
            "analyses": [
                {
                    "type": r.analysis_type.value,
                    "template_id": r.metadata.get("template_id"),
                    "confidence_score": r.metadata.get("confidence_score"),
                }
                for r in succeeded
            ],
            "errors": [
                {"type": r.analysis_type.value, "error": r.error, "retryable": r.retryable}
                for r in results
                if not r.succeeded
            ],
            "statistics": {
                "total_responses": total_responses,
                "anonymized_responses": anonymized_responses,
                "processing_time_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        }
