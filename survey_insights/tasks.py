"""
Celery tasks for background analysis.

`run_analysis_job` executes one attempt through the same `JobRunner` used by
the in-process pool. A retryable failure leaves the job delayed in the store
and re-queues the task with the runner's backoff as countdown.
"""
from functools import lru_cache
from typing import Any, Dict

import structlog
from celery.signals import worker_process_shutdown

from survey_insights.celery_app import celery_app, settings
from survey_insights.job_queue import AttemptOutcome, JobDispatcher
from survey_insights.logging_config import configure_logging
from survey_insights.models import Job, Priority
from survey_insights.runtime import PipelineRuntime, build_runtime

logger = structlog.get_logger(__name__)

# Redis transport priority, 0 served first.
CELERY_PRIORITIES = {
    Priority.URGENT: 0,
    Priority.HIGH: 3,
    Priority.MEDIUM: 6,
    Priority.LOW: 9,
}


def rate_limit_expression(max_calls: int, window: float) -> str:
    """Express the rolling-window limit in Celery's "N/m" syntax."""
    if window == 1:
        return f"{max_calls}/s"
    if window == 60:
        return f"{max_calls}/m"
    if window == 3600:
        return f"{max_calls}/h"
    return f"{max_calls * 60.0 / window:g}/m"


@lru_cache(maxsize=1)
def get_runtime() -> PipelineRuntime:
    """Build the pipeline once per worker process."""
    configure_logging()
    return build_runtime(settings)


@worker_process_shutdown.connect
def close_runtime(**_kwargs) -> None:
    if get_runtime.cache_info().currsize:
        get_runtime().pipeline.close()


@celery_app.task(
    bind=True,
    name="survey_insights.tasks.run_analysis_job",
    rate_limit=rate_limit_expression(settings.queue.rate_limit_max, settings.queue.rate_limit_window),
)
def run_analysis_job(self, job_id: str) -> Dict[str, Any]:
    """
    Run one attempt of a queued analysis job.

    Returns:
        dict with job_id and the attempt outcome
    """
    log = logger.bind(task_id=self.request.id, job_id=job_id, retries=self.request.retries)
    log.info("task.analysis.start")

    runtime = get_runtime()
    self.update_state(state="PROCESSING", meta={"job_id": job_id})
    result = runtime.runner.run_attempt(job_id)

    if result.outcome is AttemptOutcome.RETRY:
        log.warning("task.analysis.retry", countdown=result.delay, error=result.error)
        # Attempt accounting lives in the store; Celery only schedules.
        raise self.retry(countdown=result.delay, max_retries=None)

    log.info("task.analysis.complete", outcome=result.outcome.value)
    return {"job_id": job_id, "outcome": result.outcome.value, "error": result.error}


class CeleryJobDispatcher(JobDispatcher):
    """Persists jobs in the shared store and hands them to Celery workers."""

    def _enqueue(self, job: Job) -> None:
        task = run_analysis_job.apply_async(
            args=[job.id],
            priority=CELERY_PRIORITIES[job.priority],
        )
        logger.info("task.analysis.enqueued", job_id=job.id, task_id=task.id)
