"""
Job queue, worker pool and the shared job runner.

`JobDispatcher` is the caller-facing surface (submit, get_status, cancel,
queue_stats). Two dispatch backends share one `JobRunner`:

    InProcessJobQueue   thread pool in the API process (QUEUE_BACKEND=local)
    CeleryJobDispatcher Celery task on a Redis broker (QUEUE_BACKEND=celery),
                        see survey_insights.tasks

Job lifecycle:
    queued ──claim──> processing ──> completed | failed
       │                  │  ▲
       │                  └──┘ retryable error: stays processing, counted as
       │                       "delayed" until the backoff elapses
       └──cancel──> cancelled

Retry policy: job-level, `backoff_seconds * 2**(attempt-1)` between attempts,
at most `max_attempts` attempts. Only errors whose message matches the
transient vocabulary are retried. Each attempt runs under a hard wall-clock
limit (`job_timeout`); exceeding it fails the job and any late writes from the
abandoned run are rejected by the store.
"""

from __future__ import annotations

import contextvars
import heapq
import itertools
import queue
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from survey_insights.error_handling import (
    JobNotFoundError,
    JobTimeoutError,
    JobValidationError,
    is_retryable_error,
)
from survey_insights.logging_config import bind_job, clear_context
from survey_insights.models import (
    ANONYMIZATION_LEVELS,
    SUPPORTED_LANGUAGES,
    AnalysisOptions,
    AnalysisType,
    Job,
    JobStatus,
    Priority,
    is_valid_questionnaire_id,
    utcnow,
)
from survey_insights.settings import QueueSettings
from survey_insights.store import JobStore

_logger = structlog.get_logger()

POLL_INTERVAL = 0.05
INTERRUPTED_MESSAGE = "Job interrupted before completion (worker restarted)"
ORPHAN_GRACE_SECONDS = 30.0


# =============================================================================
# SUBMISSION
# =============================================================================

def build_job(
    questionnaire_id: str,
    analysis_types: Iterable[Any],
    *,
    priority: Any = Priority.MEDIUM,
    options: Optional[Dict[str, Any] | AnalysisOptions] = None,
    triggered_by: Optional[str] = None,
) -> Job:
    """
    Build a validated `queued` Job from raw caller input.

    Raises:
        JobValidationError: unknown analysis type or priority, empty type list,
                            malformed questionnaire id, unsupported option value
    """
    types: List[AnalysisType] = []
    for raw in analysis_types or []:
        try:
            types.append(AnalysisType.parse(raw))
        except ValueError:
            raise JobValidationError(
                f"Unknown analysis type: {raw}",
                {"allowed": [t.value for t in AnalysisType]},
            )
    try:
        parsed_priority = priority if isinstance(priority, Priority) else Priority(str(priority).lower())
    except ValueError:
        raise JobValidationError(
            f"Unknown priority: {priority}",
            {"allowed": [p.value for p in Priority]},
        )
    if not isinstance(options, AnalysisOptions):
        try:
            options = AnalysisOptions.from_dict(options)
        except TypeError as exc:
            raise JobValidationError(f"Invalid analysis options: {exc}")

    job = Job(
        id=str(uuid.uuid4()),
        questionnaire_id=questionnaire_id,
        analysis_types=types,
        priority=parsed_priority,
        options=options,
        triggered_by=triggered_by,
    )
    validate_job(job)
    return job


def validate_job(job: Job) -> None:
    if not job.analysis_types:
        raise JobValidationError("At least one analysis type is required")
    for analysis_type in job.analysis_types:
        if not isinstance(analysis_type, AnalysisType):
            raise JobValidationError(f"Unknown analysis type: {analysis_type}")
    if not is_valid_questionnaire_id(job.questionnaire_id):
        raise JobValidationError(
            f"Malformed questionnaire id: {job.questionnaire_id!r}",
            {"questionnaire_id": job.questionnaire_id},
        )
    if job.options.language not in SUPPORTED_LANGUAGES:
        raise JobValidationError(
            f"Unsupported language: {job.options.language}",
            {"allowed": list(SUPPORTED_LANGUAGES)},
        )
    if job.options.anonymization_level not in ANONYMIZATION_LEVELS:
        raise JobValidationError(
            f"Unknown anonymization level: {job.options.anonymization_level}",
            {"allowed": list(ANONYMIZATION_LEVELS)},
        )
    for name in ("min_cluster_size", "min_theme_frequency"):
        value = getattr(job.options, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise JobValidationError(f"{name} must be an integer >= 1", {name: value})
    if not isinstance(job.options.custom_variables, dict):
        raise JobValidationError("custom_variables must be an object")


# =============================================================================
# RATE LIMITER
# =============================================================================

class RateLimiter:
    """Rolling-window limiter: at most `max_calls` acquisitions per `window` seconds."""

    def __init__(self, max_calls: int, window: float, clock: Callable[[], float] = time.monotonic):
        if max_calls < 1 or window <= 0:
            raise ValueError("max_calls must be >= 1 and window > 0")
        self.max_calls = max_calls
        self.window = window
        self._clock = clock
        self._calls: Deque[float] = deque()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._purge(now)
            if len(self._calls) < self.max_calls:
                self._calls.append(now)
                return True
            return False

    def wait_time(self) -> float:
        """Seconds until the next slot frees up (0 when one is free now)."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if len(self._calls) < self.max_calls:
                return 0.0
            return max(0.0, self._calls[0] + self.window - now)

    def acquire(self, stop_event: Optional[threading.Event] = None) -> bool:
        """Block until a slot is free. Returns False if `stop_event` fires first."""
        while True:
            if self.try_acquire():
                return True
            delay = max(self.wait_time(), POLL_INTERVAL)
            if stop_event is not None:
                if stop_event.wait(delay):
                    return False
            else:
                time.sleep(delay)


# =============================================================================
# JOB RUNNER
# =============================================================================

class AttemptOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class AttemptResult:
    outcome: AttemptOutcome
    delay: float = 0.0
    error: Optional[str] = None


class JobRunner:
    """
    Executes one attempt of a job: claim → pipeline → retry or finish.

    Shared by every dispatch backend so retry, timeout and failure handling
    are identical whether jobs run on local threads or Celery workers.
    """

    def __init__(
        self,
        store: JobStore,
        pipeline: Any,
        settings: QueueSettings,
        orphan_grace: float = ORPHAN_GRACE_SECONDS,
    ):
        self.store = store
        self.pipeline = pipeline
        self.settings = settings
        self.orphan_grace = orphan_grace

    def retry_delay(self, attempt: int) -> float:
        return self.settings.backoff_seconds * 2 ** (attempt - 1)

    def run_attempt(self, job_id: str) -> AttemptResult:
        job = self.store.claim(job_id)
        if job is None:
            _logger.info("job.skip", job_id=job_id)
            return AttemptResult(AttemptOutcome.SKIPPED)

        bind_job(job.id, attempt=job.attempts)
        try:
            _logger.info("job.start", questionnaire_id=job.questionnaire_id, types=[t.value for t in job.analysis_types])
            error, worker = self._execute(job)
            if error is None:
                return AttemptResult(AttemptOutcome.COMPLETED)
            result = self._handle_failure(job, error)
            if worker.is_alive():
                self._await_orphan(worker)
            return result
        finally:
            clear_context(["job_id", "attempt"])

    def _execute(self, job: Job) -> Tuple[Optional[BaseException], threading.Thread]:
        """Run the pipeline on a helper thread bounded by the job timeout."""
        timeout = self.settings.job_timeout
        deadline = time.monotonic() + timeout
        outcome: Dict[str, BaseException] = {}

        def target() -> None:
            try:
                self.pipeline.run(job, deadline=deadline)
            except Exception as exc:
                outcome["error"] = exc

        ctx = contextvars.copy_context()
        worker = threading.Thread(target=ctx.run, args=(target,), name=f"job-{job.id[:8]}", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            return JobTimeoutError(job.id, timeout), worker
        return outcome.get("error"), worker

    def _await_orphan(self, worker: threading.Thread) -> None:
        # The job is already terminal; keep this slot busy while the abandoned run winds down.
        worker.join(self.orphan_grace)
        if worker.is_alive():
            _logger.error("job.orphaned", thread=worker.name, grace=self.orphan_grace)
        else:
            _logger.info("job.orphan_exited", thread=worker.name)

    def _handle_failure(self, job: Job, exc: BaseException) -> AttemptResult:
        message = str(exc)
        if is_retryable_error(exc) and job.attempts < self.settings.max_attempts:
            delay = self.retry_delay(job.attempts)
            if self.store.mark_delayed(job.id, message, utcnow() + timedelta(seconds=delay)):
                _logger.warning(
                    "job.retry_scheduled",
                    error_type=type(exc).__name__,
                    error=message,
                    delay=delay,
                    max_attempts=self.settings.max_attempts,
                )
                return AttemptResult(AttemptOutcome.RETRY, delay=delay, error=message)
            return AttemptResult(AttemptOutcome.SKIPPED, error=message)

        self.store.finish(job.id, JobStatus.FAILED, error=message)
        _logger.error("job.failed", error_type=type(exc).__name__, error=message)
        return AttemptResult(AttemptOutcome.FAILED, error=message)


# =============================================================================
# DISPATCHERS
# =============================================================================

class JobDispatcher(ABC):
    """Caller-facing queue operations over a JobStore."""

    def __init__(self, store: JobStore):
        self.store = store

    @abstractmethod
    def _enqueue(self, job: Job) -> None:
        ...

    def start(self) -> None:
        """Start consuming jobs (no-op for remote backends)."""

    def stop(self, timeout: float = 5.0) -> None:
        """Stop consuming jobs (no-op for remote backends)."""

    def submit(self, job: Job) -> str:
        validate_job(job)
        self.store.insert(job)
        self._enqueue(job)
        _logger.info(
            "job.submit",
            job_id=job.id,
            questionnaire_id=job.questionnaire_id,
            types=[t.value for t in job.analysis_types],
            priority=job.priority.value,
        )
        return job.id

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        analyses = [r.to_dict() for r in self.store.list_results(job_id) if r.attempt == job.attempts]
        return {
            "job_id": job.id,
            "questionnaire_id": job.questionnaire_id,
            "status": job.status.value,
            "progress": job.progress,
            "attempts": job.attempts,
            "delayed": job.status == JobStatus.PROCESSING and job.next_retry_at is not None,
            "result": job.result,
            "error": job.error,
            "analyses": analyses,
            "created_at": job.created_at.isoformat(),
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        }

    def cancel(self, job_id: str) -> bool:
        cancelled = self.store.cancel(job_id)
        _logger.info("job.cancel", job_id=job_id, cancelled=cancelled)
        return cancelled

    def queue_stats(self) -> Dict[str, int]:
        return self.store.counts()

    def wait_for(self, job_id: str, timeout: float = 30.0) -> Job:
        """Poll until the job is terminal. Raises JobTimeoutError on expiry."""
        deadline = time.monotonic() + timeout
        while True:
            job = self.store.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status.is_terminal:
                return job
            if time.monotonic() >= deadline:
                raise JobTimeoutError(job_id, timeout)
            time.sleep(POLL_INTERVAL)


class InProcessJobQueue(JobDispatcher):
    """
    Priority queue drained by a fixed pool of worker threads.

    Ordering is by priority weight (highest first), then submission order.
    Dequeues pass through the rate limiter before a job is claimed. Retries
    wait in a delay heap and re-enter the queue when their backoff elapses.

    `start()` recovers jobs persisted by an earlier process: queued jobs are
    re-enqueued by priority, delayed jobs wait for their stored retry time and
    jobs left in flight are retried (or failed once out of attempts). The local
    backend assumes it is the only consumer of its store.
    """

    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        settings: QueueSettings,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        super().__init__(store)
        self.runner = runner
        self.settings = settings
        self.rate_limiter = rate_limiter or RateLimiter(settings.rate_limit_max, settings.rate_limit_window)
        self._queue: "queue.PriorityQueue[Tuple[int, int, str]]" = queue.PriorityQueue()
        self._seq = itertools.count()
        self._delayed: List[Tuple[float, int, int, str]] = []
        self._delayed_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._tracked: Set[str] = set()
        self._tracked_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _enqueue(self, job: Job) -> None:
        with self._tracked_lock:
            self._tracked.add(job.id)
        self._queue.put((-job.priority.weight, next(self._seq), job.id))

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._recover()
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"analysis-worker-{i}", daemon=True)
            for i in range(self.settings.concurrency)
        ]
        self._threads.append(threading.Thread(target=self._scheduler_loop, name="analysis-scheduler", daemon=True))
        for thread in self._threads:
            thread.start()
        _logger.info(
            "queue.start",
            concurrency=self.settings.concurrency,
            rate_limit=f"{self.rate_limiter.max_calls}/{self.rate_limiter.window}s",
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        _logger.info("queue.stop")

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                neg_weight, _, job_id = self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                if not self.rate_limiter.acquire(self._stop):
                    # Stopping: leave the job queued for the next start().
                    self._queue.put((neg_weight, next(self._seq), job_id))
                    break
                result = self.runner.run_attempt(job_id)
                if result.outcome is AttemptOutcome.RETRY:
                    self._schedule_retry(job_id, neg_weight, result.delay)
                else:
                    self._untrack(job_id)
            except Exception as exc:
                _logger.exception("queue.worker.error", job_id=job_id, error=str(exc))
            finally:
                self._queue.task_done()

    def _untrack(self, job_id: str) -> None:
        with self._tracked_lock:
            self._tracked.discard(job_id)

    def _recover(self) -> None:
        """Pick up non-terminal jobs this process does not know about."""
        requeued = delayed = interrupted = 0
        for job in self.store.list_pending():
            with self._tracked_lock:
                if job.id in self._tracked:
                    continue
                self._tracked.add(job.id)
            neg_weight = -job.priority.weight
            if job.status == JobStatus.QUEUED:
                self._queue.put((neg_weight, next(self._seq), job.id))
                requeued += 1
            elif job.next_retry_at is not None:
                wait = max(0.0, (job.next_retry_at - utcnow()).total_seconds())
                self._schedule_retry(job.id, neg_weight, wait)
                delayed += 1
            else:
                interrupted += 1
                if job.attempts < self.settings.max_attempts and self.store.mark_delayed(
                    job.id, INTERRUPTED_MESSAGE, utcnow()
                ):
                    self._schedule_retry(job.id, neg_weight, 0.0)
                else:
                    self.store.finish(job.id, JobStatus.FAILED, error=INTERRUPTED_MESSAGE)
                    self._untrack(job.id)
        if requeued or delayed or interrupted:
            _logger.info("queue.recovered", queued=requeued, delayed=delayed, interrupted=interrupted)

    def _schedule_retry(self, job_id: str, neg_weight: int, delay: float) -> None:
        with self._delayed_lock:
            heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._seq), neg_weight, job_id))

    def _scheduler_loop(self) -> None:
        while not self._stop.wait(POLL_INTERVAL):
            now = time.monotonic()
            with self._delayed_lock:
                while self._delayed and self._delayed[0][0] <= now:
                    _, _, neg_weight, job_id = heapq.heappop(self._delayed)
                    self._queue.put((neg_weight, next(self._seq), job_id))
