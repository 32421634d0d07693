"""
Persistence for jobs, analysis results and questionnaire data.

`JobStore` enforces the job state machine at the storage layer:

    queued → processing → completed | failed
    queued → cancelled

Every transition is a compare-and-set on the current status, so a terminal
job rejects further writes (late progress updates or results from a run that
already timed out are dropped and reported as False). Progress only grows and
stays below 100 until the job completes.

Implementations:
    - InMemoryJobStore: dict + lock, used by tests and single-process runs
    - PostgresJobStore: psycopg2, tables analysis_jobs / analysis_results

`QuestionnaireSource` reads questionnaires and their responses; the
PostgreSQL variant reads tables owned by the hosting application.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from psycopg2.extensions import connection as PGConnection
from psycopg2.extras import Json

from survey_insights.clients import pg_connection
from survey_insights.models import (
    AnalysisOptions,
    AnalysisResult,
    AnalysisType,
    Job,
    JobStatus,
    Priority,
    Questionnaire,
    QuestionnaireResponse,
    utcnow,
)

_logger = structlog.get_logger()

MAX_RUNNING_PROGRESS = 99


def empty_counts() -> Dict[str, int]:
    return {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "cancelled": 0}


class JobStore(ABC):
    @abstractmethod
    def insert(self, job: Job) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def claim(self, job_id: str) -> Optional[Job]:
        """queued → processing for a first attempt, or resume a delayed job. Bumps attempts."""

    @abstractmethod
    def mark_delayed(self, job_id: str, error: str, retry_at: datetime) -> bool:
        ...

    @abstractmethod
    def update_progress(self, job_id: str, progress: int) -> bool:
        ...

    @abstractmethod
    def finish(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        ...

    @abstractmethod
    def cancel(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def append_result(self, result: AnalysisResult) -> bool:
        ...

    @abstractmethod
    def list_results(self, job_id: str) -> List[AnalysisResult]:
        ...

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        ...

    @abstractmethod
    def list_pending(self) -> List[Job]:
        """Non-terminal jobs (queued, delayed or in flight), oldest first."""


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryJobStore(JobStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._results: Dict[str, List[AnalysisResult]] = {}

    def insert(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job already exists: {job.id}")
            self._jobs[job.id] = copy.deepcopy(job)
            self._results[job.id] = []

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def claim(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status == JobStatus.QUEUED:
                job.status = JobStatus.PROCESSING
                job.started_at = utcnow()
            elif not (job.status == JobStatus.PROCESSING and job.next_retry_at is not None):
                return None
            job.attempts += 1
            job.next_retry_at = None
            return copy.deepcopy(job)

    def mark_delayed(self, job_id: str, error: str, retry_at: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            job.error = error
            job.next_retry_at = retry_at
            return True

    def update_progress(self, job_id: str, progress: int) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            job.progress = max(job.progress, min(int(progress), MAX_RUNNING_PROGRESS))
            return True

    def finish(self, job_id, status, *, error=None, result=None) -> bool:
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError(f"finish() expects completed or failed, got {status}")
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            job.status = status
            job.completed_at = utcnow()
            job.next_retry_at = None
            job.error = error
            if result is not None:
                job.result = copy.deepcopy(result)
            if status == JobStatus.COMPLETED:
                job.progress = 100
            return True

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                return False
            job.status = JobStatus.CANCELLED
            job.completed_at = utcnow()
            return True

    def append_result(self, result: AnalysisResult) -> bool:
        with self._lock:
            job = self._jobs.get(result.job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            self._results[result.job_id].append(copy.deepcopy(result))
            return True

    def list_results(self, job_id: str) -> List[AnalysisResult]:
        with self._lock:
            return copy.deepcopy(self._results.get(job_id, []))

    def counts(self) -> Dict[str, int]:
        counts = empty_counts()
        with self._lock:
            for job in self._jobs.values():
                counts[_count_bucket(job.status, job.next_retry_at is not None)] += 1
        return counts

    def list_pending(self) -> List[Job]:
        with self._lock:
            pending = [copy.deepcopy(j) for j in self._jobs.values() if not j.status.is_terminal]
        return sorted(pending, key=lambda j: j.created_at)


def _count_bucket(status: JobStatus, delayed: bool) -> str:
    if status == JobStatus.QUEUED:
        return "waiting"
    if status == JobStatus.PROCESSING:
        return "delayed" if delayed else "active"
    return status.value


# =============================================================================
# POSTGRESQL
# =============================================================================

def ensure_analysis_tables(pg: PGConnection) -> None:
    """Create the job and result tables if missing."""
    sql = """
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        id TEXT PRIMARY KEY,
        questionnaire_id TEXT NOT NULL,
        analysis_types JSONB NOT NULL,
        priority TEXT NOT NULL,
        options JSONB NOT NULL,
        triggered_by TEXT,
        status TEXT NOT NULL DEFAULT 'queued',
        progress INT NOT NULL DEFAULT 0,
        attempts INT NOT NULL DEFAULT 0,
        error TEXT,
        result JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        next_retry_at TIMESTAMPTZ
    );
    CREATE INDEX IF NOT EXISTS ix_analysis_jobs_status ON analysis_jobs(status);
    CREATE INDEX IF NOT EXISTS ix_analysis_jobs_questionnaire ON analysis_jobs(questionnaire_id);

    CREATE TABLE IF NOT EXISTS analysis_results (
        id SERIAL PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES analysis_jobs(id),
        questionnaire_id TEXT NOT NULL,
        analysis_type TEXT NOT NULL,
        status TEXT NOT NULL,
        results JSONB,
        metadata JSONB,
        error TEXT,
        retryable BOOLEAN NOT NULL DEFAULT FALSE,
        attempt INT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS ix_analysis_results_job ON analysis_results(job_id);
    """
    with pg.cursor() as cur:
        cur.execute(sql)
    pg.commit()


_JOB_COLUMNS = (
    "id, questionnaire_id, analysis_types, priority, options, triggered_by, status, progress, "
    "attempts, error, result, created_at, started_at, completed_at, next_retry_at"
)


def _row_to_job(row) -> Job:
    (job_id, questionnaire_id, analysis_types, priority, options, triggered_by, status, progress,
     attempts, error, result, created_at, started_at, completed_at, next_retry_at) = row
    return Job(
        id=job_id,
        questionnaire_id=questionnaire_id,
        analysis_types=[AnalysisType.parse(t) for t in analysis_types or []],
        priority=Priority(priority),
        options=AnalysisOptions.from_dict(options),
        triggered_by=triggered_by,
        status=JobStatus(status),
        progress=progress,
        attempts=attempts,
        error=error,
        result=result,
        created_at=created_at,
        started_at=started_at,
        completed_at=completed_at,
        next_retry_at=next_retry_at,
    )


class PostgresJobStore(JobStore):
    """Job records in PostgreSQL; transitions are single guarded UPDATEs."""

    def __init__(self, pool: Any):
        self._pool = pool
        with pg_connection(self._pool) as pg:
            ensure_analysis_tables(pg)
        _logger.info("store.postgres.ready", tables=["analysis_jobs", "analysis_results"])

    def _execute(self, sql: str, params: tuple, fetch: str = "none"):
        with pg_connection(self._pool) as pg:
            with pg.cursor() as cur:
                cur.execute(sql, params)
                if fetch == "one":
                    data = cur.fetchone()
                elif fetch == "all":
                    data = cur.fetchall()
                else:
                    data = cur.rowcount
            pg.commit()
        return data

    def insert(self, job: Job) -> None:
        self._execute(
            """
            INSERT INTO analysis_jobs
                (id, questionnaire_id, analysis_types, priority, options, triggered_by,
                 status, progress, attempts, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                job.id,
                job.questionnaire_id,
                Json([t.value for t in job.analysis_types]),
                job.priority.value,
                Json(job.options.to_dict()),
                job.triggered_by,
                job.status.value,
                job.progress,
                job.attempts,
                job.created_at,
            ),
        )

    def get(self, job_id: str) -> Optional[Job]:
        row = self._execute(f"SELECT {_JOB_COLUMNS} FROM analysis_jobs WHERE id = %s", (job_id,), "one")
        return _row_to_job(row) if row else None

    def claim(self, job_id: str) -> Optional[Job]:
        row = self._execute(
            f"""
            UPDATE analysis_jobs
               SET status = 'processing',
                   started_at = COALESCE(started_at, NOW()),
                   attempts = attempts + 1,
                   next_retry_at = NULL
             WHERE id = %s
               AND (status = 'queued' OR (status = 'processing' AND next_retry_at IS NOT NULL))
            RETURNING {_JOB_COLUMNS}
            """,
            (job_id,),
            "one",
        )
        return _row_to_job(row) if row else None

    def mark_delayed(self, job_id: str, error: str, retry_at: datetime) -> bool:
        return self._execute(
            "UPDATE analysis_jobs SET error = %s, next_retry_at = %s WHERE id = %s AND status = 'processing'",
            (error, retry_at, job_id),
        ) == 1

    def update_progress(self, job_id: str, progress: int) -> bool:
        return self._execute(
            """
            UPDATE analysis_jobs SET progress = GREATEST(progress, LEAST(%s, %s))
             WHERE id = %s AND status = 'processing'
            """,
            (int(progress), MAX_RUNNING_PROGRESS, job_id),
        ) == 1

    def finish(self, job_id, status, *, error=None, result=None) -> bool:
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError(f"finish() expects completed or failed, got {status}")
        return self._execute(
            """
            UPDATE analysis_jobs
               SET status = %s,
                   progress = CASE WHEN %s = 'completed' THEN 100 ELSE progress END,
                   error = %s,
                   result = COALESCE(%s, result),
                   completed_at = NOW(),
                   next_retry_at = NULL
             WHERE id = %s AND status = 'processing'
            """,
            (status.value, status.value, error, Json(result) if result is not None else None, job_id),
        ) == 1

    def cancel(self, job_id: str) -> bool:
        return self._execute(
            "UPDATE analysis_jobs SET status = 'cancelled', completed_at = NOW() WHERE id = %s AND status = 'queued'",
            (job_id,),
        ) == 1

    def append_result(self, result: AnalysisResult) -> bool:
        # Guarded insert: nothing is written once the job left processing.
        return self._execute(
            """
            INSERT INTO analysis_results
                (job_id, questionnaire_id, analysis_type, status, results, metadata,
                 error, retryable, attempt, created_at)
            SELECT %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
             WHERE EXISTS (SELECT 1 FROM analysis_jobs WHERE id = %s AND status = 'processing')
            """,
            (
                result.job_id,
                result.questionnaire_id,
                result.analysis_type.value,
                result.status,
                Json(result.results),
                Json(result.metadata),
                result.error,
                result.retryable,
                result.attempt,
                result.created_at,
                result.job_id,
            ),
        ) == 1

    def list_results(self, job_id: str) -> List[AnalysisResult]:
        rows = self._execute(
            """
            SELECT job_id, questionnaire_id, analysis_type, status, results, metadata,
                   error, retryable, attempt, created_at
              FROM analysis_results WHERE job_id = %s ORDER BY id
            """,
            (job_id,),
            "all",
        )
        return [
            AnalysisResult(
                job_id=r[0],
                questionnaire_id=r[1],
                analysis_type=AnalysisType.parse(r[2]),
                status=r[3],
                results=r[4] or {},
                metadata=r[5] or {},
                error=r[6],
                retryable=r[7],
                attempt=r[8],
                created_at=r[9],
            )
            for r in rows
        ]

    def counts(self) -> Dict[str, int]:
        rows = self._execute(
            """
            SELECT status, (next_retry_at IS NOT NULL) AS delayed, COUNT(*)
              FROM analysis_jobs GROUP BY status, delayed
            """,
            (),
            "all",
        )
        counts = empty_counts()
        for status, delayed, count in rows:
            counts[_count_bucket(JobStatus(status), bool(delayed))] += count
        return counts

    def list_pending(self) -> List[Job]:
        rows = self._execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM analysis_jobs
             WHERE status IN ('queued', 'processing')
             ORDER BY created_at
            """,
            (),
            "all",
        )
        return [_row_to_job(r) for r in rows]


# =============================================================================
# QUESTIONNAIRE SOURCES
# =============================================================================

class QuestionnaireSource(ABC):
    @abstractmethod
    def get_questionnaire(self, questionnaire_id: str) -> Optional[Questionnaire]:
        ...

    @abstractmethod
    def list_responses(self, questionnaire_id: str) -> List[QuestionnaireResponse]:
        ...


class InMemoryQuestionnaireSource(QuestionnaireSource):
    def __init__(self):
        self._questionnaires: Dict[str, Questionnaire] = {}
        self._responses: Dict[str, List[QuestionnaireResponse]] = {}

    def add(self, questionnaire: Questionnaire, responses: Optional[List[QuestionnaireResponse]] = None) -> None:
        self._questionnaires[questionnaire.id] = questionnaire
        self._responses[questionnaire.id] = list(responses or [])

    def get_questionnaire(self, questionnaire_id: str) -> Optional[Questionnaire]:
        return self._questionnaires.get(questionnaire_id)

    def list_responses(self, questionnaire_id: str) -> List[QuestionnaireResponse]:
        return list(self._responses.get(questionnaire_id, []))


class PostgresQuestionnaireSource(QuestionnaireSource):
    """Reads `questionnaires` and completed `questionnaire_responses`."""

    def __init__(self, pool: Any):
        self._pool = pool

    def get_questionnaire(self, questionnaire_id: str) -> Optional[Questionnaire]:
        with pg_connection(self._pool) as pg:
            with pg.cursor() as cur:
                cur.execute(
                    "SELECT id, title, type, topic, language FROM questionnaires WHERE id = %s",
                    (questionnaire_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return Questionnaire(
            id=str(row[0]),
            title=row[1],
            questionnaire_type=row[2] or "community",
            topic=row[3],
            language=row[4] or "en",
        )

    def list_responses(self, questionnaire_id: str) -> List[QuestionnaireResponse]:
        with pg_connection(self._pool) as pg:
            with pg.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, questionnaire_id, answers, respondent, submitted_at
                      FROM questionnaire_responses
                     WHERE questionnaire_id = %s AND submitted_at IS NOT NULL
                     ORDER BY submitted_at, id
                    """,
                    (questionnaire_id,),
                )
                rows = cur.fetchall()
        return [
            QuestionnaireResponse(
                id=str(r[0]),
                questionnaire_id=str(r[1]),
                answers=r[2] or {},
                respondent=r[3] or {},
                submitted_at=r[4],
            )
            for r in rows
        ]
