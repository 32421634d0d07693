from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from fakes import QUESTIONNAIRE_ID
from survey_insights.job_queue import build_job
from survey_insights.models import AnalysisResult, AnalysisType, JobStatus, utcnow
from survey_insights.store import InMemoryJobStore, ensure_analysis_tables


@pytest.fixture
def job(store):
    job = build_job(QUESTIONNAIRE_ID, ["thematic", "insights"])
    store.insert(job)
    return job


def _result(job_id, analysis_type=AnalysisType.THEMATIC):
    return AnalysisResult(job_id=job_id, questionnaire_id=QUESTIONNAIRE_ID,
                          analysis_type=analysis_type, status="completed")


def test_insert_rejects_duplicates(store, job):
    with pytest.raises(ValueError):
        store.insert(job)


def test_get_returns_a_copy(store, job):
    copy = store.get(job.id)
    copy.progress = 80
    assert store.get(job.id).progress == 0


def test_claim_moves_queued_to_processing_once(store, job):
    claimed = store.claim(job.id)

    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.started_at is not None
    assert store.claim(job.id) is None
    assert store.claim("unknown") is None


def test_progress_never_decreases_and_stays_below_100_while_running(store, job):
    store.claim(job.id)

    store.update_progress(job.id, 50)
    store.update_progress(job.id, 20)
    assert store.get(job.id).progress == 50

    store.update_progress(job.id, 100)
    assert store.get(job.id).progress == 99


def test_finish_completed_sets_progress_100(store, job):
    store.claim(job.id)
    assert store.finish(job.id, JobStatus.COMPLETED, result={"status": "completed"})

    done = store.get(job.id)
    assert done.progress == 100
    assert done.completed_at is not None
    assert done.result == {"status": "completed"}


def test_finish_rejects_non_terminal_status(store, job):
    store.claim(job.id)
    with pytest.raises(ValueError):
        store.finish(job.id, JobStatus.QUEUED)


def test_terminal_jobs_reject_further_writes(store, job):
    store.claim(job.id)
    store.finish(job.id, JobStatus.FAILED, error="boom")

    assert store.update_progress(job.id, 10) is False
    assert store.append_result(_result(job.id)) is False
    assert store.finish(job.id, JobStatus.COMPLETED) is False
    assert store.mark_delayed(job.id, "again", utcnow()) is False
    assert store.cancel(job.id) is False
    assert store.claim(job.id) is None
    assert store.get(job.id).status == JobStatus.FAILED


def test_cancel_only_from_queued(store, job):
    assert store.cancel(job.id) is True
    assert store.get(job.id).status == JobStatus.CANCELLED
    assert store.claim(job.id) is None


def test_delayed_job_can_be_reclaimed(store, job):
    store.claim(job.id)
    assert store.mark_delayed(job.id, "rate limit", utcnow() + timedelta(seconds=1))
    assert store.counts()["delayed"] == 1

    again = store.claim(job.id)
    assert again.attempts == 2
    assert again.next_retry_at is None
    assert store.counts()["active"] == 1


def test_results_are_appended_in_order(store, job):
    store.claim(job.id)
    store.append_result(_result(job.id, AnalysisType.THEMATIC))
    store.append_result(_result(job.id, AnalysisType.INSIGHTS))

    assert [r.analysis_type for r in store.list_results(job.id)] == [
        AnalysisType.THEMATIC, AnalysisType.INSIGHTS,
    ]


def test_counts_cover_every_bucket():
    store = InMemoryJobStore()
    ids = []
    for _ in range(5):
        job = build_job(QUESTIONNAIRE_ID, ["thematic"])
        store.insert(job)
        ids.append(job.id)
    for job_id in ids[:3]:
        store.claim(job_id)
    store.finish(ids[1], JobStatus.COMPLETED)
    store.finish(ids[2], JobStatus.FAILED, error="x")
    store.cancel(ids[3])

    assert store.counts() == {
        "waiting": 1, "active": 1, "completed": 1, "failed": 1, "delayed": 0, "cancelled": 1,
    }


def test_ensure_analysis_tables_creates_and_commits():
    pg = MagicMock()
    cursor = pg.cursor.return_value.__enter__.return_value

    ensure_analysis_tables(pg)

    sql = cursor.execute.call_args.args[0]
    assert "CREATE TABLE IF NOT EXISTS analysis_jobs" in sql
    assert "CREATE TABLE IF NOT EXISTS analysis_results" in sql
    pg.commit.assert_called_once()


def test_list_pending_returns_unfinished_jobs_oldest_first():
    store = InMemoryJobStore()
    now = utcnow()
    jobs = []
    for age in (1, 5, 3, 4, 2):
        job = build_job(QUESTIONNAIRE_ID, ["thematic"])
        job.created_at = now - timedelta(minutes=age)
        store.insert(job)
        jobs.append(job)
    queued, delayed, in_flight, done, cancelled = jobs
    store.claim(delayed.id)
    store.mark_delayed(delayed.id, "connection reset", now)
    store.claim(in_flight.id)
    store.claim(done.id)
    store.finish(done.id, JobStatus.COMPLETED)
    store.cancel(cancelled.id)

    pending = store.list_pending()

    assert [j.id for j in pending] == [delayed.id, in_flight.id, queued.id]
    assert pending[0].next_retry_at == now
    assert pending[1].next_retry_at is None
