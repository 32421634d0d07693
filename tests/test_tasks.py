from unittest.mock import patch

import pytest

from fakes import QUESTIONNAIRE_ID
from survey_insights import tasks
from survey_insights.celery_app import celery_app
from survey_insights.job_queue import build_job
from survey_insights.models import JobStatus, Priority


@pytest.mark.parametrize("max_calls,window,expected", [
    (10, 60.0, "10/m"),
    (100, 1.0, "100/s"),
    (500, 3600.0, "500/h"),
    (10, 30.0, "20/m"),
    (5, 120.0, "2.5/m"),
])
def test_rate_limit_expression(max_calls, window, expected):
    assert tasks.rate_limit_expression(max_calls, window) == expected


def test_priorities_map_to_redis_steps():
    assert [tasks.CELERY_PRIORITIES[p] for p in Priority] == [9, 6, 3, 0]


def test_celery_app_routes_analysis_tasks():
    assert celery_app.conf.task_routes["survey_insights.tasks.run_analysis_job"] == {"queue": "analysis"}
    assert celery_app.conf.task_acks_late is True
    assert celery_app.conf.worker_prefetch_multiplier == 1


def test_celery_dispatcher_persists_and_enqueues(store):
    dispatcher = tasks.CeleryJobDispatcher(store)
    job = build_job(QUESTIONNAIRE_ID, ["thematic"], priority="urgent")

    with patch.object(tasks, "run_analysis_job") as task:
        job_id = dispatcher.submit(job)

    task.apply_async.assert_called_once_with(args=[job_id], priority=0)
    assert store.get(job_id).status == JobStatus.QUEUED
    assert dispatcher.get_status(job_id)["status"] == "queued"
