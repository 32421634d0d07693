"""
Celery application for QUEUE_BACKEND=celery.

Run a worker with:
    celery -A survey_insights.celery_app worker -Q analysis --loglevel=info
"""
from celery import Celery

from survey_insights.job_queue import ORPHAN_GRACE_SECONDS
from survey_insights.settings import load_settings

settings = load_settings()
REDIS_URL = settings.redis.url

celery_app = Celery(
    "survey_insights",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["survey_insights.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,

    # Same pool size as the in-process queue
    worker_concurrency=settings.queue.concurrency,

    # The runner enforces job_timeout and the orphan grace itself; these are the outer guard
    task_soft_time_limit=int(settings.queue.job_timeout + ORPHAN_GRACE_SECONDS) + 15,
    task_time_limit=int(settings.queue.job_timeout + ORPHAN_GRACE_SECONDS) + 30,

    result_expires=3600,

    # One job per worker slot so priorities are honoured
    worker_prefetch_multiplier=1,

    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Redis priority queues: 0 is served first
    broker_transport_options={
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
    },
)

celery_app.conf.task_routes = {
    "survey_insights.tasks.run_analysis_job": {"queue": "analysis"},
}
