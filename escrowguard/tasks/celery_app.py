from celery import Celery
from celery.schedules import crontab

from escrowguard.config import settings

app = Celery(
    "escrowguard",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "escrowguard.tasks.dispute_tasks.*": {"queue": "disputes"},
    },
    beat_schedule={
        "dispute-phase-scheduler": {
            "task": "escrowguard.tasks.dispute_tasks.run_phase_scheduler",
            "schedule": crontab(minute=f"*/{settings.SCHEDULER_INTERVAL_MINUTES}"),
        },
        "retry-pending-settlements": {
            "task": "escrowguard.tasks.dispute_tasks.retry_pending_settlements",
            "schedule": crontab(minute="*/15"),
        },
        "retry-failed-dispute-fees": {
            "task": "escrowguard.tasks.dispute_tasks.retry_failed_fees",
            "schedule": crontab(minute=0),  # every hour
        },
    },
)

app.autodiscover_tasks(["escrowguard.tasks.dispute_tasks"])
