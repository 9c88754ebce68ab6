from celery import Celery

from orderflow.config import settings

celery_app = Celery("orderflow", broker=settings.redis_url, backend=settings.redis_url, include=["orderflow.tasks"])
celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_always_eager=settings.celery_always_eager,
    beat_schedule={
        "sweep-stale-jobs": {
            "task": "orderflow.tasks.sweep_stale_jobs",
            "schedule": float(settings.sweep_interval_seconds),
        },
    },
)
