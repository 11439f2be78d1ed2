"""Celery application configuration."""

from celery import Celery

from reelpipe.core.config import settings

celery_app = Celery(
    "reelpipe",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A run transcodes the whole ladder; individual ffmpeg calls carry their own timeouts
    task_time_limit=int(settings.FFMPEG_TIMEOUT_MAXIMUM * 2),
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "reap-orphaned-media": {
            "task": "reelpipe.modules.cleanup.tasks.reap_orphaned_media_task",
            "schedule": settings.CLEANUP_INTERVAL_HOURS * 3600.0,
        },
        "recover-stalled-runs": {
            "task": "reelpipe.modules.cleanup.tasks.recover_stalled_runs_task",
            "schedule": 15 * 60.0,
        },
    },
)

celery_app.autodiscover_tasks(
    ["reelpipe.modules.transcoding", "reelpipe.modules.cleanup"]
)
