from celery import Celery
from celery.schedules import crontab

from ledgersync.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
SYNC_QUEUE = "sync"

celery_app = Celery(
    "ledgersync",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_log_format=LOG_FORMAT,
    worker_task_log_format=LOG_FORMAT,
    task_routes={"ledgersync.services.sync.*": {"queue": SYNC_QUEUE}},
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "sync-transactions": {
        "task": "ledgersync.services.sync.sync_all_connections",
        "schedule": crontab(minute=0, hour="*/6"),
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "ledgersync.services.sync",
]
