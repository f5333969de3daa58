from celery import Celery
from celery.schedules import crontab
from costsync.shared.core.config import get_settings

settings = get_settings()

broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

celery_app = Celery(
    "costsync_worker",
    broker=broker_url,
    backend=backend_url,
    include=["costsync.tasks.scheduler_tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,  # Fair dispatch: one chunk per worker slot
    task_acks_late=True,           # Redeliver if worker crashes mid-task
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        # Drains due background_jobs rows, including chained sync chunks
        "process-background-jobs": {
            "task": "jobs.process_pending",
            "schedule": 5.0,
        },
        "incremental-cost-sync": {
            "task": "scheduler.incremental_cost_sync",
            "schedule": crontab(minute=0, hour="*/6"),
        },
    },
)

if __name__ == "__main__":
    celery_app.start()
