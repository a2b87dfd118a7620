"""
Celery Application Configuration
"""
from celery import Celery

from crmbot.core.config import settings

celery_app = Celery(
    "crmbot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["crmbot.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "expire-inactive-sessions-every-5-minutes": {
        "task": "crmbot.workers.tasks.expire_inactive_sessions",
        "schedule": 300.0,
    },
    "cleanup-old-messages-daily": {
        "task": "crmbot.workers.tasks.cleanup_old_messages",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-old-sessions-daily": {
        "task": "crmbot.workers.tasks.cleanup_old_sessions",
        "schedule": 86400.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "crmbot.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,
    },
}
