"""
Celery application initialization and configuration.

Each pipeline queue maps to a Celery queue of the same name, so workers can
be started per queue with the queue's concurrency, e.g.
``celery -A dmarc_pipeline.celery_app worker -Q ip-enrichment -c 10``.
"""

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from dmarc_pipeline.config import get_settings
from dmarc_pipeline.jobs.queues import QUEUE_POLICIES

settings = get_settings()

result_backend = settings.celery_result_backend or (
    f"db+{settings.database_url}" if settings.database_url else ""
)

celery_app = Celery(
    "dmarc_pipeline",
    broker=settings.celery_broker_url,
    backend=result_backend,
    include=[
        "dmarc_pipeline.tasks.mailbox_sync",
        "dmarc_pipeline.tasks.alerts",
        "dmarc_pipeline.tasks.enrichment",
        "dmarc_pipeline.tasks.webhooks",
        "dmarc_pipeline.tasks.cleanup",
        "dmarc_pipeline.tasks.scheduling",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=settings.celery_task_track_started,
    task_time_limit=settings.celery_task_time_limit,
    # Ack after the task body so a crashed worker's job is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=settings.celery_worker_prefetch_multiplier,
    broker_transport_options={"visibility_timeout": settings.celery_visibility_timeout},
    result_expires=3600,
    task_queues=[Queue(name) for name in QUEUE_POLICIES] + [Queue("celery")],
    task_default_queue="celery",
    task_routes={policy.task_name: {"queue": name} for name, policy in QUEUE_POLICIES.items()},
)

# Celery Beat schedule (periodic triggers)
celery_app.conf.beat_schedule = {
    "schedule-mailbox-syncs-every-15min": {
        "task": "dmarc_pipeline.tasks.scheduling.schedule_mailbox_syncs_task",
        "schedule": crontab(minute="*/15"),
    },
    "schedule-cleanup-daily": {
        "task": "dmarc_pipeline.tasks.scheduling.schedule_cleanup_task",
        "schedule": crontab(hour=2, minute=0),  # Daily 2 AM
    },
}


if __name__ == "__main__":
    celery_app.start()
