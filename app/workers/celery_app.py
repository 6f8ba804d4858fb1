"""Celery application configuration."""

from typing import Any

from celery import Celery, signals

from app.core.config import settings
from app.core.logging_config import request_id_var, setup_logging

# Create Celery app
celery_app = Celery(
    "cartback",
    broker=str(settings.redis_url),
    backend=str(settings.redis_url),
    include=[
        "app.workers.tasks.recovery",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task safety limits
    task_time_limit=300,
    task_soft_time_limit=240,
    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    # Default queue name (must match worker -Q flag)
    task_default_queue="default",
    task_routes={
        "tasks.recovery.*": {"queue": "recovery"},
    },
    # Beat schedule. One beat process only: the sweep claims reminders
    # atomically, but a single scheduler keeps sends evenly paced.
    beat_schedule={
        "process-abandoned-cart-emails": {
            "task": "tasks.recovery.process_due_reminders",
            "schedule": 300.0,  # Every 5 minutes
        },
        "expire-abandoned-carts": {
            "task": "tasks.recovery.expire_abandoned_carts",
            "schedule": 3600.0,  # Hourly
        },
    },
)


@signals.setup_logging.connect
def configure_worker_logging(**_kwargs: Any) -> None:
    """Use the API's JSON log format instead of Celery's own."""
    setup_logging(debug=settings.debug)


# Task base class with common error handling
class BaseTask(celery_app.Task):  # type: ignore[misc, name-defined]
    """Base task class with retries and the task id as log request id."""

    abstract = True
    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 600  # Max 10 minutes between retries
    retry_jitter = True
    max_retries = 3

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        request_id_var.set((self.request.id or "")[:16])
        return super().__call__(*args, **kwargs)
