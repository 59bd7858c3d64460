# backend/classbook/tasks/celery_app.py
"""
Celery application for the classbook outbox listener.

Redis is the broker. The only scheduled work is draining the event outbox;
calendar and notification side effects subscribe to it outside the ledger
transaction.
"""

import os
from typing import Any, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging

from ..core.config import configure_logging, settings

OUTBOX_DISPATCH_INTERVAL_SECONDS = 30.0


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    # Priority: CELERY_BROKER_URL -> REDIS_URL -> settings.redis_url
    broker_url = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL") or settings.redis_url
    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery("classbook", broker=broker_url, backend=result_backend)

    base_config = {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "timezone": "UTC",
        "enable_utc": True,
        "worker_prefetch_multiplier": 4,
        "worker_max_tasks_per_child": 1000,
        "task_soft_time_limit": 120,
        "task_time_limit": 300,
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_hijack_root_logger": False,
        "broker_transport_options": {
            "visibility_timeout": 3600,
            "polling_interval": 10.0,
        },
    }
    celery_app.conf.update(base_config)

    # Force import so tasks are registered even when autodiscovery is skipped
    celery_app.conf.imports = ("classbook.tasks.outbox_tasks",)
    celery_app.conf.task_routes = {"outbox.*": {"queue": "outbox"}}
    celery_app.conf.beat_schedule = {
        "dispatch-outbox": {
            "task": "outbox.dispatch_pending",
            "schedule": OUTBOX_DISPATCH_INTERVAL_SECONDS,
        }
    }
    return celery_app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Use the application's logging format instead of Celery's."""
    configure_logging()


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task that logs failures with task context."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        import logging

        logger = logging.getLogger(__name__)
        logger.error(
            "Task %s[%s] failed with exception: %s",
            self.name,
            task_id,
            exc,
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)


celery_app.Task = cast(Type[Task], BaseTask)

