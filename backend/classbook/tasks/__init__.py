"""Celery worker for the classbook event outbox."""

from .celery_app import celery_app

__all__ = ["celery_app"]
