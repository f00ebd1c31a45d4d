"""Celery workers for machine-gate."""

from machinegate.workers.notification_tasks import celery_app, send_notification

__all__ = ["celery_app", "send_notification"]
