"""Celery tasks for notification delivery."""

from typing import Any, Dict
import logging

import httpx
from celery import Celery, shared_task

from machinegate.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

celery_app = Celery(
    "machinegate",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "machinegate.workers.notification_tasks.send_notification": {"queue": "notifications"},
    },
    task_default_queue="default",
)


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def send_notification(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deliver a rendered notification to the configured webhook.

    Args:
        payload: Message built by ``ApprovalNotifier``

    Returns:
        Delivery summary; ``delivered`` is False when no webhook is configured
    """
    current = get_settings()
    if not current.notification_webhook_url:
        logger.warning(f"No notification webhook configured, dropping {payload.get('event')}")
        return {"delivered": False, "event": payload.get("event"), "reason": "no webhook configured"}

    try:
        with httpx.Client(timeout=current.notification_timeout) as client:
            response = client.post(current.notification_webhook_url, json=payload)
            response.raise_for_status()
    except httpx.TransportError as e:
        logger.warning(f"Notification delivery failed, retrying: {e}")
        raise self.retry(exc=e, max_retries=current.notification_max_retries)
    except httpx.HTTPStatusError as e:
        logger.error(f"Notification webhook rejected {payload.get('event')}: {e.response.status_code}")
        return {
            "delivered": False,
            "event": payload.get("event"),
            "status_code": e.response.status_code,
        }

    logger.info(f"Delivered {payload.get('event')} to {len(payload.get('recipients', []))} recipient(s)")
    return {
        "delivered": True,
        "event": payload.get("event"),
        "status_code": response.status_code,
    }
