"""
Celery Tasks
Background delivery of platform status callbacks.
"""

import asyncio
import logging

from app.celery_worker import celery_app
from app.database import worker_session
from app.models import Platform
from app.services.aggregator.callbacks import deliver_callback

logger = logging.getLogger(__name__)


async def _deliver(platform: Platform, url: str, payload: dict) -> dict:
    async with worker_session() as db:
        return await deliver_callback(db, platform, url, payload)


@celery_app.task(
    bind=True,
    max_retries=0,
    acks_late=False,  # at-most-once: a lost worker does not re-deliver
    ignore_result=False,
)
def deliver_status_callback(self, platform: str, url: str, payload: dict) -> dict:
    """
    Notify a delivery platform of an order status change.

    Runs outside the request cycle. Failures are logged and returned in the
    result, never retried.

    Args:
        platform: Platform identifier ("swiggy" / "zomato")
        url: Absolute endpoint URL for the action
        payload: JSON body built by the dispatcher

    Returns:
        dict: Delivery outcome (success, status_code, error, elapsed_ms)
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: delivering {platform} {payload.get('status')} callback")

    result = asyncio.run(_deliver(Platform(platform), url, payload))
    result['task_id'] = task_id
    return result
