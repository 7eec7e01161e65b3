"""
Celery Worker
Runs outbound platform status callbacks off the request path.
Redis is both broker and result backend.

Start with: celery -A app.celery_worker.celery_app worker --loglevel=info
"""

from celery import Celery

from app.core.config import get_settings, setup_logging

settings = get_settings()
setup_logging()

celery_app = Celery(
    'aggregator_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks'],
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Callbacks are short HTTP calls; one in flight per process
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Delivery outcomes are kept for an hour for debugging
    result_expires=3600,

    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
