"""
Cafe Amore — Celery application

Uses Redis as both broker and result backend. Beat drives the durable
auto-cancel sweep, so pending orders are expired even if no browser tab or
API process is alive when the deadline passes.
"""
from celery import Celery
from cafe_amore.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "cafe_amore",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["cafe_amore.tasks.order_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,           # Only ack after task completes (fault-tolerant)
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    beat_schedule={
        "sweep-expired-orders": {
            "task": "sweep_expired_orders",
            "schedule": settings.AUTO_CANCEL_SWEEP_INTERVAL_SECONDS,
        },
    },
)
