"""
Celery application for out-of-process lease sweeping.

Used when ``SWEEPER_MODE=celery``: beat schedules the timeout sweep and
the capacity reconciliation, workers run them.
"""
from celery import Celery

from courier_dispatch.core.config import settings

celery_app = Celery(
    "courier_dispatch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["courier_dispatch.tasks.assignment"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    beat_schedule={
        "sweep-expired-leases": {
            "task": "courier_dispatch.tasks.assignment.sweep_expired_leases",
            "schedule": settings.SWEEPER_INTERVAL_SECONDS,
            "options": {"expires": settings.SWEEPER_INTERVAL_SECONDS * 2},
        },
        "reconcile-partner-capacity": {
            "task": "courier_dispatch.tasks.assignment.reconcile_partner_capacity",
            "schedule": float(settings.RECONCILE_INTERVAL_SECONDS),
        },
    },
)
