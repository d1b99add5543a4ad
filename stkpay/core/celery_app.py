"""
Celery application: broker and result backend from settings.
Tasks are in stkpay.workers.tasks.
"""
from celery import Celery
from celery.schedules import crontab

from stkpay.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "stkpay",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["stkpay.workers.tasks.entitlements"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=600,
    result_expires=86400,
    beat_schedule={
        "regrant-entitlements": {
            "task": "stkpay.workers.tasks.entitlements.regrant_entitlements",
            "schedule": crontab(minute="*/15"),
        },
    },
)
