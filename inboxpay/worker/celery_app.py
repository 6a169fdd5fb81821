from __future__ import annotations

import logging

from celery import Celery
from celery.schedules import crontab

from inboxpay.config import settings

logger = logging.getLogger("inboxpay.worker")

# keep the name stable, task routing keys derive from it
celery_app = Celery("inboxpay")

celery_app.conf.broker_url = settings.CELERY_BROKER_URL
celery_app.conf.result_backend = settings.CELERY_RESULT_BACKEND
celery_app.conf.imports = ("inboxpay.worker.tasks",)

celery_app.conf.task_track_started = True
celery_app.conf.broker_connection_retry_on_startup = True
celery_app.conf.accept_content = ["json"]
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.timezone = "UTC"

celery_app.conf.beat_schedule = {
    "sync-all-accounts": {
        "task": "inboxpay.worker.tasks.sync_all_accounts",
        "schedule": float(settings.SYNC_INTERVAL_SECONDS),
    },
    "refresh-all-tokens": {
        "task": "inboxpay.worker.tasks.refresh_all_tokens",
        "schedule": crontab(hour=3, minute=0),
    },
}

logger.info("celery broker_url=%s", celery_app.conf.broker_url)
