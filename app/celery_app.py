from datetime import timedelta

from celery import Celery

from app.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.celery_timezone,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    interval_minutes = settings.billing_sync_interval_minutes
    if interval_minutes > 0:
        schedule["billing_backfill_sync"] = {
            "task": "app.tasks.billing.run_backfill_sync",
            "schedule": timedelta(minutes=max(interval_minutes, 5)),
        }
    return schedule


celery_app = Celery("billing_sync")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])
