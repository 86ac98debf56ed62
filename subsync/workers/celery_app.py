from datetime import timedelta

from celery import Celery
from celery.schedules import crontab
from flask import has_app_context

celery = Celery("subsync", include=["subsync.workers.tasks"])

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=240,
)

BEAT_SCHEDULE = {
    "replay-dead-letters": {
        "task": "subsync.replay_dead_letters",
        "schedule": timedelta(minutes=5),
    },
    "sweep-elapsed-cancellations": {
        "task": "subsync.sweep_elapsed_cancellations",
        "schedule": crontab(minute=7),
    },
    "purge-processed-events": {
        "task": "subsync.purge_processed_events",
        "schedule": crontab(hour=3, minute=30),
    },
}


def init_celery(app):
    celery.conf.update(app.config.get("CELERY", {}))
    celery.conf.beat_schedule = BEAT_SCHEDULE

    class ContextTask(celery.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            # CLI commands and eager calls already run inside an app context
            if has_app_context():
                return super().__call__(*args, **kwargs)
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = ContextTask
    app.extensions["celery"] = celery
    return celery
