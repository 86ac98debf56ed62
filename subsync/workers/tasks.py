import logging

from flask import current_app

from subsync.workers.celery_app import celery

logger = logging.getLogger(__name__)


@celery.task(name="subsync.replay_dead_letters")
def replay_dead_letters(limit=None):
    dispatcher = current_app.extensions["webhook_dispatcher"]
    dead_letters = current_app.extensions["dead_letter_log"]
    limit = limit or current_app.config["DEAD_LETTER_REPLAY_BATCH"]

    stats = dead_letters.replay(dispatcher.reconcile, dispatcher.parse, limit=limit)
    logger.info("Dead-letter replay finished", extra=stats)
    return stats


@celery.task(name="subsync.purge_processed_events")
def purge_processed_events(retention_days=None):
    ledger = current_app.extensions["processed_event_ledger"]
    retention_days = retention_days or current_app.config["PROCESSED_EVENT_RETENTION_DAYS"]
    return ledger.purge(retention_days)


@celery.task(name="subsync.sweep_elapsed_cancellations")
def sweep_elapsed_cancellations():
    sweeper = current_app.extensions["tier_sweeper"]
    stats = sweeper.sweep()
    logger.info("Tier sweep finished", extra=stats)
    return stats
