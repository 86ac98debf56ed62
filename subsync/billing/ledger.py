import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from subsync.errors import StorageFailure
from subsync.extensions import db
from subsync.models import ProcessedEvent
from subsync.utils.time import utcnow

logger = logging.getLogger(__name__)


class ProcessedEventLedger:
    """(provider, event id) pairs that have already been applied."""

    def lookup(self, provider: str, event_id: str | None):
        if not event_id:
            return None
        try:
            return ProcessedEvent.query.filter_by(provider=provider, event_id=event_id).first()
        except SQLAlchemyError as e:
            raise StorageFailure(f"Ledger lookup failed for {provider}:{event_id}") from e

    def entry(self, provider, event_id, event_type, account_id, result) -> ProcessedEvent:
        """Unsaved ledger row; the applier adds it inside the account's unit of work."""
        return ProcessedEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            result=result,
        )

    def purge(self, retention_days: int) -> int:
        """Drop entries older than the retention window. Returns rows deleted."""
        cutoff = utcnow() - timedelta(days=retention_days)
        try:
            deleted = (
                ProcessedEvent.query
                .filter(ProcessedEvent.processed_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StorageFailure("Ledger purge failed") from e

        logger.info(
            f"Purged {deleted} processed events older than {retention_days} days",
            extra={"cutoff": cutoff.isoformat()},
        )
        return deleted
