"""
Dead-letter log.

Verified deliveries that could not be applied are acknowledged to the
provider and parked here. Replay re-parses the stored body (it was verified
on arrival), re-normalizes it and runs it through reconciliation again.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from subsync.errors import StorageFailure, UnresolvedAccount
from subsync.extensions import db
from subsync.models import DeadLetterEvent
from subsync.utils.time import utcnow

logger = logging.getLogger(__name__)


class DeadLetterLog:
    def __init__(self, max_attempts: int = 10, session=None):
        self.max_attempts = max_attempts
        self.session = session or db.session

    def record(self, envelope, error: Exception) -> DeadLetterEvent:
        """Persist a failed delivery in its own transaction. Raises StorageFailure if that fails too."""
        session = self.session
        try:
            session.rollback()

            entry = None
            if envelope.event_id:
                entry = (
                    DeadLetterEvent.query
                    .filter_by(
                        provider=envelope.provider,
                        event_id=envelope.event_id,
                        status=DeadLetterEvent.STATUS_PENDING,
                    )
                    .first()
                )

            if entry is None:
                entry = DeadLetterEvent(
                    provider=envelope.provider,
                    event_id=envelope.event_id,
                    event_type=envelope.event_type,
                    payload=envelope.raw.decode("utf-8"),
                    attempts=0,
                )
                session.add(entry)

            entry.error_type = type(error).__name__
            entry.error_message = str(error)[:2000]
            session.commit()
        except (SQLAlchemyError, UnicodeDecodeError) as e:
            session.rollback()
            logger.critical(
                f"Could not dead-letter {envelope.provider}:{envelope.event_id}",
                exc_info=True,
            )
            raise StorageFailure("Dead-letter write failed") from e

        logger.warning(
            f"Dead-lettered {envelope.provider} {envelope.event_type} ({entry.error_type})",
            extra={"event_id": envelope.event_id, "dead_letter_id": entry.id},
        )
        return entry

    def pending(self, limit: int = 100):
        return (
            DeadLetterEvent.query
            .filter_by(status=DeadLetterEvent.STATUS_PENDING)
            .order_by(DeadLetterEvent.created_at, DeadLetterEvent.id)
            .limit(limit)
            .all()
        )

    def replay(self, reconcile, parse, limit: int = 100) -> dict:
        """
        Retry pending entries.

        reconcile(provider, envelope) runs one event through the pipeline and
        raises on failure; parse(provider, raw) rebuilds the envelope.
        """
        stats = {"replayed": 0, "failed": 0, "abandoned": 0}

        for entry_id in [e.id for e in self.pending(limit)]:
            entry = self.session.get(DeadLetterEvent, entry_id)
            provider = entry.provider
            try:
                envelope = parse(provider, entry.payload.encode("utf-8"))
                result = reconcile(provider, envelope)
            except (UnresolvedAccount, StorageFailure) as e:
                self._mark_failed(entry_id, e, stats)
                continue
            except Exception as e:
                logger.exception(f"Unexpected error replaying dead letter {entry_id}")
                self._mark_failed(entry_id, e, stats)
                continue

            entry = self.session.get(DeadLetterEvent, entry_id)
            entry.status = DeadLetterEvent.STATUS_REPLAYED
            entry.attempts += 1
            entry.last_attempt_at = entry.replayed_at = utcnow()
            self.session.commit()
            stats["replayed"] += 1
            logger.info(
                f"Replayed dead letter {entry_id} -> {result.status.value}",
                extra={"provider": provider, "event_id": entry.event_id},
            )

        return stats

    def _mark_failed(self, entry_id, error, stats):
        self.session.rollback()
        entry = self.session.get(DeadLetterEvent, entry_id)
        entry.attempts += 1
        entry.last_attempt_at = utcnow()
        entry.error_type = type(error).__name__
        entry.error_message = str(error)[:2000]
        if entry.attempts >= self.max_attempts:
            entry.status = DeadLetterEvent.STATUS_ABANDONED
            stats["abandoned"] += 1
            logger.error(
                f"Abandoned dead letter {entry_id} after {entry.attempts} attempts",
                extra={"provider": entry.provider, "event_id": entry.event_id},
            )
        else:
            stats["failed"] += 1
        self.session.commit()
