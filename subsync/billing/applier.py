import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from subsync.errors import DuplicateEvent, StorageFailure
from subsync.extensions import db
from subsync.models import AuditLog, SubscriptionRecord

logger = logging.getLogger(__name__)

_RECORD_FIELDS = (
    "plan",
    "is_trial",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "past_due_since",
    "last_event_id",
    "last_event_at",
)


class SideEffectApplier:
    """
    Writes a Transition as one unit of work for one account.

    Record changes, the account tier, the audit row and the ledger row land
    together or not at all. A failed unit leaves no ledger row behind, so a
    provider redelivery re-attempts it.
    """

    def __init__(self, session=None):
        self.session = session or db.session

    def apply(self, account, transition, ledger_entry=None, audit_action=None):
        session = self.session
        try:
            # Existing records first so a superseded record is closed before
            # the partial unique index sees the new open one
            for state in transition.record_updates:
                record = session.get(SubscriptionRecord, state.id)
                if record is None:
                    raise StorageFailure(f"Subscription record {state.id} vanished mid-transaction")
                self._write_record(record, state)
            session.flush()

            for state in transition.record_inserts:
                record = SubscriptionRecord(
                    account_id=account.id,
                    provider=state.provider,
                    provider_subscription_id=state.provider_subscription_id,
                )
                self._write_record(record, state)
                session.add(record)
            session.flush()

            if transition.tier_after is not None:
                account.access_tier = transition.tier_after.value
            account.plan = transition.plan_after
            for column, value in transition.customer_ref_update.items():
                setattr(account, column, value)

            session.add(
                AuditLog(
                    account_id=account.id,
                    action=audit_action or f"billing.{transition.event.lower()}.{transition.outcome}",
                    details={
                        "provider": transition.provider,
                        "event_id": transition.event_id,
                        **transition.summary(),
                    },
                )
            )
            session.flush()
        except StorageFailure:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                f"Storage failure applying {transition.event} for account {account.id}",
                exc_info=True,
            )
            raise StorageFailure(str(e)) from e

        if ledger_entry is not None:
            try:
                session.add(ledger_entry)
                session.flush()
            except IntegrityError as e:
                # Another delivery of the same event committed first
                session.rollback()
                raise DuplicateEvent(ledger_entry.provider, ledger_entry.event_id) from e
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageFailure(str(e)) from e

        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            if ledger_entry is not None:
                raise DuplicateEvent(ledger_entry.provider, ledger_entry.event_id) from e
            raise StorageFailure(str(e)) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageFailure(str(e)) from e

        logger.debug(
            f"Applied {transition.event} ({transition.outcome}) to account {account.id}",
            extra={"tier": account.access_tier, "plan": account.plan},
        )
        return transition

    @staticmethod
    def _write_record(record, state):
        record.status = state.status.value
        for name in _RECORD_FIELDS:
            setattr(record, name, getattr(state, name))
