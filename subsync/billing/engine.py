import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from subsync.billing.constants import ReconcileStatus
from subsync.billing.events import EventEnvelope, Unrecognized
from subsync.billing.state_machine import AccountState, SubscriptionState
from subsync.errors import DuplicateEvent, StorageFailure, UnresolvedAccount
from subsync.extensions import db
from subsync.models import Account, SubscriptionRecord

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    status: ReconcileStatus
    account_id: str | None = None
    event_id: str | None = None
    transition: dict = field(default_factory=dict)


class ReconciliationEngine:
    """
    ledger check -> resolve account -> lock account -> ledger re-check ->
    load state FOR UPDATE -> state machine -> applier.

    Raises UnresolvedAccount and StorageFailure for the dispatcher to
    dead-letter. Never retries on its own.
    """

    def __init__(self, resolver, state_machine, applier, ledger, locks, session=None):
        self.resolver = resolver
        self.state_machine = state_machine
        self.applier = applier
        self.ledger = ledger
        self.locks = locks
        self.session = session or db.session

    def reconcile(self, envelope: EventEnvelope, event) -> ReconciliationResult:
        provider = envelope.provider

        if isinstance(event, Unrecognized):
            logger.info(
                f"Ignoring unrecognized {provider} event {envelope.event_type}: {event.reason}",
                extra={"event_id": envelope.event_id},
            )
            return ReconciliationResult(ReconcileStatus.UNRECOGNIZED, event_id=envelope.event_id)

        previous = self.ledger.lookup(provider, envelope.event_id)
        if previous is not None:
            return self._duplicate(previous)

        account_id = self.resolver.resolve(provider, event)

        with self.locks.hold(account_id):
            try:
                # A concurrent delivery may have finished while we waited
                previous = self.ledger.lookup(provider, envelope.event_id)
                if previous is not None:
                    return self._duplicate(previous)

                account, records = self._load_for_update(account_id, provider, event)

                transition = self.state_machine.apply(
                    AccountState.from_model(account),
                    [SubscriptionState.from_record(r) for r in records],
                    event,
                    provider=provider,
                    event_id=envelope.event_id,
                    occurred_at=envelope.occurred_at,
                )

                entry = None
                if envelope.event_id:
                    entry = self.ledger.entry(
                        provider,
                        envelope.event_id,
                        envelope.event_type,
                        account_id,
                        transition.summary(),
                    )
                self.applier.apply(account, transition, ledger_entry=entry)
            except DuplicateEvent as e:
                logger.debug(f"Concurrent duplicate {provider}:{e.event_id}")
                previous = self.ledger.lookup(provider, e.event_id)
                if previous is not None:
                    return self._duplicate(previous)
                return ReconciliationResult(
                    ReconcileStatus.DUPLICATE, account_id=account_id, event_id=e.event_id
                )
            except Exception:
                self.session.rollback()
                raise

        log = logger.debug if transition.is_noop else logger.info
        log(
            f"{provider} {envelope.event_type} -> {transition.outcome} ({transition.reason})",
            extra={
                "account_id": account_id,
                "event_id": envelope.event_id,
                "tier": transition.tier_after.value if transition.tier_after else None,
            },
        )
        status = ReconcileStatus.NOOP if transition.is_noop else ReconcileStatus.APPLIED
        return ReconciliationResult(
            status,
            account_id=account_id,
            event_id=envelope.event_id,
            transition=transition.summary(),
        )

    def _load_for_update(self, account_id, provider, event):
        try:
            account = (
                Account.query
                .filter_by(id=account_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if account is None:
                raise UnresolvedAccount(
                    provider,
                    subscription_ref=event.subscription_ref,
                    customer_ref=event.customer_ref,
                )
            records = (
                SubscriptionRecord.query
                .filter_by(account_id=account_id)
                .order_by(SubscriptionRecord.id)
                .with_for_update()
                .populate_existing()
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageFailure(f"Could not load account {account_id}") from e
        return account, records

    @staticmethod
    def _duplicate(previous) -> ReconciliationResult:
        logger.debug(f"Duplicate delivery {previous.provider}:{previous.event_id}")
        return ReconciliationResult(
            ReconcileStatus.DUPLICATE,
            account_id=previous.account_id,
            event_id=previous.event_id,
            transition=previous.result or {},
        )
