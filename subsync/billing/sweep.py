import logging

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from subsync.billing.constants import AccessTier, SubscriptionStatus
from subsync.billing.state_machine import AccountState, SubscriptionState
from subsync.errors import StorageFailure
from subsync.extensions import db
from subsync.models import Account, SubscriptionRecord
from subsync.utils.time import utcnow

logger = logging.getLogger(__name__)


class TierSweeper:
    """
    Periodic re-derivation of account tiers.

    The engine only reacts to events; this catches what changes with time
    alone. Writes go through the same lock and applier as event handling.
    """

    def __init__(self, state_machine, applier, locks, session=None):
        self.state_machine = state_machine
        self.applier = applier
        self.locks = locks
        self.session = session or db.session

    def candidates(self, now=None, limit: int = 500, after: str | None = None) -> list[str]:
        """One page of account ids needing re-derivation, ordered by id and starting past ``after``."""
        now = now or utcnow()
        grace_cutoff = now - self.state_machine.past_due_grace

        elapsed = or_(
            and_(
                SubscriptionRecord.cancel_at_period_end.is_(True),
                SubscriptionRecord.current_period_end <= now,
                SubscriptionRecord.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELED.value]
                ),
            ),
            and_(
                SubscriptionRecord.status == SubscriptionStatus.PAST_DUE.value,
                SubscriptionRecord.past_due_since <= grace_cutoff,
            ),
        )
        record_accounts = (
            self.session.query(SubscriptionRecord.account_id)
            .join(Account, Account.id == SubscriptionRecord.account_id)
            .filter(elapsed, Account.access_tier != AccessTier.LOCKED.value)
        )
        ended_trials = self.session.query(Account.id).filter(
            Account.access_tier == AccessTier.TRIAL.value,
            Account.trial_ends_at <= now,
        )
        if after is not None:
            record_accounts = record_accounts.filter(SubscriptionRecord.account_id > after)
            ended_trials = ended_trials.filter(Account.id > after)

        record_accounts = (
            record_accounts.distinct().order_by(SubscriptionRecord.account_id).limit(limit)
        )
        ended_trials = ended_trials.order_by(Account.id).limit(limit)

        ids = {row[0] for row in record_accounts} | {row[0] for row in ended_trials}
        return sorted(ids)[:limit]

    def sweep(self, now=None, limit: int = 500) -> dict:
        """Re-derive every candidate account, ``limit`` ids per page."""
        now = now or utcnow()
        stats = {"checked": 0, "downgraded": 0, "unchanged": 0, "failed": 0}

        after = None
        while True:
            try:
                page = self.candidates(now, limit, after=after)
            except SQLAlchemyError as e:
                raise StorageFailure("Sweep candidate query failed") from e
            if not page:
                break
            after = page[-1]

            for account_id in page:
                stats["checked"] += 1
                try:
                    transition = self._sweep_account(account_id, now)
                except StorageFailure as e:
                    stats["failed"] += 1
                    logger.error(
                        f"Sweep skipped account {account_id}: {e}",
                        extra={"account_id": account_id, "error_type": type(e).__name__},
                    )
                    continue

                if transition is None:
                    stats["unchanged"] += 1
                    continue
                stats["downgraded"] += 1
                logger.info(
                    f"Sweep moved account {account_id} {transition.tier_before.value} -> {transition.tier_after.value}",
                    extra={"account_id": account_id},
                )

        return stats

    def _sweep_account(self, account_id, now):
        """Returns the applied transition, or None when nothing changed."""
        with self.locks.hold(account_id):
            try:
                account = (
                    Account.query.filter_by(id=account_id)
                    .with_for_update()
                    .populate_existing()
                    .first()
                )
                records = SubscriptionRecord.query.filter_by(account_id=account_id).all()
                transition = self.state_machine.rederive(
                    AccountState.from_model(account),
                    [SubscriptionState.from_record(r) for r in records],
                    now=now,
                )
                if transition.is_noop:
                    self.session.rollback()
                    return None
                self.applier.apply(account, transition, audit_action="billing.sweep.tier_rederived")
            except SQLAlchemyError as e:
                self.session.rollback()
                raise StorageFailure(f"Sweep failed for account {account_id}") from e
        return transition
