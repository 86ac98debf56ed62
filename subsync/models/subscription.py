# subscription.py
from sqlalchemy import CheckConstraint, Index, UniqueConstraint, text

from subsync.billing.constants import OPEN_STATUSES
from subsync.extensions import db
from subsync.utils.time import utcnow

_OPEN_STATUS_SQL = "status IN ({})".format(", ".join(f"'{s}'" for s in OPEN_STATUSES))


class SubscriptionRecord(db.Model):
    """
    Provider-side subscription as last reconciled.

    Historical records are kept: a terminal record is never revived, a new
    provider subscription always gets its own row.
    """

    __tablename__ = "subscription_records"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(
        db.String(64), db.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    provider = db.Column(db.String(20), nullable=False)
    provider_subscription_id = db.Column(db.String(255), nullable=False)
    plan = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(30), nullable=False, index=True)
    is_trial = db.Column(db.Boolean, default=False, nullable=False)

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False, nullable=False, index=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    past_due_since = db.Column(db.DateTime(timezone=True), nullable=True)

    # Sequence marker of the last event applied to this record
    last_event_id = db.Column(db.String(255), nullable=True)
    last_event_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    account = db.relationship("Account", back_populates="subscriptions")

    __table_args__ = (
        UniqueConstraint("provider", "provider_subscription_id", name="uq_provider_subscription"),
        CheckConstraint(
            "status IN ('pending_activation', 'active', 'past_due', 'canceled', 'expired')",
            name="valid_subscription_status",
        ),
        # at most one open record per (account, provider)
        Index(
            "uq_open_subscription_per_provider",
            "account_id",
            "provider",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_SQL),
            sqlite_where=text(_OPEN_STATUS_SQL),
        ),
        Index("idx_period_end_cancel", "current_period_end", "cancel_at_period_end"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "provider": self.provider,
            "provider_subscription_id": self.provider_subscription_id,
            "plan": self.plan,
            "status": self.status,
            "is_trial": self.is_trial,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
        }

    def __repr__(self):
        return f"<SubscriptionRecord {self.provider}:{self.provider_subscription_id} {self.status}>"
