from datetime import timedelta

from subsync.billing.constants import AccessTier
from subsync.extensions import db
from subsync.utils.time import utcnow


class Account(db.Model):
    """
    One row per application user.

    access_tier, plan and the provider customer references are written by the
    reconciliation engine only; the rest of the application reads them.
    """

    __tablename__ = "accounts"

    id = db.Column(db.String(64), primary_key=True)
    email = db.Column(db.String(255), nullable=True, index=True)

    access_tier = db.Column(db.String(20), nullable=False, default=AccessTier.TRIAL.value, index=True)
    plan = db.Column(db.String(50), nullable=True)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    paypal_payer_id = db.Column(db.String(255), unique=True, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    subscriptions = db.relationship(
        "SubscriptionRecord",
        back_populates="account",
        lazy="select",
        order_by="SubscriptionRecord.created_at",
    )

    __table_args__ = (
        db.CheckConstraint(
            "access_tier IN ('locked', 'trial', 'active')",
            name="valid_access_tier",
        ),
    )

    @classmethod
    def open_trial(cls, account_id: str, email: str | None = None, days: int = 14) -> "Account":
        """Signup state: trial tier with a trial window."""
        return cls(
            id=account_id,
            email=email,
            access_tier=AccessTier.TRIAL.value,
            trial_ends_at=utcnow() + timedelta(days=days),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "access_tier": self.access_tier,
            "plan": self.plan,
            "trial_ends_at": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            "stripe_customer_id": self.stripe_customer_id,
            "paypal_payer_id": self.paypal_payer_id,
        }

    def __repr__(self):
        return f"<Account {self.id} tier={self.access_tier} plan={self.plan}>"
