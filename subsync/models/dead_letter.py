from subsync.extensions import db
from subsync.utils.time import utcnow


class DeadLetterEvent(db.Model):
    """
    A verified webhook that was acknowledged to the provider but not applied.

    payload holds the exact body received so a replay can rebuild the
    envelope without asking the provider again.
    """

    __tablename__ = "dead_letter_events"

    STATUS_PENDING = "pending"
    STATUS_REPLAYED = "replayed"
    STATUS_ABANDONED = "abandoned"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    event_id = db.Column(db.String(255), nullable=True)
    event_type = db.Column(db.String(100), nullable=True)
    payload = db.Column(db.Text, nullable=False)
    error_type = db.Column(db.String(100), nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    replayed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("idx_dead_letter_provider_event", "provider", "event_id"),
    )

    def __repr__(self):
        return f"<DeadLetterEvent {self.provider}:{self.event_id} {self.status}>"
