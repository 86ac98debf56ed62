from sqlalchemy import Index, UniqueConstraint

from subsync.extensions import db
from subsync.utils.time import utcnow


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    account_id = db.Column(db.String(64), nullable=True)
    result = db.Column(db.JSON, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_processed_provider_event"),
        Index("idx_processed_at", "processed_at"),
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.provider}:{self.event_id}>"
