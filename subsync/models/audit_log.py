from subsync.extensions import db
from subsync.utils.time import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(255), nullable=False)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        db.Index("idx_audit_account_action", "account_id", "action"),
        db.Index("idx_audit_created_at", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "account_id": self.account_id,
            "action": self.action,
            "details": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
