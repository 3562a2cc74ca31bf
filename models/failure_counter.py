from datetime import datetime
from models.db import db

class FailureCounter(db.Model):
    """
    Consecutive failures per (scope, key), shared by every app instance.

    scope "login":   key = "<email>|<ip>", lock expires at locked_until
    scope "payment": key = order id, lock has no expiry and needs an admin unlock
    scope "two_factor": key = user id, lock expires at locked_until
    """

    __tablename__ = "failure_counters"
    __table_args__ = (
        db.UniqueConstraint("scope", "key", name="uq_failure_counter_scope_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(20), nullable=False)
    key = db.Column(db.String(320), nullable=False)

    fail_count = db.Column(db.Integer, default=0, nullable=False)
    last_fail_at = db.Column(db.DateTime, nullable=True)

    locked_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def is_locked(self, now: datetime) -> bool:
        if not self.locked_at:
            return False
        return self.locked_until is None or self.locked_until > now
