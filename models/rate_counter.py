from datetime import datetime
from models.db import db

class RateCounter(db.Model):
    """Fixed-window request counter shared by every app instance."""

    __tablename__ = "rate_counters"

    id = db.Column(db.Integer, primary_key=True)
    # e.g. "login:203.0.113.9", "otp:203.0.113.9"
    key = db.Column(db.String(160), unique=True, nullable=False, index=True)

    window_start = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    count = db.Column(db.Integer, default=0, nullable=False)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
