from datetime import datetime
from models.db import db

class ActivityLog(db.Model):
    __tablename__ = "activity_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True)  # nullable for webhook/unauth events
    action_type = db.Column(db.String(80), nullable=False)  # e.g. PAYMENT_COMPLETED, OTP_VERIFIED
    entity = db.Column(db.String(80), nullable=True)   # e.g. order, otp
    entity_id = db.Column(db.String(80), nullable=True)

    ip = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    details_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
