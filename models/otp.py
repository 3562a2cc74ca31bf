from datetime import datetime
from models.db import db

OTP_PURPOSES = ("signup", "phone", "order_cancel", "event", "password_reset")


class OtpRecord(db.Model):
    __tablename__ = "otp_records"

    id = db.Column(db.Integer, primary_key=True)

    # normalized email address or phone number
    subject = db.Column(db.String(255), nullable=False)
    purpose = db.Column(db.String(32), nullable=False)

    otp_hash = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    last_sent_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    attempts = db.Column(db.Integer, default=0, nullable=False)
    verified = db.Column(db.Boolean, default=False, nullable=False)
    verified_at = db.Column(db.DateTime, nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    # order id, event registration id, ... depending on purpose
    reference = db.Column(db.String(64), nullable=True)
    context_json = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.Index("ix_otp_records_subject_purpose", "subject", "purpose"),
    )
