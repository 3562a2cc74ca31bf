from datetime import datetime
from models.db import db

REG_PENDING = "pending"
REG_VERIFIED = "verified"

# payment_status of a registration for a priced event; free events leave it NULL
EVENT_PAYMENT_PENDING = "pending"
EVENT_PAYMENT_PAID = "paid"
EVENT_PAYMENT_FAILED = "failed"


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(160), nullable=False)
    starts_at = db.Column(db.DateTime, nullable=False)
    venue = db.Column(db.String(160), nullable=True)
    capacity = db.Column(db.Integer, nullable=True)
    price = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_paid(self) -> bool:
        return bool(self.price) and self.price > 0


class EventRegistration(db.Model):
    __tablename__ = "event_registrations"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    full_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(20), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=REG_PENDING)  # pending, verified
    verified_at = db.Column(db.DateTime, nullable=True)

    payment_status = db.Column(db.String(20), nullable=True)
    gateway_txnid = db.Column(db.String(64), unique=True, nullable=True)
    payment_id = db.Column(db.String(100), nullable=True)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    # shown at the door
    checkin_code = db.Column(db.String(8), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("event_id", "email", name="uq_event_registration_email"),
    )
