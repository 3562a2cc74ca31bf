from datetime import datetime
from models.db import db

class RefundRequest(db.Model):
    __tablename__ = "refund_requests"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)
    refund_method = db.Column(db.String(40), nullable=False, default="pending_selection")
    reason = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(40), nullable=False, default="pending_user_selection")
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
