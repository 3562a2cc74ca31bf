from datetime import datetime
from models.db import db

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"

ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

PAYMENT_METHODS = ("cod", "razorpay", "payu")

# payment_status: pending -> paid | failed; paid is terminal
PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: {PAYMENT_PAID, PAYMENT_FAILED},
    PAYMENT_PAID: set(),
    PAYMENT_FAILED: set(),
}

ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_CONFIRMED, ORDER_CANCELLED},
    ORDER_CONFIRMED: {ORDER_PROCESSING, ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_SHIPPED: {ORDER_DELIVERED, ORDER_CANCELLED},
    ORDER_DELIVERED: set(),
    ORDER_CANCELLED: set(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ORDER_TRANSITIONS.get(current, set())


def can_transition_payment(current: str, new: str) -> bool:
    return new in PAYMENT_TRANSITIONS.get(current, set())


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    campaign_id = db.Column(db.Integer, db.ForeignKey("sales_campaigns.id"), nullable=True)
    campaign_discount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True)
    coupon_discount = db.Column(db.Numeric(12, 2), default=0, nullable=False)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="INR")

    payment_method = db.Column(db.String(20), nullable=False, default="cod")
    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_PENDING)
    order_status = db.Column(db.String(20), nullable=False, default=ORDER_PENDING)

    # gateway references: razorpay order id / payu txnid, and the captured payment id
    gateway_order_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    payment_id = db.Column(db.String(64), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    shipping_name = db.Column(db.String(120), nullable=False)
    shipping_phone = db.Column(db.String(20), nullable=False)
    shipping_address = db.Column(db.String(255), nullable=False)
    shipping_city = db.Column(db.String(80), nullable=False)
    shipping_state = db.Column(db.String(80), nullable=False)
    shipping_pincode = db.Column(db.String(10), nullable=False)

    # tracking
    shiprocket_order_id = db.Column(db.String(40), nullable=True)
    shipment_id = db.Column(db.String(40), nullable=True, index=True)
    awb_code = db.Column(db.String(40), nullable=True, index=True)
    courier_name = db.Column(db.String(80), nullable=True)
    delivery_status = db.Column(db.String(40), nullable=True)
    estimated_delivery = db.Column(db.String(40), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    items = db.relationship("OrderItem", backref="order", lazy=True, cascade="all, delete-orphan")


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(160), nullable=False)
    category = db.Column(db.String(80), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
