import logging
from collections import OrderedDict
from datetime import datetime

from models import db
from models.campaign import SalesCampaign
from models.coupon import Coupon, CouponUsage
from models.order import (
    Order,
    OrderItem,
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    ORDER_SHIPPED,
    PAYMENT_METHODS,
    PAYMENT_PAID,
    can_transition,
)
from models.product import Product
from models.refund_request import RefundRequest
from models.user import User
from services import otp, shiprocket
from services.discounts import ZERO, active_campaigns, money, resolve_campaign, validate_coupon
from utils.audit import log_event
from utils.emailer import send_email
from utils.errors import Forbidden, NotFound, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

SHIPPING_FIELDS = ("name", "phone", "address", "city", "state", "pincode")

# courier status -> internal delivery status
DELIVERY_STATUS_MAP = {
    "PICKUP SCHEDULED": "pickup_scheduled",
    "PICKUP QUEUED": "pickup_scheduled",
    "PICKED UP": "picked_up",
    "IN TRANSIT": "in_transit",
    "OUT FOR DELIVERY": "out_for_delivery",
    "DELIVERED": "delivered",
    "RTO INITIATED": "rto_initiated",
    "RTO IN TRANSIT": "rto_in_transit",
    "RTO DELIVERED": "rto_delivered",
    "CANCELLED": "cancelled",
    "LOST": "lost",
    "DAMAGED": "damaged",
    "UNDELIVERED": "undelivered",
    "PENDING": "pending",
    "SHIPPED": "shipped",
}

_SHIPPED_STATUSES = {
    "PICKED UP", "IN TRANSIT", "OUT FOR DELIVERY", "SHIPPED",
    "RTO INITIATED", "RTO IN TRANSIT", "UNDELIVERED",
}


def map_delivery_status(courier_status: str) -> str:
    status = (courier_status or "").strip().upper()
    return DELIVERY_STATUS_MAP.get(status) or status.lower() or "unknown"


def map_order_status(courier_status: str):
    status = (courier_status or "").strip().upper()
    if status == "DELIVERED":
        return ORDER_DELIVERED
    if status in ("CANCELLED", "RTO DELIVERED"):
        return ORDER_CANCELLED
    if status in _SHIPPED_STATUSES:
        return ORDER_SHIPPED
    return None


def collect_items(items):
    """Merge duplicate product lines and load the products."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    quantities = OrderedDict()
    for item in items:
        try:
            product_id = int(item["product_id"])
            quantity = int(item.get("quantity", 1))
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Each item needs a product_id and an integer quantity")
        if quantity <= 0:
            raise ValidationError("quantity must be positive")
        quantities[product_id] = quantities.get(product_id, 0) + quantity

    products = {p.id: p for p in Product.query.filter(Product.id.in_(list(quantities))).all()}
    lines = []
    for product_id, quantity in quantities.items():
        product = products.get(product_id)
        if not product or not product.is_active:
            raise NotFound(f"Product {product_id} not found")
        if product.stock < quantity:
            raise ValidationError(f"Only {product.stock} left of {product.name}")
        lines.append((product, quantity))
    return lines


def price_cart(lines, user_id: int, coupon_code: str = None) -> dict:
    subtotal = money(sum(p.price * q for p, q in lines))
    categories = sorted({p.category for p, _ in lines})
    product_ids = [p.id for p, _ in lines]

    sale = resolve_campaign(active_campaigns(), subtotal, categories, product_ids)
    after_sale = subtotal - sale.discount

    coupon = None
    coupon_discount = ZERO
    if coupon_code:
        result = validate_coupon(coupon_code, after_sale, user_id)
        if not result.valid:
            raise ValidationError(result.error)
        coupon = result.coupon
        coupon_discount = result.discount

    return {
        "subtotal": subtotal,
        "campaign": sale.campaign,
        "campaign_discount": sale.discount,
        "coupon": coupon,
        "coupon_discount": coupon_discount,
        "total": money(max(after_sale - coupon_discount, ZERO)),
    }


def place_order(user: User, items, shipping: dict, payment_method: str, coupon_code: str = None) -> Order:
    payment_method = (payment_method or "cod").lower()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")

    shipping = shipping or {}
    missing = [f for f in SHIPPING_FIELDS if not str(shipping.get(f) or "").strip()]
    if missing:
        raise ValidationError("Missing shipping details", fields=missing)

    lines = collect_items(items)
    pricing = price_cart(lines, user.id, coupon_code)

    order = Order(
        user_id=user.id,
        subtotal=pricing["subtotal"],
        campaign_id=pricing["campaign"].id if pricing["campaign"] else None,
        campaign_discount=pricing["campaign_discount"],
        coupon_id=pricing["coupon"].id if pricing["coupon"] else None,
        coupon_discount=pricing["coupon_discount"],
        total_amount=pricing["total"],
        payment_method=payment_method,
        # COD orders are confirmed right away; online orders wait for the gateway
        order_status=ORDER_CONFIRMED if payment_method == "cod" else ORDER_PENDING,
        shipping_name=shipping["name"].strip(),
        shipping_phone=str(shipping["phone"]).strip(),
        shipping_address=shipping["address"].strip(),
        shipping_city=shipping["city"].strip(),
        shipping_state=shipping["state"].strip(),
        shipping_pincode=str(shipping["pincode"]).strip(),
    )
    for product, quantity in lines:
        order.items.append(OrderItem(
            product_id=product.id,
            product_name=product.name,
            category=product.category,
            unit_price=product.price,
            quantity=quantity,
        ))
        product.stock -= quantity
    db.session.add(order)
    db.session.flush()

    if pricing["coupon"]:
        db.session.add(CouponUsage(
            coupon_id=pricing["coupon"].id,
            user_id=user.id,
            order_id=order.id,
            discount_amount=pricing["coupon_discount"],
        ))
        Coupon.query.filter_by(id=pricing["coupon"].id).update({"usage_count": Coupon.usage_count + 1})

    if payment_method == "cod" and pricing["campaign"]:
        SalesCampaign.query.filter_by(id=pricing["campaign"].id).update(
            {"current_orders": SalesCampaign.current_orders + 1}
        )

    log_event("ORDER_CREATED", user_id=user.id, entity="order", entity_id=order.id,
              details={"total": order.total_amount, "payment_method": payment_method}, commit=False)
    db.session.commit()
    return order


def set_order_status(order: Order, new_status: str, actor_id=None, reason: str = None) -> Order:
    if new_status == order.order_status:
        return order
    if not can_transition(order.order_status, new_status):
        raise ValidationError(f"Cannot move order from {order.order_status} to {new_status}")
    if new_status == ORDER_CANCELLED:
        cancel_order(order, reason or "Cancelled by admin", actor_id=actor_id)
        return order

    updated = (
        Order.query
        .filter_by(id=order.id, order_status=order.order_status)
        .update({"order_status": new_status, "updated_at": datetime.utcnow()})
    )
    if not updated:
        db.session.rollback()
        raise ValidationError("Order was modified concurrently, please retry")

    log_event("ORDER_STATUS_CHANGED", user_id=actor_id, entity="order", entity_id=order.id,
              details={"order_status": new_status}, commit=False)
    db.session.commit()
    db.session.refresh(order)
    return order


def get_user_order(user: User, order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order or order.user_id != user.id:
        raise NotFound("Order not found")
    return order


# ---------- cancellation ----------

def needs_refund(order: Order) -> bool:
    return order.payment_method != "cod" and order.payment_status == PAYMENT_PAID


def request_refund(order: Order, reason: str) -> RefundRequest:
    refund = RefundRequest(
        order_id=order.id,
        user_id=order.user_id,
        amount=order.total_amount,
        payment_method=order.payment_method,
        reason=(reason or "")[:255] or None,
    )
    db.session.add(refund)
    return refund


def cancel_order(order: Order, reason: str, actor_id=None, commit: bool = True) -> bool:
    """
    Cancel an order and undo what it holds: stock goes back to the shelf,
    the courier order is cancelled, and a paid online order gets a refund
    request. Returns True when a refund was opened.
    """
    if not can_transition(order.order_status, ORDER_CANCELLED):
        raise ValidationError("Order cannot be cancelled")

    now = datetime.utcnow()
    updated = (
        Order.query
        .filter_by(id=order.id, order_status=order.order_status)
        .update({"order_status": ORDER_CANCELLED, "cancelled_at": now,
                 "cancel_reason": reason, "updated_at": now})
    )
    if not updated:
        db.session.rollback()
        raise ValidationError("Order was modified concurrently, please retry")
    db.session.refresh(order)

    for item in order.items:
        Product.query.filter_by(id=item.product_id).update({"stock": Product.stock + item.quantity})

    if order.shiprocket_order_id:
        try:
            shiprocket.cancel_shipment(order.shiprocket_order_id)
        except UpstreamUnavailable:
            # ops cancels it by hand from the activity log entry
            logger.warning("Could not cancel ShipRocket order %s for order %s",
                           order.shiprocket_order_id, order.id)

    refund = needs_refund(order)
    if refund:
        request_refund(order, f"Order cancelled: {reason}")

    log_event("ORDER_CANCELLED", user_id=actor_id or order.user_id, entity="order", entity_id=order.id,
              details={"reason": reason, "needs_refund": refund, "by_admin": actor_id is not None,
                       "shiprocket_order_id": order.shiprocket_order_id}, commit=False)
    if commit:
        db.session.commit()
    return refund


def request_cancellation(user: User, order: Order, reason: str):
    if order.order_status in (ORDER_DELIVERED, ORDER_CANCELLED):
        raise ValidationError("Order cannot be cancelled")
    if not reason:
        raise ValidationError("A cancellation reason is required")

    return otp.issue(
        user.email,
        "order_cancel",
        user_id=user.id,
        reference=order.id,
        context={"reason": reason[:255], "label": f"Cancellation of order #{order.id}"},
    )


@otp.on_verified("order_cancel")
def _cancel_verified_order(record, order_id=None, user_id=None, **_):
    order = db.session.get(Order, int(record.reference)) if record.reference else None
    if not order or (order_id is not None and str(order.id) != str(order_id)):
        raise NotFound("Order not found")
    if user_id is not None and order.user_id != user_id:
        raise Forbidden("Order belongs to another account")

    # verify() commits together with the claimed code
    refund = cancel_order(order, otp.context_of(record).get("reason"), commit=False)

    ok, error = send_email(
        record.subject,
        "Order Cancelled Successfully",
        f"<p>Your order #{order.id} has been cancelled.</p>"
        + (f"<p>A refund of ₹{order.total_amount} will be initiated.</p>" if refund
           else "<p>No refund is required for this order.</p>"),
    )
    if not ok:
        logger.warning("Cancellation email for order %s not sent: %s", order.id, error)

    return {
        "needs_refund": refund,
        "order_amount": float(order.total_amount),
        "payment_method": order.payment_method,
    }


# ---------- delivery tracking ----------

def find_order_for_shipment(awb=None, shipment_id=None, shiprocket_order_id=None):
    if awb:
        order = Order.query.filter_by(awb_code=str(awb)).first()
        if order:
            return order
    if shipment_id:
        order = Order.query.filter_by(shipment_id=str(shipment_id)).first()
        if order:
            return order
    if shiprocket_order_id:
        return Order.query.filter_by(shiprocket_order_id=str(shiprocket_order_id)).first()
    return None


def apply_delivery_update(order: Order, courier_status: str, courier_name=None, etd=None, awb=None) -> Order:
    order.delivery_status = map_delivery_status(courier_status)
    if courier_name:
        order.courier_name = courier_name
    if etd:
        order.estimated_delivery = str(etd)
    if awb and not order.awb_code:
        order.awb_code = str(awb)

    new_status = map_order_status(courier_status)
    if new_status and new_status != order.order_status:
        if can_transition(order.order_status, new_status):
            order.order_status = new_status
        else:
            logger.info("Ignoring courier status %s for order %s in state %s",
                        courier_status, order.id, order.order_status)

    log_event("DELIVERY_STATUS_UPDATED", user_id=None, entity="order", entity_id=order.id,
              details={"courier_status": courier_status, "delivery_status": order.delivery_status},
              commit=False)
    db.session.commit()
    return order
