from flask import Blueprint, request, jsonify, current_app, g

from models.order import Order
from services import orders as order_service
from services import otp, shiprocket
from security.rbac import login_required
from utils.errors import ValidationError

orders_bp = Blueprint("orders", __name__, url_prefix="/orders")


def order_dict(o: Order, with_items: bool = True) -> dict:
    body = {
        "id": o.id,
        "subtotal": float(o.subtotal),
        "campaign_discount": float(o.campaign_discount or 0),
        "coupon_discount": float(o.coupon_discount or 0),
        "total_amount": float(o.total_amount),
        "currency": o.currency,
        "payment_method": o.payment_method,
        "payment_status": o.payment_status,
        "order_status": o.order_status,
        "delivery_status": o.delivery_status,
        "awb_code": o.awb_code,
        "courier_name": o.courier_name,
        "estimated_delivery": o.estimated_delivery,
        "created_at": o.created_at.isoformat(),
        "cancelled_at": o.cancelled_at.isoformat() if o.cancelled_at else None,
    }
    if with_items:
        body["items"] = [
            {
                "product_id": i.product_id,
                "name": i.product_name,
                "unit_price": float(i.unit_price),
                "quantity": i.quantity,
            }
            for i in o.items
        ]
    return body


@orders_bp.post("")
@login_required
def create_order():
    data = request.get_json(silent=True) or {}
    order = order_service.place_order(
        g.user,
        data.get("items"),
        data.get("shipping"),
        data.get("payment_method"),
        data.get("coupon_code"),
    )
    return jsonify(order_dict(order)), 201


@orders_bp.get("/me")
@login_required
def my_orders():
    rows = (
        Order.query
        .filter_by(user_id=g.user.id)
        .order_by(Order.created_at.desc())
        .limit(100)
        .all()
    )
    return jsonify([order_dict(o, with_items=False) for o in rows]), 200


@orders_bp.get("/<int:order_id>")
@login_required
def get_order(order_id: int):
    return jsonify(order_dict(order_service.get_user_order(g.user, order_id))), 200


# ---------- cancellation ----------
@orders_bp.post("/<int:order_id>/cancel/request")
@login_required
def request_cancellation(order_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip()

    order = order_service.get_user_order(g.user, order_id)
    issued = order_service.request_cancellation(g.user, order, reason)

    body = {"success": True, "message": "OTP sent to your email", "delivered": issued.delivered}
    if current_app.config.get("OTP_EXPOSE_TEST_CODE"):
        body["test_otp"] = issued.code
    return jsonify(body), 200


@orders_bp.post("/<int:order_id>/cancel/verify")
@login_required
def verify_cancellation(order_id: int):
    data = request.get_json(silent=True) or {}
    code = data.get("otp") or ""
    if not code:
        raise ValidationError("OTP is required")

    order_service.get_user_order(g.user, order_id)
    verified = otp.verify(g.user.email, "order_cancel", code, order_id=order_id, user_id=g.user.id)
    return jsonify(success=True, message="Order cancelled successfully", **verified.result), 200


# ---------- tracking ----------
@orders_bp.get("/<int:order_id>/tracking")
@login_required
def track_order(order_id: int):
    order = order_service.get_user_order(g.user, order_id)
    if not order.awb_code:
        return jsonify(
            order_status=order.order_status,
            delivery_status=order.delivery_status,
            tracking=None,
        ), 200

    tracking = shiprocket.track_awb(order.awb_code)
    if tracking.get("current_status"):
        order_service.apply_delivery_update(
            order, tracking["current_status"], tracking.get("courier_name"), tracking.get("etd")
        )
    return jsonify(
        order_status=order.order_status,
        delivery_status=order.delivery_status,
        tracking=tracking,
    ), 200
