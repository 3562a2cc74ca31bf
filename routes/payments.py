from urllib.parse import urlencode

from flask import Blueprint, request, jsonify, current_app, g, redirect

from models import db
from models.order import Order, PAYMENT_PENDING
from services import orders as order_service
from services import payments
from utils.audit import log_event
from security.rbac import login_required
from utils.errors import ServiceError, UpstreamUnavailable, ValidationError

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _frontend_redirect(**params):
    base_url = current_app.config.get("FRONTEND_BASE_URL", "").rstrip("/")
    return redirect(f"{base_url}/checkout?{urlencode(params)}", code=302)


def _order_id(data: dict) -> int:
    value = data.get("order_id")
    if value in (None, ""):
        raise ValidationError("order_id required")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ValidationError("order_id must be an integer")


# ---------- Razorpay ----------
@payments_bp.post("/razorpay/order")
@login_required
def create_razorpay_order():
    data = request.get_json(silent=True) or {}
    order = order_service.get_user_order(g.user, _order_id(data))
    if order.payment_method != "razorpay":
        raise ValidationError("Order was not placed for online payment")
    return jsonify(payments.create_razorpay_order(order)), 200


@payments_bp.post("/razorpay/verify")
@login_required
def verify_razorpay_payment():
    secret = current_app.config.get("RAZORPAY_KEY_SECRET")
    if not secret:
        raise UpstreamUnavailable("Payment verification not configured")

    data = request.get_json(silent=True) or {}
    gateway_order_id = data.get("razorpay_order_id") or ""
    payment_id = data.get("razorpay_payment_id") or ""
    signature = data.get("razorpay_signature") or ""
    if not data.get("order_id") or not gateway_order_id or not payment_id or not signature:
        raise ValidationError("order_id, razorpay_order_id, razorpay_payment_id and razorpay_signature are required")

    order = order_service.get_user_order(g.user, _order_id(data))

    # the signature must cover the gateway order we created for this order
    signature_ok = (
        order.gateway_order_id == gateway_order_id
        and payments.verify_signature(gateway_order_id, payment_id, signature, secret)
    )
    payments.verify_payment(order, "razorpay", payment_id, signature_ok)
    return jsonify(verified=True, paymentId=payment_id, order_id=order.id), 200


# ---------- PayU ----------
@payments_bp.post("/payu/initiate")
@login_required
def initiate_payu_payment():
    key = current_app.config.get("PAYU_MERCHANT_KEY")
    salt = current_app.config.get("PAYU_MERCHANT_SALT")
    if not key or not salt:
        raise UpstreamUnavailable("Payment gateway not configured", fallback="Please use Cash on Delivery for now.")

    data = request.get_json(silent=True) or {}
    order = order_service.get_user_order(g.user, _order_id(data))
    if order.payment_method != "payu" or order.payment_status != PAYMENT_PENDING:
        raise ValidationError("Order is not awaiting PayU payment")

    txnid = order.gateway_order_id or f"ASX{order.id}T{int(order.created_at.timestamp())}"
    order.gateway_order_id = txnid
    db.session.commit()

    amount = f"{order.total_amount:.2f}"
    productinfo = f"ASIREX Order #{order.id}"
    firstname = order.shipping_name
    email = g.user.email
    base_url = request.host_url.rstrip("/")

    log_event("PAYMENT_ORDER_CREATED", user_id=g.user.id, entity="order", entity_id=order.id,
              details={"gateway": "payu", "txnid": txnid})
    return jsonify(
        action=current_app.config.get("PAYU_BASE_URL"),
        params={
            "key": key,
            "txnid": txnid,
            "amount": amount,
            "productinfo": productinfo,
            "firstname": firstname,
            "email": email,
            "phone": order.shipping_phone,
            "surl": f"{base_url}/payments/payu/callback",
            "furl": f"{base_url}/payments/payu/callback",
            "hash": payments.payu_request_hash(key, salt, txnid, amount, productinfo, firstname, email),
        },
    ), 200


@payments_bp.post("/payu/callback")
def payu_callback():
    """PayU posts form fields here for both success and failure."""
    key = current_app.config.get("PAYU_MERCHANT_KEY")
    salt = current_app.config.get("PAYU_MERCHANT_SALT")
    if not key or not salt:
        return jsonify(error="Payment verification not configured"), 503

    fields = request.form.to_dict()
    txnid = fields.get("txnid") or ""
    order = Order.query.filter_by(gateway_order_id=txnid).first() if txnid else None
    if not order:
        return _frontend_redirect(status="failed", message="Order not found")

    signature_ok = payments.verify_payu_hash(fields, key, salt)
    if signature_ok and fields.get("status") != "success":
        payments.mark_order_payment_failed(order, fields.get("error_Message") or fields.get("status") or "failed")
        return _frontend_redirect(status="failed", order_id=order.id, message="Payment failed")

    try:
        payments.verify_payment(order, "payu", fields.get("mihpayid") or txnid, signature_ok)
    except ServiceError as exc:
        return _frontend_redirect(status="failed", order_id=order.id, message=exc.message)

    return _frontend_redirect(status="success", order_id=order.id)
