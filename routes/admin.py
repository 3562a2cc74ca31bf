import re
from datetime import datetime
from decimal import Decimal

from flask import Blueprint, jsonify, g, request

from models import db
from models.activity_log import ActivityLog
from models.campaign import SalesCampaign, CAMPAIGN_SCOPES, DISCOUNT_TYPES
from models.coupon import Coupon
from models.order import Order, ORDER_SHIPPED, ORDER_TRANSITIONS
from models.product import Product
from models.refund_request import RefundRequest
from routes.catalog import campaign_dict, product_dict
from routes.orders import order_dict
from security.rbac import require_roles
from services import orders as order_service
from services import payments, shiprocket
from services.discounts import money
from utils.audit import log_event
from utils.errors import NotFound, ValidationError

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def _parse_dt(value, field):
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}. Use ISO e.g. 2026-10-20T00:00:00")


def _parse_amount(value, field, required=False):
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    try:
        amount = money(value)
    except ArithmeticError:
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} must not be negative")
    return amount


def _parse_weight(value):
    try:
        weight = Decimal(str(value)).quantize(Decimal("0.001"))
    except ArithmeticError:
        raise ValidationError("weight_kg must be a number")
    if not weight.is_finite() or weight <= 0:
        raise ValidationError("weight_kg must be positive")
    return weight


def _discount_fields(data: dict) -> dict:
    discount_type = data.get("discount_type") or "percentage"
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError(f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}")
    value = _parse_amount(data.get("discount_value"), "discount_value", required=True)
    if discount_type == "percentage" and value > 100:
        raise ValidationError("A percentage discount cannot exceed 100")
    return {
        "discount_type": discount_type,
        "discount_value": value,
        "min_order_amount": _parse_amount(data.get("min_order_amount"), "min_order_amount"),
        "max_discount_amount": _parse_amount(data.get("max_discount_amount"), "max_discount_amount"),
    }


# ---------- catalog ----------
@admin_bp.post("/products")
@require_roles("ADMIN")
def create_product():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    category = (data.get("category") or "").strip()
    if not name or not category:
        return jsonify(error="name and category are required"), 400

    slug = _SLUG_STRIP.sub("-", (data.get("slug") or name).lower()).strip("-")
    if Product.query.filter_by(slug=slug).first():
        return jsonify(error="Product slug already exists"), 409

    product = Product(
        name=name,
        slug=slug,
        category=category,
        description=data.get("description"),
        price=_parse_amount(data.get("price"), "price", required=True),
        stock=int(data.get("stock") or 0),
    )
    if data.get("weight_kg") not in (None, ""):
        product.weight_kg = _parse_weight(data["weight_kg"])
    db.session.add(product)
    db.session.commit()

    log_event("PRODUCT_CREATE", user_id=g.user.id, entity="product", entity_id=product.id)
    return jsonify(product_dict(product)), 201


@admin_bp.patch("/products/<int:product_id>")
@require_roles("ADMIN")
def update_product(product_id: int):
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFound("Product not found")

    data = request.get_json(silent=True) or {}
    if "price" in data:
        product.price = _parse_amount(data["price"], "price", required=True)
    if "stock" in data:
        product.stock = max(int(data["stock"]), 0)
    if "weight_kg" in data:
        product.weight_kg = _parse_weight(data["weight_kg"])
    if "is_active" in data:
        product.is_active = bool(data["is_active"])
    if data.get("description") is not None:
        product.description = data["description"]
    db.session.commit()

    log_event("PRODUCT_UPDATE", user_id=g.user.id, entity="product", entity_id=product.id,
              details={k: data[k] for k in ("price", "stock", "weight_kg", "is_active") if k in data})
    return jsonify(product_dict(product)), 200


# ---------- sales campaigns ----------
@admin_bp.get("/campaigns")
@require_roles("ADMIN")
def list_campaigns():
    rows = SalesCampaign.query.order_by(SalesCampaign.created_at.desc()).all()
    return jsonify([dict(campaign_dict(c), is_active=c.is_active) for c in rows]), 200


@admin_bp.post("/campaigns")
@require_roles("ADMIN")
def create_campaign():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return jsonify(error="name is required"), 400

    applies_to = data.get("applies_to") or "all"
    if applies_to not in CAMPAIGN_SCOPES:
        return jsonify(error=f"applies_to must be one of {', '.join(CAMPAIGN_SCOPES)}"), 400

    campaign = SalesCampaign(
        name=name,
        description=data.get("description"),
        banner_message=data.get("banner_message"),
        applies_to=applies_to,
        start_date=_parse_dt(data.get("start_date"), "start_date") or datetime.utcnow(),
        end_date=_parse_dt(data.get("end_date"), "end_date"),
        max_orders=data.get("max_orders"),
        is_active=bool(data.get("is_active", True)),
        **_discount_fields(data),
    )
    campaign.target_categories = data.get("target_categories") or []
    campaign.target_product_ids = data.get("target_product_ids") or []
    if campaign.end_date and campaign.end_date <= campaign.start_date:
        return jsonify(error="end_date must be after start_date"), 400

    db.session.add(campaign)
    db.session.commit()

    log_event("CAMPAIGN_CREATE", user_id=g.user.id, entity="campaign", entity_id=campaign.id)
    return jsonify(campaign_dict(campaign)), 201


@admin_bp.post("/campaigns/<int:campaign_id>/deactivate")
@require_roles("ADMIN")
def deactivate_campaign(campaign_id: int):
    campaign = db.session.get(SalesCampaign, campaign_id)
    if not campaign:
        raise NotFound("Campaign not found")

    campaign.is_active = False
    db.session.commit()

    log_event("CAMPAIGN_DEACTIVATE", user_id=g.user.id, entity="campaign", entity_id=campaign_id)
    return jsonify(message="Campaign deactivated"), 200


# ---------- coupons ----------
@admin_bp.post("/coupons")
@require_roles("ADMIN")
def create_coupon():
    data = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip().upper()
    if not code or len(code) > 40:
        return jsonify(error="code is required"), 400
    if Coupon.query.filter_by(code=code).first():
        return jsonify(error="Coupon code already exists"), 409

    coupon = Coupon(
        code=code,
        description=data.get("description"),
        valid_from=_parse_dt(data.get("valid_from"), "valid_from"),
        valid_until=_parse_dt(data.get("valid_until"), "valid_until"),
        usage_limit=data.get("usage_limit"),
        per_user_limit=data.get("per_user_limit", 1),
        new_users_only=bool(data.get("new_users_only", False)),
        **_discount_fields(data),
    )
    db.session.add(coupon)
    db.session.commit()

    log_event("COUPON_CREATE", user_id=g.user.id, entity="coupon", entity_id=coupon.id)
    return jsonify(id=coupon.id, code=coupon.code), 201


# ---------- orders ----------
@admin_bp.get("/orders")
@require_roles("ADMIN")
def list_orders():
    q = Order.query
    for field in ("order_status", "payment_status"):
        value = request.args.get(field)
        if value:
            q = q.filter(getattr(Order, field) == value)

    rows = q.order_by(Order.created_at.desc()).limit(200).all()
    return jsonify([dict(order_dict(o, with_items=False), user_id=o.user_id) for o in rows]), 200


@admin_bp.post("/orders/<int:order_id>/status")
@require_roles("ADMIN")
def update_order_status(order_id: int):
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")

    data = request.get_json(silent=True) or {}
    new_status = data.get("order_status")
    if new_status not in ORDER_TRANSITIONS:
        return jsonify(error="Unknown order_status"), 400

    reason = (data.get("reason") or "").strip()[:255] or None
    order_service.set_order_status(order, new_status, actor_id=g.user.id, reason=reason)
    return jsonify(order_dict(order)), 200


@admin_bp.post("/orders/<int:order_id>/ship")
@require_roles("ADMIN")
def ship_order(order_id: int):
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    if order.shipment_id:
        return jsonify(error="Order already has a shipment"), 409
    if order.payment_method != "cod" and order.payment_status != "paid":
        return jsonify(error="Online orders must be paid before shipping"), 400

    shipment = shiprocket.create_shipment(order)
    order.shiprocket_order_id = shipment["shiprocket_order_id"] or None
    order.shipment_id = shipment["shipment_id"] or None
    order.awb_code = shipment["awb_code"]
    order.courier_name = shipment["courier_name"]
    order.delivery_status = "pickup_scheduled"
    db.session.commit()

    order_service.set_order_status(order, ORDER_SHIPPED, actor_id=g.user.id)
    return jsonify(order_dict(order)), 200


@admin_bp.post("/orders/<int:order_id>/unlock_payment")
@require_roles("ADMIN")
def unlock_payment_verification(order_id: int):
    if not db.session.get(Order, order_id):
        raise NotFound("Order not found")
    unlocked = payments.unlock_verification(order_id)

    log_event("PAYMENT_VERIFICATION_UNLOCKED", user_id=g.user.id, entity="order", entity_id=order_id)
    return jsonify(message="Payment verification unlocked", had_lock=unlocked), 200


@admin_bp.get("/refunds")
@require_roles("ADMIN")
def list_refunds():
    rows = RefundRequest.query.order_by(RefundRequest.created_at.desc()).limit(200).all()
    return jsonify([
        {
            "id": r.id,
            "order_id": r.order_id,
            "user_id": r.user_id,
            "amount": float(r.amount),
            "payment_method": r.payment_method,
            "refund_method": r.refund_method,
            "status": r.status,
            "reason": r.reason,
            "created_at": r.created_at.isoformat(),
        }
        for r in rows
    ]), 200


# ---------- activity log ----------
@admin_bp.get("/activity-logs")
@require_roles("SUPER_ADMIN")
def list_activity_logs():
    limit = request.args.get("limit", type=int) or 200
    limit = max(1, min(limit, 500))

    q = ActivityLog.query
    action_type = request.args.get("action_type")
    if action_type:
        q = q.filter(ActivityLog.action_type == action_type)
    user_id = request.args.get("user_id", type=int)
    if user_id is not None:
        q = q.filter(ActivityLog.user_id == user_id)

    rows = q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()
    return jsonify([
        {
            "id": r.id,
            "created_at": r.created_at.isoformat(),
            "user_id": r.user_id,
            "action_type": r.action_type,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "ip": r.ip,
            "details": r.details_json,
        }
        for r in rows
    ]), 200
