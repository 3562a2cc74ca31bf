from flask import Blueprint, request, jsonify, g

from models import db
from models.product import Product
from services.discounts import active_campaigns, resolve_campaign, savings_text, validate_coupon
from services.orders import collect_items, price_cart
from security.rbac import login_required
from utils.errors import NotFound

catalog_bp = Blueprint("catalog", __name__)


def product_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "slug": p.slug,
        "category": p.category,
        "description": p.description,
        "price": float(p.price),
        "in_stock": p.stock > 0,
    }


def campaign_dict(c) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "banner_message": c.banner_message,
        "discount_type": c.discount_type,
        "discount_value": float(c.discount_value),
        "min_order_amount": float(c.min_order_amount) if c.min_order_amount is not None else None,
        "max_discount_amount": float(c.max_discount_amount) if c.max_discount_amount is not None else None,
        "applies_to": c.applies_to,
        "target_categories": c.target_categories,
        "target_product_ids": c.target_product_ids,
        "start_date": c.start_date.isoformat(),
        "end_date": c.end_date.isoformat() if c.end_date else None,
        "max_orders": c.max_orders,
        "current_orders": c.current_orders,
    }


@catalog_bp.get("/products")
def list_products():
    category = request.args.get("category")
    q = Product.query.filter_by(is_active=True)
    if category:
        q = q.filter_by(category=category)
    return jsonify([product_dict(p) for p in q.order_by(Product.name.asc()).all()]), 200


@catalog_bp.get("/products/<int:product_id>")
def get_product(product_id: int):
    product = db.session.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFound("Product not found")

    sale = resolve_campaign(active_campaigns(), product.price, [product.category], [product.id])
    body = product_dict(product)
    body["sale"] = {
        "campaign_id": sale.campaign.id,
        "discount": float(sale.discount),
        "sale_price": float(product.price - sale.discount),
    } if sale.campaign else None
    return jsonify(body), 200


@catalog_bp.get("/campaigns/active")
def list_active_campaigns():
    return jsonify([campaign_dict(c) for c in active_campaigns()]), 200


@catalog_bp.post("/campaigns/resolve")
def resolve_sale_discount():
    data = request.get_json(silent=True) or {}
    try:
        order_amount = float(data.get("order_amount") or 0)
    except (TypeError, ValueError):
        return jsonify(error="order_amount must be a number"), 400
    if order_amount < 0:
        return jsonify(error="order_amount must not be negative"), 400

    result = resolve_campaign(
        active_campaigns(),
        order_amount,
        data.get("product_categories") or [],
        data.get("product_ids") or [],
    )
    return jsonify(
        campaign=campaign_dict(result.campaign) if result.campaign else None,
        discount=float(result.discount),
    ), 200


@catalog_bp.post("/checkout/quote")
@login_required
def quote():
    data = request.get_json(silent=True) or {}
    lines = collect_items(data.get("items"))
    pricing = price_cart(lines, g.user.id, data.get("coupon_code"))
    return jsonify(
        subtotal=float(pricing["subtotal"]),
        campaign=campaign_dict(pricing["campaign"]) if pricing["campaign"] else None,
        campaign_discount=float(pricing["campaign_discount"]),
        coupon_code=pricing["coupon"].code if pricing["coupon"] else None,
        coupon_discount=float(pricing["coupon_discount"]),
        total=float(pricing["total"]),
    ), 200


@catalog_bp.post("/coupons/validate")
@login_required
def validate_coupon_code():
    data = request.get_json(silent=True) or {}
    try:
        order_amount = float(data.get("order_amount") or 0)
    except (TypeError, ValueError):
        order_amount = 0

    result = validate_coupon(data.get("code"), order_amount, g.user.id)
    if not result.valid:
        status = 400 if result.error == "Missing code or order amount" else 200
        return jsonify(valid=False, error=result.error), status

    c = result.coupon
    return jsonify(
        valid=True,
        coupon={
            "id": c.id,
            "code": c.code,
            "description": c.description,
            "discount_type": c.discount_type,
            "discount_value": float(c.discount_value),
            "max_discount_amount": float(c.max_discount_amount) if c.max_discount_amount is not None else None,
        },
        discount_amount=float(result.discount),
        original_amount=order_amount,
        final_amount=max(0.0, round(order_amount - float(result.discount), 2)),
        savings_text=savings_text(c.discount_type, c.discount_value),
    ), 200
