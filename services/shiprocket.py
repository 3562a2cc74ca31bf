"""ShipRocket client: token auth, order create/cancel, tracking."""
import logging
from datetime import datetime, timedelta
from decimal import Decimal

import requests
from flask import current_app

from models import db
from models.api_token import ApiToken
from models.order import Order
from models.product import Product
from utils.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

PROVIDER = "shiprocket"

# per unit, for lines whose product row is gone
FALLBACK_ITEM_WEIGHT_KG = Decimal("0.5")


def _timeout():
    return current_app.config.get("HTTP_TIMEOUT_SECONDS", 15)


def _url(path: str) -> str:
    return current_app.config["SHIPROCKET_API_URL"].rstrip("/") + path


def get_token(force_refresh: bool = False) -> str:
    """Cached in the database; ShipRocket tokens live 10 days, we keep them 9."""
    now = datetime.utcnow()
    row = ApiToken.query.filter_by(provider=PROVIDER).first()
    if row and not force_refresh and row.expires_at > now:
        return row.token

    email = current_app.config.get("SHIPROCKET_EMAIL")
    password = current_app.config.get("SHIPROCKET_PASSWORD")
    if not email or not password:
        raise UpstreamUnavailable("Shipping service not configured")

    try:
        resp = requests.post(_url("/auth/login"), json={"email": email, "password": password}, timeout=_timeout())
        resp.raise_for_status()
        token = resp.json()["token"]
    except (requests.RequestException, ValueError, KeyError) as exc:
        logger.exception("ShipRocket authentication failed")
        raise UpstreamUnavailable("Shipping service unavailable") from exc

    expires_at = now + timedelta(days=current_app.config.get("SHIPROCKET_TOKEN_TTL_DAYS", 9))
    if row:
        row.token = token
        row.expires_at = expires_at
    else:
        db.session.add(ApiToken(provider=PROVIDER, token=token, expires_at=expires_at))
    db.session.commit()
    return token


def _request(method: str, path: str, **kwargs) -> dict:
    token = get_token()
    try:
        resp = requests.request(
            method, _url(path), headers={"Authorization": f"Bearer {token}"}, timeout=_timeout(), **kwargs
        )
        if resp.status_code == 401:
            # token revoked on their side
            token = get_token(force_refresh=True)
            resp = requests.request(
                method, _url(path), headers={"Authorization": f"Bearer {token}"}, timeout=_timeout(), **kwargs
            )
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("ShipRocket %s %s failed: %s", method, path, exc)
        raise UpstreamUnavailable("Shipping service unavailable") from exc


def package_weight(order: Order) -> float:
    ids = {item.product_id for item in order.items}
    weights = {p.id: p.weight_kg for p in Product.query.filter(Product.id.in_(ids))} if ids else {}
    total = sum(
        ((weights.get(item.product_id) or FALLBACK_ITEM_WEIGHT_KG) * item.quantity for item in order.items),
        Decimal("0"),
    )
    return float(round(total, 3)) or float(FALLBACK_ITEM_WEIGHT_KG)


def order_payload(order: Order) -> dict:
    return {
        "order_id": str(order.id),
        "order_date": order.created_at.strftime("%Y-%m-%d %H:%M"),
        "pickup_location": current_app.config.get("SHIPROCKET_PICKUP_LOCATION", "Primary"),
        "billing_customer_name": order.shipping_name,
        "billing_last_name": "",
        "billing_address": order.shipping_address,
        "billing_city": order.shipping_city,
        "billing_state": order.shipping_state,
        "billing_pincode": order.shipping_pincode,
        "billing_country": "India",
        "billing_phone": order.shipping_phone,
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item.product_name,
                "sku": f"SKU-{item.product_id}",
                "units": item.quantity,
                "selling_price": float(item.unit_price),
            }
            for item in order.items
        ],
        "payment_method": "COD" if order.payment_method == "cod" else "Prepaid",
        "sub_total": float(order.total_amount),
        "length": 20,
        "breadth": 15,
        "height": 10,
        "weight": package_weight(order),
    }


def create_shipment(order: Order) -> dict:
    data = _request("POST", "/orders/create/adhoc", json=order_payload(order))
    return {
        "shiprocket_order_id": str(data.get("order_id") or ""),
        "shipment_id": str(data.get("shipment_id") or ""),
        "awb_code": data.get("awb_code") or None,
        "courier_name": data.get("courier_name") or None,
    }


def cancel_shipment(shiprocket_order_id: str) -> dict:
    return _request("POST", "/orders/cancel", json={"ids": [int(shiprocket_order_id)]})


def track_awb(awb_code: str) -> dict:
    data = _request("GET", f"/courier/track/awb/{awb_code}")
    tracking = data.get("tracking_data") or {}
    shipments = tracking.get("shipment_track") or [{}]
    head = shipments[0] if shipments else {}
    return {
        "awb_code": awb_code,
        "current_status": head.get("current_status"),
        "courier_name": head.get("courier_name"),
        "etd": tracking.get("etd"),
        "activities": [
            {
                "date": a.get("date"),
                "status": a.get("sr-status-label") or a.get("activity"),
                "location": a.get("location"),
            }
            for a in (tracking.get("shipment_track_activities") or [])
        ],
    }
