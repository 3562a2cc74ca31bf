import hmac
import logging

from flask import Blueprint, request, jsonify, current_app

from services import orders as order_service

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.post("/delivery")
def delivery_webhook():
    """ShipRocket status push. Always answers 200 for unknown orders so it stops retrying."""
    expected = current_app.config.get("DELIVERY_WEBHOOK_TOKEN")
    if not expected:
        return jsonify(error="Webhook token not configured"), 503
    supplied = request.headers.get("x-api-key") or ""
    if not hmac.compare_digest(supplied, expected):
        return jsonify(error="Invalid webhook token"), 401

    payload = request.get_json(silent=True) or {}
    awb = payload.get("awb")
    shipment_id = payload.get("shipment_id")
    sr_order_id = payload.get("order_id")
    status = payload.get("current_status") or payload.get("status")

    if not (awb or shipment_id or sr_order_id):
        return jsonify(success=True, message="No order identifiers"), 200

    order = order_service.find_order_for_shipment(awb, shipment_id, sr_order_id)
    if not order:
        logger.info("Delivery webhook for unknown order: awb=%s shipment=%s order=%s", awb, shipment_id, sr_order_id)
        return jsonify(success=False, message="Order not found"), 200

    order_service.apply_delivery_update(order, status, payload.get("courier_name"), payload.get("etd"), awb)
    return jsonify(
        success=True,
        order_id=order.id,
        order_status=order.order_status,
        delivery_status=order.delivery_status,
    ), 200
