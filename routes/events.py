from datetime import datetime
from urllib.parse import urlencode

from flask import Blueprint, request, jsonify, current_app, redirect

from models import db
from models.event import Event
from services import events as event_service
from services import otp
from security.rate_limit import check_and_increment_otp_rate
from utils.errors import NotFound, RateLimited, ValidationError

events_bp = Blueprint("events", __name__, url_prefix="/events")


def _get_event(event_id: int) -> Event:
    event = db.session.get(Event, event_id)
    if not event or not event.is_active:
        raise NotFound("Event not found")
    return event


@events_bp.get("")
def list_events():
    rows = (
        Event.query
        .filter(Event.is_active.is_(True), Event.starts_at >= datetime.utcnow())
        .order_by(Event.starts_at.asc())
        .all()
    )
    return jsonify([
        {
            "id": e.id,
            "title": e.title,
            "starts_at": e.starts_at.isoformat(),
            "venue": e.venue,
            "capacity": e.capacity,
            "price": float(e.price or 0),
            "seats_left": max(e.capacity - event_service.seats_taken(e), 0) if e.capacity else None,
        }
        for e in rows
    ]), 200


@events_bp.post("/<int:event_id>/register")
def register_for_event(event_id: int):
    allowed, retry_after = check_and_increment_otp_rate()
    if not allowed:
        raise RateLimited("Too many verification requests. Slow down.", retry_after_seconds=retry_after)

    data = request.get_json(silent=True) or {}
    reg, issued = event_service.register(
        _get_event(event_id),
        (data.get("full_name") or "").strip(),
        data.get("email"),
        (data.get("phone") or "").strip() or None,
    )
    body = {"success": True, "registration_id": reg.id, "delivered": issued.delivered}
    if current_app.config.get("OTP_EXPOSE_TEST_CODE"):
        body["test_otp"] = issued.code
    return jsonify(body), 201


@events_bp.post("/<int:event_id>/verify")
def verify_event_registration(event_id: int):
    _get_event(event_id)
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    code = data.get("otp") or ""
    if not email or not code:
        raise ValidationError("Email and OTP are required")

    verified = otp.verify(email, "event", code, event_id=event_id)
    return jsonify(success=True, message="Registration confirmed", **verified.result), 200


# ---------- paid events ----------
@events_bp.post("/<int:event_id>/payu/initiate")
def initiate_event_payment(event_id: int):
    event = _get_event(event_id)
    data = request.get_json(silent=True) or {}
    registration_id = data.get("registration_id")
    if not isinstance(registration_id, int) or isinstance(registration_id, bool):
        raise ValidationError("registration_id must be an integer")

    reg = event_service.get_registration(event, registration_id, data.get("email"))
    callback_url = request.host_url.rstrip("/") + "/events/payu/callback"
    return jsonify(event_service.start_payment(event, reg, callback_url)), 200


@events_bp.post("/payu/callback")
def event_payu_callback():
    """PayU posts here for both outcomes; the browser lands on the events page."""
    reg, paid = event_service.apply_payment_callback(request.form.to_dict())
    base_url = current_app.config.get("FRONTEND_BASE_URL", "").rstrip("/")
    if reg is None:
        params = {"status": "failed", "message": "Payment could not be verified"}
    elif paid:
        params = {"status": "success", "event_id": reg.event_id, "verification_code": reg.checkin_code}
    else:
        params = {"status": "failed", "event_id": reg.event_id, "message": "Payment failed"}
    return redirect(f"{base_url}/events?{urlencode(params)}", code=302)
