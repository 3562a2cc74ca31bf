"""
Event registrations: an email code confirms the seat, priced events are
then paid through PayU.
"""
import logging
import secrets
import string
import time
from datetime import datetime

from flask import current_app

from models import db
from models.event import (
    Event,
    EventRegistration,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_PAID,
    EVENT_PAYMENT_PENDING,
    REG_VERIFIED,
)
from services import otp, payments
from utils.audit import log_event
from utils.errors import NotFound, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

CHECKIN_ALPHABET = string.ascii_uppercase + string.digits


def seats_taken(event: Event) -> int:
    """A seat is held by a confirmed registration, and for a priced event only once paid."""
    q = EventRegistration.query.filter_by(event_id=event.id, status=REG_VERIFIED)
    if event.is_paid:
        q = q.filter_by(payment_status=EVENT_PAYMENT_PAID)
    return q.count()


def _ensure_seat(event: Event):
    if event.capacity and seats_taken(event) >= event.capacity:
        raise ValidationError("This event is full")


def register(event: Event, full_name: str, email: str, phone: str = None):
    """Create (or reuse) a pending registration and send the email code."""
    email = (email or "").strip().lower()
    if not full_name or "@" not in email:
        raise ValidationError("full_name and a valid email are required")
    if not event.is_active:
        raise NotFound("Event not found")

    reg = EventRegistration.query.filter_by(event_id=event.id, email=email).first()
    if reg and reg.status == REG_VERIFIED:
        raise ValidationError("You are already registered for this event")

    _ensure_seat(event)

    if not reg:
        reg = EventRegistration(event_id=event.id, full_name=full_name.strip(), email=email, phone=phone)
        db.session.add(reg)
        db.session.commit()

    issued = otp.issue(
        email,
        "event",
        reference=reg.id,
        context={"label": f"Registration for {event.title}"},
    )
    return reg, issued


@otp.on_verified("event")
def _confirm_registration(record, event_id=None, **_):
    reg = db.session.get(EventRegistration, int(record.reference)) if record.reference else None
    if not reg or (event_id is not None and reg.event_id != event_id):
        raise NotFound("Registration not found")

    # seats may have gone while this code was pending
    event = db.session.get(Event, reg.event_id)
    _ensure_seat(event)

    reg.status = REG_VERIFIED
    reg.verified_at = datetime.utcnow()
    if event.is_paid:
        reg.payment_status = EVENT_PAYMENT_PENDING
    return {"registration_id": reg.id, "payment_required": event.is_paid}


# ---------- paid events (PayU) ----------

def get_registration(event: Event, registration_id, email: str) -> EventRegistration:
    reg = db.session.get(EventRegistration, registration_id) if registration_id else None
    email = (email or "").strip().lower()
    if not reg or reg.event_id != event.id or reg.email != email:
        raise NotFound("Registration not found")
    return reg


def _checkin_code() -> str:
    return "".join(secrets.choice(CHECKIN_ALPHABET) for _ in range(6))


def start_payment(event: Event, reg: EventRegistration, callback_url: str) -> dict:
    """Sign a PayU request for the event fee. Returns the form the browser posts."""
    key = current_app.config.get("PAYU_MERCHANT_KEY")
    salt = current_app.config.get("PAYU_MERCHANT_SALT")
    if not key or not salt:
        raise UpstreamUnavailable("Payment gateway not configured")
    if not event.is_paid:
        raise ValidationError("This event is free")
    if reg.status != REG_VERIFIED:
        raise ValidationError("Confirm your registration before paying")
    if reg.payment_status == EVENT_PAYMENT_PAID:
        raise ValidationError("This registration is already paid")
    _ensure_seat(event)

    txnid = f"EVT{reg.id}T{int(time.time() * 1000)}"
    amount = f"{event.price:.2f}"
    productinfo = f"Event Registration: {event.title}"[:100]
    firstname = reg.full_name.split()[0]

    reg.gateway_txnid = txnid
    reg.payment_status = EVENT_PAYMENT_PENDING
    if not reg.checkin_code:
        reg.checkin_code = _checkin_code()
    log_event("EVENT_PAYMENT_INITIATED", entity="event_registration", entity_id=reg.id,
              details={"txnid": txnid, "amount": amount}, commit=False)
    db.session.commit()

    return {
        "action": current_app.config.get("PAYU_BASE_URL"),
        "params": {
            "key": key,
            "txnid": txnid,
            "amount": amount,
            "productinfo": productinfo,
            "firstname": firstname,
            "email": reg.email,
            "phone": reg.phone or "",
            "surl": callback_url,
            "furl": callback_url,
            "hash": payments.payu_request_hash(key, salt, txnid, amount, productinfo, firstname, reg.email),
        },
    }


def apply_payment_callback(fields: dict):
    """
    Settle a PayU callback. Returns (registration, paid); the registration
    is None when the transaction is unknown or the hash does not check out.
    """
    key = current_app.config.get("PAYU_MERCHANT_KEY")
    salt = current_app.config.get("PAYU_MERCHANT_SALT")
    if not key or not salt:
        raise UpstreamUnavailable("Payment verification not configured")

    txnid = fields.get("txnid") or ""
    reg = EventRegistration.query.filter_by(gateway_txnid=txnid).first() if txnid else None
    if reg is None:
        return None, False

    if not payments.verify_payu_hash(fields, key, salt):
        log_event("EVENT_PAYMENT_SIGNATURE_INVALID", entity="event_registration", entity_id=reg.id,
                  details={"txnid": txnid})
        logger.warning("PayU hash mismatch for event registration %s", reg.id)
        return None, False

    if fields.get("status") == "success":
        event = db.session.get(Event, reg.event_id)
        if fields.get("amount") != f"{event.price:.2f}":
            log_event("EVENT_PAYMENT_AMOUNT_MISMATCH", entity="event_registration", entity_id=reg.id,
                      details={"txnid": txnid, "amount": fields.get("amount")})
            return None, False
        updated = (
            EventRegistration.query
            .filter_by(id=reg.id, payment_status=EVENT_PAYMENT_PENDING)
            .update({
                "payment_status": EVENT_PAYMENT_PAID,
                "payment_id": fields.get("mihpayid") or txnid,
                "amount_paid": event.price,
                "paid_at": datetime.utcnow(),
            })
        )
        if updated:
            log_event("EVENT_PAYMENT_COMPLETED", entity="event_registration", entity_id=reg.id,
                      details={"txnid": txnid, "payment_id": fields.get("mihpayid")}, commit=False)
    else:
        updated = (
            EventRegistration.query
            .filter_by(id=reg.id, payment_status=EVENT_PAYMENT_PENDING)
            .update({"payment_status": EVENT_PAYMENT_FAILED})
        )
        if updated:
            log_event("EVENT_PAYMENT_FAILED", entity="event_registration", entity_id=reg.id,
                      details={"txnid": txnid, "reason": fields.get("error_Message") or fields.get("status")},
                      commit=False)
    db.session.commit()
    db.session.refresh(reg)
    return reg, reg.payment_status == EVENT_PAYMENT_PAID
