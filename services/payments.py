"""
Gateway signature checks and the paid transition of an order.

Razorpay signs ``order_id|payment_id`` with HMAC-SHA256 keyed by the API
secret. PayU hashes a pipe-delimited field list, salted with the merchant
salt, with SHA-512.
"""
import hashlib
import hmac
import logging
from datetime import datetime

import requests
from flask import current_app

from models import db
from models.campaign import SalesCampaign
from models.order import (
    Order,
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PENDING,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    can_transition_payment,
)
from security import bruteforce
from services.orders import request_refund
from utils.audit import log_event
from utils.errors import AttemptsExceeded, SignatureInvalid, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

PAYU_UDF_FIELDS = ("udf1", "udf2", "udf3", "udf4", "udf5")


def razorpay_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not (order_id and payment_id and signature and secret):
        return False
    expected = razorpay_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def _sha512(value: str) -> str:
    return hashlib.sha512(value.encode("utf-8")).hexdigest()


def payu_request_hash(key: str, salt: str, txnid: str, amount: str, productinfo: str,
                      firstname: str, email: str, udfs: dict = None) -> str:
    udfs = udfs or {}
    parts = [key, txnid, amount, productinfo, firstname, email]
    parts += [udfs.get(name, "") for name in PAYU_UDF_FIELDS]
    parts += ["", "", "", "", "", salt]
    return _sha512("|".join(parts))


def payu_response_hash(fields: dict, key: str, salt: str) -> str:
    """Reverse hash PayU posts back to the success/failure URL."""
    parts = [salt, fields.get("status", ""), "", "", "", "", ""]
    parts += [fields.get(name, "") for name in reversed(PAYU_UDF_FIELDS)]
    parts += [
        fields.get("email", ""),
        fields.get("firstname", ""),
        fields.get("productinfo", ""),
        fields.get("amount", ""),
        fields.get("txnid", ""),
        key,
    ]
    if fields.get("additionalCharges"):
        parts.insert(0, fields["additionalCharges"])
    return _sha512("|".join(parts))


def verify_payu_hash(fields: dict, key: str, salt: str) -> bool:
    supplied = (fields.get("hash") or "").strip().lower()
    if not supplied:
        return False
    return hmac.compare_digest(payu_response_hash(fields, key, salt), supplied)


# ---------- failed-attempt counter (failure_counters, scope "payment") ----------

def is_verification_locked(order_id: int) -> bool:
    locked, _ = bruteforce.lock_state(bruteforce.PAYMENT, order_id)
    return locked


def register_verification_failure(order_id: int) -> tuple[int, bool]:
    """Returns (fail_count, locked_now). The lock has no expiry."""
    return bruteforce.register_failure(
        bruteforce.PAYMENT,
        order_id,
        current_app.config.get("PAYMENT_MAX_FAILED_VERIFICATIONS", 5),
    )


def clear_verification_failures(order_id: int):
    bruteforce.clear(bruteforce.PAYMENT, order_id)


def unlock_verification(order_id: int) -> bool:
    """
    Support override after a signature lockout. The lockout marked the
    payment failed, so a live order goes back to pending and the customer
    can complete the payment again.
    """
    locked = is_verification_locked(order_id)
    updated = bruteforce.clear(bruteforce.PAYMENT, order_id, unlock=True)
    if locked:
        reopened = (
            Order.query
            .filter(Order.id == order_id,
                    Order.payment_status == PAYMENT_FAILED,
                    Order.order_status != ORDER_CANCELLED)
            .update({"payment_status": PAYMENT_PENDING}, synchronize_session=False)
        )
        if reopened:
            log_event("PAYMENT_REOPENED", entity="order", entity_id=order_id,
                      details={"reason": "verification_unlocked"}, commit=False)
    db.session.commit()
    return updated > 0


# ---------- order transitions ----------

def mark_order_paid(order: Order, payment_id: str, gateway: str) -> bool:
    """
    pending -> paid, exactly once. Returns True only for the request that
    performed the transition.
    """
    now = datetime.utcnow()
    updated = (
        Order.query
        .filter_by(id=order.id, payment_status=PAYMENT_PENDING)
        .update({"payment_status": PAYMENT_PAID, "payment_id": payment_id, "paid_at": now})
    )
    if not updated:
        return False

    db.session.refresh(order)
    if order.order_status == ORDER_CANCELLED:
        # the gateway captured money for an order that no longer ships
        request_refund(order, "Payment received after cancellation")
        log_event("PAYMENT_AFTER_CANCELLATION", user_id=order.user_id, entity="order", entity_id=order.id,
                  details={"payment_id": payment_id, "gateway": gateway}, commit=False)
        logger.warning("Order %s was paid after cancellation, refund opened", order.id)
    else:
        Order.query.filter_by(id=order.id, order_status=ORDER_PENDING).update({"order_status": ORDER_CONFIRMED})
        if order.campaign_id:
            SalesCampaign.query.filter_by(id=order.campaign_id).update(
                {"current_orders": SalesCampaign.current_orders + 1}
            )
    clear_verification_failures(order.id)
    db.session.refresh(order)

    log_event(
        "PAYMENT_COMPLETED",
        user_id=order.user_id,
        entity="order",
        entity_id=order.id,
        details={"payment_id": payment_id, "amount": order.total_amount, "gateway": gateway},
        commit=False,
    )
    db.session.commit()
    return True


def mark_order_payment_failed(order: Order, reason: str):
    updated = (
        Order.query
        .filter_by(id=order.id, payment_status=PAYMENT_PENDING)
        .update({"payment_status": PAYMENT_FAILED})
    )
    if updated:
        log_event("PAYMENT_FAILED", user_id=order.user_id, entity="order", entity_id=order.id,
                  details={"reason": reason}, commit=False)
    db.session.commit()
    db.session.refresh(order)


def verify_payment(order: Order, gateway: str, payment_id: str, signature_ok: bool) -> bool:
    """
    Apply a gateway callback to an order. Returns True when the order is
    paid (now or by an earlier request); raises otherwise.
    """
    if order.payment_status == PAYMENT_PAID:
        return True

    if is_verification_locked(order.id):
        raise AttemptsExceeded(
            "Payment verification is locked for this order. Please contact support.",
            verified=False,
        )

    if not can_transition_payment(order.payment_status, PAYMENT_PAID):
        raise SignatureInvalid("Payment already marked as failed", verified=False)

    if not signature_ok:
        fail_count, locked_now = register_verification_failure(order.id)
        log_event("PAYMENT_SIGNATURE_INVALID", user_id=order.user_id, entity="order", entity_id=order.id,
                  details={"gateway": gateway, "fail_count": fail_count, "locked_now": locked_now},
                  commit=False)
        db.session.commit()
        logger.warning("Signature mismatch for order %s via %s (%s failures)", order.id, gateway, fail_count)
        if locked_now:
            mark_order_payment_failed(order, "signature_lockout")
        raise SignatureInvalid(verified=False)

    if mark_order_paid(order, payment_id, gateway):
        logger.info("Payment verified for order %s via %s", order.id, gateway)
    return True


# ---------- Razorpay API ----------

def create_razorpay_order(order: Order) -> dict:
    key_id = current_app.config.get("RAZORPAY_KEY_ID")
    key_secret = current_app.config.get("RAZORPAY_KEY_SECRET")
    if not key_id or not key_secret:
        raise UpstreamUnavailable(
            "Payment gateway not configured",
            fallback="Please use Cash on Delivery for now.",
        )
    if order.payment_status != PAYMENT_PENDING:
        raise ValidationError("Order is not awaiting payment")

    amount_paise = int((order.total_amount * 100).to_integral_value())
    try:
        resp = requests.post(
            f"{current_app.config['RAZORPAY_API_URL']}/orders",
            auth=(key_id, key_secret),
            json={
                "amount": amount_paise,
                "currency": order.currency,
                "receipt": f"order_{order.id}",
                "notes": {"order_id": str(order.id)},
            },
            timeout=current_app.config.get("HTTP_TIMEOUT_SECONDS", 15),
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.exception("Razorpay order creation failed for order %s", order.id)
        raise UpstreamUnavailable(
            "Could not reach the payment gateway",
            fallback="Please try again or use Cash on Delivery.",
        ) from exc

    order.gateway_order_id = data["id"]
    db.session.commit()
    log_event("PAYMENT_ORDER_CREATED", user_id=order.user_id, entity="order", entity_id=order.id,
              details={"gateway": "razorpay", "gateway_order_id": data["id"]})
    return {
        "gatewayOrderId": data["id"],
        "amount": data.get("amount", amount_paise),
        "currency": data.get("currency", order.currency),
        "keyId": key_id,
    }
