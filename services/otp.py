"""
One-time codes for every verification flow (signup, phone, order
cancellation, event registration, password reset).

A single state machine keyed by ``(subject, purpose)``:

    issue()  -> pending record {hash, expires_at, attempts=0, verified=False}
    verify() -> verified, or NotFound / Expired / AttemptsExceeded / InvalidCode

Purpose-specific effects run after a successful verify and are registered
with ``@on_verified(purpose)``.
"""
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from flask import current_app

from models import db
from models.otp import OtpRecord, OTP_PURPOSES
from utils.audit import log_event
from utils.emailer import send_email
from utils.errors import AttemptsExceeded, Expired, InvalidCode, NotFound, RateLimited, ValidationError
from utils.sms import normalize_phone, send_sms

logger = logging.getLogger(__name__)

_SUBJECTS = {
    "signup": "email",
    "phone": "phone",
    "order_cancel": "email",
    "event": "email",
    "password_reset": "email",
}

_EMAIL_SUBJECTS = {
    "signup": "Verify your ASIREX account",
    "order_cancel": "Confirm your order cancellation",
    "event": "Your ASIREX event registration code",
    "password_reset": "Reset your ASIREX password",
}

_EFFECTS: Dict[str, Callable] = {}


@dataclass
class OtpPolicy:
    channel: str
    ttl_seconds: int
    max_attempts: int


@dataclass
class IssuedOtp:
    record: OtpRecord
    code: str
    delivered: bool
    delivery_error: Optional[str] = None


@dataclass
class VerifiedOtp:
    record: OtpRecord
    result: dict = field(default_factory=dict)


def on_verified(purpose: str):
    """Register the side effect that runs when a ``purpose`` code is verified."""
    def decorator(fn):
        _EFFECTS[purpose] = fn
        return fn
    return decorator


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def generate_code(length: int = 6) -> str:
    # first digit is never 0 so the code is always `length` digits long
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def get_policy(purpose: str) -> OtpPolicy:
    policies = current_app.config.get("OTP_POLICIES", {})
    if purpose not in OTP_PURPOSES or purpose not in policies:
        raise ValidationError(f"Unknown OTP purpose: {purpose}")
    channel, ttl, max_attempts = policies[purpose]
    return OtpPolicy(channel=channel, ttl_seconds=int(ttl), max_attempts=int(max_attempts))


def normalize_subject(subject: str, purpose: str) -> str:
    if _SUBJECTS.get(purpose) == "phone":
        return normalize_phone(subject)
    return (subject or "").strip().lower()


def _latest(subject: str, purpose: str, unverified_only: bool = False):
    q = OtpRecord.query.filter_by(subject=subject, purpose=purpose)
    if unverified_only:
        q = q.filter_by(verified=False)
    return q.order_by(OtpRecord.created_at.desc(), OtpRecord.id.desc()).first()


def _deliver(policy: OtpPolicy, subject: str, purpose: str, code: str, context: dict):
    if policy.channel == "sms":
        return send_sms(subject, code)

    minutes = policy.ttl_seconds // 60
    label = context.get("label") or ""
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h2>{_EMAIL_SUBJECTS.get(purpose, 'Your verification code')}</h2>"
        + (f"<p>{label}</p>" if label else "")
        + f'<p style="font-size: 32px; letter-spacing: 8px; font-weight: bold;">{code}</p>'
        f"<p>This code is valid for {minutes} minutes. Do not share it with anyone.</p>"
        "</div>"
    )
    return send_email(subject, _EMAIL_SUBJECTS.get(purpose, "Your verification code"), html)


def issue(subject: str, purpose: str, user_id=None, reference=None, context=None) -> IssuedOtp:
    policy = get_policy(purpose)
    subject = normalize_subject(subject, purpose)
    if not subject:
        raise ValidationError("A valid email or phone number is required")

    now = datetime.utcnow()
    interval = current_app.config.get("OTP_RESEND_INTERVAL_SECONDS", 30)
    latest = _latest(subject, purpose)
    if latest is not None:
        elapsed = (now - latest.last_sent_at).total_seconds()
        if elapsed < interval:
            wait = int(interval - elapsed) or 1
            raise RateLimited(
                f"Please wait {wait} seconds before requesting a new code",
                retry_after_seconds=wait,
            )

    code = generate_code(current_app.config.get("OTP_LENGTH", 6))

    # one pending code per (subject, purpose)
    OtpRecord.query.filter_by(subject=subject, purpose=purpose).delete()
    record = OtpRecord(
        subject=subject,
        purpose=purpose,
        otp_hash=hash_code(code),
        created_at=now,
        last_sent_at=now,
        expires_at=now + timedelta(seconds=policy.ttl_seconds),
        attempts=0,
        verified=False,
        user_id=user_id,
        reference=str(reference) if reference is not None else None,
        context_json=json.dumps(context) if context else None,
    )
    db.session.add(record)
    db.session.commit()

    # the stored code stays valid even if delivery fails
    delivered, error = _deliver(policy, subject, purpose, code, context or {})
    if not delivered:
        logger.warning("OTP delivery failed for %s (%s): %s", purpose, policy.channel, error)

    log_event(
        "OTP_ISSUED",
        user_id=user_id,
        entity="otp",
        entity_id=record.id,
        details={"purpose": purpose, "channel": policy.channel, "delivered": delivered},
    )
    return IssuedOtp(record=record, code=code, delivered=delivered, delivery_error=error)


def verify(subject: str, purpose: str, code: str, **payload) -> VerifiedOtp:
    policy = get_policy(purpose)
    subject = normalize_subject(subject, purpose)
    code = (code or "").strip()

    record = _latest(subject, purpose, unverified_only=True)
    if record is None:
        raise NotFound("No pending verification found")

    if datetime.utcnow() > record.expires_at:
        db.session.delete(record)
        db.session.commit()
        raise Expired()

    if record.attempts >= policy.max_attempts:
        raise AttemptsExceeded()

    if not hmac.compare_digest(hash_code(code), record.otp_hash):
        (
            OtpRecord.query
            .filter_by(id=record.id)
            .update({"attempts": OtpRecord.attempts + 1})
        )
        db.session.commit()
        db.session.refresh(record)

        log_event("OTP_FAILED", user_id=record.user_id, entity="otp", entity_id=record.id,
                  details={"purpose": purpose, "attempts": record.attempts})
        remaining = policy.max_attempts - record.attempts
        if remaining <= 0:
            raise AttemptsExceeded()
        raise InvalidCode(
            f"Invalid code. {remaining} attempt{'s' if remaining != 1 else ''} remaining.",
            remaining_attempts=remaining,
        )

    now = datetime.utcnow()
    claimed = (
        OtpRecord.query
        .filter_by(id=record.id, verified=False)
        .update({"verified": True, "verified_at": now})
    )
    if not claimed:
        # a concurrent request verified it first
        db.session.rollback()
        raise NotFound("No pending verification found")

    result = {}
    effect = _EFFECTS.get(purpose)
    if effect is not None:
        result = effect(record, **payload) or {}
    db.session.commit()

    log_event("OTP_VERIFIED", user_id=record.user_id, entity="otp", entity_id=record.id,
              details={"purpose": purpose})
    return VerifiedOtp(record=record, result=result)


def context_of(record: OtpRecord) -> dict:
    return json.loads(record.context_json) if record.context_json else {}
