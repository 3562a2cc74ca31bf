from datetime import datetime, timedelta
from flask import request, current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.rate_counter import RateCounter

def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"

def hit(key: str, window_seconds: int, max_requests: int) -> tuple[bool, int]:
    """
    Atomic increment-with-expiry on a shared counter.
    Returns (allowed, retry_after_seconds).
    """
    now = datetime.utcnow()
    expires_at = now + timedelta(seconds=window_seconds)

    # expired window: restart it (only one concurrent request wins the reset)
    (
        RateCounter.query
        .filter(RateCounter.key == key, RateCounter.expires_at <= now)
        .update({"window_start": now, "expires_at": expires_at, "count": 0})
    )

    updated = (
        RateCounter.query
        .filter(RateCounter.key == key)
        .update({"count": RateCounter.count + 1})
    )
    if not updated:
        db.session.add(RateCounter(key=key, window_start=now, expires_at=expires_at, count=1))
        try:
            db.session.commit()
        except IntegrityError:
            # another request created the row first
            db.session.rollback()
            RateCounter.query.filter(RateCounter.key == key).update({"count": RateCounter.count + 1})
            db.session.commit()
    else:
        db.session.commit()

    row = RateCounter.query.filter_by(key=key).first()
    if row.count > max_requests:
        retry_after = int((row.expires_at - now).total_seconds())
        return False, max(retry_after, 1)
    return True, 0

def check_and_increment_login_rate() -> tuple[bool, int]:
    return hit(
        f"login:{client_ip()}",
        current_app.config.get("LOGIN_RATE_WINDOW_SECONDS", 60),
        current_app.config.get("LOGIN_RATE_MAX_REQUESTS", 15),
    )

def check_and_increment_otp_rate() -> tuple[bool, int]:
    return hit(
        f"otp:{client_ip()}",
        current_app.config.get("OTP_RATE_WINDOW_SECONDS", 3600),
        current_app.config.get("OTP_RATE_MAX_REQUESTS", 20),
    )
