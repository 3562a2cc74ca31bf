"""
Lockout after repeated failures, counted in the failure_counters table.

Logins lock per email + ip for LOCKOUT_MINUTES. Payment verification locks an
order with no expiry; only an admin unlock clears it. Second-factor codes
lock per account for TWO_FACTOR_LOCKOUT_MINUTES.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.failure_counter import FailureCounter
from security.rate_limit import client_ip

LOGIN = "login"
PAYMENT = "payment"
TWO_FACTOR = "two_factor"


def _get(scope: str, key: str):
    return FailureCounter.query.filter_by(scope=scope, key=key).first()


def lock_state(scope: str, key) -> Tuple[bool, int]:
    """
    Returns (locked, seconds_remaining). seconds_remaining is 0 for a lock
    without expiry.
    """
    row = _get(scope, str(key))
    now = datetime.utcnow()
    if not row or not row.is_locked(now):
        return False, 0
    if row.locked_until is None:
        return True, 0
    return True, max(int((row.locked_until - now).total_seconds()), 1)


def register_failure(scope: str, key, max_failures: int, lock_seconds: Optional[int] = None) -> Tuple[int, bool]:
    """
    Counts one failure and locks once max_failures is reached.
    Returns (fail_count, locked_now). The caller commits.
    """
    key = str(key)
    now = datetime.utcnow()

    row = _get(scope, key)
    if row is None:
        db.session.add(FailureCounter(scope=scope, key=key, fail_count=0))
        try:
            db.session.commit()
        except IntegrityError:
            # created by a concurrent request
            db.session.rollback()
        row = _get(scope, key)

    FailureCounter.query.filter_by(id=row.id).update(
        {"fail_count": FailureCounter.fail_count + 1, "last_fail_at": now}
    )
    db.session.refresh(row)

    locked_now = False
    if row.fail_count >= max_failures and not row.is_locked(now):
        row.locked_at = now
        if lock_seconds:
            row.locked_until = now + timedelta(seconds=lock_seconds)
            # timed locks start a fresh count once they expire
            row.fail_count = 0
        else:
            row.locked_until = None
        locked_now = True
    return row.fail_count, locked_now


def clear(scope: str, key, unlock: bool = False) -> int:
    values = {"fail_count": 0, "last_fail_at": None}
    if unlock:
        values.update({"locked_at": None, "locked_until": None})
    return FailureCounter.query.filter_by(scope=scope, key=str(key)).update(values)


# ---------- login ----------

def _login_key(email: str) -> str:
    return f"{email}|{client_ip()}"


def is_login_locked(email: str) -> Tuple[bool, int]:
    return lock_state(LOGIN, _login_key(email))


def register_login_failure(email: str) -> Tuple[int, bool]:
    result = register_failure(
        LOGIN,
        _login_key(email),
        current_app.config.get("MAX_LOGIN_ATTEMPTS", 5),
        lock_seconds=current_app.config.get("LOCKOUT_MINUTES", 15) * 60,
    )
    db.session.commit()
    return result


def reset_login_failures(email: str):
    clear(LOGIN, _login_key(email), unlock=True)
    db.session.commit()
