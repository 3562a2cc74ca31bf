"""
TOTP second factor: SHA-1, 6 digits, 30 second steps, one step of clock
drift either way. Backup codes are single use and stored as SHA-256.

A password login on an account with the factor enabled gets a short-lived
login challenge instead of a session; the session is issued once the code
checks out.
"""
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta

import pyotp
from flask import current_app

from models import db
from models.two_factor import LoginChallenge, TwoFactorSecret
from models.user import User
from security import bruteforce
from security.session import hash_token
from utils.audit import log_event
from utils.errors import AttemptsExceeded, InvalidCode, NotFound, ValidationError

logger = logging.getLogger(__name__)

TOTP = "totp"
BACKUP = "backup"


def _row(user_id: int):
    return TwoFactorSecret.query.filter_by(user_id=user_id).first()


def is_enabled(user_id: int) -> bool:
    row = _row(user_id)
    return row is not None and row.enabled_at is not None


def _hash_backup(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()


def _new_backup_codes(count: int) -> list:
    return [f"{secrets.token_hex(2).upper()}-{secrets.token_hex(2).upper()}" for _ in range(count)]


def _totp_step(row: TwoFactorSecret, code: str, now: float):
    totp = pyotp.TOTP(row.secret)
    for drift in (0, -1, 1):
        if hmac.compare_digest(totp.at(now, drift), code):
            return int(now // totp.interval) + drift
    return None


def _match(row: TwoFactorSecret, code: str, allow_backup: bool):
    code = (code or "").strip().replace(" ", "")
    if code.isdigit() and len(code) == 6:
        step = _totp_step(row, code, time.time())
        if step is not None and (row.last_totp_step is None or step > row.last_totp_step):
            row.last_totp_step = step
            return TOTP
        return None

    if allow_backup and row.backup_codes_json:
        digest = _hash_backup(code)
        hashes = json.loads(row.backup_codes_json)
        for stored in hashes:
            if hmac.compare_digest(stored, digest):
                hashes.remove(stored)
                row.backup_codes_json = json.dumps(hashes)
                return BACKUP
    return None


def check_code(user_id: int, code: str, allow_backup: bool = True) -> str:
    """Returns the method that matched; raises and counts a failure otherwise."""
    locked, seconds_left = bruteforce.lock_state(bruteforce.TWO_FACTOR, user_id)
    if locked:
        raise AttemptsExceeded("Too many invalid codes. Try again later.", retry_after_seconds=seconds_left)

    row = _row(user_id)
    if row is None:
        raise NotFound("Two-factor authentication is not set up")

    method = _match(row, code, allow_backup)
    if method is None:
        fail_count, locked_now = bruteforce.register_failure(
            bruteforce.TWO_FACTOR,
            user_id,
            current_app.config.get("TWO_FACTOR_MAX_FAILURES", 5),
            lock_seconds=current_app.config.get("TWO_FACTOR_LOCKOUT_MINUTES", 15) * 60,
        )
        log_event("2FA_FAILED", user_id=user_id, details={"fail_count": fail_count, "locked_now": locked_now},
                  commit=False)
        db.session.commit()
        if locked_now:
            raise AttemptsExceeded("Too many invalid codes. Try again later.")
        raise InvalidCode("Invalid authentication code")

    bruteforce.clear(bruteforce.TWO_FACTOR, user_id)
    row.last_used_at = datetime.utcnow()
    return method


# ---------- setup ----------

def begin_setup(user: User) -> dict:
    row = _row(user.id)
    if row is not None and row.enabled_at is not None:
        raise ValidationError("Two-factor authentication is already enabled")

    secret = pyotp.random_base32()
    if row is None:
        row = TwoFactorSecret(user_id=user.id, secret=secret)
        db.session.add(row)
    else:
        row.secret = secret
        row.backup_codes_json = None
        row.last_totp_step = None
    db.session.commit()

    issuer = current_app.config.get("TWO_FACTOR_ISSUER", "ASIREX")
    return {
        "secret": secret,
        "otpauth_url": pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=issuer),
    }


def enable(user: User, code: str) -> list:
    """Confirm the authenticator with its first code. Returns the backup codes, shown once."""
    row = _row(user.id)
    if row is None:
        raise NotFound("Start two-factor setup first")
    if row.enabled_at is not None:
        raise ValidationError("Two-factor authentication is already enabled")

    check_code(user.id, code, allow_backup=False)
    codes = _new_backup_codes(current_app.config.get("TWO_FACTOR_BACKUP_CODES", 8))
    row.backup_codes_json = json.dumps([_hash_backup(c) for c in codes])
    row.enabled_at = datetime.utcnow()
    log_event("2FA_ENABLED", user_id=user.id, commit=False)
    db.session.commit()
    return codes


def disable(user: User, code: str):
    if not is_enabled(user.id):
        raise ValidationError("Two-factor authentication is not enabled")
    check_code(user.id, code)
    TwoFactorSecret.query.filter_by(user_id=user.id).delete()
    log_event("2FA_DISABLED", user_id=user.id, commit=False)
    db.session.commit()


def backup_codes_left(user_id: int) -> int:
    row = _row(user_id)
    if row is None or not row.backup_codes_json:
        return 0
    return len(json.loads(row.backup_codes_json))


# ---------- login challenge ----------

def open_challenge(user: User) -> str:
    raw_token = secrets.token_urlsafe(32)
    now = datetime.utcnow()
    LoginChallenge.query.filter_by(user_id=user.id, consumed_at=None).delete()
    db.session.add(LoginChallenge(
        token_hash=hash_token(raw_token),
        user_id=user.id,
        expires_at=now + timedelta(seconds=current_app.config.get("LOGIN_CHALLENGE_TTL_SECONDS", 300)),
    ))
    db.session.commit()
    return raw_token


def complete_challenge(raw_token: str, code: str) -> User:
    challenge = LoginChallenge.query.filter_by(token_hash=hash_token(raw_token or "")).first()
    now = datetime.utcnow()
    if challenge is None or challenge.consumed_at is not None or challenge.expires_at <= now:
        raise NotFound("Login challenge not found or expired. Please sign in again.")

    method = check_code(challenge.user_id, code)
    claimed = (
        LoginChallenge.query
        .filter_by(id=challenge.id, consumed_at=None)
        .update({"consumed_at": now, "method": method})
    )
    if not claimed:
        db.session.rollback()
        raise NotFound("Login challenge not found or expired. Please sign in again.")

    log_event("2FA_VERIFIED", user_id=challenge.user_id, details={"method": method}, commit=False)
    db.session.commit()
    if method == BACKUP:
        logger.info("User %s signed in with a backup code", challenge.user_id)
    return db.session.get(User, challenge.user_id)
