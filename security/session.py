"""
Cookie sessions backed by the sessions table.

The browser gets a random token in an httponly cookie. The database only ever
sees its SHA-256, so a leaked table cannot be replayed as cookies.
"""
import hashlib
import secrets
from datetime import datetime, timedelta

from flask import current_app, g, request

from models import db
from models.session import Session
from models.user import User
from security.rate_limit import client_ip


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _cookie_name() -> str:
    return current_app.config.get("AUTH_COOKIE_NAME", "asirex_session")


def create_session(user_id: int) -> str:
    """Stores a new session and returns the raw token for the cookie."""
    raw_token = secrets.token_urlsafe(32)
    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 28800)

    db.session.add(Session(
        user_id=user_id,
        token_hash=hash_token(raw_token),
        expires_at=datetime.utcnow() + timedelta(seconds=lifetime),
        ip=client_ip(),
        user_agent=(request.headers.get("User-Agent") or "")[:255],
    ))
    db.session.commit()
    return raw_token


def set_session_cookie(resp, raw_token: str):
    resp.set_cookie(
        _cookie_name(),
        raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 28800),
        path="/",
    )
    return resp


def clear_session_cookie(resp):
    resp.delete_cookie(_cookie_name(), path="/")
    return resp


def get_session_from_request():
    raw_token = request.cookies.get(_cookie_name())
    if not raw_token:
        return None

    sess = Session.query.filter_by(token_hash=hash_token(raw_token)).first()
    now = datetime.utcnow()
    if not sess or not sess.is_usable(now, current_app.config.get("IDLE_TIMEOUT_SECONDS", 1800)):
        return None

    sess.last_seen_at = now
    db.session.commit()
    return sess


def load_current_user():
    """before_request hook: sets g.session and g.user (both None when anonymous)."""
    sess = get_session_from_request()
    g.session = sess
    g.user = db.session.get(User, sess.user_id) if sess else None


def _revoke(query, reason: str) -> int:
    return query.filter(Session.revoked_at.is_(None)).update(
        {"revoked_at": datetime.utcnow(), "revoked_reason": reason},
        synchronize_session=False,
    )


def revoke_current_session(reason: str) -> bool:
    raw_token = request.cookies.get(_cookie_name())
    if not raw_token:
        return False
    updated = _revoke(Session.query.filter_by(token_hash=hash_token(raw_token)), reason)
    db.session.commit()
    return updated > 0


def revoke_all_sessions(user_id: int, reason: str, commit: bool = True) -> int:
    count = _revoke(Session.query.filter_by(user_id=user_id), reason)
    if commit:
        db.session.commit()
    return count
