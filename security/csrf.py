"""
Double-submit CSRF check for cookie-authenticated requests.

Login hands out a readable cookie; the storefront echoes it back in a header
on every state-changing call. A cross-site form can send the cookie but cannot
read it, so it cannot produce the header.
"""
import hmac
import secrets

from flask import current_app, g, jsonify, request

CSRF_COOKIE = "asirex_csrf"
CSRF_HEADER = "X-CSRF-Token"

UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# anonymous entry points and server-to-server callbacks
EXEMPT_PATHS = frozenset({
    "/auth/login",
    "/auth/login/2fa",
    "/auth/register",
    "/events/payu/callback",
    "/health",
    "/payments/payu/callback",
    "/webhooks/delivery",
})


def issue_csrf_token(resp):
    resp.set_cookie(
        CSRF_COOKIE,
        secrets.token_urlsafe(32),
        httponly=False,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp


def clear_csrf_token(resp):
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp


def protect():
    """before_request hook; runs after the session user is loaded."""
    if request.method not in UNSAFE_METHODS or request.path in EXEMPT_PATHS:
        return None
    # without a session cookie there is nothing to forge
    if getattr(g, "user", None) is None:
        return None

    cookie_token = request.cookies.get(CSRF_COOKIE) or ""
    header_token = request.headers.get(CSRF_HEADER) or ""
    if not cookie_token or not hmac.compare_digest(cookie_token, header_token):
        return jsonify(error="CSRF validation failed"), 403
    return None
