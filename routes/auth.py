from flask import Blueprint, request, jsonify, current_app, g

from models import db
from models.session import REVOKE_LOGOUT, REVOKE_LOGOUT_ALL, REVOKE_ROTATED
from models.user import CUSTOMER, User
from security.passwords import hash_password, validate_password, verify_password
from security.session import (
    clear_session_cookie,
    create_session,
    revoke_all_sessions,
    revoke_current_session,
    set_session_cookie,
)
from security.bruteforce import is_login_locked, register_login_failure, reset_login_failures
from security.rate_limit import check_and_increment_login_rate, check_and_increment_otp_rate
from security.csrf import clear_csrf_token, issue_csrf_token
from security.rbac import login_required
from services import otp, two_factor
from utils.audit import log_event
from utils.errors import RateLimited


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _otp_response(issued, message: str, status: int = 200):
    body = {"success": True, "message": message, "delivered": issued.delivered}
    if current_app.config.get("OTP_EXPOSE_TEST_CODE"):
        body["test_otp"] = issued.code
    return jsonify(body), status


def _blind_otp_response(issued, message: str):
    """Same body whether or not the account exists or a code went out."""
    body = {"success": True, "message": message}
    if issued is not None and current_app.config.get("OTP_EXPOSE_TEST_CODE"):
        body["test_otp"] = issued.code
    return jsonify(body), 200


def _limit_otp_requests():
    allowed, retry_after = check_and_increment_otp_rate()
    if not allowed:
        raise RateLimited("Too many verification requests. Slow down.", retry_after_seconds=retry_after)


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "phone_verified": user.phone_verified_at is not None,
        "email_verified": user.email_verified,
        "roles": sorted(user.role_names),
        "two_factor_enabled": two_factor.is_enabled(user.id),
    }


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    full_name = (data.get("full_name") or "").strip() or None

    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400
    valid, errors = validate_password(password)
    if not valid:
        return jsonify(error="Password does not meet policy", details=errors), 400

    user = User.query.filter_by(email=email).first()
    if user and user.email_verified:
        log_event("REGISTER_FAIL_EMAIL_EXISTS", details={"email": email})
        return jsonify(error="Email already registered"), 409

    _limit_otp_requests()

    if not user:
        user = User(email=email, password_hash=hash_password(password), full_name=full_name)
        db.session.add(user)
        db.session.flush()
        user.grant(CUSTOMER)
    else:
        # unverified signup retried: the code is re-sent, the stored password is kept
        user.full_name = user.full_name or full_name
    db.session.commit()
    log_event("REGISTER_PENDING", user_id=user.id)

    issued = otp.issue(email, "signup", user_id=user.id)
    return _otp_response(issued, "Verification code sent to your email", 201)


@auth_bp.post("/register/verify")
def verify_registration():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    code = data.get("otp") or ""
    password = data.get("password") or ""
    if not email or not code or not password:
        return jsonify(error="Email, OTP and password are required"), 400

    otp.verify(email, "signup", code, password=password)
    return jsonify(success=True, message="Email verified. You can now log in."), 200


@auth_bp.post("/register/resend")
def resend_registration_code():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    message = "If the account is pending, a new code was sent"
    _limit_otp_requests()
    user = User.query.filter_by(email=email).first()
    if not user or user.email_verified:
        return _blind_otp_response(None, message)

    try:
        issued = otp.issue(email, "signup", user_id=user.id)
    except RateLimited:
        issued = None
    return _blind_otp_response(issued, message)


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    allowed, retry_after = check_and_increment_login_rate()
    if not allowed:
        log_event("LOGIN_RATE_LIMIT", details={"email": email, "retry_after": retry_after})
        return jsonify(error="Too many login requests. Slow down.", retry_after_seconds=retry_after), 429

    locked, seconds_left = is_login_locked(email)
    if locked:
        log_event("LOGIN_LOCKED", details={"email": email, "seconds_left": seconds_left})
        return jsonify(error="Account temporarily locked. Try again later.", retry_after_seconds=seconds_left), 429

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        fail_count, locked_now = register_login_failure(email)
        log_event(
            "LOGIN_FAIL",
            user_id=user.id if user else None,
            details={"email": email, "fail_count": fail_count, "locked_now": locked_now}
        )
        if locked_now:
            return jsonify(error="Too many failed attempts. Account locked.",
                           lockout_minutes=current_app.config.get("LOCKOUT_MINUTES", 15)), 429
        return jsonify(error="Invalid credentials"), 401

    if not user.email_verified:
        log_event("LOGIN_EMAIL_UNVERIFIED", user_id=user.id)
        return jsonify(error="Please verify your email first", email_verified=False), 403

    reset_login_failures(email)

    if two_factor.is_enabled(user.id):
        challenge = two_factor.open_challenge(user)
        log_event("LOGIN_2FA_REQUIRED", user_id=user.id)
        return jsonify(message="Enter the code from your authenticator app",
                       two_factor_required=True, challenge=challenge), 200

    return _start_session(user)


@auth_bp.post("/login/2fa")
def login_second_factor():
    allowed, retry_after = check_and_increment_login_rate()
    if not allowed:
        return jsonify(error="Too many login requests. Slow down.", retry_after_seconds=retry_after), 429

    data = request.get_json(silent=True) or {}
    challenge = data.get("challenge") or ""
    code = data.get("code") or ""
    if not challenge or not code:
        return jsonify(error="challenge and code are required"), 400

    user = two_factor.complete_challenge(challenge, code)
    return _start_session(user, second_factor=True)


def _start_session(user: User, second_factor: bool = False):
    # one live session per user
    revoked_count = revoke_all_sessions(user.id, REVOKE_ROTATED)
    raw_token = create_session(user.id)

    resp = jsonify(message="Login OK", user=_user_dict(user))
    set_session_cookie(resp, raw_token)
    issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", user_id=user.id,
              details={"revoked_sessions": revoked_count, "second_factor": second_factor})
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(_user_dict(g.user)), 200


@auth_bp.post("/logout")
@login_required
def logout():
    revoke_current_session(REVOKE_LOGOUT)
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(message="Logged out")
    clear_session_cookie(resp)
    clear_csrf_token(resp)
    return resp, 200


@auth_bp.post("/logout_all")
@login_required
def logout_all():
    count = revoke_all_sessions(g.user.id, REVOKE_LOGOUT_ALL)
    log_event("LOGOUT_ALL", user_id=g.user.id, details={"revoked_sessions": count})

    resp = jsonify(message="Logged out everywhere", revoked_sessions=count)
    clear_session_cookie(resp)
    clear_csrf_token(resp)
    return resp, 200


@auth_bp.post("/profile")
@login_required
def update_profile():
    data = request.get_json(silent=True) or {}
    full_name = data.get("full_name")
    if full_name is not None:
        if not isinstance(full_name, str) or len(full_name.strip()) > 120:
            return jsonify(error="Invalid full_name"), 400
        g.user.full_name = full_name.strip()

    db.session.commit()
    log_event("PROFILE_UPDATE", user_id=g.user.id)
    return jsonify(message="Profile updated", user=_user_dict(g.user)), 200


# ---------- password reset ----------
@auth_bp.post("/password_reset/request")
def request_password_reset():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400

    message = "If the account exists, a reset code was sent"
    _limit_otp_requests()
    user = User.query.filter_by(email=email).first()
    if not user:
        log_event("PASSWORD_RESET_UNKNOWN_EMAIL", details={"email": email})
        return _blind_otp_response(None, message)

    try:
        issued = otp.issue(email, "password_reset", user_id=user.id)
    except RateLimited:
        log_event("PASSWORD_RESET_COOLDOWN", user_id=user.id)
        issued = None
    return _blind_otp_response(issued, message)


@auth_bp.post("/password_reset/confirm")
def confirm_password_reset():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    code = data.get("otp") or ""
    new_password = data.get("new_password") or ""
    if not email or not code or not new_password:
        return jsonify(error="Email, OTP and new_password are required"), 400

    valid, errors = validate_password(new_password)
    if not valid:
        return jsonify(error="Password does not meet policy", details=errors), 400

    verified = otp.verify(email, "password_reset", code, new_password=new_password)
    log_event("PASSWORD_RESET", user_id=verified.record.user_id)
    return jsonify(success=True, message="Password updated. Please log in again."), 200


# ---------- phone verification ----------
@auth_bp.post("/phone/send")
@login_required
def send_phone_code():
    data = request.get_json(silent=True) or {}
    phone_number = (data.get("phone_number") or "").strip()
    if not phone_number or len(phone_number) > 20:
        return jsonify(error="Phone number is required"), 400

    _limit_otp_requests()
    issued = otp.issue(phone_number, "phone", user_id=g.user.id)
    return _otp_response(issued, "OTP sent successfully")


@auth_bp.post("/phone/verify")
@login_required
def verify_phone_code():
    data = request.get_json(silent=True) or {}
    phone_number = (data.get("phone_number") or "").strip()
    code = data.get("otp") or ""
    if not phone_number or not code:
        return jsonify(error="Phone number and OTP are required"), 400

    verified = otp.verify(phone_number, "phone", code, user_id=g.user.id)
    return jsonify(success=True, message="Phone number verified successfully", **verified.result), 200


# ---------- two-factor authentication ----------
@auth_bp.post("/2fa/setup")
@login_required
def setup_two_factor():
    body = two_factor.begin_setup(g.user)
    log_event("2FA_SETUP_STARTED", user_id=g.user.id)
    return jsonify(success=True, **body), 200


@auth_bp.post("/2fa/enable")
@login_required
def enable_two_factor():
    data = request.get_json(silent=True) or {}
    codes = two_factor.enable(g.user, data.get("code") or "")
    return jsonify(success=True, message="Two-factor authentication enabled", backup_codes=codes), 200


@auth_bp.post("/2fa/disable")
@login_required
def disable_two_factor():
    data = request.get_json(silent=True) or {}
    two_factor.disable(g.user, data.get("code") or "")
    return jsonify(success=True, message="Two-factor authentication disabled"), 200


@auth_bp.get("/2fa/status")
@login_required
def two_factor_status():
    return jsonify(
        enabled=two_factor.is_enabled(g.user.id),
        backup_codes_left=two_factor.backup_codes_left(g.user.id),
    ), 200
