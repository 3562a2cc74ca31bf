from datetime import datetime

from models import db
from models.user import User
from models.session import REVOKE_PASSWORD_RESET
from security.passwords import hash_password, validate_password, verify_password
from security.session import revoke_all_sessions
from services import otp
from utils.errors import Forbidden, NotFound, ValidationError


@otp.on_verified("signup")
def _confirm_email(record, password=None, **_):
    user = User.query.filter_by(email=record.subject).first()
    if not user:
        raise NotFound("Account not found")
    # the mailbox owner must also hold the password the account was created with
    if user.email_verified_at is None and not verify_password(password or "", user.password_hash):
        raise Forbidden("Password does not match this signup. Use password reset to recover the account.")
    if user.email_verified_at is None:
        user.email_verified_at = datetime.utcnow()
    return {"user_id": user.id}


@otp.on_verified("phone")
def _promote_phone(record, user_id=None, **_):
    if user_id is not None and record.user_id != user_id:
        # issued to another account for the same number
        raise NotFound("No pending verification found")
    user = db.session.get(User, record.user_id) if record.user_id else None
    if not user:
        raise NotFound("Account not found")
    user.phone_number = record.subject
    user.phone_verified_at = datetime.utcnow()
    return {"phone_number": user.phone_number}


@otp.on_verified("password_reset")
def _reset_password(record, new_password=None, **_):
    valid, errors = validate_password(new_password or "")
    if not valid:
        raise ValidationError("Password does not meet policy", details=errors)

    user = User.query.filter_by(email=record.subject).first()
    if not user:
        raise NotFound("Account not found")

    user.password_hash = hash_password(new_password)
    user.password_changed_at = datetime.utcnow()
    # a reset proves the mailbox, too
    if user.email_verified_at is None:
        user.email_verified_at = datetime.utcnow()
    revoked = revoke_all_sessions(user.id, REVOKE_PASSWORD_RESET, commit=False)
    return {"revoked_sessions": revoked}
