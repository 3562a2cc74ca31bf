from datetime import datetime
from models.db import db


class TwoFactorSecret(db.Model):
    """TOTP secret of one account. enabled_at stays NULL until the first code checks out."""

    __tablename__ = "two_factor_secrets"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False)
    secret = db.Column(db.String(64), nullable=False)
    # JSON list of SHA-256 hashes; a backup code is removed once used
    backup_codes_json = db.Column(db.Text, nullable=True)

    enabled_at = db.Column(db.DateTime, nullable=True)
    # time step of the last accepted TOTP code; a code is good once
    last_totp_step = db.Column(db.BigInteger, nullable=True)
    last_used_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class LoginChallenge(db.Model):
    """Password accepted, second factor still owed. The client holds the raw token."""

    __tablename__ = "login_challenges"

    id = db.Column(db.Integer, primary_key=True)
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    expires_at = db.Column(db.DateTime, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)
    method = db.Column(db.String(16), nullable=True)  # totp, backup
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
