from datetime import datetime
from models.db import db

class ApiToken(db.Model):
    """Cached bearer tokens for third-party APIs (ShipRocket)."""

    __tablename__ = "api_tokens"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(40), unique=True, nullable=False)
    token = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
