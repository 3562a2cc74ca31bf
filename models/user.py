from datetime import datetime
from models.db import db

CUSTOMER = "CUSTOMER"
ADMIN = "ADMIN"
SUPER_ADMIN = "SUPER_ADMIN"
DEFAULT_ROLES = (CUSTOMER, ADMIN, SUPER_ADMIN)

user_roles = db.Table(
    "user_roles",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id"), primary_key=True),
    db.Column("role_id", db.Integer, db.ForeignKey("roles.id"), primary_key=True),
)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120), nullable=True)

    # only set once the number is proven with a phone OTP
    phone_number = db.Column(db.String(20), nullable=True)
    phone_verified_at = db.Column(db.DateTime, nullable=True)

    email_verified_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    password_changed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    roles = db.relationship("Role", secondary=user_roles, back_populates="users")

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def role_names(self) -> set:
        return {r.name for r in self.roles}

    def grant(self, role_name: str) -> bool:
        """Adds the role if missing. Returns False when the user already had it."""
        if role_name in self.role_names:
            return False
        self.roles.append(Role.get_or_create(role_name))
        return True


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)

    users = db.relationship("User", secondary=user_roles, back_populates="roles")

    @classmethod
    def get_or_create(cls, name: str) -> "Role":
        role = cls.query.filter_by(name=name).first()
        if role is None:
            role = cls(name=name)
            db.session.add(role)
        return role


def ensure_default_roles():
    """Idempotent; runs at startup and from the seed-roles command."""
    for name in DEFAULT_ROLES:
        Role.get_or_create(name)
    db.session.commit()
