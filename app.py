import logging

import click
from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException

from config import Config
from routes import (
    health_bp,
    auth_bp,
    catalog_bp,
    orders_bp,
    payments_bp,
    webhooks_bp,
    events_bp,
    admin_bp,
)
from models import db
from flask_migrate import Migrate
from models.user import ADMIN, User, ensure_default_roles
from utils.errors import ServiceError
from security import csrf
from security.session import load_current_user
from services.payments import unlock_verification

# OTP side effects register themselves on import
from services import accounts, events, orders  # noqa: F401

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    if app.config.get("TESTING"):
        with app.app_context():
            db.create_all()

    with app.app_context():
        ensure_default_roles()

    # order matters: the CSRF check only applies once a session user is known
    app.before_request(load_current_user)
    app.before_request(csrf.protect)

    @app.errorhandler(ServiceError)
    def handle_service_error(e: ServiceError):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify(error=e.description), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify(error="Internal server error"), 500

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app


def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        user.grant(ADMIN)
        db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("unlock-payment")
    @click.argument("order_id", type=int)
    def unlock_payment(order_id):
        """Clear the payment verification lock on an order after a support review."""
        if unlock_verification(order_id):
            click.echo(f"Order {order_id} unlocked")
        else:
            click.echo("No verification attempts recorded for that order")

    @app.cli.command("seed-roles")
    def seed_roles_cmd():
        ensure_default_roles()
        click.echo("Roles seeded.")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
