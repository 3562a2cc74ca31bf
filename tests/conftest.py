from datetime import datetime
from decimal import Decimal

import pytest
import responses

from app import create_app
from config import TestConfig
from models import db
from models.product import Product
from models.user import User
from security.csrf import CSRF_COOKIE, CSRF_HEADER
from security.passwords import hash_password

PASSWORD = "Str0ng!Pass"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def http():
    """Stub every outbound provider call; unknown URLs raise ConnectionError."""
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.POST, TestConfig.RESEND_API_URL, json={"id": "email_1"}, status=200)
        rsps.add(responses.POST, TestConfig.MSG91_API_URL, json={"type": "success"}, status=200)
        yield rsps


@pytest.fixture
def client(app):
    return app.test_client()


def csrf_headers(client) -> dict:
    cookie = client.get_cookie(CSRF_COOKIE)
    return {CSRF_HEADER: cookie.value} if cookie else {}


def post(client, url, **kwargs):
    return client.post(url, headers=csrf_headers(client), **kwargs)


def create_user(app, email="buyer@example.com", password=PASSWORD, roles=("CUSTOMER",), verified=True) -> int:
    with app.app_context():
        user = User(
            email=email,
            password_hash=hash_password(password),
            email_verified_at=datetime.utcnow() if verified else None,
        )
        for name in roles:
            user.grant(name)
        db.session.add(user)
        db.session.commit()
        return user.id


def login(client, email, password=PASSWORD):
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return resp


@pytest.fixture
def user_id(app):
    return create_user(app)


@pytest.fixture
def user_client(app, user_id):
    client = app.test_client()
    login(client, "buyer@example.com")
    return client


@pytest.fixture
def admin_client(app):
    create_user(app, email="admin@example.com", roles=("ADMIN",))
    client = app.test_client()
    login(client, "admin@example.com")
    return client


@pytest.fixture
def products(app):
    with app.app_context():
        rows = [
            Product(name="Arduino Uno", slug="arduino-uno", category="boards", price=Decimal("1200.00"), stock=10),
            Product(name="Soldering Iron", slug="soldering-iron", category="tools", price=Decimal("800.00"), stock=5),
            Product(name="Jumper Wires", slug="jumper-wires", category="accessories", price=Decimal("150.00"), stock=100),
        ]
        db.session.add_all(rows)
        db.session.commit()
        return {p.slug: p.id for p in rows}


SHIPPING = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}
