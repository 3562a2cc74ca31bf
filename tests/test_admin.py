import pytest
import responses

from config import TestConfig
from models import db
from models.order import Order
from models.product import Product
from models.refund_request import RefundRequest
from models.user import User
from services import payments

from conftest import SHIPPING, create_user, login, post


@pytest.fixture
def super_client(app):
    create_user(app, email="root@example.com", roles=("SUPER_ADMIN",))
    client = app.test_client()
    login(client, "root@example.com")
    return client


def _cod_order(client, products):
    resp = post(client, "/orders", json={
        "items": [{"product_id": products["arduino-uno"], "quantity": 1}],
        "shipping": SHIPPING,
    })
    assert resp.status_code == 201
    return resp.get_json()["id"]


def test_admin_routes_need_a_role(client, user_client):
    assert client.get("/admin/campaigns").status_code == 401
    assert user_client.get("/admin/campaigns").status_code == 403


def test_product_create_and_update(admin_client):
    resp = post(admin_client, "/admin/products", json={
        "name": "ESP32 Dev Kit", "category": "boards", "price": "649.5", "stock": 3,
    })
    assert resp.status_code == 201
    product = resp.get_json()
    assert product["slug"] == "esp32-dev-kit"
    assert product["price"] == 649.5

    assert post(admin_client, "/admin/products", json={
        "name": "ESP32 Dev Kit", "category": "boards", "price": "1",
    }).status_code == 409

    resp = admin_client.patch(
        f"/admin/products/{product['id']}",
        json={"stock": 0},
        headers={"X-CSRF-Token": admin_client.get_cookie("asirex_csrf").value},
    )
    assert resp.get_json()["in_stock"] is False


def test_campaign_lifecycle(admin_client, client):
    resp = post(admin_client, "/admin/campaigns", json={
        "name": "Tools Week",
        "discount_type": "percentage",
        "discount_value": 15,
        "max_discount_amount": 300,
        "applies_to": "category",
        "target_categories": ["tools"],
    })
    assert resp.status_code == 201, resp.get_json()
    campaign_id = resp.get_json()["id"]

    active = client.get("/campaigns/active").get_json()
    assert [c["id"] for c in active] == [campaign_id]

    quote = client.post("/campaigns/resolve", json={"order_amount": 4000, "product_categories": ["tools"]})
    assert quote.get_json()["discount"] == 300.0
    quote = client.post("/campaigns/resolve", json={"order_amount": 4000, "product_categories": ["boards"]})
    assert quote.get_json()["campaign"] is None

    assert post(admin_client, f"/admin/campaigns/{campaign_id}/deactivate").status_code == 200
    assert client.get("/campaigns/active").get_json() == []


@pytest.mark.parametrize("payload", [
    {"name": "", "discount_value": 10},
    {"name": "Bad", "discount_value": 10, "applies_to": "everyone"},
    {"name": "Bad", "discount_value": 150},
    {"name": "Bad", "discount_value": 10, "discount_type": "bogo"},
    {"name": "Bad", "discount_value": 10, "start_date": "2026-10-20T00:00:00", "end_date": "2026-10-19T00:00:00"},
    {"name": "Bad", "discount_value": 10, "start_date": "next week"},
])
def test_campaign_validation(admin_client, payload):
    assert post(admin_client, "/admin/campaigns", json=payload).status_code == 400


def test_coupon_create_and_validate(admin_client, user_client):
    resp = post(admin_client, "/admin/coupons", json={
        "code": "flat50", "discount_type": "fixed", "discount_value": 50,
    })
    assert resp.status_code == 201
    assert resp.get_json()["code"] == "FLAT50"
    assert post(admin_client, "/admin/coupons", json={"code": "FLAT50", "discount_value": 5}).status_code == 409

    resp = post(user_client, "/coupons/validate", json={"code": "FLAT50", "order_amount": 499})
    body = resp.get_json()
    assert body["valid"] is True
    assert body["discount_amount"] == 50.0
    assert body["final_amount"] == 449.0
    assert body["savings_text"] == "₹50 off"


def test_order_status_transitions(admin_client, user_client, products):
    order_id = _cod_order(user_client, products)

    resp = post(admin_client, f"/admin/orders/{order_id}/status", json={"order_status": "processing"})
    assert resp.get_json()["order_status"] == "processing"

    resp = post(admin_client, f"/admin/orders/{order_id}/status", json={"order_status": "pending"})
    assert resp.status_code == 400

    resp = post(admin_client, f"/admin/orders/{order_id}/status", json={"order_status": "lost"})
    assert resp.status_code == 400

    rows = admin_client.get("/admin/orders?order_status=processing").get_json()
    assert [r["id"] for r in rows] == [order_id]


def test_admin_cancel_of_paid_order_refunds_and_restocks(app, admin_client, user_client, products, http):
    resp = post(user_client, "/orders", json={
        "items": [{"product_id": products["arduino-uno"], "quantity": 2}],
        "shipping": SHIPPING,
        "payment_method": "razorpay",
    })
    order_id = resp.get_json()["id"]
    with app.app_context():
        order = db.session.get(Order, order_id)
        order.payment_status = "paid"
        order.order_status = "confirmed"
        order.shiprocket_order_id = "555"
        db.session.commit()
        assert db.session.get(Product, products["arduino-uno"]).stock == 8

    api = TestConfig.SHIPROCKET_API_URL
    http.add(responses.POST, f"{api}/auth/login", json={"token": "sr-token"}, status=200)
    http.add(responses.POST, f"{api}/orders/cancel", json={"status": 200}, status=200)

    resp = post(admin_client, f"/admin/orders/{order_id}/status",
                json={"order_status": "cancelled", "reason": "Out of stock at warehouse"})
    assert resp.status_code == 200, resp.get_json()
    assert resp.get_json()["order_status"] == "cancelled"
    assert any(call.request.url == f"{api}/orders/cancel" for call in http.calls)

    with app.app_context():
        order = db.session.get(Order, order_id)
        assert order.cancelled_at is not None
        assert order.cancel_reason == "Out of stock at warehouse"
        assert db.session.get(Product, products["arduino-uno"]).stock == 10
        refund = RefundRequest.query.filter_by(order_id=order_id).one()
        assert refund.payment_method == "razorpay"
        assert refund.amount == order.total_amount

    again = post(admin_client, f"/admin/orders/{order_id}/status", json={"order_status": "cancelled"})
    assert again.status_code == 200
    with app.app_context():
        assert RefundRequest.query.filter_by(order_id=order_id).count() == 1
        assert db.session.get(Product, products["arduino-uno"]).stock == 10


def test_unlock_payment_verification(app, admin_client, user_client, products):
    resp = post(user_client, "/orders", json={
        "items": [{"product_id": products["arduino-uno"], "quantity": 1}],
        "shipping": SHIPPING,
        "payment_method": "razorpay",
    })
    order_id = resp.get_json()["id"]
    with app.app_context():
        for _ in range(5):
            payments.register_verification_failure(order_id)
        db.session.commit()
        assert payments.is_verification_locked(order_id)

    resp = post(admin_client, f"/admin/orders/{order_id}/unlock_payment")
    assert resp.status_code == 200
    assert resp.get_json()["had_lock"] is True
    with app.app_context():
        assert not payments.is_verification_locked(order_id)


def test_refund_listing(app, admin_client, user_client, products):
    order_id = _cod_order(user_client, products)
    with app.app_context():
        order = db.session.get(Order, order_id)
        order.payment_method = "razorpay"
        db.session.commit()
        payments.mark_order_paid(order, "pay_1", "razorpay")

    code = post(user_client, f"/orders/{order_id}/cancel/request", json={"reason": "Late"}).get_json()["test_otp"]
    post(user_client, f"/orders/{order_id}/cancel/verify", json={"otp": code})

    rows = admin_client.get("/admin/refunds").get_json()
    assert len(rows) == 1
    assert rows[0]["order_id"] == order_id
    assert rows[0]["amount"] == 1200.0


def test_activity_logs_are_super_admin_only(admin_client, super_client, user_client, products):
    _cod_order(user_client, products)
    assert admin_client.get("/admin/activity-logs").status_code == 403

    rows = super_client.get("/admin/activity-logs?action_type=ORDER_CREATED").get_json()
    assert len(rows) == 1
    assert rows[0]["entity"] == "order"


def test_cli_make_admin_and_unlock(app, user_id):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["make-admin", "buyer@example.com"])
    assert "promoted to ADMIN" in result.output
    with app.app_context():
        assert "ADMIN" in db.session.get(User, user_id).role_names

    result = runner.invoke(args=["make-admin", "ghost@example.com"])
    assert "User not found" in result.output

    result = runner.invoke(args=["unlock-payment", "42"])
    assert "No verification attempts" in result.output


def test_product_listing_shows_sale_price(app, admin_client, client, products):
    post(admin_client, "/admin/campaigns", json={"name": "Boards", "discount_value": 10,
                                                 "applies_to": "category", "target_categories": ["boards"]})
    body = client.get(f"/products/{products['arduino-uno']}").get_json()
    assert body["sale"]["discount"] == 120.0
    assert body["sale"]["sale_price"] == 1080.0

    body = client.get(f"/products/{products['soldering-iron']}").get_json()
    assert body["sale"] is None

    names = [p["name"] for p in client.get("/products?category=boards").get_json()]
    assert names == ["Arduino Uno"]
