from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from models import db
from models.campaign import SalesCampaign
from models.coupon import Coupon, CouponUsage
from models.order import Order, can_transition, can_transition_payment
from models.product import Product
from models.refund_request import RefundRequest
from services import payments

from conftest import SHIPPING, create_user, login, post


@pytest.fixture
def sale(app):
    with app.app_context():
        campaign = SalesCampaign(
            name="Festive Sale",
            discount_type="percentage",
            discount_value=Decimal("10"),
            max_discount_amount=Decimal("200"),
            start_date=datetime.utcnow() - timedelta(hours=1),
        )
        db.session.add(campaign)
        db.session.commit()
        return campaign.id


@pytest.fixture
def coupon(app):
    with app.app_context():
        row = Coupon(code="SAVE10", discount_type="percentage", discount_value=Decimal("10"),
                     max_discount_amount=Decimal("100"))
        db.session.add(row)
        db.session.commit()
        return row.code


def _cart(products):
    return [
        {"product_id": products["arduino-uno"], "quantity": 1},
        {"product_id": products["jumper-wires"], "quantity": 1},
        {"product_id": products["arduino-uno"], "quantity": 1},
    ]


def _order(client, products, method="cod", **extra):
    payload = {"items": _cart(products), "shipping": SHIPPING, "payment_method": method}
    payload.update(extra)
    return post(client, "/orders", json=payload)


def test_order_state_machine():
    assert can_transition("pending", "confirmed")
    assert can_transition("confirmed", "processing")
    assert can_transition("shipped", "delivered")
    assert can_transition("shipped", "cancelled")
    assert not can_transition("delivered", "cancelled")
    assert not can_transition("cancelled", "confirmed")
    assert not can_transition("pending", "delivered")
    assert can_transition_payment("pending", "paid")
    assert can_transition_payment("pending", "failed")
    assert not can_transition_payment("paid", "failed")
    assert not can_transition_payment("failed", "paid")


def test_cod_order_is_priced_server_side(app, user_client, products, sale):
    resp = _order(user_client, products)
    assert resp.status_code == 201, resp.get_json()
    body = resp.get_json()

    # 2 x 1200 + 150, 10% capped at 200
    assert body["subtotal"] == 2550.0
    assert body["campaign_discount"] == 200.0
    assert body["total_amount"] == 2350.0
    assert body["order_status"] == "confirmed"
    assert body["payment_status"] == "pending"
    assert [i["quantity"] for i in body["items"]] == [2, 1]

    with app.app_context():
        assert db.session.get(Product, products["arduino-uno"]).stock == 8
        assert db.session.get(SalesCampaign, sale).current_orders == 1


def test_online_order_waits_for_payment(app, user_client, products, sale):
    body = _order(user_client, products, method="razorpay").get_json()
    assert body["order_status"] == "pending"
    with app.app_context():
        # counted once the payment is verified
        assert db.session.get(SalesCampaign, sale).current_orders == 0


def test_coupon_applies_after_campaign_and_is_recorded(app, user_client, products, sale, coupon):
    body = _order(user_client, products, coupon_code="save10").get_json()
    assert body["campaign_discount"] == 200.0
    assert body["coupon_discount"] == 100.0
    assert body["total_amount"] == 2250.0

    with app.app_context():
        row = Coupon.query.filter_by(code=coupon).one()
        assert row.usage_count == 1
        assert CouponUsage.query.filter_by(coupon_id=row.id, order_id=body["id"]).count() == 1

    again = _order(user_client, products, coupon_code=coupon)
    assert again.status_code == 400
    assert again.get_json()["error"] == "You have already used this coupon"


def test_quote_does_not_create_an_order(app, user_client, products, sale, coupon):
    resp = post(user_client, "/checkout/quote", json={"items": _cart(products), "coupon_code": coupon})
    assert resp.status_code == 200
    assert resp.get_json()["total"] == 2250.0
    with app.app_context():
        assert Order.query.count() == 0
        assert db.session.get(Product, products["arduino-uno"]).stock == 10


@pytest.mark.parametrize("payload, status", [
    ({"items": [], "shipping": SHIPPING}, 400),
    ({"items": [{"product_id": 999, "quantity": 1}], "shipping": SHIPPING}, 404),
    ({"items": [{"product_id": "x"}], "shipping": SHIPPING}, 400),
    ({"items": [{"product_id": 1, "quantity": 0}], "shipping": SHIPPING}, 400),
    ({"items": [{"product_id": 1, "quantity": 1}], "shipping": SHIPPING, "payment_method": "upi"}, 400),
])
def test_invalid_orders_are_rejected(user_client, products, payload, status):
    resp = post(user_client, "/orders", json=payload)
    assert resp.status_code == status
    assert "error" in resp.get_json()


def test_missing_shipping_fields_are_listed(user_client, products):
    shipping = dict(SHIPPING, pincode="", city=" ")
    resp = post(user_client, "/orders", json={
        "items": [{"product_id": products["jumper-wires"], "quantity": 1}],
        "shipping": shipping,
    })
    assert resp.status_code == 400
    assert resp.get_json()["fields"] == ["city", "pincode"]


def test_stock_is_checked(user_client, products):
    resp = post(user_client, "/orders", json={
        "items": [{"product_id": products["soldering-iron"], "quantity": 6}],
        "shipping": SHIPPING,
    })
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Only 5 left of Soldering Iron"


def test_my_orders_lists_only_own_orders(app, user_client, products):
    _order(user_client, products)
    create_user(app, email="other@example.com")
    other = app.test_client()
    login(other, "other@example.com")

    assert len(user_client.get("/orders/me").get_json()) == 1
    assert other.get("/orders/me").get_json() == []


class TestCancellation:
    def _request(self, client, order_id, reason="Ordered by mistake"):
        return post(client, f"/orders/{order_id}/cancel/request", json={"reason": reason})

    def test_cod_order_cancel_restores_stock(self, app, user_client, products):
        order = _order(user_client, products).get_json()
        resp = self._request(user_client, order["id"])
        assert resp.status_code == 200
        code = resp.get_json()["test_otp"]

        resp = post(user_client, f"/orders/{order['id']}/cancel/verify", json={"otp": code})
        assert resp.status_code == 200, resp.get_json()
        body = resp.get_json()
        assert body["needs_refund"] is False
        assert body["payment_method"] == "cod"

        with app.app_context():
            row = db.session.get(Order, order["id"])
            assert row.order_status == "cancelled"
            assert row.cancel_reason == "Ordered by mistake"
            assert row.cancelled_at is not None
            assert db.session.get(Product, products["arduino-uno"]).stock == 10
            assert RefundRequest.query.count() == 0

    def test_paid_online_order_opens_a_refund(self, app, user_client, products):
        order = _order(user_client, products, method="razorpay").get_json()
        with app.app_context():
            payments.mark_order_paid(db.session.get(Order, order["id"]), "pay_1", "razorpay")

        code = self._request(user_client, order["id"]).get_json()["test_otp"]
        body = post(user_client, f"/orders/{order['id']}/cancel/verify", json={"otp": code}).get_json()
        assert body["needs_refund"] is True
        assert body["order_amount"] == 2550.0

        with app.app_context():
            refund = RefundRequest.query.filter_by(order_id=order["id"]).one()
            assert refund.amount == Decimal("2550.00")
            assert refund.status == "pending_user_selection"

    def test_wrong_code_keeps_the_order(self, app, user_client, products):
        order = _order(user_client, products).get_json()
        code = self._request(user_client, order["id"]).get_json()["test_otp"]
        wrong = "000000" if code != "000000" else "111111"

        resp = post(user_client, f"/orders/{order['id']}/cancel/verify", json={"otp": wrong})
        assert resp.status_code == 400
        assert resp.get_json()["remaining_attempts"] == 2

        with app.app_context():
            assert db.session.get(Order, order["id"]).order_status == "confirmed"

    def test_reason_is_required(self, user_client, products):
        order = _order(user_client, products).get_json()
        resp = self._request(user_client, order["id"], reason="")
        assert resp.status_code == 400

    def test_other_customers_cannot_cancel(self, app, user_client, products):
        order = _order(user_client, products).get_json()
        create_user(app, email="other@example.com")
        other = app.test_client()
        login(other, "other@example.com")

        assert self._request(other, order["id"]).status_code == 404

    def test_delivered_orders_cannot_be_cancelled(self, app, user_client, products):
        order = _order(user_client, products).get_json()
        with app.app_context():
            db.session.get(Order, order["id"]).order_status = "delivered"
            db.session.commit()

        resp = self._request(user_client, order["id"])
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Order cannot be cancelled"
