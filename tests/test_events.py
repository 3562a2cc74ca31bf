from datetime import datetime, timedelta
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest

from config import TestConfig
from models import db
from models.event import Event, EventRegistration
from services import payments


@pytest.fixture
def event_id(app):
    with app.app_context():
        event = Event(title="Robotics Workshop", starts_at=datetime.utcnow() + timedelta(days=7),
                      venue="Pune", capacity=1)
        db.session.add(event)
        db.session.commit()
        return event.id


def _register(client, event_id, email="maker@example.com"):
    return client.post(f"/events/{event_id}/register", json={"full_name": "Maker", "email": email})


def test_list_upcoming_events(client, event_id):
    rows = client.get("/events").get_json()
    assert [r["id"] for r in rows] == [event_id]


def test_registration_is_confirmed_by_email_code(app, client, event_id):
    resp = _register(client, event_id)
    assert resp.status_code == 201
    body = resp.get_json()

    resp = client.post(f"/events/{event_id}/verify", json={"email": "maker@example.com", "otp": body["test_otp"]})
    assert resp.status_code == 200
    assert resp.get_json()["registration_id"] == body["registration_id"]

    with app.app_context():
        reg = db.session.get(EventRegistration, body["registration_id"])
        assert reg.status == "verified"
        assert reg.verified_at is not None

    again = _register(client, event_id)
    assert again.status_code == 400


def test_capacity_counts_verified_registrations(client, event_id):
    code = _register(client, event_id).get_json()["test_otp"]
    client.post(f"/events/{event_id}/verify", json={"email": "maker@example.com", "otp": code})

    resp = _register(client, event_id, email="late@example.com")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "This event is full"


def test_code_is_bound_to_the_event(app, client, event_id):
    with app.app_context():
        other = Event(title="Drone Meetup", starts_at=datetime.utcnow() + timedelta(days=3))
        db.session.add(other)
        db.session.commit()
        other_id = other.id

    code = _register(client, event_id).get_json()["test_otp"]
    resp = client.post(f"/events/{other_id}/verify", json={"email": "maker@example.com", "otp": code})
    assert resp.status_code == 404

    resp = client.post(f"/events/{event_id}/verify", json={"email": "maker@example.com", "otp": code})
    assert resp.status_code == 200


def test_unknown_event(client):
    assert _register(client, 404).status_code == 404


def test_seat_taken_while_code_was_pending(app, client, event_id):
    first = _register(client, event_id, email="first@example.com").get_json()["test_otp"]
    second = _register(client, event_id, email="second@example.com").get_json()["test_otp"]

    resp = client.post(f"/events/{event_id}/verify", json={"email": "first@example.com", "otp": first})
    assert resp.status_code == 200

    resp = client.post(f"/events/{event_id}/verify", json={"email": "second@example.com", "otp": second})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "This event is full"

    with app.app_context():
        assert EventRegistration.query.filter_by(event_id=event_id, status="verified").count() == 1
        late = EventRegistration.query.filter_by(email="second@example.com").one()
        assert late.status == "pending"


@pytest.fixture
def paid_event_id(app):
    with app.app_context():
        event = Event(title="Drone Bootcamp", starts_at=datetime.utcnow() + timedelta(days=10),
                      venue="Bengaluru", capacity=2, price=Decimal("499.00"))
        db.session.add(event)
        db.session.commit()
        return event.id


def _confirmed_registration(client, event_id, email="maker@example.com"):
    body = _register(client, event_id, email=email).get_json()
    resp = client.post(f"/events/{event_id}/verify", json={"email": email, "otp": body["test_otp"]})
    assert resp.status_code == 200
    assert resp.get_json()["payment_required"] is True
    return body["registration_id"]


def _payu_fields(params, status="success"):
    fields = {
        "status": status,
        "txnid": params["txnid"],
        "amount": params["amount"],
        "productinfo": params["productinfo"],
        "firstname": params["firstname"],
        "email": params["email"],
        "mihpayid": "403993715500000042",
    }
    fields["hash"] = payments.payu_response_hash(fields, TestConfig.PAYU_MERCHANT_KEY, TestConfig.PAYU_MERCHANT_SALT)
    return fields


class TestPaidEvents:
    def _initiate(self, client, event_id, reg_id, email="maker@example.com"):
        resp = client.post(f"/events/{event_id}/payu/initiate", json={"registration_id": reg_id, "email": email})
        assert resp.status_code == 200, resp.get_json()
        return resp.get_json()["params"]

    def test_listing_shows_price_and_seats(self, client, paid_event_id):
        row = next(r for r in client.get("/events").get_json() if r["id"] == paid_event_id)
        assert row["price"] == 499.0
        assert row["seats_left"] == 2

    def test_successful_payment_issues_checkin_code(self, app, client, paid_event_id):
        reg_id = _confirmed_registration(client, paid_event_id)
        params = self._initiate(client, paid_event_id, reg_id)
        assert params["amount"] == "499.00"
        assert params["productinfo"] == "Event Registration: Drone Bootcamp"
        assert params["hash"] == payments.payu_request_hash(
            TestConfig.PAYU_MERCHANT_KEY, TestConfig.PAYU_MERCHANT_SALT, params["txnid"],
            params["amount"], params["productinfo"], params["firstname"], params["email"],
        )

        resp = client.post("/events/payu/callback", data=_payu_fields(params))
        assert resp.status_code == 302
        query = parse_qs(urlparse(resp.headers["Location"]).query)
        assert query["status"] == ["success"]

        with app.app_context():
            reg = db.session.get(EventRegistration, reg_id)
            assert reg.payment_status == "paid"
            assert reg.amount_paid == Decimal("499.00")
            assert reg.payment_id == "403993715500000042"
            assert query["verification_code"] == [reg.checkin_code]
            assert len(reg.checkin_code) == 6

        # a replayed callback changes nothing
        client.post("/events/payu/callback", data=_payu_fields(params))
        again = client.post(f"/events/{paid_event_id}/payu/initiate",
                            json={"registration_id": reg_id, "email": "maker@example.com"})
        assert again.status_code == 400

    def test_failed_payment_can_be_retried(self, app, client, paid_event_id):
        reg_id = _confirmed_registration(client, paid_event_id)
        params = self._initiate(client, paid_event_id, reg_id)

        resp = client.post("/events/payu/callback", data=_payu_fields(params, status="failure"))
        query = parse_qs(urlparse(resp.headers["Location"]).query)
        assert query["status"] == ["failed"]
        with app.app_context():
            assert db.session.get(EventRegistration, reg_id).payment_status == "failed"

        self._initiate(client, paid_event_id, reg_id)
        with app.app_context():
            assert db.session.get(EventRegistration, reg_id).payment_status == "pending"

    def test_forged_callback_is_ignored(self, app, client, paid_event_id):
        reg_id = _confirmed_registration(client, paid_event_id)
        params = self._initiate(client, paid_event_id, reg_id)

        fields = _payu_fields(params)
        fields["hash"] = "0" * 128
        resp = client.post("/events/payu/callback", data=fields)
        assert parse_qs(urlparse(resp.headers["Location"]).query)["status"] == ["failed"]
        with app.app_context():
            assert db.session.get(EventRegistration, reg_id).payment_status == "pending"

    def test_unconfirmed_or_foreign_registration_cannot_pay(self, client, paid_event_id):
        body = _register(client, paid_event_id).get_json()
        resp = client.post(f"/events/{paid_event_id}/payu/initiate",
                           json={"registration_id": body["registration_id"], "email": "maker@example.com"})
        assert resp.status_code == 400

        resp = client.post(f"/events/{paid_event_id}/payu/initiate",
                           json={"registration_id": body["registration_id"], "email": "someone@example.com"})
        assert resp.status_code == 404

        resp = client.post(f"/events/{paid_event_id}/payu/initiate",
                           json={"registration_id": "1", "email": "maker@example.com"})
        assert resp.status_code == 400

    def test_free_event_has_nothing_to_pay(self, client, event_id):
        body = _register(client, event_id).get_json()
        client.post(f"/events/{event_id}/verify", json={"email": "maker@example.com", "otp": body["test_otp"]})
        resp = client.post(f"/events/{event_id}/payu/initiate",
                           json={"registration_id": body["registration_id"], "email": "maker@example.com"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "This event is free"
