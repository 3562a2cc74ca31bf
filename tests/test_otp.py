from datetime import datetime, timedelta

import pytest
import responses

from config import TestConfig
from models import db
from models.otp import OtpRecord
from models.user import User
from services import otp
from utils.errors import AttemptsExceeded, Expired, InvalidCode, NotFound, RateLimited, ValidationError

from conftest import PASSWORD, create_user


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


def test_issue_stores_only_the_hash(app, http):
    with app.app_context():
        issued = otp.issue("Someone@Example.com ", "signup")
        record = db.session.get(OtpRecord, issued.record.id)

        assert issued.delivered is True
        assert len(issued.code) == 6 and issued.code.isdigit()
        assert record.subject == "someone@example.com"
        assert record.otp_hash == otp.hash_code(issued.code)
        assert record.attempts == 0 and record.verified is False
        assert (record.expires_at - record.created_at) == timedelta(minutes=10)

    assert any(call.request.url == TestConfig.RESEND_API_URL for call in http.calls)


def test_correct_code_verifies_once(app):
    with app.app_context():
        issued = otp.issue("a@example.com", "event")
        verified = otp.verify("a@example.com", "event", issued.code)
        assert verified.record.verified is True
        assert verified.record.verified_at is not None

        with pytest.raises(NotFound):
            otp.verify("a@example.com", "event", issued.code)


def test_wrong_code_reports_remaining_attempts(app):
    with app.app_context():
        issued = otp.issue("a@example.com", "signup")
        with pytest.raises(InvalidCode) as exc:
            otp.verify("a@example.com", "signup", _wrong(issued.code))
        assert exc.value.extra["remaining_attempts"] == 4
        assert exc.value.status_code == 400


def test_five_wrong_codes_lock_the_record(app):
    with app.app_context():
        issued = otp.issue("a@example.com", "signup")
        wrong = _wrong(issued.code)
        for remaining in (4, 3, 2, 1):
            with pytest.raises(InvalidCode) as exc:
                otp.verify("a@example.com", "signup", wrong)
            assert exc.value.extra["remaining_attempts"] == remaining

        with pytest.raises(AttemptsExceeded):
            otp.verify("a@example.com", "signup", wrong)

        # even the right code is refused now
        with pytest.raises(AttemptsExceeded):
            otp.verify("a@example.com", "signup", issued.code)


def test_phone_policy_allows_three_attempts(app, user_id):
    with app.app_context():
        issued = otp.issue("9876543210", "phone", user_id=user_id)
        wrong = _wrong(issued.code)
        for _ in range(2):
            with pytest.raises(InvalidCode):
                otp.verify("9876543210", "phone", wrong)
        with pytest.raises(AttemptsExceeded):
            otp.verify("9876543210", "phone", wrong)


def test_expired_code_is_deleted(app):
    with app.app_context():
        issued = otp.issue("a@example.com", "event")
        record = db.session.get(OtpRecord, issued.record.id)
        record.expires_at = datetime.utcnow() - timedelta(seconds=1)
        db.session.commit()

        with pytest.raises(Expired):
            otp.verify("a@example.com", "event", issued.code)
        assert OtpRecord.query.filter_by(subject="a@example.com").count() == 0

        with pytest.raises(NotFound):
            otp.verify("a@example.com", "event", issued.code)


def test_resend_is_rate_limited_per_subject(app):
    with app.app_context():
        first = otp.issue("a@example.com", "event")
        with pytest.raises(RateLimited) as exc:
            otp.issue("a@example.com", "event")
        assert 1 <= exc.value.extra["retry_after_seconds"] <= 30

        # other subjects and purposes are independent
        otp.issue("b@example.com", "event")
        otp.issue("a@example.com", "password_reset")

        record = db.session.get(OtpRecord, first.record.id)
        record.last_sent_at = datetime.utcnow() - timedelta(seconds=31)
        db.session.commit()

        second = otp.issue("a@example.com", "event")
        assert OtpRecord.query.filter_by(subject="a@example.com", purpose="event").count() == 1
        if first.code != second.code:
            with pytest.raises(InvalidCode):
                otp.verify("a@example.com", "event", first.code)
        otp.verify("a@example.com", "event", second.code)


def test_failed_delivery_keeps_the_code(app, http):
    http.replace(responses.POST, TestConfig.RESEND_API_URL, json={"message": "down"}, status=500)
    with app.app_context():
        issued = otp.issue("a@example.com", "event")
        assert issued.delivered is False
        assert issued.delivery_error
        otp.verify("a@example.com", "event", issued.code)


def test_unknown_purpose_is_rejected(app):
    with app.app_context():
        with pytest.raises(ValidationError):
            otp.issue("a@example.com", "newsletter")


def test_signup_effect_marks_email_verified(app):
    uid = create_user(app, email="new@example.com", verified=False)
    with app.app_context():
        issued = otp.issue("new@example.com", "signup", user_id=uid)
        verified = otp.verify("new@example.com", "signup", issued.code, password=PASSWORD)
        assert verified.result == {"user_id": uid}
        assert db.session.get(User, uid).email_verified


def test_phone_effect_checks_the_account(app, user_id, http):
    other_id = create_user(app, email="other@example.com")
    with app.app_context():
        issued = otp.issue("98765 43210", "phone", user_id=user_id)
        assert issued.record.subject == "919876543210"
        assert any(call.request.url == TestConfig.MSG91_API_URL for call in http.calls)

        with pytest.raises(NotFound):
            otp.verify("+91 98765-43210", "phone", issued.code, user_id=other_id)
        db.session.rollback()

        verified = otp.verify("9876543210", "phone", issued.code, user_id=user_id)
        assert verified.result == {"phone_number": "919876543210"}
        user = db.session.get(User, user_id)
        assert user.phone_number == "919876543210"
        assert user.phone_verified_at is not None
