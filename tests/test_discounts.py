from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from models import db
from models.campaign import SalesCampaign
from models.coupon import Coupon, CouponUsage
from services.discounts import (
    active_campaigns,
    compute_discount,
    resolve_campaign,
    savings_text,
    validate_coupon,
)


def _dec(value):
    return Decimal(str(value)) if value is not None else None


def make_campaign(cid, value, discount_type="percentage", min_order=None, max_discount=None,
                  applies_to="all", categories=None, product_ids=None):
    c = SalesCampaign(
        id=cid,
        name=f"campaign-{cid}",
        discount_type=discount_type,
        discount_value=_dec(value),
        min_order_amount=_dec(min_order),
        max_discount_amount=_dec(max_discount),
        applies_to=applies_to,
    )
    c.target_categories = categories or []
    c.target_product_ids = product_ids or []
    return c


def test_no_campaigns_gives_no_discount():
    result = resolve_campaign([], 1000)
    assert result.campaign is None
    assert result.discount == Decimal("0")


def test_zero_order_amount_gives_no_discount():
    result = resolve_campaign([make_campaign(1, 10)], 0)
    assert result.campaign is None
    assert result.discount == 0


def test_percentage_discount_is_capped_by_max_discount_amount():
    c = make_campaign(1, 10, max_discount=200)
    result = resolve_campaign([c], 5000)
    assert result.campaign is c
    assert result.discount == Decimal("200.00")


def test_min_order_amount_skips_campaign_and_next_one_matches():
    big = make_campaign(1, 20, min_order=500)
    small = make_campaign(2, 5, min_order=0)
    result = resolve_campaign([big, small], 300)
    assert result.campaign is small
    assert result.discount == Decimal("15.00")


def test_first_match_not_best_match():
    # the fixed 50 campaign is scanned first (higher discount_value) and wins,
    # even though 20% of 1000 would have saved more
    fixed = make_campaign(1, 50, discount_type="fixed")
    percent = make_campaign(2, 20)
    result = resolve_campaign([percent, fixed], 1000)
    assert result.campaign is fixed
    assert result.discount == Decimal("50.00")


def test_resolver_sorts_by_discount_value_itself():
    low = make_campaign(1, 5)
    high = make_campaign(2, 15)
    result = resolve_campaign([low, high], 1000)
    assert result.campaign is high


def test_equal_discount_values_keep_caller_order():
    first = make_campaign(1, 10)
    second = make_campaign(2, 10)
    assert resolve_campaign([first, second], 100).campaign is first
    assert resolve_campaign([second, first], 100).campaign is second


def test_category_campaign_applies_only_to_matching_categories():
    c = make_campaign(1, 10, applies_to="category", categories=["tools"])
    assert resolve_campaign([c], 1000, ["boards"]).campaign is None
    assert resolve_campaign([c], 1000, ["boards", "tools"]).campaign is c
    assert resolve_campaign([c], 1000).campaign is None


def test_product_campaign_matches_ids_as_strings_or_ints():
    c = make_campaign(1, 10, applies_to="products", product_ids=[7, 9])
    assert resolve_campaign([c], 1000, product_ids=[3]).campaign is None
    assert resolve_campaign([c], 1000, product_ids=["9"]).campaign is c
    assert resolve_campaign([c], 1000, product_ids=[7]).campaign is c


def test_fixed_discount_never_exceeds_order_amount():
    c = make_campaign(1, 500, discount_type="fixed")
    result = resolve_campaign([c], 120)
    assert result.discount == Decimal("120.00")


@pytest.mark.parametrize("amount", ["0.01", "1", "99.99", "333.33", "5000", "100000"])
def test_discount_bounds_hold_for_any_amount(amount):
    campaigns = [
        make_campaign(1, 40, max_discount=250),
        make_campaign(2, 300, discount_type="fixed", min_order=1000),
        make_campaign(3, 12.5),
    ]
    result = resolve_campaign(campaigns, Decimal(amount))
    assert result.discount <= Decimal(amount)
    if result.campaign is not None and result.campaign.max_discount_amount is not None:
        assert result.discount <= result.campaign.max_discount_amount


def test_rounding_is_half_up_to_two_places():
    # 12.5% of 0.20 = 0.025
    assert compute_discount("percentage", "12.5", "0.20") == Decimal("0.03")
    assert compute_discount("percentage", "10", "333.33") == Decimal("33.33")


def test_savings_text():
    assert savings_text("percentage", Decimal("10.00")) == "10% off"
    assert savings_text("fixed", Decimal("150.00")) == "₹150 off"


def test_active_campaigns_filters_window_flag_and_cap(app):
    now = datetime.utcnow()
    with app.app_context():
        db.session.add_all([
            SalesCampaign(name="live", discount_value=Decimal("10"), start_date=now - timedelta(days=1)),
            SalesCampaign(name="bigger", discount_value=Decimal("25"), start_date=now - timedelta(days=1),
                          end_date=now + timedelta(days=1)),
            SalesCampaign(name="future", discount_value=Decimal("30"), start_date=now + timedelta(days=1)),
            SalesCampaign(name="ended", discount_value=Decimal("30"), start_date=now - timedelta(days=5),
                          end_date=now - timedelta(days=1)),
            SalesCampaign(name="off", discount_value=Decimal("30"), start_date=now - timedelta(days=1),
                          is_active=False),
            SalesCampaign(name="sold out", discount_value=Decimal("30"), start_date=now - timedelta(days=1),
                          max_orders=3, current_orders=3),
        ])
        db.session.commit()

        names = [c.name for c in active_campaigns(now)]
        assert names == ["bigger", "live"]


class TestCoupons:
    def _coupon(self, **overrides):
        fields = dict(code="WELCOME10", discount_type="percentage", discount_value=Decimal("10"),
                      max_discount_amount=Decimal("100"))
        fields.update(overrides)
        coupon = Coupon(**fields)
        db.session.add(coupon)
        db.session.commit()
        return coupon

    def test_valid_coupon_is_case_insensitive_and_capped(self, app, user_id):
        with app.app_context():
            self._coupon()
            result = validate_coupon("welcome10", 2000, user_id)
            assert result.valid
            assert result.discount == Decimal("100.00")

    def test_unknown_coupon(self, app, user_id):
        with app.app_context():
            result = validate_coupon("NOPE", 2000, user_id)
            assert not result.valid
            assert result.error == "Invalid coupon code"

    def test_expired_and_not_yet_active(self, app, user_id):
        now = datetime.utcnow()
        with app.app_context():
            self._coupon(code="OLD", valid_until=now - timedelta(days=1))
            self._coupon(code="SOON", valid_from=now + timedelta(days=1))
            assert validate_coupon("OLD", 2000, user_id).error == "Coupon has expired"
            assert validate_coupon("SOON", 2000, user_id).error == "Coupon is not yet active"

    def test_min_order_amount(self, app, user_id):
        with app.app_context():
            self._coupon(min_order_amount=Decimal("999"))
            result = validate_coupon("WELCOME10", 500, user_id)
            assert not result.valid
            assert "Minimum order amount" in result.error

    def test_global_and_per_user_limits(self, app, user_id):
        with app.app_context():
            capped = self._coupon(code="CAPPED", usage_limit=2, usage_count=2)
            once = self._coupon(code="ONCE", per_user_limit=1)
            db.session.add(CouponUsage(coupon_id=once.id, user_id=user_id, discount_amount=Decimal("10")))
            db.session.commit()

            assert validate_coupon(capped.code, 500, user_id).error == "Coupon usage limit reached"
            assert validate_coupon(once.code, 500, user_id).error == "You have already used this coupon"

    def test_missing_input(self, app, user_id):
        with app.app_context():
            assert validate_coupon("", 500, user_id).error == "Missing code or order amount"
            assert validate_coupon("WELCOME10", 0, user_id).error == "Missing code or order amount"
