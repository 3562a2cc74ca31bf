"""Sale campaign and coupon discounts applied at checkout."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from sqlalchemy import or_

from models.campaign import SalesCampaign
from models.coupon import Coupon, CouponUsage
from models.order import Order, PAYMENT_PAID

CENT = Decimal("0.01")
ZERO = Decimal("0")


@dataclass
class DiscountResult:
    campaign: Optional[SalesCampaign]
    discount: Decimal


@dataclass
class CouponResult:
    valid: bool
    coupon: Optional[Coupon] = None
    discount: Decimal = ZERO
    error: Optional[str] = None


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_discount(discount_type: str, discount_value, amount, max_discount_amount=None) -> Decimal:
    """Raw discount, capped by max_discount_amount and by the amount itself."""
    amount = to_decimal(amount)
    if discount_type == "percentage":
        discount = amount * to_decimal(discount_value) / Decimal(100)
    else:
        discount = to_decimal(discount_value)

    if max_discount_amount and discount > to_decimal(max_discount_amount):
        discount = to_decimal(max_discount_amount)

    discount = max(min(discount, amount), ZERO)
    return money(discount)


def campaign_applies(campaign, product_categories: Sequence[str] = None, product_ids: Sequence = None) -> bool:
    if campaign.applies_to == "all":
        return True
    if campaign.applies_to == "category" and product_categories:
        targets = set(campaign.target_categories or [])
        return any(cat in targets for cat in product_categories)
    if campaign.applies_to == "products" and product_ids:
        targets = {str(pid) for pid in (campaign.target_product_ids or [])}
        return any(str(pid) in targets for pid in product_ids)
    return False


def resolve_campaign(campaigns: Iterable, order_amount, product_categories=None, product_ids=None) -> DiscountResult:
    """
    First applicable campaign wins, scanning from the highest discount_value
    down. This is first-match, not best-match: a campaign with a lower
    discount_value is never compared against an earlier one that applies.
    """
    order_amount = to_decimal(order_amount)
    campaigns = list(campaigns or [])
    if not campaigns or order_amount <= 0:
        return DiscountResult(None, ZERO)

    # stable sort keeps the caller's order between equal values
    ordered = sorted(campaigns, key=lambda c: to_decimal(c.discount_value), reverse=True)

    for campaign in ordered:
        if campaign.min_order_amount and order_amount < to_decimal(campaign.min_order_amount):
            continue
        if not campaign_applies(campaign, product_categories, product_ids):
            continue

        discount = compute_discount(
            campaign.discount_type,
            campaign.discount_value,
            order_amount,
            campaign.max_discount_amount,
        )
        return DiscountResult(campaign, discount)

    return DiscountResult(None, ZERO)


def active_campaigns(now: datetime = None):
    now = now or datetime.utcnow()
    rows = (
        SalesCampaign.query
        .filter(SalesCampaign.is_active.is_(True))
        .filter(SalesCampaign.start_date <= now)
        .filter(or_(SalesCampaign.end_date.is_(None), SalesCampaign.end_date > now))
        .order_by(SalesCampaign.discount_value.desc())
        .all()
    )
    return [c for c in rows if not c.max_orders or c.current_orders < c.max_orders]


def validate_coupon(code: str, order_amount, user_id: int, now: datetime = None) -> CouponResult:
    order_amount = to_decimal(order_amount)
    code = (code or "").strip().upper()
    if not code or order_amount <= 0:
        return CouponResult(False, error="Missing code or order amount")

    coupon = Coupon.query.filter_by(code=code, is_active=True).first()
    if not coupon:
        return CouponResult(False, error="Invalid coupon code")

    now = now or datetime.utcnow()
    if coupon.valid_from and coupon.valid_from > now:
        return CouponResult(False, coupon, error="Coupon is not yet active")
    if coupon.valid_until and coupon.valid_until < now:
        return CouponResult(False, coupon, error="Coupon has expired")

    if coupon.min_order_amount and order_amount < to_decimal(coupon.min_order_amount):
        return CouponResult(False, coupon, error=f"Minimum order amount is ₹{money(coupon.min_order_amount)}")

    if coupon.usage_limit and coupon.usage_count >= coupon.usage_limit:
        return CouponResult(False, coupon, error="Coupon usage limit reached")

    if coupon.per_user_limit:
        used = CouponUsage.query.filter_by(coupon_id=coupon.id, user_id=user_id).count()
        if used >= coupon.per_user_limit:
            return CouponResult(False, coupon, error="You have already used this coupon")

    if coupon.new_users_only:
        paid_orders = Order.query.filter_by(user_id=user_id, payment_status=PAYMENT_PAID).count()
        if paid_orders > 0:
            return CouponResult(False, coupon, error="This coupon is only for new users")

    discount = compute_discount(
        coupon.discount_type, coupon.discount_value, order_amount, coupon.max_discount_amount
    )
    return CouponResult(True, coupon, discount)


def savings_text(discount_type: str, discount_value) -> str:
    value = to_decimal(discount_value).normalize()
    if discount_type == "percentage":
        return f"{value:f}% off"
    return f"₹{value:f} off"
