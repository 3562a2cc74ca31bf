from .db import db
from .user import User, Role, user_roles
from .activity_log import ActivityLog
from .session import Session
from .failure_counter import FailureCounter
from .rate_counter import RateCounter
from .otp import OtpRecord
from .product import Product
from .campaign import SalesCampaign
from .coupon import Coupon, CouponUsage
from .order import Order, OrderItem
from .refund_request import RefundRequest
from .event import Event, EventRegistration
from .two_factor import TwoFactorSecret, LoginChallenge
from .api_token import ApiToken
