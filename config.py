import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as asirex.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "asirex.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "asirex_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 30 minutes
    IDLE_TIMEOUT_SECONDS = 30 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

    # Brute-force protection
    MAX_LOGIN_ATTEMPTS = 5
    LOCKOUT_MINUTES = 15

    # TOTP second factor
    TWO_FACTOR_ISSUER = "ASIREX"
    TWO_FACTOR_BACKUP_CODES = 8
    TWO_FACTOR_MAX_FAILURES = 5
    TWO_FACTOR_LOCKOUT_MINUTES = 15
    LOGIN_CHALLENGE_TTL_SECONDS = 5 * 60

    # Fixed-window rate limits per IP, stored in the database
    LOGIN_RATE_WINDOW_SECONDS = 60
    LOGIN_RATE_MAX_REQUESTS = 15
    OTP_RATE_WINDOW_SECONDS = 60 * 60
    OTP_RATE_MAX_REQUESTS = 20

    # Password hashing and policy
    BCRYPT_ROUNDS = 12
    PASSWORD_MIN_LEN = 8

    # OTP
    OTP_LENGTH = 6
    OTP_RESEND_INTERVAL_SECONDS = int(os.getenv("OTP_RESEND_INTERVAL_SECONDS", "30"))
    # purpose -> (channel, ttl seconds, max attempts)
    OTP_POLICIES = {
        "signup": ("email", 10 * 60, 5),
        "phone": ("sms", 5 * 60, 3),
        "order_cancel": ("email", 5 * 60, 3),
        "event": ("email", 10 * 60, 5),
        "password_reset": ("email", 10 * 60, 5),
    }
    # Return the plaintext code in API responses (local development only)
    OTP_EXPOSE_TEST_CODE = os.getenv("OTP_EXPOSE_TEST_CODE", "false").lower() == "true"

    # Payment verification lockout
    PAYMENT_MAX_FAILED_VERIFICATIONS = 5

    # Razorpay
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_API_URL = "https://api.razorpay.com/v1"

    # PayU
    PAYU_MERCHANT_KEY = os.getenv("PAYU_MERCHANT_KEY")
    PAYU_MERCHANT_SALT = os.getenv("PAYU_MERCHANT_SALT")
    PAYU_BASE_URL = os.getenv("PAYU_BASE_URL", "https://secure.payu.in/_payment")

    # ShipRocket
    SHIPROCKET_EMAIL = os.getenv("SHIPROCKET_EMAIL")
    SHIPROCKET_PASSWORD = os.getenv("SHIPROCKET_PASSWORD")
    SHIPROCKET_API_URL = "https://apiv2.shiprocket.in/v1/external"
    SHIPROCKET_TOKEN_TTL_DAYS = 9
    SHIPROCKET_PICKUP_LOCATION = os.getenv("SHIPROCKET_PICKUP_LOCATION", "Primary")
    DELIVERY_WEBHOOK_TOKEN = os.getenv("DELIVERY_WEBHOOK_TOKEN")

    # SMS (MSG91)
    MSG91_AUTH_KEY = os.getenv("MSG91_AUTH_KEY")
    MSG91_TEMPLATE_ID = os.getenv("MSG91_TEMPLATE_ID")
    MSG91_SENDER_ID = os.getenv("MSG91_SENDER_ID", "ASIREX")
    MSG91_API_URL = "https://control.msg91.com/api/v5/otp"

    # Email (Resend)
    RESEND_API_KEY = os.getenv("RESEND_API_KEY")
    RESEND_API_URL = "https://api.resend.com/emails"
    EMAIL_FROM = os.getenv("EMAIL_FROM", "ASIREX <no-reply@asirex.in>")

    # Outbound HTTP timeout for third-party APIs
    HTTP_TIMEOUT_SECONDS = 15

    # Frontend (payment redirects)
    FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173")

    # Basic app settings
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    OTP_EXPOSE_TEST_CODE = True
    BCRYPT_ROUNDS = 4
    RAZORPAY_KEY_ID = "rzp_test_key"
    RAZORPAY_KEY_SECRET = "rzp_test_secret"
    PAYU_MERCHANT_KEY = "payu_key"
    PAYU_MERCHANT_SALT = "payu_salt"
    SHIPROCKET_EMAIL = "ops@asirex.in"
    SHIPROCKET_PASSWORD = "shiprocket-secret"
    DELIVERY_WEBHOOK_TOKEN = "hook-token"
    RESEND_API_KEY = "re_test"
    MSG91_AUTH_KEY = "msg91-test"
    MSG91_TEMPLATE_ID = "tmpl"
