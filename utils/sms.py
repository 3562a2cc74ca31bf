import logging
import re

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_NON_DIGIT = re.compile(r"\D")


def normalize_phone(value: str) -> str:
    """Digits only, with the 91 country code prefixed to bare 10 digit numbers."""
    digits = _NON_DIGIT.sub("", value or "")
    if len(digits) == 10:
        digits = "91" + digits
    return digits


def send_sms(phone_number: str, code: str):
    """Send an OTP through MSG91. Returns (ok, error); never raises."""
    auth_key = current_app.config.get("MSG91_AUTH_KEY")
    template_id = current_app.config.get("MSG91_TEMPLATE_ID")

    if not auth_key or not template_id:
        logger.warning("MSG91 credentials not configured")
        return False, "SMS service not configured"

    payload = {
        "template_id": template_id,
        "mobile": normalize_phone(phone_number),
        "otp": code,
        "sender": current_app.config.get("MSG91_SENDER_ID", "ASIREX"),
        "otp_length": len(code),
    }
    try:
        resp = requests.post(
            current_app.config.get("MSG91_API_URL"),
            json=payload,
            headers={"authkey": auth_key},
            timeout=current_app.config.get("HTTP_TIMEOUT_SECONDS", 15),
        )
        result = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("MSG91 request failed: %s", exc)
        return False, "SMS sending failed"

    if resp.ok or result.get("type") == "success":
        return True, None

    logger.warning("MSG91 rejected OTP: %s", result)
    return False, result.get("message") or "Failed to send SMS"
