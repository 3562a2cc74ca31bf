import logging

import requests
from flask import current_app

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, html: str):
    """Send through the Resend API. Returns (ok, error); never raises."""
    api_key = current_app.config.get("RESEND_API_KEY")
    from_email = current_app.config.get("EMAIL_FROM")

    if not api_key or not from_email:
        logger.warning("Email not configured, dropping %r to %s", subject, to_email)
        return False, "Email not configured"

    try:
        resp = requests.post(
            current_app.config.get("RESEND_API_URL", "https://api.resend.com/emails"),
            json={"from": from_email, "to": [to_email], "subject": subject, "html": html},
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=current_app.config.get("HTTP_TIMEOUT_SECONDS", 15),
        )
    except requests.RequestException as exc:
        logger.warning("Resend request failed for %s: %s", to_email, exc)
        return False, str(exc)

    if resp.status_code >= 400:
        logger.warning("Resend rejected email to %s: %s %s", to_email, resp.status_code, resp.text[:200])
        return False, f"Email provider error ({resp.status_code})"

    return True, None
