import logging

import resend

import config
from errors import DeliveryFailed

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, body: str) -> None:
    if not config.RESEND_API_KEY:
        raise DeliveryFailed("Email delivery is not configured")

    resend.api_key = config.RESEND_API_KEY
    payload = {
        "from": config.EMAIL_FROM,
        "to": [to],
        "subject": subject,
        "text": body,
    }
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        logger.error("Email to %s failed: %s", to, exc)
        raise DeliveryFailed() from exc

    if not isinstance(response, dict) or not response.get("id"):
        logger.error("Email to %s rejected: %s", to, response)
        raise DeliveryFailed()
