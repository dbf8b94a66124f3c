"""
Outbound customer messaging over plain HTTP APIs: Mailgun for email,
Twilio for SMS.

Both senders return a bool and never raise, so a delivery problem can only
ever cost a notification, never an order.
"""
import os
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

MAILGUN_API_KEY = os.getenv("MAILGUN_API_KEY")
MAILGUN_DOMAIN = os.getenv("MAILGUN_DOMAIN")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "A&Z Fabrics")
EMAIL_FROM_ADDRESS = os.getenv(
    "EMAIL_FROM_ADDRESS",
    f"orders@{MAILGUN_DOMAIN}" if MAILGUN_DOMAIN else None,
)

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")

OUTBOUND_TIMEOUT = 10


def _deliver(channel: str, recipient: str, url: str, auth: tuple, data: dict, ok_below: int) -> bool:
    try:
        response = requests.post(url, auth=auth, data=data, timeout=OUTBOUND_TIMEOUT)
    except requests.RequestException:
        logger.exception("%s delivery error | to=%s", channel, recipient)
        return False

    if response.status_code >= ok_below:
        logger.error(
            "%s delivery rejected | to=%s | status=%s | response=%s",
            channel, recipient, response.status_code, response.text[:300],
        )
        return False

    logger.info("%s sent | to=%s", channel, recipient)
    return True


def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
    tag: Optional[str] = None,
) -> bool:
    if not (MAILGUN_API_KEY and MAILGUN_DOMAIN and EMAIL_FROM_ADDRESS):
        logger.error("Mailgun not configured | domain=%s from=%s", MAILGUN_DOMAIN, EMAIL_FROM_ADDRESS)
        return False

    data = {
        "from": f"{EMAIL_FROM_NAME} <{EMAIL_FROM_ADDRESS}>",
        "to": to_email,
        "subject": subject,
        "html": html_content,
    }
    if text_content:
        data["text"] = text_content
    if tag:
        data["o:tag"] = tag

    return _deliver(
        "Email", to_email,
        f"https://api.mailgun.net/v3/{MAILGUN_DOMAIN}/messages",
        ("api", MAILGUN_API_KEY),
        data,
        ok_below=300,
    )


def send_sms(to_number: Optional[str], body: str) -> bool:
    if not (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER):
        logger.error("Twilio not configured | sid_set=%s", bool(TWILIO_ACCOUNT_SID))
        return False
    if not to_number:
        logger.error("SMS skipped: no destination number")
        return False

    return _deliver(
        "SMS", to_number,
        f"https://api.twilio.com/2010-04-01/Accounts/{TWILIO_ACCOUNT_SID}/Messages.json",
        (TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
        {"From": TWILIO_PHONE_NUMBER, "To": to_number, "Body": body},
        ok_below=300,
    )
