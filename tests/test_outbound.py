import requests

from storefront import notifications
from storefront.utils import outbound


class _Response:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


def _configure(monkeypatch):
    monkeypatch.setattr(outbound, "MAILGUN_API_KEY", "mg-key")
    monkeypatch.setattr(outbound, "MAILGUN_DOMAIN", "mg.example.com")
    monkeypatch.setattr(outbound, "EMAIL_FROM_ADDRESS", "orders@mg.example.com")
    monkeypatch.setattr(outbound, "TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setattr(outbound, "TWILIO_AUTH_TOKEN", "tw-token")
    monkeypatch.setattr(outbound, "TWILIO_PHONE_NUMBER", "+15550001111")


def test_unconfigured_senders_return_false(monkeypatch):
    monkeypatch.setattr(outbound, "MAILGUN_API_KEY", None)
    monkeypatch.setattr(outbound, "TWILIO_ACCOUNT_SID", None)

    assert outbound.send_email("a@example.com", "Hi", "<p>Hi</p>") is False
    assert outbound.send_sms("+923001234567", "Hi") is False


def test_network_error_is_swallowed(monkeypatch):
    _configure(monkeypatch)

    def broken_post(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(outbound.requests, "post", broken_post)

    assert outbound.send_email("a@example.com", "Hi", "<p>Hi</p>") is False
    assert outbound.send_sms("+923001234567", "Hi") is False


def test_email_posts_to_mailgun_with_tag(monkeypatch):
    _configure(monkeypatch)
    captured = {}

    def fake_post(url, auth, data, timeout):
        captured.update(url=url, auth=auth, data=data)
        return _Response(200)

    monkeypatch.setattr(outbound.requests, "post", fake_post)

    assert outbound.send_email("a@example.com", "Hi", "<p>Hi</p>", tag="order-placed") is True
    assert captured["url"] == "https://api.mailgun.net/v3/mg.example.com/messages"
    assert captured["data"]["o:tag"] == "order-placed"


def test_rejected_sms_returns_false(monkeypatch):
    _configure(monkeypatch)
    monkeypatch.setattr(outbound.requests, "post", lambda *a, **k: _Response(400, "bad number"))

    assert outbound.send_sms("+923001234567", "Hi") is False


def test_order_sms_goes_to_admin_phone_when_set(monkeypatch):
    calls = []
    monkeypatch.setattr(notifications, "ADMIN_NOTIFICATION_PHONE", "+923331112222")
    monkeypatch.setattr(notifications, "send_sms", lambda to, body: calls.append((to, body)) or True)

    notifications.send_order_sms({
        "order_number": "ALH-1",
        "customer_name": "Ayesha",
        "customer_phone": "+923001234567",
        "customer_address": "12 Mall Road",
        "customer_city": "Lahore",
        "total_amount": 2700.0,
    })

    assert calls[0][0] == "+923331112222"
    assert "ALH-1" in calls[0][1]
    assert "PKR 2,700.00" in calls[0][1]
