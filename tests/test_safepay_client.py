import httpx
import pytest

from storefront.safepay_client import GatewayError, SafepayClient, split_phone, to_minor_units


@pytest.mark.parametrize("phone,expected", [
    ("+92 300 1234567", ("+92", "3001234567")),
    ("+1 415 555 0100", ("+1", "4155550100")),
    ("0300 1234567", ("+92", "03001234567")),
    (None, ("+92", "")),
])
def test_split_phone(phone, expected):
    assert split_phone(phone) == expected


def test_minor_units_rounds():
    assert to_minor_units(2700) == 270000
    assert to_minor_units(10.5) == 1050
    assert to_minor_units(0.1 + 0.2) == 30


def _client(handler, **kwargs):
    return SafepayClient(
        secret_key=kwargs.get("secret_key", "sec"),
        api_key=kwargs.get("api_key", "key"),
        checkout_url="https://gw.test/create",
        api_url="https://gw.test",
        transport=httpx.MockTransport(handler),
    )


def _create(client):
    return client.create_session(
        order_id="42", amount=10.0, currency="PKR",
        customer_name="A", customer_email="a@example.com", customer_phone="+92 3001234567",
    )


def test_missing_credentials_never_calls_gateway():
    calls = []
    client = _client(lambda r: calls.append(r) or httpx.Response(200), api_key="")

    with pytest.raises(GatewayError):
        _create(client)
    assert calls == []


def test_session_request_carries_redirects_and_webhook():
    client = _client(lambda r: httpx.Response(200))
    body = client.build_session_request("42", 10.0, "PKR", "", "a@example.com", "+92 3001234567")

    assert body["amount"] == 1000
    assert body["customer"]["name"] == "Customer"
    assert body["success_url"].endswith("/checkout/success?order_id=42")
    assert body["cancel_url"].endswith("/checkout/cancel?order_id=42")
    assert body["webhook_url"].endswith("/api/payments/webhook")
    assert body["metadata"] == {"order_id": "42", "description": "Order 42"}


@pytest.mark.parametrize("response", [
    httpx.Response(401, json={"error": "bad key"}),
    httpx.Response(200, content=b"<html>"),
    httpx.Response(200, json={"data": {"token": "t"}}),
])
def test_bad_gateway_responses_raise(response):
    with pytest.raises(GatewayError):
        _create(_client(lambda r: response))


def test_token_falls_back_to_token_field():
    client = _client(lambda r: httpx.Response(200, json={"data": {"checkout_url": "https://pay", "token": "t9"}}))
    assert _create(client).session_token == "t9"


def test_connection_error_raises_gateway_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError):
        _create(_client(handler))
