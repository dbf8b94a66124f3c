import os
import re
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# =====================================================
# SAFEPAY CONFIGURATION (ENV-BASED ONLY)
# =====================================================

SAFEPAY_API_KEY = os.getenv("SAFEPAY_API_KEY")
SAFEPAY_SECRET_KEY = os.getenv("SAFEPAY_SECRET_KEY")
SAFEPAY_CHECKOUT_URL = os.getenv("SAFEPAY_CHECKOUT_URL", "https://gw.sandbox.safepay.pk/checkout/create")
SAFEPAY_API_URL = os.getenv("SAFEPAY_API_URL", "https://sandbox.api.safepay.pk")
SAFEPAY_TIMEOUT = float(os.getenv("SAFEPAY_TIMEOUT", "30"))

STORE_BASE_URL = os.getenv("STORE_BASE_URL", "http://localhost:3000").rstrip("/")
PUBLIC_API_URL = os.getenv("PUBLIC_API_URL", "http://localhost:8000").rstrip("/")
STORE_CURRENCY = os.getenv("STORE_CURRENCY", "PKR")

DEFAULT_COUNTRY_CODE = "+92"
_PHONE_RE = re.compile(r"^(\+\d{1,3})\s*(.+)")


class GatewayError(Exception):
    """Session creation or verification could not be completed."""


@dataclass
class CheckoutSession:
    checkout_url: str
    session_token: Optional[str]


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def split_phone(phone: Optional[str]) -> tuple[str, str]:
    """'+92 300 1234567' -> ('+92', '3001234567')."""
    if not phone:
        return DEFAULT_COUNTRY_CODE, ""
    match = _PHONE_RE.match(phone.strip())
    if match:
        return match.group(1), re.sub(r"\s", "", match.group(2))
    return DEFAULT_COUNTRY_CODE, re.sub(r"\s", "", phone)


class SafepayClient:
    """
    Server-side adapter for the hosted checkout gateway. The merchant secret
    never leaves this process.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_key: Optional[str] = None,
        checkout_url: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = SAFEPAY_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else SAFEPAY_SECRET_KEY
        self.api_key = api_key if api_key is not None else SAFEPAY_API_KEY
        self.checkout_url = checkout_url or SAFEPAY_CHECKOUT_URL
        self.api_url = (api_url or SAFEPAY_API_URL).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.api_key)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "X-SFPY-MERCHANT-SECRET": self.secret_key or "",
                "Accept": "application/json",
            },
        )

    def build_session_request(
        self,
        order_id: str,
        amount: float,
        currency: str,
        customer_name: str,
        customer_email: str,
        customer_phone: str,
        description: Optional[str] = None,
    ) -> dict:
        country_code, number = split_phone(customer_phone)
        return {
            "intent": "CYBERSOURCE",
            "mode": "payment",
            "currency": currency or STORE_CURRENCY,
            "amount": to_minor_units(amount),
            "customer": {
                "name": customer_name or "Customer",
                "email": customer_email,
                "phone": {"country_code": country_code, "number": number},
            },
            "success_url": f"{STORE_BASE_URL}/checkout/success?order_id={order_id}",
            "cancel_url": f"{STORE_BASE_URL}/checkout/cancel?order_id={order_id}",
            "webhook_url": f"{PUBLIC_API_URL}/api/payments/webhook",
            "metadata": {
                "order_id": order_id,
                "description": description or f"Order {order_id}",
            },
        }

    def create_session(
        self,
        order_id: str,
        amount: float,
        currency: str,
        customer_name: str,
        customer_email: str,
        customer_phone: str,
        description: Optional[str] = None,
    ) -> CheckoutSession:
        if not self.configured:
            raise GatewayError("Payment gateway credentials are not configured")

        body = self.build_session_request(
            order_id, amount, currency,
            customer_name, customer_email, customer_phone, description,
        )

        try:
            with self._client() as client:
                response = client.post(self.checkout_url, json=body)
        except httpx.TimeoutException as e:
            logger.error("Gateway session request timed out | order=%s", order_id)
            raise GatewayError("Payment gateway is taking too long to respond") from e
        except httpx.HTTPError as e:
            logger.error("Gateway unreachable | order=%s | error=%s", order_id, e)
            raise GatewayError("Unable to connect to payment gateway") from e

        if response.status_code >= 400:
            logger.error(
                "Gateway rejected session | order=%s | status=%s | body=%s",
                order_id, response.status_code, response.text[:500],
            )
            raise GatewayError(f"Payment gateway returned error {response.status_code}")

        try:
            data = response.json().get("data") or {}
        except ValueError as e:
            raise GatewayError("Payment gateway returned an invalid response") from e

        checkout_url = data.get("checkout_url")
        if not checkout_url:
            logger.error("Gateway response missing checkout_url | order=%s", order_id)
            raise GatewayError("Payment gateway response is missing the checkout URL")

        return CheckoutSession(
            checkout_url=checkout_url,
            session_token=data.get("session_uuid") or data.get("token"),
        )

    def fetch_session_state(self, session_token: str) -> Optional[str]:
        if not self.secret_key:
            raise GatewayError("Payment gateway credentials are not configured")

        try:
            with self._client() as client:
                response = client.get(f"{self.api_url}/checkout/{session_token}")
        except httpx.HTTPError as e:
            logger.error("Gateway verification failed | session=%s | error=%s", session_token, e)
            raise GatewayError("Payment verification failed") from e

        if response.status_code >= 400:
            raise GatewayError(f"Payment verification failed ({response.status_code})")

        try:
            data = response.json().get("data") or {}
        except ValueError as e:
            raise GatewayError("Payment gateway returned an invalid response") from e

        return data.get("state")


def get_gateway() -> SafepayClient:
    return SafepayClient()
