import logging
import os
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, NamedTuple

import requests
from dotenv import load_dotenv

from smartpark.exceptions import GatewayConfigError, GatewayRequestError

load_dotenv()

logger = logging.getLogger(__name__)

CASHFREE_PRODUCTION_BASE = "https://api.cashfree.com/pg"
CASHFREE_SANDBOX_BASE = "https://sandbox.cashfree.com/pg"
DEFAULT_CUSTOMER_PHONE = "9999999999"


def _int_env(name: str, default: int) -> int:
    raw_value = (os.getenv(name) or "").strip()
    if not raw_value:
        return default
    try:
        value = int(raw_value)
    except ValueError:
        return default
    return value if value > 0 else default


CASHFREE_CLIENT_ID = os.getenv("CASHFREE_CLIENT_ID", "").strip()
CASHFREE_CLIENT_SECRET = os.getenv("CASHFREE_CLIENT_SECRET", "").strip()
CASHFREE_API_VERSION = os.getenv("CASHFREE_API_VERSION", "2023-08-01").strip() or "2023-08-01"
CASHFREE_ENVIRONMENT = os.getenv("CASHFREE_ENVIRONMENT", "SANDBOX").strip().upper() or "SANDBOX"
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000").strip().rstrip("/")
CASHFREE_RETURN_URL = (
    os.getenv("CASHFREE_RETURN_URL", "").strip() or f"{APP_BASE_URL}/payments/cashfree/return"
)
EXTERNAL_API_TIMEOUT = _int_env("EXTERNAL_API_TIMEOUT", 10000)


class CashfreeOrder(NamedTuple):
    gateway_order_id: str
    cf_order_id: Any
    session_id: str | None
    status: str | None
    amount: Decimal
    currency: str
    raw: dict[str, Any]


def _format_amount(amount) -> float:
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return float(value)


class CashfreeClient:
    """Minimal Cashfree PG adapter: create an order, read an order back."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        api_version: str | None = None,
        environment: str | None = None,
        return_url: str | None = None,
        timeout_ms: int | None = None,
    ):
        self.client_id = CASHFREE_CLIENT_ID if client_id is None else client_id
        self.client_secret = CASHFREE_CLIENT_SECRET if client_secret is None else client_secret
        self.api_version = api_version or CASHFREE_API_VERSION
        self.environment = (environment or CASHFREE_ENVIRONMENT).upper()
        self.return_url = return_url or CASHFREE_RETURN_URL
        self.timeout_ms = timeout_ms or EXTERNAL_API_TIMEOUT

    @property
    def base_url(self) -> str:
        if self.environment == "PRODUCTION":
            return CASHFREE_PRODUCTION_BASE
        return CASHFREE_SANDBOX_BASE

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _headers(self) -> dict[str, str]:
        return {
            "accept": "application/json",
            "content-type": "application/json",
            "x-api-version": self.api_version,
            "x-client-id": self.client_id,
            "x-client-secret": self.client_secret,
        }

    def _request(
        self,
        method: str,
        path: str,
        json_payload: dict[str, Any] | None = None,
        failure_message: str = "Cashfree request failed",
    ) -> dict[str, Any]:
        if not self.is_configured:
            raise GatewayConfigError("Cashfree credentials are not configured.")

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = requests.request(
                method=method.upper(),
                url=url,
                headers=self._headers(),
                json=json_payload,
                timeout=self.timeout_ms / 1000,
            )
        except requests.RequestException as exc:
            logger.error("%s: could not reach Cashfree at %s: %s", failure_message, url, exc)
            raise GatewayRequestError(f"{failure_message}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            logger.error(
                "%s: status=%s body=%s",
                failure_message,
                response.status_code,
                payload if payload is not None else response.text[:500],
            )
            raise GatewayRequestError(
                message or failure_message,
                status_code=response.status_code,
                payload=payload,
            )

        if not isinstance(payload, dict):
            raise GatewayRequestError(
                "Unexpected response format from Cashfree.",
                status_code=response.status_code,
            )
        return payload

    def default_return_url(self) -> str:
        separator = "&" if "?" in self.return_url else "?"
        return f"{self.return_url}{separator}order_id={{order_id}}"

    def create_order(
        self,
        order_id: str,
        amount,
        currency: str,
        customer: dict[str, Any],
        return_url: str | None = None,
        note: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> CashfreeOrder:
        body: dict[str, Any] = {
            "order_id": order_id,
            "order_amount": _format_amount(amount),
            "order_currency": currency,
            "customer_details": {
                "customer_id": str(customer.get("id") or ""),
                "customer_email": customer.get("email"),
                "customer_phone": customer.get("phone") or DEFAULT_CUSTOMER_PHONE,
                "customer_name": customer.get("name"),
            },
            "order_meta": {"return_url": return_url or self.default_return_url()},
        }
        if note:
            body["order_note"] = note
        if tags:
            body["order_tags"] = {key: str(value) for key, value in tags.items()}

        payload = self._request(
            "POST",
            "/orders",
            json_payload=body,
            failure_message="Failed to create Cashfree payment session",
        )
        logger.info(
            "Cashfree order created order_id=%s cf_order_id=%s",
            payload.get("order_id") or order_id,
            payload.get("cf_order_id"),
        )
        return CashfreeOrder(
            gateway_order_id=payload.get("order_id") or order_id,
            cf_order_id=payload.get("cf_order_id"),
            session_id=payload.get("payment_session_id"),
            status=payload.get("order_status"),
            amount=Decimal(str(payload.get("order_amount", body["order_amount"]))),
            currency=payload.get("order_currency") or currency,
            raw=payload,
        )

    def get_order(self, order_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"/orders/{order_id}",
            failure_message="Failed to fetch Cashfree order",
        )


cashfree_client = CashfreeClient()
