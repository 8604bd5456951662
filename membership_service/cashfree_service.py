"""Thin client for the Cashfree Payment Gateway REST API.

Only the three calls the membership flow needs: create an order, fetch an
order, and list the payments made against an order. Responses are parsed
into small records so missing fields fail here instead of deep inside
reconciliation.
"""

import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from membership_service import config
from membership_service.errors import UpstreamError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderCustomer:
    email: str
    name: str
    phone: str


@dataclass(frozen=True)
class ProviderOrder:
    order_id: str
    order_status: str
    order_amount: float
    customer: ProviderCustomer | None
    payment_session_id: str | None = None


@dataclass(frozen=True)
class ProviderPayment:
    cf_payment_id: str
    payment_status: str
    payment_amount: float | None
    payment_group: str | None


def _headers() -> dict[str, str]:
    app_id, secret_key = config.cashfree_credentials()
    return {
        "x-client-id": app_id,
        "x-client-secret": secret_key,
        "x-api-version": config.cashfree_api_version(),
        "Accept": "application/json",
    }


def _request(method: str, path: str, json: dict | None = None) -> Any:
    url = f"{config.cashfree_base_url()}{path}"
    try:
        response = httpx.request(method, url, json=json, headers=_headers(), timeout=config.cashfree_timeout())
    except httpx.HTTPError as exc:
        logger.error("cashfree_request_failed", method=method, path=path, error=str(exc))
        raise UpstreamError(f"Payment provider unreachable: {exc}") from exc

    if response.status_code >= 400:
        try:
            message = response.json().get("message", response.text)
        except (ValueError, AttributeError):
            message = response.text
        logger.error("cashfree_request_rejected", method=method, path=path, status_code=response.status_code)
        raise UpstreamError(f"Payment provider returned {response.status_code}: {message}")

    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError("Payment provider returned a non-JSON body") from exc


def _parse_customer(data: Any) -> ProviderCustomer | None:
    if not isinstance(data, dict) or not data.get("customer_email"):
        return None
    return ProviderCustomer(
        email=str(data["customer_email"]).strip().lower(),
        name=str(data.get("customer_name") or ""),
        phone=str(data.get("customer_phone") or ""),
    )


def parse_order(data: Any) -> ProviderOrder:
    try:
        return ProviderOrder(
            order_id=str(data["order_id"]),
            order_status=str(data["order_status"]),
            order_amount=float(data["order_amount"]),
            customer=_parse_customer(data.get("customer_details")),
            payment_session_id=data.get("payment_session_id"),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise UpstreamError(f"Malformed order response from payment provider: {exc}") from exc


def parse_payment(data: Any) -> ProviderPayment:
    try:
        amount = data.get("payment_amount")
        return ProviderPayment(
            cf_payment_id=str(data["cf_payment_id"]),
            payment_status=str(data["payment_status"]),
            payment_amount=float(amount) if amount is not None else None,
            payment_group=data.get("payment_group"),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise UpstreamError(f"Malformed payment response from payment provider: {exc}") from exc


def create_order(
    order_id: str,
    amount: float,
    currency: str,
    customer: ProviderCustomer,
    plan_type: str,
    return_url: str,
    notify_url: str,
) -> dict:
    """Create a provider order and return the provider's response body."""
    body = {
        "order_id": order_id,
        "order_amount": amount,
        "order_currency": currency,
        "customer_details": {
            "customer_id": re.sub(r"[^A-Za-z0-9_-]", "_", customer.email),
            "customer_name": customer.name,
            "customer_email": customer.email,
            "customer_phone": customer.phone,
        },
        "order_meta": {
            "return_url": return_url,
            "notify_url": notify_url,
        },
        "order_tags": {"plan_type": plan_type},
    }
    data = _request("POST", "/orders", json=body)
    if not isinstance(data, dict) or not data.get("payment_session_id"):
        raise UpstreamError("Payment provider did not return a payment session")
    logger.info("cashfree_order_created", order_id=order_id, plan_type=plan_type)
    return data


def fetch_order(order_id: str) -> ProviderOrder:
    return parse_order(_request("GET", f"/orders/{order_id}"))


def fetch_order_payments(order_id: str) -> list[ProviderPayment]:
    data = _request("GET", f"/orders/{order_id}/payments")
    if not isinstance(data, list):
        raise UpstreamError("Malformed payments response from payment provider")
    return [parse_payment(item) for item in data]
