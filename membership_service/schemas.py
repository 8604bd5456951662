import json
import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from membership_service.errors import ValidationError

PAYMENT_SUCCESS_WEBHOOK = "PAYMENT_SUCCESS_WEBHOOK"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\d{10}$")


def _normalise_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email format")
    return value


# ── Checkout / verify requests ──────────────────────────────────────


class CreateOrderRequest(BaseModel):
    name: str = Field(min_length=1)
    email: str
    phone: str
    plan: Literal["premium", "premium-plus"] = "premium"

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _normalise_email(value)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        value = value.strip()
        if not PHONE_RE.match(value):
            raise ValueError("Phone number must be 10 digits")
        return value


class VerifyRequest(BaseModel):
    order_id: str = Field(min_length=1)


class UserDetailsRequest(BaseModel):
    userId: str = Field(min_length=1)


# ── Webhook payload ─────────────────────────────────────────────────


class WebhookOrder(BaseModel):
    order_id: str = Field(min_length=1)
    order_amount: float | None = None


class WebhookPayment(BaseModel):
    cf_payment_id: str = Field(min_length=1)
    payment_status: str
    payment_amount: float
    payment_group: str | None = None

    @field_validator("cf_payment_id", mode="before")
    @classmethod
    def _payment_id_as_str(cls, value):
        # the gateway sends this as a number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class WebhookCustomer(BaseModel):
    customer_email: str
    customer_name: str = ""
    customer_phone: str = ""

    @field_validator("customer_email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _normalise_email(value)

    @field_validator("customer_name", "customer_phone", mode="before")
    @classmethod
    def _none_as_blank(cls, value):
        return "" if value is None else str(value)


class WebhookData(BaseModel):
    order: WebhookOrder
    payment: WebhookPayment
    customer_details: WebhookCustomer


class WebhookEvent(BaseModel):
    type: str
    data: WebhookData


def decode_webhook_body(raw: bytes) -> dict:
    """Decode the (already authenticated) body into a JSON object."""
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("Invalid payload") from exc
    if not isinstance(body, dict):
        raise ValidationError("Invalid payload")
    return body


def parse_webhook_event(body: dict) -> WebhookEvent:
    try:
        return WebhookEvent.model_validate(body)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise ValidationError(f"Invalid webhook payload: {fields}") from exc
