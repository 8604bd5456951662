import secrets
import string
import time

import structlog

from membership_service import cashfree_service, config
from membership_service.cashfree_service import ProviderCustomer
from membership_service.schemas import CreateOrderRequest

logger = structlog.get_logger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def generate_order_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"order_{int(time.time() * 1000)}_{suffix}"


def create_membership_order(request: CreateOrderRequest, provider=cashfree_service) -> dict:
    """Create a gateway order for ``request.plan`` and return the gateway's ids."""
    amount = config.plan_amount(request.plan)
    order_id = generate_order_id()
    base_url = config.app_url()

    data = provider.create_order(
        order_id=order_id,
        amount=amount,
        currency=config.currency(),
        customer=ProviderCustomer(email=request.email, name=request.name, phone=request.phone),
        plan_type=request.plan,
        return_url=f"{base_url}/membership/success?order_id={{order_id}}",
        notify_url=f"{base_url}/api/membership/webhook",
    )
    logger.info("membership_order_created", order_id=order_id, plan=request.plan, amount=amount)

    return {
        "order_id": data.get("order_id", order_id),
        "payment_session_id": data["payment_session_id"],
        "cf_order_id": data.get("cf_order_id"),
        "order_status": data.get("order_status"),
    }
