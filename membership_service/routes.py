import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from membership_service import cashfree_service, config
from membership_service.auth import bearer_token, verify_token
from membership_service.database import SessionLocal
from membership_service.errors import IdentityError, StorageError, UpstreamError
from membership_service.identity import IdentityStore
from membership_service.models import Identity
from membership_service.orders import create_membership_order
from membership_service.payments import PaymentLedger, serialize_payment
from membership_service.profiles import ProfileStore
from membership_service.rate_limit import RateLimiter
from membership_service.reconciliation import Reconciler
from membership_service.schemas import CreateOrderRequest, UserDetailsRequest, VerifyRequest

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/api/order/create")
def create_order_api(request: CreateOrderRequest):
    try:
        return create_membership_order(request, provider=cashfree_service)
    except UpstreamError as exc:
        logger.error("order_creation_failed", error=str(exc))
        return JSONResponse(status_code=502, content={"error": "Failed to create order", "message": str(exc)})


@router.post("/api/order/verify")
def verify_order_api(request: VerifyRequest):
    # Sync handler: runs in the threadpool and completes even if the client disconnects.
    reconciler = Reconciler(SessionLocal, provider=cashfree_service)
    try:
        result = reconciler.verify_order(request.order_id)
    except UpstreamError as exc:
        logger.error("verify_upstream_failed", order_id=request.order_id, error=str(exc))
        return JSONResponse(status_code=502, content={"error": "Failed to verify order with payment provider"})
    except (IdentityError, StorageError) as exc:
        logger.error("verify_failed", order_id=request.order_id, error=str(exc))
        return JSONResponse(status_code=500, content={"error": str(exc) or "Verification failed"})

    return result.as_verify_response()


def _user_view(identity: Identity) -> dict:
    profiles = ProfileStore(SessionLocal)
    ledger = PaymentLedger(SessionLocal)
    try:
        email = identity.email.lower()
        profile = profiles.get(identity.id) or profiles.find_by_email(email)
        payments = ledger.history_for(email)
    except StorageError as exc:
        logger.error("user_lookup_failed", identity_id=identity.id, error=str(exc))
        raise HTTPException(status_code=500, detail="Failed to fetch user data")

    metadata = identity.user_metadata or {}
    return {
        "user": {
            "id": identity.id,
            "email": identity.email,
            "name": (profile.name if profile else None) or metadata.get("name") or "",
            "phone": (profile.phone if profile else None) or metadata.get("phone") or "",
            "membership_status": profile.membership_status if profile else "inactive",
        },
        "payments": [serialize_payment(p) for p in payments],
    }


@router.get("/api/user/me")
def current_user(token: str = Depends(bearer_token)):
    identity = verify_token(token, IdentityStore(SessionLocal))
    return _user_view(identity)


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.post("/api/user/details")
def user_details(body: UserDetailsRequest, request: Request, token: str = Depends(bearer_token)):
    max_requests, window_seconds = config.rate_limit()
    limiter = RateLimiter(SessionLocal, max_requests, window_seconds)
    try:
        limited = limiter.is_limited(_client_key(request))
    except StorageError as exc:
        logger.error("rate_limit_unavailable", error=str(exc))
        raise HTTPException(status_code=500, detail="Internal Server Error")
    if limited:
        raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")

    identity = verify_token(token, IdentityStore(SessionLocal))
    if identity.id != body.userId:
        raise HTTPException(status_code=403, detail="Forbidden: You can only access your own data")
    return _user_view(identity)
