import structlog
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from membership_service import config
from membership_service.log_config import configure_logging

configure_logging(log_level=config.log_level(), json_logs=config.json_logs())

from membership_service.routes import router
from membership_service.database import Base, engine, SessionLocal
from membership_service.errors import AuthenticationError, IdentityError, StorageError, ValidationError
from membership_service.reconciliation import Reconciler

logger = structlog.get_logger(__name__)

app = FastAPI(title="Membership Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)

ORDER_CREATE_PATH = "/api/order/create"


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Order creation reports every bad input, unknown plans included, as 400.
    if request.url.path == ORDER_CREATE_PATH:
        logger.info("order_request_invalid", errors=len(exc.errors()))
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})
    return await request_validation_exception_handler(request, exc)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/membership/webhook")
async def membership_webhook(
    request: Request,
    x_webhook_signature: str = Header(None),
    x_webhook_timestamp: str = Header(None),
):
    payload = await request.body()
    reconciler = Reconciler(SessionLocal)

    try:
        # Not cancelled on client disconnect: the thread runs to completion.
        result = await run_in_threadpool(
            reconciler.handle_webhook, payload, x_webhook_signature, x_webhook_timestamp
        )
    except AuthenticationError as exc:
        logger.warning("webhook_rejected", reason=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    except ValidationError as exc:
        logger.warning("webhook_invalid_payload", reason=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    except (IdentityError, StorageError) as exc:
        # 5xx makes the gateway redeliver later.
        logger.error("webhook_processing_failed", error=str(exc))
        return JSONResponse(status_code=500, content={"error": "Internal error", "message": str(exc)})

    return result.as_webhook_response()
