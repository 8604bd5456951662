"""Payments store: the idempotency ledger and the payment recorder.

The unique constraints on ``order_id`` and ``cf_payment_id`` are what
actually prevent double-provisioning; the ledger lookup is only a fast path.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from membership_service.errors import DuplicateError, StorageError
from membership_service.models import Payment

logger = structlog.get_logger(__name__)


class PaymentStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


def normalise_status(status) -> str:
    if isinstance(status, PaymentStatus):
        return status.value
    try:
        return PaymentStatus(str(status).upper()).value
    except ValueError:
        raise StorageError(f"Unknown payment status: {status!r}")


class PaymentLedger:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find(self, cf_payment_id: str | None = None, order_id: str | None = None) -> Payment | None:
        """Return the stored payment matching either key, or None."""
        filters = []
        if cf_payment_id:
            filters.append(Payment.cf_payment_id == cf_payment_id)
        if order_id:
            filters.append(Payment.order_id == order_id)
        if not filters:
            return None

        db = self.session_factory()
        try:
            # payment id first: it stays stable across provider-side retries
            if cf_payment_id:
                payment = db.query(Payment).filter(Payment.cf_payment_id == cf_payment_id).first()
                if payment is not None:
                    return payment
            return db.query(Payment).filter(or_(*filters)).first()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to check payments: {exc}") from exc
        finally:
            db.close()

    def has_been_processed(self, cf_payment_id: str | None = None, order_id: str | None = None) -> bool:
        return self.find(cf_payment_id=cf_payment_id, order_id=order_id) is not None

    def history_for(self, email: str) -> list[Payment]:
        db = self.session_factory()
        try:
            return (
                db.query(Payment)
                .filter(Payment.email == email.strip().lower())
                .order_by(Payment.created_at.desc())
                .all()
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load payment history: {exc}") from exc
        finally:
            db.close()


class PaymentRecorder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record(
        self,
        order_id: str,
        cf_payment_id: str,
        email: str,
        name: str,
        phone: str,
        amount: float,
        method: str | None = None,
        status: str = "SUCCESS",
    ) -> str:
        """Insert a payment row and return its generated id.

        Raises DuplicateError when the order or provider payment id is
        already recorded, StorageError for any other write failure.
        """
        payment = Payment(
            id=str(uuid.uuid4()),
            order_id=order_id,
            cf_payment_id=cf_payment_id,
            email=email,
            name=name,
            phone=phone,
            amount=amount,
            status=normalise_status(status),
            payment_method=method or "online",
            payment_timestamp=datetime.now(timezone.utc),
        )
        payment_id = payment.id

        db = self.session_factory()
        try:
            db.add(payment)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.info("payment_duplicate_rejected", order_id=order_id, cf_payment_id=cf_payment_id)
            raise DuplicateError(f"Payment for order {order_id} already recorded") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError(f"Payment recording failed: {exc}") from exc
        finally:
            db.close()

        logger.info("payment_recorded", order_id=order_id, cf_payment_id=cf_payment_id, payment_id=payment_id)
        return payment_id


def serialize_payment(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "cf_payment_id": payment.cf_payment_id,
        "email": payment.email,
        "name": payment.name,
        "phone": payment.phone,
        "amount": payment.amount,
        "status": payment.status,
        "payment_method": payment.payment_method,
        "payment_timestamp": payment.payment_timestamp.isoformat() if payment.payment_timestamp else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }
