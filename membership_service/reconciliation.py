"""Turns a confirmed payment into exactly one payment row and one active profile.

Two entry points share the same sequence:

* ``handle_webhook`` -- the gateway pushes a signed PAYMENT_SUCCESS_WEBHOOK.
* ``verify_order`` -- the account page polls; trust comes from fetching the
  order from the gateway ourselves.

Sequence: dedup check -> resolve identity -> record payment -> write profile.
If recording or the profile write fails, an identity created by this run is
deleted again, unless a concurrent run has already linked a profile to it.
A payment row that was already written is left in place for manual
follow-up.

The ledger check is only a fast path. Two runs for the same order can both
get past it; the unique constraints behind ``PaymentRecorder.record`` decide
the winner and the loser reports the order as already processed.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from membership_service import cashfree_service
from membership_service.errors import DuplicateError, IdentityError, StorageError, UpstreamError
from membership_service.identity import IdentityResolver, IdentityStore
from membership_service.models import Payment
from membership_service.payments import PaymentLedger, PaymentRecorder
from membership_service.profiles import ProfileStore, serialize_profile
from membership_service.schemas import PAYMENT_SUCCESS_WEBHOOK, decode_webhook_body, parse_webhook_event
from membership_service.signature import verify_webhook_signature

logger = structlog.get_logger(__name__)

PROVIDER_PAYMENT_SUCCESS = "SUCCESS"
PROVIDER_ORDER_PAID = "PAID"


class State(str, Enum):
    START = "START"
    SIGNATURE_CHECKED = "SIGNATURE_CHECKED"
    DEDUP_CHECKED = "DEDUP_CHECKED"
    IDENTITY_RESOLVED = "IDENTITY_RESOLVED"
    PAYMENT_RECORDED = "PAYMENT_RECORDED"
    PROFILE_WRITTEN = "PROFILE_WRITTEN"
    ROLLBACK = "ROLLBACK"
    FAILED = "FAILED"


# webhook outcomes
PROCESSED = "processed"
IGNORED = "ignored"
IGNORED_DUPLICATE = "ignored_duplicate"
# verify outcomes
ALREADY_PROCESSED = "already_processed"
NOT_PAID = "not_paid"


@dataclass(frozen=True)
class ConfirmedPayment:
    order_id: str
    cf_payment_id: str
    email: str
    name: str
    phone: str
    amount: float
    method: str | None = None


@dataclass
class ReconciliationResult:
    status: str
    payment_status: str | None = None
    user: dict | None = None
    order_status: str | None = None

    def as_webhook_response(self) -> dict:
        return {"status": self.status}

    def as_verify_response(self) -> dict:
        if self.status == NOT_PAID:
            return {"status": self.status, "order_status": self.order_status}
        return {"status": self.status, "payment_status": self.payment_status, "user": self.user}


@dataclass
class _Provisioned:
    duplicate: bool
    identity_id: str | None = None
    payment_id: str | None = None


class Reconciler:
    def __init__(self, session_factory, provider=cashfree_service):
        self.ledger = PaymentLedger(session_factory)
        self.recorder = PaymentRecorder(session_factory)
        self.profiles = ProfileStore(session_factory)
        self.identities = IdentityStore(session_factory)
        self.resolver = IdentityResolver(self.identities, self.profiles)
        self.provider = provider

    # ── entry points ────────────────────────────────────────────────

    def handle_webhook(self, raw_body: bytes, signature: str | None, timestamp: str | None) -> ReconciliationResult:
        """Process one webhook delivery.

        Raises AuthenticationError / ValidationError before anything is
        touched, IdentityError / StorageError if provisioning failed.
        """
        verify_webhook_signature(raw_body, signature, timestamp)
        log = logger.bind(state=State.SIGNATURE_CHECKED.value)

        body = decode_webhook_body(raw_body)
        if body.get("type") != PAYMENT_SUCCESS_WEBHOOK:
            log.info("webhook_ignored", event_type=body.get("type"))
            return ReconciliationResult(status=IGNORED)

        event = parse_webhook_event(body)
        order, payment, customer = event.data.order, event.data.payment, event.data.customer_details
        log = log.bind(order_id=order.order_id, cf_payment_id=payment.cf_payment_id)

        if payment.payment_status != PROVIDER_PAYMENT_SUCCESS:
            log.info("webhook_payment_not_successful", payment_status=payment.payment_status)
            return ReconciliationResult(status=IGNORED)

        if self.ledger.has_been_processed(cf_payment_id=payment.cf_payment_id, order_id=order.order_id):
            log.info("webhook_duplicate_ignored")
            return ReconciliationResult(status=IGNORED_DUPLICATE)

        provisioned = self._provision(ConfirmedPayment(
            order_id=order.order_id,
            cf_payment_id=payment.cf_payment_id,
            email=customer.customer_email,
            name=customer.customer_name,
            phone=customer.customer_phone,
            amount=payment.payment_amount,
            method=payment.payment_group,
        ))
        if provisioned.duplicate:
            return ReconciliationResult(status=IGNORED_DUPLICATE)
        return ReconciliationResult(status=PROCESSED, payment_status=PROVIDER_PAYMENT_SUCCESS)

    def verify_order(self, order_id: str) -> ReconciliationResult:
        """Reconcile ``order_id`` from the gateway's own order status.

        Raises UpstreamError if the gateway cannot be asked,
        IdentityError / StorageError if provisioning failed.
        """
        log = logger.bind(order_id=order_id)

        existing = self.ledger.find(order_id=order_id)
        if existing is not None:
            log.info("verify_already_processed", payment_id=existing.id)
            return self._already_processed(existing)

        order = self.provider.fetch_order(order_id)
        if order.order_status != PROVIDER_ORDER_PAID:
            log.info("verify_order_not_paid", order_status=order.order_status)
            return ReconciliationResult(status=NOT_PAID, order_status=order.order_status)
        if order.customer is None:
            raise UpstreamError(f"Paid order {order_id} has no customer details")

        payments = self.provider.fetch_order_payments(order_id)
        successful = next((p for p in payments if p.payment_status == PROVIDER_PAYMENT_SUCCESS), None)
        if successful is not None:
            cf_payment_id = successful.cf_payment_id
        else:
            log.warning("verify_no_successful_payment_listed")
            cf_payment_id = f"verify_{order_id}"

        existing = self.ledger.find(cf_payment_id=cf_payment_id)
        if existing is not None:
            log.info("verify_already_processed", payment_id=existing.id)
            return self._already_processed(existing)

        provisioned = self._provision(ConfirmedPayment(
            order_id=order_id,
            cf_payment_id=cf_payment_id,
            email=order.customer.email,
            name=order.customer.name,
            phone=order.customer.phone,
            amount=order.order_amount,
            method=successful.payment_group if successful else None,
        ))
        if provisioned.duplicate:
            winner = self.ledger.find(cf_payment_id=cf_payment_id, order_id=order_id)
            if winner is None:
                raise StorageError(f"Payment for order {order_id} was rejected as duplicate but is missing")
            return self._already_processed(winner)

        return ReconciliationResult(
            status=PROCESSED,
            payment_status=PROVIDER_PAYMENT_SUCCESS,
            user=serialize_profile(self.profiles.get(provisioned.identity_id)),
        )

    # ── state machine ───────────────────────────────────────────────

    def _provision(self, payment: ConfirmedPayment) -> _Provisioned:
        log = logger.bind(order_id=payment.order_id, cf_payment_id=payment.cf_payment_id)
        log.debug("reconciliation_step", state=State.DEDUP_CHECKED.value)

        try:
            identity_id, is_new = self.resolver.resolve_or_create(payment.email, payment.name, payment.phone)
        except IdentityError:
            log.error("reconciliation_failed", state=State.FAILED.value, step=State.IDENTITY_RESOLVED.value)
            raise
        log = log.bind(identity_id=identity_id, new_identity=is_new)
        log.info("reconciliation_step", state=State.IDENTITY_RESOLVED.value)

        try:
            payment_id = self.recorder.record(
                order_id=payment.order_id,
                cf_payment_id=payment.cf_payment_id,
                email=payment.email,
                name=payment.name,
                phone=payment.phone,
                amount=payment.amount,
                method=payment.method,
                status=PROVIDER_PAYMENT_SUCCESS,
            )
        except DuplicateError:
            # A concurrent run committed first and owns whatever identity it used.
            log.info("reconciliation_lost_race")
            return _Provisioned(duplicate=True, identity_id=identity_id)
        except StorageError:
            self._rollback(identity_id, is_new, log)
            raise
        log = log.bind(payment_id=payment_id)
        log.info("reconciliation_step", state=State.PAYMENT_RECORDED.value)

        try:
            self.profiles.upsert(identity_id, payment.email, payment.name, payment.phone, payment_id)
        except StorageError:
            self._rollback(identity_id, is_new, log)
            raise
        log.info("reconciliation_step", state=State.PROFILE_WRITTEN.value)

        return _Provisioned(duplicate=False, identity_id=identity_id, payment_id=payment_id)

    def _rollback(self, identity_id: str, is_new: bool, log) -> None:
        log.warning("reconciliation_rollback", state=State.ROLLBACK.value)
        if is_new:
            try:
                self._discard_unlinked_identity(identity_id, log)
            except (IdentityError, StorageError):
                log.exception("identity_rollback_failed")
        log.error("reconciliation_failed", state=State.FAILED.value)

    def _discard_unlinked_identity(self, identity_id: str, log) -> None:
        # A concurrent run for the same email may have resolved to this
        # identity and written its profile; that identity now belongs to it.
        if self.profiles.get(identity_id) is not None:
            log.warning("identity_rollback_skipped", reason="profile_linked")
            return
        self.identities.delete_identity(identity_id)
        log.info("identity_rolled_back")

    def _already_processed(self, payment: Payment) -> ReconciliationResult:
        profile = self.profiles.find_by_payment(payment.id)
        if profile is None:
            # repointed to a newer payment since
            profile = self.profiles.find_by_email(payment.email)
        return ReconciliationResult(
            status=ALREADY_PROCESSED,
            payment_status=payment.status,
            user=serialize_profile(profile),
        )
