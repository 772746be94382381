import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.booking_service import LedgerService
from src.domain.authorization import AuthorizationGuard
from src.domain.exceptions import ConflictError, GatewayError, SignatureError, ValidationError
from src.infrastructure.db.models import (
    OPEN_PAYMENT_STATUSES,
    Payment,
    PaymentStatus,
    utc_now,
)
from src.infrastructure.gateways.razorpay_gateway import RazorpayGateway
from src.infrastructure.repositories.booking_repository import BookingLedgerStore
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.settings import (
    PAYMENT_CURRENCY,
    PAYMENT_IDEMPOTENCY_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)

# Gateway payment status -> our payment status.
GATEWAY_STATUS_MAP = {
    "captured": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "authorized": PaymentStatus.PENDING,
}

# A key that matches a payment in any other status starts a fresh order.
REUSABLE_PAYMENT_STATUSES = OPEN_PAYMENT_STATUSES + (PaymentStatus.SUCCESS,)


@dataclass
class OrderResult:
    order_id: str
    amount: int
    currency: str
    created: bool


@dataclass
class WebhookOutcome:
    processed: bool
    reason: str
    payment_id: str | None = None
    booking_id: str | None = None


def idempotency_key_for(booking_id: str, amount: int, nonce: str | None = None) -> str:
    """
    Without a nonce, requests inside the same time bucket share a key, so a
    double-clicked checkout resolves to one gateway order.
    """
    if nonce:
        discriminator = f"nonce:{nonce}"
    else:
        bucket = int(time.time() // PAYMENT_IDEMPOTENCY_WINDOW_SECONDS)
        discriminator = f"bucket:{bucket}"
    seed = f"{booking_id}:{amount}:{discriminator}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def _retry_key(key: str, attempt: int) -> str:
    return hashlib.sha256(f"{key}:retry:{attempt}".encode("utf-8")).hexdigest()


class PaymentReconciler:

    def __init__(self, db: Session, gateway: RazorpayGateway):
        self.db = db
        self.gateway = gateway
        self.payments = PaymentRepository(db)
        self.bookings = BookingLedgerStore(db)

    def create_order(
        self,
        booking_id: str,
        amount: int,
        caller_id: str | None,
        nonce: str | None = None,
    ) -> OrderResult:
        caller = AuthorizationGuard.require_caller(caller_id)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer in minor units")
        if not (booking_id or "").strip():
            raise ValidationError("booking_id is required")

        booking = self.bookings.require(booking_id)
        AuthorizationGuard.ensure_owner(booking.user_id, caller)

        base_key = key = idempotency_key_for(booking.id, amount, nonce)
        existing = self.payments.get_by_idempotency_key(key)
        retry = 0
        while existing is not None and existing.status not in REUSABLE_PAYMENT_STATUSES:
            # Failed or abandoned attempts keep their key; a retry derives the next one.
            retry += 1
            key = _retry_key(base_key, retry)
            existing = self.payments.get_by_idempotency_key(key)
        if existing:
            logger.info("Reusing payment for idempotency key. payment_id=%s", existing.id)
            return self._result(existing, created=False)

        open_payment = self.payments.get_open_for_booking(booking.id)
        if open_payment:
            if open_payment.amount != amount:
                raise ConflictError("Another payment is already open for this booking")
            logger.info("Reusing open payment. payment_id=%s", open_payment.id)
            return self._result(open_payment, created=False)

        # Nothing is written before the gateway answers.
        order = self.gateway.create_order(
            amount=amount,
            currency=PAYMENT_CURRENCY,
            receipt=booking.id,
            notes={"booking_id": booking.id, "idempotency_key": key},
        )

        try:
            payment = self.payments.add(
                booking_id=booking.id,
                gateway_order_id=order["id"],
                idempotency_key=key,
                amount=amount,
                currency=order.get("currency") or PAYMENT_CURRENCY,
                meta={"order": order},
                gateway=self.gateway.name,
            )
        except IntegrityError:
            # Only reads happened before the insert, so nothing else is lost.
            self.db.rollback()
            winner = self.payments.get_by_idempotency_key(key) or self.payments.get_open_for_booking(
                booking.id
            )
            if winner is None:
                raise
            logger.warning(
                "Concurrent order creation; using existing payment. booking_id=%s payment_id=%s",
                booking.id,
                winner.id,
            )
            if winner.amount != amount:
                raise ConflictError("Another payment is already open for this booking")
            return self._result(winner, created=False)

        logger.info(
            "Payment order created. booking_id=%s order_id=%s amount=%s",
            booking.id,
            payment.gateway_order_id,
            payment.amount,
        )
        return self._result(payment, created=True)

    def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Webhook signature verification failed")
            raise SignatureError("Invalid signature")

        try:
            body = json.loads(raw_body)
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.warning("Webhook body is not a JSON object")
            return WebhookOutcome(processed=False, reason="malformed")

        entity = ((body.get("payload") or {}).get("payment") or {}).get("entity") or {}
        order_id = entity.get("order_id")
        gateway_payment_id = entity.get("id")
        gateway_status = entity.get("status")
        if not order_id or not gateway_payment_id or not gateway_status:
            logger.info("Webhook missing payment fields. event=%s", body.get("event"))
            return WebhookOutcome(processed=False, reason="missing_fields")

        new_status = GATEWAY_STATUS_MAP.get(gateway_status)
        if new_status is None:
            logger.info("Ignoring gateway status %s. order_id=%s", gateway_status, order_id)
            return WebhookOutcome(processed=False, reason="ignored_status")

        payment = self.payments.get_by_gateway_order_id(order_id)
        if payment is None:
            logger.warning("Webhook for unknown order. order_id=%s", order_id)
            return WebhookOutcome(processed=False, reason="unknown_order")

        if new_status == PaymentStatus.PENDING:
            expected = (PaymentStatus.CREATED,)
        elif new_status == PaymentStatus.SUCCESS:
            # A later capture on the same order overrides an earlier failed attempt.
            expected = OPEN_PAYMENT_STATUSES + (PaymentStatus.FAILED,)
        else:
            expected = OPEN_PAYMENT_STATUSES

        event_meta = {
            "payment_id": gateway_payment_id,
            "order_id": order_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "gateway": payment.gateway,
        }
        amount = entity.get("amount")
        if amount is not None and amount != payment.amount:
            logger.warning(
                "Webhook amount mismatch. order_id=%s expected=%s got=%s",
                order_id,
                payment.amount,
                amount,
            )
            event_meta["amount_mismatch"] = True
            event_meta["received_amount"] = amount
        if new_status == PaymentStatus.FAILED:
            event_meta["error"] = entity.get("error_description")

        won = self._settle(
            payment,
            new_status,
            expected,
            details={"webhook": entity},
            event_meta=event_meta,
            gateway_payment_id=gateway_payment_id,
        )
        if not won:
            logger.info(
                "Duplicate webhook ignored. order_id=%s status=%s",
                order_id,
                payment.status.value,
            )
            return WebhookOutcome(
                processed=False,
                reason="duplicate",
                payment_id=payment.id,
                booking_id=payment.booking_id,
            )

        logger.info(
            "Webhook applied. order_id=%s payment_status=%s booking_id=%s",
            order_id,
            new_status.value,
            payment.booking_id,
        )
        return WebhookOutcome(
            processed=True,
            reason=new_status.value,
            payment_id=payment.id,
            booking_id=payment.booking_id,
        )

    def abandon_stale(self, older_than_seconds: int) -> int:
        """
        Sweeps payments still `created` after the window. Orders the gateway
        reports as paid are settled as successes, which also covers a capture
        whose webhook was acknowledged but failed to reach the ledger. The
        rest are marked abandoned. Returns the number abandoned.
        """
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        abandoned = 0
        settled = 0
        for payment in self.payments.list_stale_created(cutoff):
            try:
                order = self.gateway.fetch_order(payment.gateway_order_id)
            except GatewayError:
                logger.warning(
                    "Skipping stale payment, gateway unreachable. order_id=%s",
                    payment.gateway_order_id,
                )
                continue

            if order.get("status") == "paid":
                event_meta = {
                    "payment_id": None,
                    "order_id": payment.gateway_order_id,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "gateway": payment.gateway,
                    "source": "reconcile",
                }
                if self._settle(
                    payment,
                    PaymentStatus.SUCCESS,
                    (PaymentStatus.CREATED,),
                    details={"reconciled_order": order},
                    event_meta=event_meta,
                ):
                    settled += 1
                    logger.info(
                        "Stale payment paid at gateway; recorded success. order_id=%s booking_id=%s",
                        payment.gateway_order_id,
                        payment.booking_id,
                    )
                continue

            if self.payments.resolve(
                payment.id,
                expected=(PaymentStatus.CREATED,),
                new_status=PaymentStatus.ABANDONED,
            ):
                abandoned += 1
        if abandoned or settled:
            logger.info(
                "Stale payment sweep: %s abandoned, %s settled as paid",
                abandoned,
                settled,
            )
        return abandoned

    def _settle(
        self,
        payment: Payment,
        new_status: PaymentStatus,
        expected: tuple[PaymentStatus, ...],
        details: dict,
        event_meta: dict,
        gateway_payment_id: str | None = None,
    ) -> bool:
        # The payment CAS decides the single writer; the ledger follows in the same transaction.
        meta = dict(payment.meta or {})
        meta.update(details)
        values = {"meta": meta}
        if gateway_payment_id:
            values["gateway_payment_id"] = gateway_payment_id
        if not self.payments.resolve(
            payment.id,
            expected=expected,
            new_status=new_status,
            **values,
        ):
            return False

        ledger = LedgerService(self.db)
        if new_status == PaymentStatus.SUCCESS:
            ledger.record_payment_success(payment.booking_id, event_meta)
        elif new_status == PaymentStatus.FAILED:
            ledger.record_payment_failure(payment.booking_id, event_meta)
        return True

    @staticmethod
    def _result(payment: Payment, created: bool) -> OrderResult:
        return OrderResult(
            order_id=payment.gateway_order_id,
            amount=payment.amount,
            currency=payment.currency,
            created=created,
        )
