# src/infrastructure/gateways/razorpay_gateway.py

import logging

import razorpay
import requests

from src.domain.exceptions import GatewayError, InternalError
from src.infrastructure.settings import (
    GATEWAY_TIMEOUT_SECONDS,
    razorpay_key_id,
    razorpay_key_secret,
    razorpay_webhook_secret,
)

logger = logging.getLogger(__name__)

_GATEWAY_FAILURES = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    requests.RequestException,
)


class RazorpayGateway:
    """
    Thin client over the Razorpay SDK.

    Order creation is not idempotent on the gateway side, so it is never
    retried. Reads retry once.
    """

    name = "razorpay"

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
    ):
        self.key_id = key_id if key_id is not None else razorpay_key_id()
        self.key_secret = key_secret if key_secret is not None else razorpay_key_secret()
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else razorpay_webhook_secret()
        )
        self.timeout = timeout
        self._client: razorpay.Client | None = None

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            if not self.key_id or not self.key_secret:
                logger.error("Razorpay keys not configured")
                raise InternalError("Payment gateway is not configured")
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict | None = None,
    ) -> dict:
        try:
            order = self.client.order.create(
                {
                    "amount": amount,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes or {},
                },
                timeout=self.timeout,
            )
        except _GATEWAY_FAILURES as exc:
            logger.exception("Razorpay order create failed. receipt=%s", receipt)
            raise GatewayError("Payment gateway unavailable") from exc

        if not order or not order.get("id"):
            logger.error("Razorpay order create returned no id. receipt=%s", receipt)
            raise GatewayError("Payment gateway returned an invalid order")
        return order

    def fetch_order(self, order_id: str) -> dict:
        last_exc: Exception | None = None
        for attempt in (1, 2):
            try:
                return self.client.order.fetch(order_id, timeout=self.timeout)
            except _GATEWAY_FAILURES as exc:
                last_exc = exc
                logger.warning(
                    "Razorpay order fetch failed (attempt %s/2). order_id=%s",
                    attempt,
                    order_id,
                )
        raise GatewayError("Payment gateway unavailable") from last_exc

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not self.webhook_secret:
            logger.error("Razorpay webhook secret not configured")
            raise InternalError("Webhook secret is not configured")
        if not signature:
            return False

        try:
            razorpay.Utility().verify_webhook_signature(
                raw_body.decode("utf-8"),
                signature,
                self.webhook_secret,
            )
        except (razorpay.errors.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True


def get_payment_gateway() -> RazorpayGateway:
    return RazorpayGateway()
