"""
Razorpay adapter: the only module that talks to the payment gateway.

Every network call is wrapped so that transport and provider failures surface
as GatewayUnavailable; missing credentials surface as GatewayNotConfigured.
Amounts cross this boundary in whole rupees and are converted to paise here.
"""
import logging

import razorpay
import requests
from razorpay.errors import (
    BadRequestError,
    GatewayError,
    ServerError,
    SignatureVerificationError,
)
from flask import current_app

from utils.clock import to_epoch
from utils.errors import GatewayNotConfigured, GatewayUnavailable

logger = logging.getLogger(__name__)

EXTENSION_KEY = "payment_gateway"

_ALREADY_CAPTURED = "already been captured"


class RazorpayGateway:
    provider = "RAZORPAY"

    def __init__(self, key_id, key_secret, webhook_secret=None, auto_capture=True):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.auto_capture = auto_capture
        self._client = None

    @classmethod
    def from_config(cls, config):
        return cls(
            key_id=config.get("RAZORPAY_KEY_ID"),
            key_secret=config.get("RAZORPAY_KEY_SECRET"),
            webhook_secret=config.get("RAZORPAY_WEBHOOK_SECRET"),
            auto_capture=config.get("RAZORPAY_AUTO_CAPTURE", True),
        )

    @property
    def client(self) -> razorpay.Client:
        if not self.key_id or not self.key_secret:
            raise GatewayNotConfigured()
        if self._client is None:
            self._client = razorpay.Client(auth=(self.key_id, self.key_secret))
        return self._client

    def public_key_id(self) -> str:
        if not self.key_id:
            raise GatewayNotConfigured()
        return self.key_id

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (BadRequestError, GatewayError, ServerError) as exc:
            logger.warning("razorpay %s failed: %s", operation, exc)
            raise GatewayUnavailable(message=f"razorpay {operation} failed", details=str(exc)) from exc
        except requests.RequestException as exc:
            logger.warning("razorpay %s transport error: %s", operation, exc)
            raise GatewayUnavailable(message=f"razorpay {operation} unreachable") from exc

    # ---------- checkout ----------

    def create_order(self, amount: int, currency: str, receipt: str, notes=None) -> dict:
        payload = {
            "amount": amount * 100,
            "currency": currency,
            "receipt": receipt[:40],
            "payment_capture": 1 if self.auto_capture else 0,
            "notes": {k: str(v) for k, v in (notes or {}).items()},
        }
        return self._call("order.create", self.client.order.create, payload)

    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not signature:
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
        except SignatureVerificationError:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            raise GatewayNotConfigured()
        if not signature:
            return False
        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            return False
        try:
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except SignatureVerificationError:
            return False
        return True

    def capture_payment(self, payment_id: str, amount: int, currency: str) -> dict:
        """Capture an authorized payment; an already-captured payment counts as success."""
        try:
            return self.client.payment.capture(payment_id, amount * 100, {"currency": currency})
        except BadRequestError as exc:
            if _ALREADY_CAPTURED not in str(exc).lower():
                raise GatewayUnavailable(message="razorpay payment.capture failed", details=str(exc)) from exc
            logger.info("payment %s was already captured at the gateway", payment_id)
            return self._call("payment.fetch", self.client.payment.fetch, payment_id)
        except (GatewayError, ServerError) as exc:
            raise GatewayUnavailable(message="razorpay payment.capture failed", details=str(exc)) from exc
        except requests.RequestException as exc:
            raise GatewayUnavailable(message="razorpay payment.capture unreachable") from exc

    # ---------- subscriptions ----------

    def create_plan(self, name: str, amount: int, currency: str, period="weekly", interval=1) -> str:
        plan = self._call("plan.create", self.client.plan.create, {
            "period": period,
            "interval": interval,
            "item": {"name": name[:120], "amount": amount * 100, "currency": currency},
        })
        return plan["id"]

    def create_subscription(self, plan_id: str, start_at, total_count: int, notes=None) -> dict:
        return self._call("subscription.create", self.client.subscription.create, {
            "plan_id": plan_id,
            "total_count": total_count,
            "customer_notify": 1,
            "start_at": to_epoch(start_at),
            "notes": {k: str(v) for k, v in (notes or {}).items()},
        })

    def pause_subscription(self, subscription_id: str) -> dict:
        return self._call(
            "subscription.pause", self.client.subscription.pause, subscription_id, {"pause_at": "now"}
        )

    def resume_subscription(self, subscription_id: str) -> dict:
        return self._call(
            "subscription.resume", self.client.subscription.resume, subscription_id, {"resume_at": "now"}
        )

    def cancel_subscription(self, subscription_id: str) -> dict:
        return self._call("subscription.cancel", self.client.subscription.cancel, subscription_id)


def init_gateway(app, gateway=None):
    app.extensions[EXTENSION_KEY] = gateway or RazorpayGateway.from_config(app.config)


def get_gateway() -> RazorpayGateway:
    return current_app.extensions[EXTENSION_KEY]
