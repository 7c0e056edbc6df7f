import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from urllib import request, error

from pydantic import BaseModel

from config.env import CURRENCY, PAYMONGO_API_BASE, PAYMONGO_SECRET_KEY, PAYMONGO_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """External payment failure: network, decline, misconfiguration."""


class CaptureResult(BaseModel):
    success: bool
    reference: str | None = None
    error: str | None = None


class RefundResult(BaseModel):
    success: bool
    refund_id: str | None = None
    error: str | None = None


class PaymentGateway(ABC):
    """
    External payment capability. Implementations may block on the network,
    so callers must never hold an order lock or transaction around them.
    """

    @abstractmethod
    async def capture(self, amount_minor: int, method: str, method_details: dict) -> CaptureResult: ...

    @abstractmethod
    async def refund(
        self,
        reference: str,
        amount_minor: int,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """Re-issuing with the same idempotency_key must not refund twice."""


def _basic_auth_header(secret_key: str) -> str:
    token = f"{secret_key}:".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


class PayMongoGateway(PaymentGateway):

    def __init__(
        self,
        secret_key: str | None = PAYMONGO_SECRET_KEY,
        api_base: str = PAYMONGO_API_BASE,
        currency: str = CURRENCY,
        timeout: int = PAYMONGO_TIMEOUT_SECONDS,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.currency = currency
        self.timeout = timeout

    def _require_config(self) -> str:
        if not self.secret_key:
            raise GatewayError("PayMongo secret key is not configured")
        return self.secret_key

    def _post(self, path: str, attributes: dict, idempotency_key: str | None = None) -> dict:
        secret_key = self._require_config()

        headers = {
            "Content-Type": "application/json",
            "Authorization": _basic_auth_header(secret_key),
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        req = request.Request(
            url=f"{self.api_base}{path}",
            data=json.dumps({"data": {"attributes": attributes}}).encode("utf-8"),
            headers=headers,
            method="POST",
        )

        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
                return json.loads(body).get("data") or {}
        except error.HTTPError as e:
            details = e.read().decode("utf-8", errors="ignore")
            raise GatewayError(f"PayMongo {path} failed ({e.code}): {_first_error_detail(details)}")
        except (error.URLError, TimeoutError, ValueError) as e:
            raise GatewayError(f"PayMongo {path} failed: {e}")

    # -------------------------------
    # Capture
    # -------------------------------

    def _payment_method_attributes(self, method: str, details: dict) -> dict:
        if method == "card":
            return {
                "type": "card",
                "details": {
                    "card_number": details.get("card_number"),
                    "exp_month": int(details.get("exp_month") or 0),
                    "exp_year": int(details.get("exp_year") or 0),
                    "cvc": details.get("cvc"),
                },
                "billing": {"name": details.get("cardholder_name")},
            }
        if method == "gcash":
            return {
                "type": "gcash",
                "billing": {
                    "name": details.get("account_name"),
                    "phone": details.get("phone_number"),
                },
            }
        raise GatewayError(f"Method {method} is not gateway-backed")

    def _capture_sync(self, amount_minor: int, method: str, details: dict) -> CaptureResult:
        payment_method = self._post("/payment_methods", self._payment_method_attributes(method, details))

        intent = self._post("/payment_intents", {
            "amount": amount_minor,
            "currency": self.currency,
            "payment_method_allowed": [method],
            "description": details.get("description") or "Marketplace escrow payment",
        })

        attached = self._post(f"/payment_intents/{intent.get('id')}/attach", {
            "payment_method": payment_method.get("id"),
        })

        attrs = attached.get("attributes") or {}
        status = attrs.get("status")
        if status != "succeeded":
            return CaptureResult(success=False, error=f"payment intent status {status}")

        payments = attrs.get("payments") or []
        reference = payments[0].get("id") if payments else attached.get("id")
        return CaptureResult(success=True, reference=reference)

    async def capture(self, amount_minor, method, method_details):
        try:
            return await asyncio.to_thread(self._capture_sync, amount_minor, method, method_details or {})
        except GatewayError as e:
            logger.warning("GATEWAY_CAPTURE_FAILED method=%s error=%s", method, e)
            return CaptureResult(success=False, error=str(e))

    # -------------------------------
    # Refund
    # -------------------------------

    def _refund_sync(self, reference: str, amount_minor: int, reason: str, idempotency_key: str | None) -> RefundResult:
        refund = self._post("/refunds", {
            "amount": amount_minor,
            "payment_id": reference,
            "reason": "requested_by_customer",
            "notes": (reason or "")[:255],
        }, idempotency_key=idempotency_key)
        return RefundResult(success=bool(refund.get("id")), refund_id=refund.get("id"))

    async def refund(self, reference, amount_minor, reason, idempotency_key=None):
        try:
            return await asyncio.to_thread(self._refund_sync, reference, amount_minor, reason, idempotency_key)
        except GatewayError as e:
            logger.warning("GATEWAY_REFUND_FAILED reference=%s error=%s", reference, e)
            return RefundResult(success=False, error=str(e))


def _first_error_detail(body: str) -> str:
    try:
        errors = json.loads(body).get("errors") or []
    except ValueError:
        return body[:200]
    if errors:
        return errors[0].get("detail") or errors[0].get("code") or "unknown error"
    return body[:200]
