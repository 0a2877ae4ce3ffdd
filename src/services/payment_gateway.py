"""
PhonePe-style hosted checkout client.

Every request is signed with::

    X-VERIFY = sha256(base64_payload + endpoint_path + salt_key) + "###" + salt_index

Inbound callbacks are signed the same way with an empty endpoint path.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from src.errors import GatewayError, GatewayMisconfigured, SignatureMismatch, ValidationError
from src.models import Order
from src.observability import increment_counter
from src.services.settings_service import GatewaySettings

PAY_ENDPOINT = "/pg/v1/pay"
STATUS_ENDPOINT = "/pg/v1/status/{merchant_id}/{transaction_id}"
REFUND_ENDPOINT = "/pg/v1/refund"

TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
REFUND_ACCEPTED_CODES = frozenset({"PAYMENT_SUCCESS", "PAYMENT_PENDING"})
DEFAULT_MOBILE_NUMBER = "9999999999"

logger = logging.getLogger(__name__)


def generate_checksum(base64_payload: str, endpoint: str, salt_key: str, salt_index: Any) -> str:
    digest = hashlib.sha256((base64_payload + endpoint + salt_key).encode("utf-8")).hexdigest()
    return f"{digest}###{salt_index}"


def encode_payload(payload: Dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def to_minor_units(amount: int) -> int:
    return int(amount) * 100


@dataclass(frozen=True)
class StatusResult:
    code: str
    data: Dict[str, Any] = field(default_factory=dict)
    http_status: int = 200

    @property
    def transaction_id(self) -> Optional[str]:
        return self.data.get("transactionId")

    @property
    def payment_method(self) -> Optional[str]:
        instrument = self.data.get("paymentInstrument") or {}
        return instrument.get("type")


@dataclass(frozen=True)
class RefundResult:
    code: str
    refund_transaction_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.code in REFUND_ACCEPTED_CODES


class PaymentGatewayClient:
    """
    Signed calls to the payment provider.

    Build one per operation from freshly resolved settings so rotated
    credentials take effect immediately. ``http`` is the module used for
    transport (``requests`` by default).
    """

    def __init__(self, settings: GatewaySettings, http=requests) -> None:
        self.settings = settings
        self.http = http

    def _require_configured(self) -> None:
        if not self.settings.merchant_id:
            raise GatewayMisconfigured("merchant id")
        if not self.settings.salt_key:
            raise GatewayMisconfigured("salt key")

    def _checksum(self, base64_payload: str, endpoint: str) -> str:
        return generate_checksum(
            base64_payload, endpoint, self.settings.salt_key, self.settings.salt_index
        )

    def _post(self, operation: str, endpoint: str, payload: Dict[str, Any]):
        encoded = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "X-VERIFY": self._checksum(encoded, endpoint),
        }
        try:
            return self.http.post(
                f"{self.settings.base_url}{endpoint}",
                json={"request": encoded},
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            increment_counter("gateway_errors_total", labels={"operation": operation})
            logger.error("Gateway %s request failed: %s", operation, exc)
            raise GatewayError(operation, str(exc))

    @staticmethod
    def _json(operation: str, response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise GatewayError(operation, "Provider returned a non-JSON body", response.status_code)
        if not isinstance(body, dict):
            raise GatewayError(operation, "Provider returned an unexpected body", response.status_code)
        return body

    def initiate(
        self,
        order: Order,
        redirect_url: str,
        callback_url: str,
        user_id: Any,
        mobile_number: Optional[str] = None,
    ) -> str:
        """Open a hosted checkout session for the order's stored total and return its URL."""
        self._require_configured()
        payload = {
            "merchantId": self.settings.merchant_id,
            "merchantTransactionId": order.order_number,
            "merchantUserId": str(user_id),
            "amount": to_minor_units(order.total),
            "redirectUrl": redirect_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": callback_url,
            "mobileNumber": mobile_number or DEFAULT_MOBILE_NUMBER,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        response = self._post("initiate", PAY_ENDPOINT, payload)
        body = self._json("initiate", response)

        if not body.get("success"):
            increment_counter("gateway_errors_total", labels={"operation": "initiate"})
            raise GatewayError(
                "initiate",
                body.get("message") or "Payment initiation failed at gateway",
                response.status_code,
            )

        try:
            url = body["data"]["instrumentResponse"]["redirectInfo"]["url"]
        except (KeyError, TypeError):
            raise GatewayError("initiate", "Provider response is missing the redirect URL", response.status_code)

        increment_counter("gateway_requests_total", labels={"operation": "initiate"})
        logger.info(
            "Payment session initiated",
            extra={"order_number": order.order_number, "amount": order.total},
        )
        return url

    def check_status(self, transaction_id: str) -> StatusResult:
        self._require_configured()
        endpoint = STATUS_ENDPOINT.format(
            merchant_id=self.settings.merchant_id, transaction_id=transaction_id
        )
        headers = {
            "Content-Type": "application/json",
            "X-VERIFY": self._checksum("", endpoint),
            "X-MERCHANT-ID": self.settings.merchant_id,
        }
        try:
            response = self.http.get(
                f"{self.settings.base_url}{endpoint}",
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            increment_counter("gateway_errors_total", labels={"operation": "status"})
            raise GatewayError("status", str(exc))

        if response.status_code == 404:
            return StatusResult(code=TRANSACTION_NOT_FOUND, data={}, http_status=404)
        if response.status_code >= 400:
            increment_counter("gateway_errors_total", labels={"operation": "status"})
            raise GatewayError("status", f"Provider returned HTTP {response.status_code}", response.status_code)

        body = self._json("status", response)
        increment_counter("gateway_requests_total", labels={"operation": "status"})
        return StatusResult(
            code=body.get("code") or "UNKNOWN",
            data=body.get("data") or {},
            http_status=response.status_code,
        )

    def verify_callback(self, raw_payload: Optional[str], signature: Optional[str]) -> Dict[str, Any]:
        """Check the X-VERIFY header of an inbound callback and decode its payload."""
        if not self.settings.salt_key:
            raise GatewayMisconfigured("salt key")
        valid_types = isinstance(raw_payload, str) and isinstance(signature, str)
        if not valid_types or not raw_payload or not signature:
            increment_counter("gateway_callbacks_rejected_total")
            raise SignatureMismatch("Callback payload or signature missing")

        expected = self._checksum(raw_payload, "")
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            increment_counter("gateway_callbacks_rejected_total")
            raise SignatureMismatch()

        try:
            decoded = json.loads(base64.b64decode(raw_payload, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise ValidationError("Callback payload is not valid base64 JSON", field="response")
        if not isinstance(decoded, dict):
            raise ValidationError("Callback payload must be a JSON object", field="response")
        return decoded

    def refund(self, order: Order, callback_url: str) -> RefundResult:
        """Refund the order's stored total against its original transaction id."""
        self._require_configured()
        refund_txn_id = f"RF-{int(time.time() * 1000)}{secrets.token_hex(2).upper()}"
        payload = {
            "merchantId": self.settings.merchant_id,
            "merchantUserId": str(order.userID),
            "originalTransactionId": order.payment_txn_id,
            "merchantTransactionId": refund_txn_id,
            "amount": to_minor_units(order.total),
            "callbackUrl": callback_url,
        }
        response = self._post("refund", REFUND_ENDPOINT, payload)
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not body.get("code"):
            raise GatewayError("refund", f"Provider returned HTTP {response.status_code}", response.status_code)

        increment_counter("gateway_requests_total", labels={"operation": "refund"})
        return RefundResult(code=body["code"], refund_transaction_id=refund_txn_id, data=body.get("data") or {})
