import base64
import hashlib
import json

import pytest
import requests

from src.errors import GatewayError, GatewayMisconfigured, SignatureMismatch, ValidationError
from src.models import Order
from src.services.payment_gateway import (
    PAY_ENDPOINT,
    TRANSACTION_NOT_FOUND,
    PaymentGatewayClient,
    encode_payload,
    generate_checksum,
)
from src.services.settings_service import GatewaySettings

from conftest import FakeHttp, pay_page_response

SALT = "test-salt-key"


def _settings(**overrides):
    values = dict(
        merchant_id="MERCHANTUAT",
        salt_key=SALT,
        salt_index=1,
        is_live=False,
        live_url="https://live.example.test",
        sandbox_url="https://sandbox.example.test/",
        timeout_seconds=5,
    )
    values.update(overrides)
    return GatewaySettings(**values)


def _order(total=313):
    return Order(order_number="BK-100", userID=7, total=total, subtotal=total, shipping_address="x")


def _signed_callback(payload):
    raw = encode_payload(payload)
    return raw, generate_checksum(raw, "", SALT, 1)


def test_checksum_format():
    digest = hashlib.sha256(("abc" + "/pg/v1/pay" + SALT).encode()).hexdigest()
    assert generate_checksum("abc", "/pg/v1/pay", SALT, 1) == f"{digest}###1"


def test_initiate_sends_signed_payload_in_minor_units():
    http = FakeHttp()
    http.queue_post(200, pay_page_response("https://pay.example.test/p/1"))
    client = PaymentGatewayClient(_settings(), http=http)

    url = client.initiate(_order(313), "https://shop/status/BK-100", "https://api/webhook", user_id=7)

    assert url == "https://pay.example.test/p/1"
    method, called_url, body, headers = http.calls[0]
    assert method == "POST"
    assert called_url == "https://sandbox.example.test" + PAY_ENDPOINT
    payload = json.loads(base64.b64decode(body["request"]))
    assert payload["amount"] == 31300
    assert payload["merchantTransactionId"] == "BK-100"
    assert payload["paymentInstrument"] == {"type": "PAY_PAGE"}
    assert headers["X-VERIFY"] == generate_checksum(body["request"], PAY_ENDPOINT, SALT, 1)


def test_initiate_failure_raises_gateway_error():
    http = FakeHttp()
    http.queue_post(400, {"success": False, "message": "Bad request"})
    with pytest.raises(GatewayError):
        PaymentGatewayClient(_settings(), http=http).initiate(_order(), "r", "c", user_id=1)


def test_transport_failure_raises_gateway_error():
    class BrokenHttp(FakeHttp):
        def post(self, url, json=None, headers=None, timeout=None):
            raise requests.ConnectionError("connection refused")

    with pytest.raises(GatewayError) as exc:
        PaymentGatewayClient(_settings(), http=BrokenHttp()).initiate(_order(), "r", "c", user_id=1)
    assert exc.value.status_code == 502


def test_missing_credentials_are_reported_before_any_call():
    http = FakeHttp()
    with pytest.raises(GatewayMisconfigured):
        PaymentGatewayClient(_settings(salt_key=""), http=http).initiate(_order(), "r", "c", user_id=1)
    assert http.calls == []


def test_status_check_signs_path_and_maps_404():
    http = FakeHttp()
    http.queue_get(404, None)
    client = PaymentGatewayClient(_settings(), http=http)

    result = client.check_status("BK-100")

    assert result.code == TRANSACTION_NOT_FOUND
    _, url, _, headers = http.calls[0]
    endpoint = "/pg/v1/status/MERCHANTUAT/BK-100"
    assert url.endswith(endpoint)
    assert headers["X-VERIFY"] == generate_checksum("", endpoint, SALT, 1)
    assert headers["X-MERCHANT-ID"] == "MERCHANTUAT"


def test_status_check_server_error_raises():
    http = FakeHttp()
    http.queue_get(503, None)
    with pytest.raises(GatewayError):
        PaymentGatewayClient(_settings(), http=http).check_status("BK-100")


def test_verify_callback_accepts_valid_signature():
    raw, signature = _signed_callback({"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "BK-100"}})
    decoded = PaymentGatewayClient(_settings()).verify_callback(raw, signature)
    assert decoded["data"]["merchantTransactionId"] == "BK-100"


def test_verify_callback_rejects_single_byte_tamper():
    raw, signature = _signed_callback({"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "BK-100"}})
    tampered = ("A" if raw[0] != "A" else "B") + raw[1:]
    client = PaymentGatewayClient(_settings())

    with pytest.raises(SignatureMismatch):
        client.verify_callback(tampered, signature)
    with pytest.raises(SignatureMismatch):
        client.verify_callback(raw, None)


def test_verify_callback_rejects_signed_garbage():
    raw = "not-base64!!"
    signature = generate_checksum(raw, "", SALT, 1)
    with pytest.raises(ValidationError):
        PaymentGatewayClient(_settings()).verify_callback(raw, signature)


@pytest.mark.parametrize(
    "raw, signature",
    [(12345, "abc###1"), ("eyJhIjoxfQ==", 7), ({"response": "x"}, "abc###1")],
)
def test_verify_callback_rejects_non_string_input(raw, signature):
    with pytest.raises(SignatureMismatch):
        PaymentGatewayClient(_settings()).verify_callback(raw, signature)


def test_refund_uses_original_transaction_and_fresh_id():
    http = FakeHttp()
    http.queue_post(200, {"success": True, "code": "PAYMENT_PENDING"})
    order = _order(500)
    order.payment_txn_id = "T-ORIGINAL"

    result = PaymentGatewayClient(_settings(), http=http).refund(order, "https://api/webhook")

    assert result.accepted
    assert result.refund_transaction_id.startswith("RF-")
    payload = json.loads(base64.b64decode(http.calls[0][2]["request"]))
    assert payload["originalTransactionId"] == "T-ORIGINAL"
    assert payload["amount"] == 50000
    assert payload["merchantTransactionId"] == result.refund_transaction_id
