from decimal import Decimal

import pytest
import requests

from storefront.config import RazorpaySettings
from storefront.services.errors import ConfigurationError, RemoteRequestError, TransientRemoteError
from storefront.services.razorpay_gateway import (
    RECEIPT_MAX_LENGTH,
    RazorpayGateway,
    convert_from_paise,
    convert_to_paise,
    generate_receipt_id,
)

from conftest import KEY_ID, KEY_SECRET, WEBHOOK_SECRET, make_response, sign, sign_webhook


def test_convert_to_paise_rounds_half_up():
    assert convert_to_paise(Decimal("2000")) == 200000
    assert convert_to_paise("19.995") == 2000
    assert convert_to_paise(0.1) == 10
    assert convert_from_paise(199) == Decimal("1.99")


def test_convert_to_paise_rejects_negative():
    with pytest.raises(ValueError):
        convert_to_paise("-1")


def test_receipt_ids_are_unique_and_bounded():
    first = generate_receipt_id("ORD-20260101-ABCDEFGH-WITH-A-LONG-SUFFIX")
    second = generate_receipt_id("ORD-20260101-ABCDEFGH-WITH-A-LONG-SUFFIX")
    assert first != second
    assert len(first) <= RECEIPT_MAX_LENGTH
    assert first.startswith("rcpt_ORD-")


def test_missing_credentials_is_configuration_error():
    with pytest.raises(ConfigurationError):
        RazorpayGateway("", KEY_SECRET)
    with pytest.raises(ConfigurationError) as exc:
        RazorpayGateway.from_config(RazorpaySettings(key_id="", key_secret="", webhook_secret=""))
    assert "RAZORPAY_KEY_ID" in exc.value.message


def test_create_order_posts_minor_units(gateway, http):
    http.post.return_value = make_response(
        200,
        {"id": "order_RZP1", "amount": 600000, "currency": "INR", "receipt": "rcpt_1", "status": "created"},
    )
    order = gateway.create_order(amount=600000, currency="INR", receipt="rcpt_1", notes={"order_id": "1001"})

    assert order.id == "order_RZP1"
    assert order.amount == 600000
    args, kwargs = http.post.call_args
    assert args[0] == "https://api.razorpay.com/v1/orders"
    assert kwargs["json"]["amount"] == 600000
    assert kwargs["json"]["notes"] == {"order_id": "1001"}
    assert kwargs["auth"] == (KEY_ID, KEY_SECRET)


@pytest.mark.parametrize("amount", [2000.5, "600000", 0, -5, True])
def test_create_order_rejects_non_integer_or_non_positive_amounts(gateway, http, amount):
    with pytest.raises(ValueError):
        gateway.create_order(amount=amount, currency="INR", receipt="rcpt_1")
    http.post.assert_not_called()


def test_timeout_is_transient(gateway, http):
    http.post.side_effect = requests.exceptions.Timeout()
    with pytest.raises(TransientRemoteError):
        gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")


def test_auth_failure_is_configuration_error(gateway, http):
    http.post.return_value = make_response(401, {"error": {"description": "Authentication failed"}})
    with pytest.raises(ConfigurationError):
        gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")


def test_server_error_is_transient_and_bad_request_is_rejected(gateway, http):
    http.post.return_value = make_response(503, {})
    with pytest.raises(TransientRemoteError):
        gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")

    http.post.return_value = make_response(400, {"error": {"description": "receipt too long"}})
    with pytest.raises(RemoteRequestError) as exc:
        gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")
    assert "receipt too long" in exc.value.message


def test_refund_posts_to_payment(gateway, http):
    http.post.return_value = make_response(
        200, {"id": "rfnd_1", "payment_id": "pay_1", "amount": 5000, "status": "processed"}
    )
    refund = gateway.refund("pay_1", 5000)
    assert refund.id == "rfnd_1"
    assert http.post.call_args[0][0].endswith("/v1/payments/pay_1/refund")
    assert http.post.call_args[1]["json"]["amount"] == 5000


def test_verify_signature(gateway):
    good = sign("order_RZP1", "pay_1")
    assert gateway.verify_signature("order_RZP1", "pay_1", good) is True
    assert gateway.verify_signature("order_RZP1", "pay_2", good) is False
    assert gateway.verify_signature("order_RZP1", "pay_1", "") is False
    assert gateway.verify_signature("order_RZP1", "pay_1", "नमस्ते") is False


def test_verify_webhook_signature(gateway):
    body = b'{"event":"payment.captured"}'
    assert gateway.verify_webhook_signature(body, sign_webhook(body)) is True
    assert gateway.verify_webhook_signature(body.decode(), sign_webhook(body)) is True
    assert gateway.verify_webhook_signature(body, sign_webhook(body, "other")) is False
    assert gateway.verify_webhook_signature(body, sign_webhook(body, "other"), secret="other") is True


def test_webhook_without_secret_never_verifies(http):
    gateway = RazorpayGateway(KEY_ID, KEY_SECRET, "", http=http)
    body = b"{}"
    assert gateway.verify_webhook_signature(body, sign_webhook(body, WEBHOOK_SECRET)) is False


def _flip_hex(signature, position):
    replacement = "1" if signature[position] == "0" else "0"
    return signature[:position] + replacement + signature[position + 1:]


def test_any_single_character_change_breaks_signature(gateway):
    good = sign("order_RZP1", "pay_1")
    for position in range(len(good)):
        assert gateway.verify_signature("order_RZP1", "pay_1", _flip_hex(good, position)) is False


def test_single_bit_flip_breaks_webhook_signature(gateway):
    body = b'{"event":"payment.captured"}'
    good = bytes.fromhex(sign_webhook(body))
    for byte_index in range(len(good)):
        for bit in range(8):
            mutated = bytearray(good)
            mutated[byte_index] ^= 1 << bit
            assert gateway.verify_webhook_signature(body, mutated.hex()) is False


@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.ChunkedEncodingError(),
        requests.exceptions.TooManyRedirects(),
        requests.exceptions.RequestException("boom"),
    ],
)
def test_any_request_failure_is_transient(gateway, http, error):
    http.post.side_effect = error
    with pytest.raises(TransientRemoteError):
        gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")


def test_non_json_success_body_is_rejected(gateway, http):
    http.post.return_value = make_response(200, json_error=True)
    with pytest.raises(RemoteRequestError):
        gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")


def test_from_config_uses_configured_timeout(http):
    settings = RazorpaySettings(key_id=KEY_ID, key_secret=KEY_SECRET, webhook_secret="", timeout_seconds=7.5)
    gateway = RazorpayGateway.from_config(settings, http=http)
    http.post.return_value = make_response(200, {"id": "order_1", "amount": 100})

    gateway.create_order(amount=100, currency="INR", receipt="rcpt_1")

    assert http.post.call_args[1]["timeout"] == 7.5
