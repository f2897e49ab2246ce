"""UPayments client tests against a mocked transport."""
from __future__ import annotations

import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from kwapps.app.billing import GatewayError, PaymentSessionStatus, ValidationError
from kwapps.app.billing.catalog import BASIC
from kwapps.app.payments import UPaymentsClient, load_gateway_config, map_provider_status, parse_webhook_payload


def _config(**env):
    values = {
        "UPAYMENTS_API_KEY": "test-key",
        "UPAYMENTS_WEBHOOK_SECRET": "whsec_test",
        "UPAYMENTS_MAX_ATTEMPTS": "3",
        "UPAYMENTS_BACKOFF_SECONDS": "0.5",
        "APP_BASE_URL": "https://kwq8.test",
    }
    values.update(env)
    return load_gateway_config(values)


def _client(handler, **env):
    sleeps = []
    client = UPaymentsClient(_config(**env), transport=httpx.MockTransport(handler), sleep=sleeps.append)
    return client, sleeps


def test_create_session_posts_charge_and_returns_link():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": True, "data": {"link": "https://pay.test/abc", "trackId": "trk_1"}})

    client, _ = _client(handler)
    session = client.create_session("acct-1", BASIC, order_id="ps_1", amount=Decimal("23.000"), idempotency_key="ps_1")

    assert session.provider_session_id == "trk_1"
    assert session.redirect_url == "https://pay.test/abc"
    request = seen[0]
    assert str(request.url) == "https://sandboxapi.upayments.com/api/v1/charge"
    assert request.headers["Authorization"] == "Bearer test-key"
    assert request.headers["Idempotency-Key"] == "ps_1"
    body = json.loads(request.content)
    assert body["order"]["id"] == "ps_1"
    assert body["order"]["amount"] == "23.000"
    assert body["notificationUrl"] == "https://kwq8.test/api/billing/webhook"


def test_create_session_without_idempotency_key_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"message": "busy"})

    client, sleeps = _client(handler)

    with pytest.raises(GatewayError) as excinfo:
        client.create_session("acct-1", BASIC, order_id="ps_1", amount=Decimal("23"))

    assert len(calls) == 1
    assert sleeps == []
    assert excinfo.value.retryable is True


def test_create_session_with_idempotency_key_retries_server_errors():
    responses = iter(
        [
            httpx.Response(502),
            httpx.Response(200, json={"data": {"link": "https://pay.test/x", "trackId": "trk_9"}}),
        ]
    )
    client, sleeps = _client(lambda request: next(responses))

    session = client.create_session("acct-1", BASIC, order_id="ps_1", amount=Decimal("23"), idempotency_key="ps_1")

    assert session.provider_session_id == "trk_9"
    assert sleeps == [0.5]


def test_status_lookup_retries_transport_errors_with_backoff():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"data": {"transaction": {"result": "CAPTURED"}}})

    client, sleeps = _client(handler)

    assert client.get_session_status("trk_1") == PaymentSessionStatus.SUCCEEDED
    assert str(attempts[0].url).endswith("/get-payment-status/trk_1")
    assert sleeps == [0.5, 1.0]


def test_status_lookup_gives_up_after_max_attempts():
    client, sleeps = _client(lambda request: httpx.Response(500), UPAYMENTS_MAX_ATTEMPTS="2")

    with pytest.raises(GatewayError) as excinfo:
        client.get_session_status("trk_1")

    assert excinfo.value.provider_status == 500
    assert len(sleeps) == 1


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"message": "Invalid API key"})

    client, _ = _client(handler)

    with pytest.raises(GatewayError) as excinfo:
        client.get_session_status("trk_1")

    assert len(calls) == 1
    assert "Invalid API key" in excinfo.value.message
    assert excinfo.value.payload == {"error": "Payment provider unavailable", "code": "gateway_error"}


def test_missing_link_in_response_is_a_gateway_error():
    client, _ = _client(lambda request: httpx.Response(200, json={"data": {}}))

    with pytest.raises(GatewayError):
        client.create_session("acct-1", BASIC, order_id="ps_1", amount=Decimal("23"))


def test_create_refund_is_idempotent_and_retried():
    seen = []

    def handler(request):
        seen.append(request)
        if len(seen) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"status": True, "data": {"refundId": "rf_1"}})

    client, sleeps = _client(handler)
    refund_id = client.create_refund("ps_1", amount=Decimal("23.000"), reference="refund_ps_1")

    assert refund_id == "rf_1"
    assert len(seen) == 2 and sleeps == [0.5]
    assert str(seen[-1].url) == "https://sandboxapi.upayments.com/api/v1/create-refund"
    assert seen[-1].headers["Idempotency-Key"] == "refund_ps_1"
    body = json.loads(seen[-1].content)
    assert body["orderId"] == "ps_1"
    assert body["totalPrice"] == "23.000"


def test_refund_without_id_in_response_is_a_gateway_error():
    client, _ = _client(lambda request: httpx.Response(200, json={"status": True, "data": {}}))

    with pytest.raises(GatewayError):
        client.create_refund("ps_1", amount=Decimal("23"), reference="refund_ps_1")


def test_webhook_signature_verification():
    client, _ = _client(lambda request: httpx.Response(200))
    payload = b'{"order_id":"ps_1","result":"CAPTURED"}'
    signature = hmac.new(b"whsec_test", payload, hashlib.sha256).hexdigest()

    assert client.verify_webhook_signature(payload, signature) is True
    assert client.verify_webhook_signature(payload, signature.upper()) is True
    assert client.verify_webhook_signature(payload + b" ", signature) is False
    assert client.verify_webhook_signature(payload, "") is False


def test_signature_check_fails_closed_without_secret():
    client, _ = _client(lambda request: httpx.Response(200), UPAYMENTS_WEBHOOK_SECRET="")
    payload = b"{}"
    signature = hmac.new(b"", payload, hashlib.sha256).hexdigest()

    assert client.verify_webhook_signature(payload, signature) is False


@pytest.mark.parametrize("signature", ["café", "١" * 64, "é" * 64])
def test_non_ascii_signature_is_rejected_not_raised(signature):
    client, _ = _client(lambda request: httpx.Response(200))

    assert client.verify_webhook_signature(b'{"order_id":"ps_1"}', signature) is False


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("CAPTURED", PaymentSessionStatus.SUCCEEDED),
        ("NOT CAPTURED", PaymentSessionStatus.FAILED),
        ("CANCELED", PaymentSessionStatus.FAILED),
        ("declined", PaymentSessionStatus.FAILED),
        ("INITIATED", PaymentSessionStatus.PENDING),
        (None, PaymentSessionStatus.PENDING),
    ],
)
def test_map_provider_status(value, expected):
    assert map_provider_status(value) == expected


def test_parse_webhook_payload_normalizes_fields():
    notification = parse_webhook_payload(
        {
            "order_id": "ps_1",
            "track_id": "trk_1",
            "status": "success",
            "transaction_id": "txn_1",
            "amount": "23.000",
            "currency": "KWD",
            "payment_method": "knet",
        }
    )

    assert notification.status == PaymentSessionStatus.SUCCEEDED
    assert notification.provider_session_id == "trk_1"
    assert notification.amount == Decimal("23.000")
    assert notification.payment_method == "knet"


@pytest.mark.parametrize(
    "payload",
    [
        {"status": "success"},
        {"order_id": "ps_1"},
        {"order_id": "ps_1", "status": "success", "amount": "lots"},
        ["not", "a", "mapping"],
    ],
)
def test_parse_webhook_payload_rejects_malformed_bodies(payload):
    with pytest.raises(ValidationError):
        parse_webhook_payload(payload)
