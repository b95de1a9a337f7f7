import time

import pytest
import requests

from backend.errors import ExternalServiceError, ValidationError
from backend.payments import StripeClient, compute_signature, verify_signature

SECRET = "whsec_unit"


def signed_header(payload, timestamp=None, secret=SECRET):
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


def test_valid_signature_passes():
    payload = b'{"id": "evt_1"}'
    verify_signature(payload, signed_header(payload), SECRET)


@pytest.mark.parametrize(
    "header",
    [None, "", "garbage", "t=abc,v1=00", "t=123"],
)
def test_unparseable_signature_headers(header):
    with pytest.raises(ValidationError):
        verify_signature(b"{}", header, SECRET)


def test_tampered_payload_is_rejected():
    header = signed_header(b'{"amount": 1}')
    with pytest.raises(ValidationError):
        verify_signature(b'{"amount": 1000}', header, SECRET)


def test_stale_timestamp_is_rejected():
    payload = b"{}"
    header = signed_header(payload, timestamp=int(time.time()) - 301)
    with pytest.raises(ValidationError):
        verify_signature(payload, header, SECRET)


def test_construct_event_parses_verified_payload():
    client = StripeClient("sk_test", webhook_secret=SECRET)
    payload = b'{"id": "evt_2", "type": "payment_intent.succeeded"}'
    event = client.construct_event(payload, signed_header(payload))
    assert event["type"] == "payment_intent.succeeded"


@pytest.mark.parametrize("payload", [b"[]", b"\"evt\"", b"42"])
def test_construct_event_requires_an_object(payload):
    client = StripeClient("sk_test", webhook_secret=SECRET)
    with pytest.raises(ValidationError):
        client.construct_event(payload, signed_header(payload))


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


def test_create_payment_intent_sends_minor_units_and_idempotency_key(monkeypatch):
    client = StripeClient("sk_test", timeout=3)
    captured = {}

    def fake_request(method, url, data=None, headers=None, timeout=None):
        captured.update(method=method, url=url, data=data, headers=headers, timeout=timeout)
        return FakeResponse(200, {"id": "pi_1", "client_secret": "pi_1_secret"})

    monkeypatch.setattr(client.session, "request", fake_request)

    intent = client.create_payment_intent(12.34, "PKR", {"orderId": "abc"})

    assert intent["id"] == "pi_1"
    assert captured["method"] == "POST"
    assert captured["url"].endswith("/v1/payment_intents")
    assert captured["data"]["amount"] == "1234"
    assert captured["data"]["currency"] == "pkr"
    assert captured["data"]["metadata[orderId]"] == "abc"
    assert captured["headers"]["Idempotency-Key"]
    assert captured["timeout"] == 3


def test_transport_failure_is_retryable(monkeypatch):
    client = StripeClient("sk_test")

    def fake_request(*args, **kwargs):
        raise requests.ConnectionError("boom")

    monkeypatch.setattr(client.session, "request", fake_request)

    with pytest.raises(ExternalServiceError) as excinfo:
        client.retrieve_payment_intent("pi_1")
    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 503


def test_provider_rejection_is_not_retryable(monkeypatch):
    client = StripeClient("sk_test")
    monkeypatch.setattr(
        client.session,
        "request",
        lambda *args, **kwargs: FakeResponse(400, {"error": {"message": "No such intent"}}),
    )

    with pytest.raises(ExternalServiceError) as excinfo:
        client.retrieve_payment_intent("pi_missing")
    assert excinfo.value.retryable is False
    assert "No such intent" not in excinfo.value.message


def test_missing_secret_key_gives_configuration_hint():
    with pytest.raises(ExternalServiceError) as excinfo:
        StripeClient("").create_payment_intent(10, "pkr")
    assert "not configured" in excinfo.value.message
