import json
import time
from decimal import Decimal

import pytest
import requests

from models.base import init_engine_and_session
from models.presale_store import SqlPresaleStore
from models.schema import PaymentWebhook
from services.payments import stripe_provider
from services.payments.errors import AdapterFailure, InvalidSignature, InvalidPayload
from services.payments.service import PaymentService
from services.payments.stripe_provider import (
    StripeProvider, compute_signature, parse_signature_header,
    to_minor_units, from_minor_units,
)
from tests.utils import seed_round, add_paid_reservation

SECRET = "whsec_test"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _provider(**kw):
    kw.setdefault("webhook_secret", SECRET)
    return StripeProvider(api_key="sk_test_123", **kw)


def _signed(body: bytes, secret=SECRET, ts=None, extra_sigs=()):
    ts = str(ts or int(time.time()))
    sig = compute_signature(secret, ts, body)
    parts = [f"t={ts}", *[f"v1={s}" for s in extra_sigs], f"v1={sig}"]
    return {"Stripe-Signature": ",".join(parts), "Content-Type": "application/json"}


def _event_body(event_id="evt_s1", status="succeeded", **metadata):
    return json.dumps({
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_abc", "object": "payment_intent",
                            "status": status, "amount_received": 12345,
                            "currency": "mxn", "metadata": metadata}},
    }).encode("utf-8")


def test_minor_units():
    assert to_minor_units(Decimal("123.45")) == 12345
    assert to_minor_units("0.005") == 1
    assert from_minor_units(12345) == Decimal("123.45")


def test_parse_signature_header_lists_every_v1():
    assert parse_signature_header("t=1,v1=a, v1=b,v0=c") == ("1", ["a", "b"])
    with pytest.raises(InvalidSignature):
        parse_signature_header(None)
    with pytest.raises(InvalidSignature):
        parse_signature_header("v1=abc")


def test_valid_signature_maps_event():
    body = _event_body(reservationId="r1", transactionId="t1")
    event = _provider().verify_webhook(body, _signed(body))

    assert event.id == "evt_s1"
    assert event.provider == "stripe"
    assert event.status == "succeeded"
    assert event.reservation_id == "r1"
    assert event.transaction_id == "t1"
    assert event.external_reference == "pi_abc"
    assert event.amount == Decimal("123.45")
    assert event.currency == "MXN"


def test_any_matching_v1_is_accepted():
    body = _event_body()
    headers = _signed(body, extra_sigs=("deadbeef", "00ff"))
    assert _provider().verify_webhook(body, headers).id == "evt_s1"


def test_header_lookup_is_case_insensitive():
    body = _event_body()
    headers = {"stripe-signature": _signed(body)["Stripe-Signature"]}
    assert _provider().verify_webhook(body, headers) is not None


def test_tampered_body_is_rejected():
    body = _event_body()
    headers = _signed(body)
    tampered = body.replace(b"12345", b"99999")
    with pytest.raises(InvalidSignature):
        _provider().verify_webhook(tampered, headers)


def test_wrong_secret_is_rejected():
    body = _event_body()
    with pytest.raises(InvalidSignature):
        _provider().verify_webhook(body, _signed(body, secret="other"))


def test_missing_header_is_rejected():
    with pytest.raises(InvalidSignature):
        _provider().verify_webhook(_event_body(), {})


def test_stale_timestamp_outside_tolerance():
    body = _event_body()
    headers = _signed(body, ts=int(time.time()) - 3600)
    with pytest.raises(InvalidSignature):
        _provider(tolerance=300).verify_webhook(body, headers)


def test_signed_non_json_is_invalid_payload():
    body = b"definitely not json"
    with pytest.raises(InvalidPayload):
        _provider().verify_webhook(body, _signed(body))


def test_signed_invalid_utf8_is_invalid_payload():
    body = b"\xff\xfe{}"
    with pytest.raises(InvalidPayload):
        _provider().verify_webhook(body, _signed(body))


def test_invalid_utf8_with_bad_signature_is_invalid_signature():
    with pytest.raises(InvalidSignature):
        _provider().verify_webhook(b"\xff\xfe{}", {"Stripe-Signature": "t=1,v1=00"})


def test_signature_covers_exact_bytes():
    body = "{\"id\": \"evt_ñ\"}".encode("utf-8")
    headers = _signed(body)
    assert _provider().verify_webhook(body, headers).id == "evt_ñ"
    with pytest.raises(InvalidSignature):
        _provider().verify_webhook(body.replace(b"\xc3\xb1", b"n"), headers)


def test_event_without_id_is_not_ours():
    body = json.dumps({"type": "ping"}).encode("utf-8")
    assert _provider().verify_webhook(body, _signed(body)) is None


def test_refunded_charge_maps_to_refunded():
    body = json.dumps({
        "id": "evt_ch", "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "object": "charge", "status": "succeeded",
                            "refunded": True, "amount": 500, "currency": "usd",
                            "payment_intent": "pi_1", "metadata": {}}},
    }).encode("utf-8")
    event = _provider().verify_webhook(body, _signed(body))
    assert event.status == "refunded"
    assert event.amount == Decimal("5.00")


def test_bad_signature_is_not_persisted(app, store):
    svc = PaymentService(SqlPresaleStore(), _provider())
    body = _event_body(event_id="evt_forged")

    with pytest.raises(InvalidSignature):
        svc.handle_webhook(body, {"Stripe-Signature": "t=1,v1=00"})

    _, SessionLocal = init_engine_and_session()
    with SessionLocal() as s:
        assert s.get(PaymentWebhook, "evt_forged") is None


def test_signed_event_settles_transaction(app, store):
    _, rnd = seed_round(store)
    res, tx = add_paid_reservation(store, rnd, tx_status="pending",
                                   status="pending", provider="stripe")
    svc = PaymentService(SqlPresaleStore(), _provider())
    body = _event_body(event_id="evt_ok", transactionId=tx["id"])

    stored = svc.handle_webhook(body, _signed(body))

    assert stored["status"] == "processed"
    after = store.get_transaction_by_id(tx["id"])
    assert after["status"] == "succeeded"
    assert after["external_id"] == "pi_abc"
    assert store.get_reservation_by_id(res["id"])["status"] == "confirmed"


def test_create_intent_posts_minor_units(monkeypatch):
    calls = []

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.append((url, data, headers, timeout))
        return FakeResponse(payload={"id": "pi_9", "status": "requires_payment_method",
                                     "client_secret": "pi_9_secret"})

    monkeypatch.setattr(stripe_provider.requests, "post", fake_post)
    p = _provider(account_id="acct_1", timeout=7)
    intent = p.create_payment_intent(
        {"id": "r1", "amount": Decimal("1500.50")}, {"id": "rd1"},
        {"id": "p1", "currency": "MXN"}, {"email": "buyer@example.com"})

    url, data, headers, timeout = calls[0]
    assert url == "https://api.stripe.com/v1/payment_intents"
    assert data["amount"] == "150050"
    assert data["currency"] == "mxn"
    assert data["metadata[reservationId]"] == "r1"
    assert data["receipt_email"] == "buyer@example.com"
    assert headers["Authorization"] == "Bearer sk_test_123"
    assert headers["Stripe-Account"] == "acct_1"
    assert timeout == 7
    assert intent.status == "requires_action"
    assert intent.client_secret == "pi_9_secret"


def test_refund_uses_idempotency_key(monkeypatch):
    calls = []

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.append((url, data, headers))
        return FakeResponse(payload={"id": "re_1", "status": "pending"})

    monkeypatch.setattr(stripe_provider.requests, "post", fake_post)
    refund = _provider().refund_payment(
        {"id": "tx1", "external_id": "pi_1"}, {"id": "r1"}, Decimal("10"), "USD")

    url, data, headers = calls[0]
    assert url.endswith("/refunds")
    assert data["payment_intent"] == "pi_1"
    assert data["amount"] == "1000"
    assert headers["Idempotency-Key"] == "refund_tx1"
    assert refund.status == "pending"


def test_http_error_is_adapter_failure(monkeypatch):
    monkeypatch.setattr(stripe_provider.requests, "post",
                        lambda *a, **k: FakeResponse(402, {"error": {"message": "Your card was declined."}}))
    with pytest.raises(AdapterFailure, match="Your card was declined."):
        _provider().create_payment_intent({"id": "r1", "amount": 1}, None, None, None)


def test_transport_error_is_adapter_failure(monkeypatch):
    def boom(*a, **k):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(stripe_provider.requests, "post", boom)
    with pytest.raises(AdapterFailure):
        _provider().refund_payment({"id": "tx1"}, {"id": "r1"}, 1, "USD")


def test_webhook_route_rejects_undecodable_body(app, client, monkeypatch):
    monkeypatch.setitem(app.extensions, "payments",
                        PaymentService(SqlPresaleStore(), _provider()))
    body = b"\xff\xfe{}"

    r = client.post("/api/payments/stripe/webhook", data=body, headers=_signed(body))

    assert r.status_code == 400
    assert r.get_json() == {"error": "invalid webhook payload"}


def test_webhook_route_rejects_forged_signature(app, client, monkeypatch):
    monkeypatch.setitem(app.extensions, "payments",
                        PaymentService(SqlPresaleStore(), _provider()))
    body = _event_body(event_id="evt_route_forged")

    r = client.post("/api/payments/webhook", data=body,
                    headers=_signed(body, secret="not-the-secret"))

    assert r.status_code == 400
    assert r.get_json() == {"error": "invalid signature"}
