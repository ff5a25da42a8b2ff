# services/payments/stripe_provider.py
"""
Stripe adapter over the plain REST API (form-encoded POSTs via requests).

Configuration is passed in by services/payments/registry.py:
  api_key          STRIPE_SECRET_KEY
  account_id       STRIPE_CONNECT_ACCOUNT_ID  -> Stripe-Account header
  webhook_secret   STRIPE_WEBHOOK_SECRET      -> enables signature checks
  api_base         STRIPE_API_BASE            default https://api.stripe.com/v1
  timeout          STRIPE_TIMEOUT             seconds (default 15)
  tolerance        STRIPE_WEBHOOK_TOLERANCE_SEC  0 disables the timestamp check

Amounts leave this module in minor units (cents) and come back in major units.
"""

from __future__ import annotations
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import requests

from services.payments.base import (
    PaymentProvider, PaymentIntentResult, RefundResult, ProviderEvent,
    Headers, RawBody, body_bytes, header,
)
from services.payments.errors import AdapterFailure, InvalidSignature, InvalidPayload

logger = logging.getLogger(__name__)

STRIPE_API_URL = "https://api.stripe.com/v1"
SIGNATURE_HEADER = "Stripe-Signature"

INTENT_STATUS_MAP = {
    "succeeded": "succeeded",
    "processing": "processing",
    "requires_action": "requires_action",
    "requires_payment_method": "requires_action",
    "requires_confirmation": "requires_action",
}

EVENT_STATUS_MAP = {
    "succeeded": "succeeded",
    "refunded": "refunded",
    "processing": "pending",
}


def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))


def parse_signature_header(value: str | None) -> tuple[str, list[str]]:
    """'t=1700000000,v1=abc,v1=def' -> ('1700000000', ['abc', 'def'])"""
    if not value:
        raise InvalidSignature("missing signature header")
    timestamp = None
    signatures: list[str] = []
    for part in value.split(","):
        key, _, val = part.strip().partition("=")
        if key == "t":
            timestamp = val
        elif key == "v1" and val:
            signatures.append(val)
    if not timestamp or not signatures:
        raise InvalidSignature("malformed signature header")
    return timestamp, signatures


def compute_signature(secret: str, timestamp: str, payload: bytes | str) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    signed = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, api_key: str, account_id: str | None = None,
                 webhook_secret: str | None = None, api_base: str | None = None,
                 timeout: float = 15, tolerance: int = 0,
                 default_currency: str = "USD"):
        if not api_key:
            raise RuntimeError("Stripe api_key not set")
        self.api_key = api_key
        self.account_id = account_id
        self.webhook_secret = webhook_secret
        self.api_base = (api_base or STRIPE_API_URL).rstrip("/")
        self.timeout = timeout
        self.tolerance = tolerance
        self.default_currency = default_currency

    # ---------- HTTP ----------

    def _headers(self) -> dict:
        h = {"Authorization": f"Bearer {self.api_key}"}
        if self.account_id:
            h["Stripe-Account"] = self.account_id
        return h

    def _post(self, path: str, params: Dict[str, Any], idempotency_key: str | None = None) -> dict:
        headers = self._headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            resp = requests.post(f"{self.api_base}{path}", data=params,
                                 headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Stripe %s transport error: %s", path, e)
            raise AdapterFailure(f"Stripe request failed: {e}") from e

        if not resp.ok:
            try:
                message = resp.json().get("error", {}).get("message") or resp.text
            except ValueError:
                message = resp.text
            logger.warning("Stripe %s -> %s: %s", path, resp.status_code, message)
            raise AdapterFailure(f"Stripe request failed: {message}")

        try:
            return resp.json()
        except ValueError as e:
            raise AdapterFailure("Stripe returned a non-JSON response") from e

    # ---------- PaymentProvider ----------

    def create_payment_intent(self, reservation: dict, rnd: Optional[dict],
                              project: Optional[dict], buyer: Optional[dict]) -> PaymentIntentResult:
        currency = ((project or {}).get("currency")
                    or self.default_currency).lower()
        params = {
            "amount": str(to_minor_units(reservation["amount"])),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
            "description": f"Presale reservation {reservation['id']}",
            "metadata[reservationId]": reservation["id"],
        }
        if rnd:
            params["metadata[roundId]"] = rnd["id"]
        if project:
            params["metadata[projectId]"] = project["id"]
        if buyer and buyer.get("email"):
            params["receipt_email"] = buyer["email"]

        intent = self._post("/payment_intents", params)
        if not intent.get("id"):
            raise AdapterFailure("Stripe payment intent has no id")
        return PaymentIntentResult(
            provider_id=intent["id"],
            status=INTENT_STATUS_MAP.get(intent.get("status"), "requires_action"),
            client_secret=intent.get("client_secret"),
            raw=intent,
        )

    def refund_payment(self, transaction: dict, reservation: dict,
                       amount, currency: str) -> RefundResult:
        params = {
            "payment_intent": transaction.get("external_id") or transaction["id"],
            "amount": str(to_minor_units(amount)),
            "metadata[reservationId]": reservation["id"],
            "metadata[transactionId]": transaction["id"],
        }
        # one refund per transaction, even if the sweep is rerun
        refund = self._post("/refunds", params,
                            idempotency_key=f"refund_{transaction['id']}")
        return RefundResult(
            provider_id=refund.get("id") or "",
            status="refunded" if refund.get("status") == "succeeded" else "pending",
            raw=refund,
        )

    def verify_webhook(self, raw_body: RawBody, headers: Headers) -> Optional[ProviderEvent]:
        payload = body_bytes(raw_body)

        # signed over the exact bytes received; decode only once they check out
        if self.webhook_secret:
            self._assert_signature(header(headers, SIGNATURE_HEADER), payload)

        try:
            event = json.loads(payload.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidPayload("invalid webhook payload") from e
        if not isinstance(event, dict) or not event.get("id"):
            return None
        return self._map_event(event)

    # ---------- helpers ----------

    def _assert_signature(self, sig_header: str | None, payload: bytes) -> None:
        timestamp, signatures = parse_signature_header(sig_header)
        expected = compute_signature(self.webhook_secret, timestamp, payload)

        if not any(hmac.compare_digest(expected.encode(), sig.encode("utf-8"))
                   for sig in signatures):
            raise InvalidSignature("invalid signature")

        if self.tolerance:
            try:
                age = abs(time.time() - int(timestamp))
            except ValueError as e:
                raise InvalidSignature("malformed signature timestamp") from e
            if age > self.tolerance:
                raise InvalidSignature("signature timestamp outside tolerance")

    def _map_event(self, event: dict) -> ProviderEvent:
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        amount = obj.get("amount_received")
        if not isinstance(amount, int):
            amount = obj.get("amount")
        currency = obj.get("currency")

        status = EVENT_STATUS_MAP.get(obj.get("status"))
        if obj.get("object") == "charge" and obj.get("refunded") is True:
            status = "refunded"

        return ProviderEvent(
            id=event["id"],
            type=event.get("type") or "unknown",
            provider=self.name,
            raw=event,
            reservation_id=metadata.get("reservationId") or metadata.get("reservation_id"),
            transaction_id=metadata.get("transactionId") or metadata.get("transaction_id"),
            external_reference=obj.get("id") or obj.get(
                "payment_intent") or obj.get("charge"),
            status=status,
            amount=from_minor_units(amount) if isinstance(amount, int) else None,
            currency=currency.upper() if isinstance(currency, str) else None,
        )
