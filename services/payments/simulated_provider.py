# services/payments/simulated_provider.py
"""
A provider that *simulates* payments. No network, no signatures.

Useful to run the whole presale flow (checkout, webhooks, reconciliation)
without touching a real gateway. It speaks the same status contract as the
real adapters, so callers can only tell it apart by behaviour:
- create_payment_intent(...) succeeds immediately ('processing' for a
  waitlisted reservation).
- refund_payment(...) is always confirmed.
- verify_webhook(...) accepts any JSON event and returns None otherwise.
"""

from __future__ import annotations
import json
import uuid
from decimal import Decimal
from typing import Optional

from services.payments.base import (
    PaymentProvider, PaymentIntentResult, RefundResult, ProviderEvent,
    Headers, RawBody, body_text,
)


def _uid() -> str:
    return uuid.uuid4().hex


class SimulatedProvider(PaymentProvider):
    name = "simulated"

    def __init__(self, default_currency: str = "USD"):
        self.default_currency = default_currency

    def create_payment_intent(self, reservation: dict, rnd: Optional[dict],
                              project: Optional[dict], buyer: Optional[dict]) -> PaymentIntentResult:
        provider_id = f"pi_{_uid()}"
        status = "processing" if reservation.get(
            "status") == "waitlisted" else "succeeded"
        return PaymentIntentResult(
            provider_id=provider_id,
            status=status,
            client_secret=f"cs_{_uid()}",
            raw={
                "id": provider_id,
                "object": "payment_intent",
                "reservation_id": reservation["id"],
                "amount": float(reservation["amount"]),
                "currency": (project or {}).get("currency") or self.default_currency,
                "status": status,
            },
        )

    def refund_payment(self, transaction: dict, reservation: dict,
                       amount: Decimal, currency: str) -> RefundResult:
        provider_id = f"re_{_uid()}"
        return RefundResult(provider_id=provider_id, status="refunded",
                            raw={"id": provider_id, "object": "refund",
                                 "amount": float(amount), "currency": currency})

    def verify_webhook(self, raw_body: RawBody, headers: Headers) -> Optional[ProviderEvent]:
        try:
            event = json.loads(body_text(raw_body))
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(event, dict):
            return None

        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        amount = obj.get("amount")
        return ProviderEvent(
            id=event.get("id") or _uid(),
            type=event.get("type") or "simulated.event",
            provider=self.name,
            raw=event,
            reservation_id=metadata.get("reservationId") or metadata.get("reservation_id"),
            transaction_id=metadata.get("transactionId") or metadata.get("transaction_id"),
            status=obj.get("status"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=obj.get("currency"),
        )
