# services/payments/base.py
"""
Abstract interface + simple event model for payments.
Adapters must implement PaymentProvider.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, Mapping, Protocol, Union

IntentStatus = str     # 'requires_action' | 'processing' | 'succeeded'
RefundStatus = str     # 'pending' | 'refunded'

Headers = Mapping[str, str]
RawBody = Union[bytes, str]


@dataclass
class PaymentIntentResult:
    provider_id: str              # provider's intent/charge id
    status: IntentStatus
    client_secret: Optional[str]  # handed to the client-side confirmation UI
    raw: Dict[str, Any]


@dataclass
class RefundResult:
    provider_id: str
    status: RefundStatus
    raw: Dict[str, Any]


@dataclass
class ProviderEvent:
    id: str                       # provider event id; our idempotency key
    type: str                     # e.g. 'payment_intent.succeeded'
    provider: str                 # 'simulated' | 'stripe'
    raw: Dict[str, Any] = field(default_factory=dict)
    reservation_id: Optional[str] = None
    transaction_id: Optional[str] = None
    external_reference: Optional[str] = None
    status: Optional[str] = None  # 'pending' | 'succeeded' | 'refunded'
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class PaymentProvider(Protocol):
    name: str

    def create_payment_intent(self, reservation: dict, rnd: Optional[dict],
                              project: Optional[dict], buyer: Optional[dict]) -> PaymentIntentResult:
        """
        Create a payment intent on the provider.
        Called at most once per checkout attempt; the service never retries.
        """

    def refund_payment(self, transaction: dict, reservation: dict,
                       amount: Decimal, currency: str) -> RefundResult:
        """Refund a captured payment, in full or for `amount`."""

    def verify_webhook(self, raw_body: RawBody, headers: Headers) -> Optional[ProviderEvent]:
        """
        Verify (when the provider signs webhooks) and parse a notification.
        Return None for payloads this provider does not recognise.
        Raise InvalidSignature on a signature mismatch, never return None for it.
        """


def body_text(raw_body: RawBody) -> str:
    if isinstance(raw_body, bytes):
        return raw_body.decode("utf-8")
    return raw_body or ""


def body_bytes(raw_body: RawBody) -> bytes:
    if isinstance(raw_body, bytes):
        return raw_body
    return (raw_body or "").encode("utf-8")


def header(headers: Headers, name: str) -> Optional[str]:
    """Case-insensitive lookup that works for plain dicts and werkzeug Headers."""
    v = headers.get(name)
    if v is not None:
        return v
    lname = name.lower()
    for k, val in headers.items():
        if k.lower() == lname:
            return val
    return None
