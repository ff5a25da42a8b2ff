# services/payments/errors.py
"""
Errors raised by the payment engine. The HTTP layer maps them to status
codes; nothing in services/ knows about HTTP.
"""


class PaymentError(Exception):
    """Base class; the message is safe to show to the caller."""


class NotFound(PaymentError):
    pass


class InvalidState(PaymentError):
    pass


class AdapterFailure(PaymentError):
    """The provider call failed or answered with something we can't use."""


class InvalidSignature(PaymentError):
    pass


class InvalidPayload(PaymentError):
    pass
