# services/payments/registry.py
import logging
import os
from flask import current_app, has_app_context

from services.payments.simulated_provider import SimulatedProvider
from services.payments.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)


def _cfg(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    if v is not None:
        return v
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def get_provider():
    """Pick the payment adapter once, from configuration."""
    name = (_cfg("PAYMENTS_DRIVER") or "simulated").lower()
    currency = (_cfg("DEFAULT_CURRENCY") or "USD").upper()

    if name in ("simulated", "mock"):
        return SimulatedProvider(default_currency=currency)
    if name == "stripe":
        api_key = _cfg("STRIPE_SECRET_KEY")
        if not api_key:
            logger.warning(
                "STRIPE_SECRET_KEY missing, falling back to simulated payments")
            return SimulatedProvider(default_currency=currency)
        return StripeProvider(
            api_key=api_key,
            account_id=_cfg("STRIPE_CONNECT_ACCOUNT_ID"),
            webhook_secret=_cfg("STRIPE_WEBHOOK_SECRET"),
            api_base=_cfg("STRIPE_API_BASE"),
            timeout=float(_cfg("STRIPE_TIMEOUT", "15")),
            tolerance=int(_cfg("STRIPE_WEBHOOK_TOLERANCE_SEC", "0")),
            default_currency=currency,
        )
    raise RuntimeError(f"Unknown PAYMENTS_DRIVER: {name}")
