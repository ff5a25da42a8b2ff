# services/metrics.py
from __future__ import annotations
import os

os.environ.setdefault("PROMETHEUS_DISABLE_CREATED_SERIES", "1")

from prometheus_client import (  # noqa: E402
    Counter, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST,
)

# Use a DEDICATED registry so only our app metrics show up
APP_REGISTRY = CollectorRegistry(auto_describe=True)

# --- Generic HTTP metrics (bind to our registry) ---
REQUEST_COUNT = Counter(
    "http_requests_total", "HTTP requests total",
    ["method", "endpoint", "status"], registry=APP_REGISTRY
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds", "Request latency (seconds)",
    ["endpoint", "method"], registry=APP_REGISTRY,
)

# --- Payments ---
PAYMENT_INTENTS = Counter(
    "payments_intents_total", "Checkout attempts", ["provider", "outcome"], registry=APP_REGISTRY
)
WEBHOOK_EVENTS = Counter(
    "payments_webhook_events_total", "Webhook events", ["provider", "event", "outcome"], registry=APP_REGISTRY
)

# --- Reconciliation sweep ---
RECONCILE_ROUNDS = Counter(
    "reconcile_rounds_total", "Due rounds by decision", ["decision"], registry=APP_REGISTRY
)
RECONCILE_RESERVATIONS = Counter(
    "reconcile_reservations_total", "Reservations touched by the sweep", ["action"], registry=APP_REGISTRY
)


# Event types come from the caller; anything else is counted as "other"
# so the label set stays bounded.
WEBHOOK_EVENT_TYPES = frozenset({
    "payment_intent.succeeded", "payment_intent.processing",
    "payment_intent.payment_failed", "payment_intent.requires_action",
    "charge.succeeded", "charge.refunded",
    "refund.created", "refund.updated",
    "simulated.event",
})


def webhook_event_label(event_type: str | None) -> str:
    return event_type if event_type in WEBHOOK_EVENT_TYPES else "other"


def init_app(app):
    @app.get("/metrics")
    def metrics():
        data = generate_latest(APP_REGISTRY)
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    # --- pre-warm labeled series so dashboards don't say "No data" ---
    for decision in ("fulfilled", "closed", "not_met", "skipped"):
        RECONCILE_ROUNDS.labels(decision=decision).inc(0)
    for action in ("assigned", "refunded", "refund_pending"):
        RECONCILE_RESERVATIONS.labels(action=action).inc(0)
