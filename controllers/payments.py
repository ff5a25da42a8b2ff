# controllers/payments.py
from __future__ import annotations
import hmac
import logging
import os

from flask import Blueprint, Response, request, jsonify, current_app, abort

from models.audit_store import audit, verify_chain, list_audit
from services.datetimex import parse_iso_to_utc, to_iso_z
from services.metrics import PAYMENT_INTENTS, WEBHOOK_EVENTS, webhook_event_label
from services.payments.errors import PaymentError, NotFound
from services.payout_report import payouts_csv
from services.progress import compute_progress

payments_bp = Blueprint("payments", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


def _env(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    return v if v is not None else current_app.config.get(key, default)


def _payments():
    return current_app.extensions["payments"]


def _bearer_ok(secret_key: str) -> bool:
    """No secret configured -> open (dev); otherwise require the bearer token."""
    secret = _env(secret_key)
    if not secret:
        return True
    auth = request.headers.get("Authorization", "")
    token = auth[7:] if auth.startswith("Bearer ") else ""
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


# ----- buyer starts a checkout for a reservation -----

@payments_bp.post("/checkout")
def checkout():
    payload = request.get_json(force=True, silent=True) or {}
    reservation_id = payload.get("reservationId")
    if not reservation_id:
        return jsonify({"error": "reservationId is required"}), 400

    svc = _payments()
    try:
        result = svc.initiate_reservation_payment(str(reservation_id))
    except NotFound as e:
        PAYMENT_INTENTS.labels(provider=svc.provider, outcome="not_found").inc()
        return jsonify({"error": str(e)}), 404
    except PaymentError as e:
        PAYMENT_INTENTS.labels(provider=svc.provider, outcome="rejected").inc()
        audit("payment.intent", target_type="reservation", target_id=str(reservation_id),
              outcome="failure", status=400, extra={"reason": str(e), "provider": svc.provider})
        return jsonify({"error": str(e)}), 400

    tx = result.transaction
    PAYMENT_INTENTS.labels(provider=svc.provider, outcome=tx["status"]).inc()
    audit("payment.intent", target_type="reservation", target_id=tx["reservation_id"],
          outcome="success", status=200,
          extra={"transaction_id": tx["id"], "provider": svc.provider,
                 "amount": float(tx["amount"]), "currency": tx["currency"]})

    return jsonify({
        "transactionId": tx["id"],
        "reservationStatus": result.reservation["status"],
        "clientSecret": result.client_secret,
        "provider": svc.provider,
        "nextAction": result.next_action,
    })


# ----- provider webhook (no auth, signature-verified) -----

@payments_bp.post("/payments/webhook")
@payments_bp.post("/payments/<provider>/webhook")
def webhook(provider: str | None = None):
    """
    The adapter verifies the signature over the exact bytes we received,
    so the body is read raw before anything parses it.
    """
    svc = _payments()
    if provider and provider != svc.provider:
        abort(404)

    raw = request.get_data(cache=False, as_text=False)
    headers = {k: v for k, v in request.headers.items()}
    try:
        stored = svc.handle_webhook(raw, headers)
    except PaymentError as e:
        logger.warning("Rejected %s webhook: %s", svc.provider, e)
        WEBHOOK_EVENTS.labels(provider=svc.provider, event="unknown", outcome="rejected").inc()
        audit("payment.webhook", target_type="provider", target_id=svc.provider,
              outcome="failure", status=400, extra={"reason": str(e)})
        return jsonify({"error": str(e)}), 400

    WEBHOOK_EVENTS.labels(provider=svc.provider, event=webhook_event_label(
        stored["event_type"]), outcome="ok").inc()
    audit("payment.webhook", target_type="event", target_id=stored["id"],
          outcome="success", status=200,
          extra={"event_type": stored["event_type"], "provider": svc.provider,
                 "transaction_id": stored.get("transaction_id")})
    return jsonify({"id": stored["id"], "status": stored["status"]})


# ----- scheduled reconciliation -----

@payments_bp.post("/cron/reconcile")
def reconcile():
    if not _bearer_ok("CRON_SECRET"):
        return jsonify({"error": "unauthorized"}), 401

    at = request.args.get("at")
    reference = parse_iso_to_utc(at) if at else None
    if at and reference is None:
        return jsonify({"error": f"invalid 'at' timestamp: {at}"}), 400

    try:
        result = _payments().run_nightly_reconciliation(reference)
    except Exception as e:
        current_app.logger.exception("Reconciliation failed")
        audit("payment.reconcile", outcome="failure", status=500,
              extra={"reason": str(e)})
        return jsonify({"error": str(e) or "Error during reconciliation"}), 500

    body = result.to_json()
    audit("payment.reconcile", outcome="success", status=200, extra={"totals": body})
    return jsonify(body)


# ----- read-only views -----

@payments_bp.get("/rounds/<round_id>/progress")
def round_progress(round_id: str):
    store = _payments().store
    rnd = store.get_round_by_id(round_id)
    if not rnd:
        return jsonify({"error": "Round not found"}), 404
    summary = compute_progress(rnd, store.get_reservations_by_round_id(round_id))
    return jsonify({"roundId": round_id, "status": rnd["status"], **summary.to_json()})


@payments_bp.get("/admin/audit")
def audit_log():
    if not _bearer_ok("ADMIN_API_TOKEN"):
        return jsonify({"error": "unauthorized"}), 401
    limit = request.args.get("limit", default=500, type=int)
    rows = list_audit(limit=limit, action=request.args.get("action") or None)
    for r in rows:
        r["ts"] = to_iso_z(r["ts"])
    return jsonify(rows)


@payments_bp.get("/admin/audit/verify")
def audit_verify():
    if not _bearer_ok("ADMIN_API_TOKEN"):
        return jsonify({"error": "unauthorized"}), 401
    result = verify_chain(limit=request.args.get("limit", type=int))
    audit("audit.verify_chain", target_type="scope", target_id="admin",
          outcome="success" if result["ok"] else "failure", status=200,
          extra={"checked": result["checked"], "first_bad_id": result["first_bad_id"],
                 "reason": result["reason"]})
    return jsonify(result), 200 if result["ok"] else 409


@payments_bp.get("/admin/payouts/report")
def payouts_report():
    if not _bearer_ok("ADMIN_API_TOKEN"):
        return jsonify({"error": "unauthorized"}), 401
    fname, csv_text = payouts_csv(_payments().store)
    audit("export.payouts_csv", target_type="scope", target_id="all",
          outcome="success", status=200, extra={"count": csv_text.count("\n") - 1})
    return Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={fname}"},
    )
