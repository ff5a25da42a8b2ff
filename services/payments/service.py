# services/payments/service.py
"""
Payment service for presale rounds.

- initiate_reservation_payment(): reservation -> provider intent -> transaction
- handle_webhook(): verified provider event -> idempotent state change
- run_nightly_reconciliation(): settle every due round (assign or refund)

State only moves forward:
  reservation  pending|waitlisted -> confirmed -> assigned   (or -> refunded)
  transaction  pending -> succeeded -> refunded
'assigned' and 'refunded' reservations and 'refunded' transactions are
terminal; every write that advances state carries an unless_status guard
so the storage layer enforces that, not this module.
"""

from __future__ import annotations
import json
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Optional

from models.presale_store import PresaleStore, new_id
from services.datetimex import now_utc, as_utc, to_iso_z
from services.metrics import RECONCILE_ROUNDS, RECONCILE_RESERVATIONS
from services.payments.base import (
    PaymentProvider, ProviderEvent, Headers, RawBody, body_text,
)
from services.payments.errors import NotFound, InvalidState, InvalidPayload
from services.progress import compute_progress, percent_of, D

logger = logging.getLogger(__name__)

TERMINAL_RESERVATION = ("assigned", "refunded")
# rounds the sweep still has to decide
OPEN_ROUND = ("open", "nearly_full")


@dataclass
class InitiatePaymentResult:
    transaction: dict
    reservation: dict
    client_secret: Optional[str] = None
    next_action: Optional[str] = None


@dataclass
class ReconciliationResult:
    processed_rounds: int = 0
    assignments: int = 0
    refunds: int = 0
    skipped: int = 0

    def to_json(self) -> dict:
        d = asdict(self)
        return {"processedRounds": d["processed_rounds"], "assignments": d["assignments"],
                "refunds": d["refunds"], "skipped": d["skipped"]}


class PaymentService:
    def __init__(self, store: PresaleStore, provider: PaymentProvider,
                 default_currency: str = "USD"):
        self.store = store
        self.driver = provider
        self.default_currency = default_currency

    @property
    def provider(self) -> str:
        return self.driver.name

    # ------------------------------------------------------------------
    # checkout
    # ------------------------------------------------------------------

    def initiate_reservation_payment(self, reservation_id: str) -> InitiatePaymentResult:
        reservation = self.store.get_reservation_by_id(reservation_id)
        if not reservation:
            raise NotFound("Reservation not found")
        if reservation["status"] in TERMINAL_RESERVATION:
            raise InvalidState(
                f'Reservation in status "{reservation["status"]}" cannot be charged.')

        rnd = self.store.get_round_by_id(reservation["round_id"])
        project = self.store.get_project_by_id(
            rnd["project_id"]) if rnd else None
        buyer = self.store.get_user_by_id(reservation["user_id"])
        if buyer is None:
            logger.info("Reservation %s has no buyer record; no receipt email",
                        reservation_id)
        currency = (project or {}).get("currency") or self.default_currency
        waitlisted = reservation["status"] == "waitlisted"

        intent = None
        if not waitlisted:
            # adapter errors propagate; nothing has been written yet
            intent = self.driver.create_payment_intent(
                reservation, rnd, project, buyer)

        succeeded = intent is not None and intent.status == "succeeded"
        transaction = self.store.create_transaction({
            "id": new_id(),
            "reservation_id": reservation["id"],
            "provider": self.driver.name,
            "amount": reservation["amount"],
            "currency": currency,
            "status": "succeeded" if succeeded else "pending",
            "external_id": intent.provider_id if intent else None,
            "metadata": {
                "reservation_id": reservation["id"],
                "round_id": (rnd or {}).get("id"),
                "project_id": (project or {}).get("id"),
            },
            "raw_response": intent.raw if intent else None,
            "client_secret": intent.client_secret if intent else None,
            "payout_at": None,
        })

        if waitlisted:
            next_status = "waitlisted"
        elif succeeded:
            next_status = "confirmed"
        else:
            next_status = "pending"

        updated = self.store.update_reservation(
            reservation["id"], {"status": next_status, "tx_id": transaction["id"]},
            unless_status=TERMINAL_RESERVATION)

        logger.info("Checkout reservation=%s tx=%s provider=%s status=%s",
                    reservation["id"], transaction["id"], self.driver.name, transaction["status"])

        return InitiatePaymentResult(
            transaction=transaction,
            reservation=updated or reservation,
            client_secret=intent.client_secret if intent else None,
            next_action=intent.status if intent and not succeeded else None,
        )

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------

    def handle_webhook(self, raw_body: RawBody, headers: Headers) -> dict:
        verify = getattr(self.driver, "verify_webhook", None)
        event = verify(raw_body, headers) if verify else self._default_webhook_parser(raw_body)
        if not event:
            raise InvalidPayload("Unable to parse webhook payload")

        stored = self._persist_webhook(event)
        if stored["status"] == "processed":
            logger.info("Webhook %s already processed; replay ignored", event.id)
            return stored

        self._apply_webhook_side_effects(event)
        return self.store.update_payment_webhook(
            stored["id"], {"status": "processed", "processed_at": now_utc()}) or stored

    def _default_webhook_parser(self, raw_body: RawBody) -> Optional[ProviderEvent]:
        try:
            parsed = json.loads(body_text(raw_body))
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(parsed, dict):
            return None
        metadata = ((parsed.get("data") or {}).get("object") or {}).get("metadata") or {}
        return ProviderEvent(
            id=parsed.get("id") or uuid.uuid4().hex,
            type=parsed.get("type") or "simulated.event",
            provider=self.driver.name,
            raw=parsed,
            reservation_id=metadata.get("reservationId"),
            transaction_id=metadata.get("transactionId"),
        )

    def _persist_webhook(self, event: ProviderEvent) -> dict:
        return self.store.upsert_payment_webhook({
            "id": event.id,
            "provider": event.provider,
            "event_type": event.type,
            "payload": event.raw,
            "reservation_id": event.reservation_id,
            "transaction_id": event.transaction_id,
            "received_at": now_utc(),
            "status": "pending",
        })

    def _apply_webhook_side_effects(self, event: ProviderEvent) -> None:
        transaction = None
        if event.transaction_id:
            transaction = self.store.get_transaction_by_id(event.transaction_id)
        if not transaction and event.reservation_id:
            transaction = self.store.get_transaction_by_reservation_id(
                event.reservation_id)
        if not transaction:
            logger.info("Webhook %s (%s) matched no transaction",
                        event.id, event.type)
            return

        updates = {
            "raw_response": event.raw,
            "external_id": event.external_reference or transaction.get("external_id"),
        }
        reservation_id = transaction["reservation_id"]

        if event.status == "succeeded" and transaction["status"] != "refunded":
            updates["status"] = "succeeded"
            r = self.store.update_reservation(
                reservation_id, {"status": "confirmed"},
                unless_status=TERMINAL_RESERVATION)
            if r and r["status"] != "confirmed":
                logger.warning("Webhook %s: reservation %s is %s, not re-confirming",
                               event.id, reservation_id, r["status"])

        elif event.status == "refunded":
            updates["status"] = "refunded"
            r = self.store.update_reservation(
                reservation_id, {"status": "refunded"},
                unless_status=("assigned",))
            if r and r["status"] == "assigned":
                logger.warning("Webhook %s: refund for assigned reservation %s",
                               event.id, reservation_id)

        self.store.update_transaction(
            transaction["id"], updates, unless_status=("refunded",))

    # ------------------------------------------------------------------
    # nightly reconciliation
    # ------------------------------------------------------------------

    def run_nightly_reconciliation(self, reference_date: datetime | None = None) -> ReconciliationResult:
        ref = as_utc(reference_date) or now_utc()
        result = ReconciliationResult()
        latest_tx = self._latest_transactions()

        for rnd in self.store.get_rounds():
            if as_utc(rnd["deadline_at"]) > ref:
                continue
            if rnd["status"] not in OPEN_ROUND:
                continue

            reservations = self.store.get_reservations_by_round_id(rnd["id"])
            if not reservations:
                result.skipped += 1
                RECONCILE_ROUNDS.labels(decision="skipped").inc()
                continue

            summary = compute_progress(rnd, reservations)
            goal = D(rnd["goal_value"])
            if rnd["goal_type"] == "reservations":
                meets_goal = D(summary.confirmed_slots) >= goal
            else:
                meets_goal = summary.confirmed_amount >= goal
            meets_partial = summary.percent >= percent_of(rnd["partial_threshold"])
            should_assign = meets_goal if rnd["rule"] == "all_or_nothing" \
                else (meets_goal or meets_partial)
            result.processed_rounds += 1

            if should_assign:
                for res in reservations:
                    result.assignments += self._assign(
                        res, self._transaction_for(latest_tx, res))
                status = "fulfilled" if meets_goal else "closed"
            else:
                for res in reservations:
                    result.refunds += self._refund(
                        res, self._transaction_for(latest_tx, res))
                status = "not_met"

            self.store.update_round(rnd["id"], {"status": status})
            RECONCILE_ROUNDS.labels(decision=status).inc()
            logger.info("Reconciled round %s -> %s (%s%% of %s %s, rule=%s)",
                        rnd["id"], status, summary.percent, rnd["goal_value"],
                        rnd["goal_type"], rnd["rule"])

        logger.info("Reconciliation done: %s", result)
        return result

    def _latest_transactions(self) -> dict:
        """Index transactions by id and by ('res', reservation_id) -> latest."""
        index: dict = {}
        for tx in self.store.get_transactions():  # oldest first
            index[tx["id"]] = tx
            index[("res", tx["reservation_id"])] = tx
        return index

    @staticmethod
    def _transaction_for(index: dict, reservation: dict) -> Optional[dict]:
        return index.get(reservation.get("tx_id")) or index.get(("res", reservation["id"]))

    def _assign(self, reservation: dict, transaction: Optional[dict]) -> int:
        assigned = 0
        if reservation["status"] != "assigned":
            r = self.store.update_reservation(
                reservation["id"], {"status": "assigned"}, unless_status=TERMINAL_RESERVATION)
            if r and r["status"] == "assigned":
                assigned = 1
                RECONCILE_RESERVATIONS.labels(action="assigned").inc()

        if transaction and transaction["status"] not in ("succeeded", "refunded"):
            # captured (or simulated as captured); the assignment path never refunds
            self.store.update_transaction(transaction["id"], {
                "status": "succeeded",
                "metadata": {
                    **(transaction.get("metadata") or {}),
                    "reconciled_at": to_iso_z(now_utc()),
                    "reconciliation_rule": "assignment",
                },
            }, unless_status=("succeeded", "refunded"))
        return assigned

    def _refund(self, reservation: dict, transaction: Optional[dict]) -> int:
        if reservation["status"] == "refunded":
            return 0

        if transaction and transaction["status"] != "refunded":
            amount = Decimal(str(transaction["amount"]))
            refund = self.driver.refund_payment(
                transaction, reservation, amount, transaction["currency"])
            confirmed = refund.status == "refunded"
            changes = {
                "raw_response": refund.raw,
                "metadata": {
                    **(transaction.get("metadata") or {}),
                    "refund_id": refund.provider_id,
                    "refund_status": refund.status,
                    "reconciled_at": to_iso_z(now_utc()),
                    "reconciliation_rule": "refund",
                },
            }
            # an unconfirmed refund is not money returned yet; status stays put
            if confirmed:
                changes["status"] = "refunded"
            self.store.update_transaction(
                transaction["id"], changes, unless_status=("refunded",))
            if not confirmed:
                RECONCILE_RESERVATIONS.labels(action="refund_pending").inc()
                logger.warning("Refund %s for transaction %s not confirmed yet",
                               refund.provider_id, transaction["id"])

        self.store.update_reservation(reservation["id"], {"status": "refunded"},
                                      unless_status=("refunded",))
        RECONCILE_RESERVATIONS.labels(action="refunded").inc()
        return 1
