# models/presale_store.py (Postgres / SQLAlchemy)
"""
Data access for the presale payment engine.

PresaleStore is the interface PaymentService consumes; SqlPresaleStore is
the SQLAlchemy implementation. Rows cross the boundary as plain dicts.
Every update_* returns the updated row, or None when the id does not exist.
"""

from __future__ import annotations
import uuid
from decimal import Decimal
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.dialects import postgresql, sqlite

from models.base import session_scope
from models.schema import (
    User, Project, Round, Reservation, Transaction, PaymentWebhook
)
from services.datetimex import now_utc, as_utc


USER_COLS = ("id", "name", "email", "role", "created_at")
PROJECT_COLS = ("id", "slug", "name", "currency", "developer_id", "created_at")
ROUND_COLS = ("id", "project_id", "goal_type", "goal_value", "deposit_amount",
              "slots_per_person", "deadline_at", "rule", "partial_threshold",
              "status", "group_slots", "created_at")
RESERVATION_COLS = ("id", "round_id", "user_id", "slots", "amount", "status",
                    "tx_id", "created_at")
TRANSACTION_COLS = ("id", "reservation_id", "provider", "amount", "currency",
                    "status", "external_id", "raw_response", "client_secret",
                    "payout_at", "created_at", "updated_at")
WEBHOOK_COLS = ("id", "provider", "event_type", "payload", "reservation_id",
                "transaction_id", "received_at", "processed_at", "status")

# fields a webhook redelivery may overwrite; status/processed_at stay put
WEBHOOK_METADATA_COLS = ("provider", "event_type", "payload",
                         "reservation_id", "transaction_id")


def new_id() -> str:
    return uuid.uuid4().hex


def _as_dict(obj, cols: Iterable[str]) -> dict:
    out = {}
    for c in cols:
        v = getattr(obj, c)
        if c.endswith("_at"):
            v = as_utc(v)
        out[c] = v
    return out


def _user(u: User) -> dict:
    return _as_dict(u, USER_COLS)


def _project(p: Project) -> dict:
    return _as_dict(p, PROJECT_COLS)


def _round(r: Round) -> dict:
    return _as_dict(r, ROUND_COLS)


def _reservation(r: Reservation) -> dict:
    return _as_dict(r, RESERVATION_COLS)


def _transaction(t: Transaction) -> dict:
    d = _as_dict(t, TRANSACTION_COLS)
    d["metadata"] = dict(t.metadata_ or {})
    return d


def _webhook(w: PaymentWebhook) -> dict:
    return _as_dict(w, WEBHOOK_COLS)


class PresaleStore(Protocol):
    """Storage operations the payment engine depends on."""

    def get_reservation_by_id(self, reservation_id: str) -> Optional[dict]: ...
    def get_round_by_id(self, round_id: str) -> Optional[dict]: ...
    def get_project_by_id(self, project_id: str) -> Optional[dict]: ...
    def get_user_by_id(self, user_id: str) -> Optional[dict]: ...
    def get_reservations_by_round_id(self, round_id: str) -> list[dict]: ...
    def get_rounds(self) -> list[dict]: ...
    def get_transactions(self) -> list[dict]: ...
    def get_transaction_by_id(self, transaction_id: str) -> Optional[dict]: ...
    def get_transaction_by_reservation_id(
        self, reservation_id: str) -> Optional[dict]: ...

    def create_transaction(self, tx: dict) -> dict: ...

    def update_transaction(self, transaction_id: str, changes: dict,
                           unless_status: tuple[str, ...] = ()) -> Optional[dict]: ...

    def update_reservation(self, reservation_id: str, changes: dict,
                           unless_status: tuple[str, ...] = ()) -> Optional[dict]: ...

    def update_round(self, round_id: str,
                     changes: dict) -> Optional[dict]: ...

    def get_payment_webhook_by_id(self, event_id: str) -> Optional[dict]: ...
    def create_payment_webhook(self, record: dict) -> dict: ...

    def update_payment_webhook(self, event_id: str,
                               changes: dict) -> Optional[dict]: ...

    def upsert_payment_webhook(self, record: dict) -> dict: ...


class SqlPresaleStore:
    """PresaleStore backed by the SQLAlchemy models in models.schema."""

    # ---------- reads ----------

    def get_reservation_by_id(self, reservation_id: str) -> Optional[dict]:
        if not reservation_id:
            return None
        with session_scope() as s:
            r = s.get(Reservation, reservation_id)
            return _reservation(r) if r else None

    def get_round_by_id(self, round_id: str) -> Optional[dict]:
        if not round_id:
            return None
        with session_scope() as s:
            r = s.get(Round, round_id)
            return _round(r) if r else None

    def get_project_by_id(self, project_id: str) -> Optional[dict]:
        if not project_id:
            return None
        with session_scope() as s:
            p = s.get(Project, project_id)
            return _project(p) if p else None

    def get_user_by_id(self, user_id: str) -> Optional[dict]:
        if not user_id:
            return None
        with session_scope() as s:
            u = s.get(User, user_id)
            return _user(u) if u else None

    def get_reservations_by_round_id(self, round_id: str) -> list[dict]:
        with session_scope() as s:
            rows = s.execute(
                select(Reservation)
                .where(Reservation.round_id == round_id)
                .order_by(Reservation.created_at, Reservation.id)
            ).scalars().all()
            return [_reservation(r) for r in rows]

    def get_reservations(self) -> list[dict]:
        with session_scope() as s:
            rows = s.execute(select(Reservation).order_by(
                Reservation.created_at)).scalars().all()
            return [_reservation(r) for r in rows]

    def get_rounds(self) -> list[dict]:
        with session_scope() as s:
            rows = s.execute(select(Round).order_by(
                Round.deadline_at, Round.id)).scalars().all()
            return [_round(r) for r in rows]

    def get_projects(self) -> list[dict]:
        with session_scope() as s:
            rows = s.execute(select(Project).order_by(
                Project.created_at)).scalars().all()
            return [_project(p) for p in rows]

    def get_transactions(self) -> list[dict]:
        with session_scope() as s:
            rows = s.execute(select(Transaction).order_by(
                Transaction.created_at, Transaction.id)).scalars().all()
            return [_transaction(t) for t in rows]

    def get_transaction_by_id(self, transaction_id: str) -> Optional[dict]:
        if not transaction_id:
            return None
        with session_scope() as s:
            t = s.get(Transaction, transaction_id)
            return _transaction(t) if t else None

    def get_transaction_by_reservation_id(self, reservation_id: str) -> Optional[dict]:
        if not reservation_id:
            return None
        with session_scope() as s:
            t = s.execute(
                select(Transaction)
                .where(Transaction.reservation_id == reservation_id)
                .order_by(Transaction.created_at.desc())
                .limit(1)
            ).scalars().first()
            return _transaction(t) if t else None

    # ---------- writes ----------

    def create_transaction(self, tx: dict) -> dict:
        now = now_utc()
        with session_scope() as s:
            t = Transaction(
                id=tx.get("id") or new_id(),
                reservation_id=tx["reservation_id"],
                provider=tx["provider"],
                amount=Decimal(str(tx["amount"])),
                currency=tx["currency"],
                status=tx.get("status") or "pending",
                external_id=tx.get("external_id"),
                metadata_=tx.get("metadata") or {},
                raw_response=tx.get("raw_response"),
                client_secret=tx.get("client_secret"),
                payout_at=tx.get("payout_at"),
                created_at=tx.get("created_at") or now,
                updated_at=now,
            )
            s.add(t)
            s.flush()
            return _transaction(t)

    def update_transaction(self, transaction_id: str, changes: dict,
                           unless_status: tuple[str, ...] = ()) -> Optional[dict]:
        with session_scope() as s:
            t = s.get(Transaction, transaction_id, with_for_update=True)
            if not t:
                return None
            if t.status in unless_status:
                return _transaction(t)
            for k, v in changes.items():
                setattr(t, "metadata_" if k == "metadata" else k, v)
            t.updated_at = now_utc()
            s.flush()
            return _transaction(t)

    def update_reservation(self, reservation_id: str, changes: dict,
                           unless_status: tuple[str, ...] = ()) -> Optional[dict]:
        with session_scope() as s:
            r = s.get(Reservation, reservation_id, with_for_update=True)
            if not r:
                return None
            if r.status in unless_status:
                return _reservation(r)
            for k, v in changes.items():
                setattr(r, k, v)
            s.flush()
            return _reservation(r)

    def update_round(self, round_id: str, changes: dict) -> Optional[dict]:
        with session_scope() as s:
            r = s.get(Round, round_id, with_for_update=True)
            if not r:
                return None
            for k, v in changes.items():
                setattr(r, k, v)
            s.flush()
            return _round(r)

    # ---------- webhooks ----------

    def get_payment_webhook_by_id(self, event_id: str) -> Optional[dict]:
        with session_scope() as s:
            w = s.get(PaymentWebhook, event_id)
            return _webhook(w) if w else None

    def create_payment_webhook(self, record: dict) -> dict:
        with session_scope() as s:
            w = PaymentWebhook(**{c: record.get(c) for c in WEBHOOK_COLS})
            w.received_at = w.received_at or now_utc()
            w.status = w.status or "pending"
            s.add(w)
            s.flush()
            return _webhook(w)

    def update_payment_webhook(self, event_id: str, changes: dict) -> Optional[dict]:
        with session_scope() as s:
            w = s.get(PaymentWebhook, event_id, with_for_update=True)
            if not w:
                return None
            for k, v in changes.items():
                setattr(w, k, v)
            s.flush()
            return _webhook(w)

    def upsert_payment_webhook(self, record: dict) -> dict:
        """
        Insert the event, or overwrite its metadata if the id already exists.
        One statement on Postgres/SQLite so concurrent deliveries cannot race.
        """
        values = {c: record.get(c) for c in WEBHOOK_COLS}
        values["received_at"] = values["received_at"] or now_utc()
        values["status"] = values["status"] or "pending"
        updates = {c: values[c] for c in WEBHOOK_METADATA_COLS}

        with session_scope() as s:
            dialect = s.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                ins = (postgresql.insert if dialect ==
                       "postgresql" else sqlite.insert)(PaymentWebhook).values(**values)
                s.execute(ins.on_conflict_do_update(
                    index_elements=[PaymentWebhook.id], set_=updates))
            else:
                try:
                    with s.begin_nested():
                        s.add(PaymentWebhook(**values))
                except IntegrityError:
                    w = s.get(PaymentWebhook, values["id"])
                    for k, v in updates.items():
                        setattr(w, k, v)
            s.flush()
            s.expire_all()
            return _webhook(s.get(PaymentWebhook, values["id"]))

    # ---------- seeding (project setup lives outside the engine) ----------

    def create_user(self, name: str, email: str | None = None,
                    role: str = "buyer", id: str | None = None) -> dict:
        with session_scope() as s:
            u = User(id=id or new_id(), name=name, email=email,
                     role=role, created_at=now_utc())
            s.add(u)
            s.flush()
            return _user(u)

    def create_project(self, slug: str, name: str, currency: str = "USD",
                       developer_id: str | None = None, id: str | None = None) -> dict:
        with session_scope() as s:
            p = Project(id=id or new_id(), slug=slug, name=name,
                        currency=currency, developer_id=developer_id,
                        created_at=now_utc())
            s.add(p)
            s.flush()
            return _project(p)

    def create_round(self, project_id: str, **fields: Any) -> dict:
        with session_scope() as s:
            r = Round(
                id=fields.pop("id", None) or new_id(),
                project_id=project_id,
                goal_type=fields.pop("goal_type", "reservations"),
                goal_value=Decimal(str(fields.pop("goal_value"))),
                deposit_amount=Decimal(str(fields.pop("deposit_amount"))),
                slots_per_person=fields.pop("slots_per_person", 1),
                deadline_at=fields.pop("deadline_at"),
                rule=fields.pop("rule", "all_or_nothing"),
                partial_threshold=Decimal(
                    str(fields.pop("partial_threshold", 0))),
                status=fields.pop("status", "open"),
                group_slots=fields.pop("group_slots", None),
                created_at=fields.pop("created_at", None) or now_utc(),
            )
            if fields:
                raise TypeError(f"unknown round fields: {sorted(fields)}")
            s.add(r)
            s.flush()
            return _round(r)

    def create_reservation(self, round_id: str, user_id: str, slots: int,
                           status: str = "pending", amount=None,
                           id: str | None = None) -> dict:
        with session_scope() as s:
            rnd = s.get(Round, round_id)
            if not rnd:
                raise ValueError("Round not found")
            if slots < 1 or slots > rnd.slots_per_person:
                raise ValueError(
                    f"slots must be between 1 and {rnd.slots_per_person}")
            if amount is None:
                amount = Decimal(slots) * Decimal(rnd.deposit_amount)
            r = Reservation(id=id or new_id(), round_id=round_id,
                            user_id=user_id, slots=slots,
                            amount=Decimal(str(amount)), status=status,
                            created_at=now_utc())
            s.add(r)
            s.flush()
            return _reservation(r)
