# models/schema.py
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import (
    JSON, String, Text, Integer, Numeric, DateTime, ForeignKey, CheckConstraint, Index
)
from models.base import Base


# --- PRESALE CATALOG (written by project setup; read-only for payments)

class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String)
    role: Mapped[str] = mapped_column(
        String, nullable=False, default="buyer")  # 'buyer'|'developer'|'admin'
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)


class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD")
    developer_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("currency in ('USD','MXN')",
                        name="ck_projects_currency"),
    )


class Round(Base):
    __tablename__ = "rounds"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey(
        "projects.id", ondelete="CASCADE"), nullable=False)
    goal_type: Mapped[str] = mapped_column(
        String, nullable=False)  # 'reservations' | 'amount'
    goal_value: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False)   # per slot
    slots_per_person: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1)
    deadline_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    rule: Mapped[str] = mapped_column(
        String, nullable=False, default="all_or_nothing")
    partial_threshold: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False, default=Decimal("0"))  # 0.7 => 70%
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="open")
    group_slots: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("goal_type in ('reservations','amount')",
                        name="ck_rounds_goal_type"),
        CheckConstraint("goal_value >= 0", name="ck_rounds_goal_ge_0"),
        CheckConstraint("rule in ('all_or_nothing','partial')",
                        name="ck_rounds_rule"),
        CheckConstraint("partial_threshold >= 0 AND partial_threshold <= 1",
                        name="ck_rounds_partial_threshold"),
        CheckConstraint(
            "status in ('open','nearly_full','closed','not_met','fulfilled')", name="ck_rounds_status"),
    )


Index("idx_rounds_deadline", Round.deadline_at)


class Reservation(Base):
    __tablename__ = "reservations"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    round_id: Mapped[str] = mapped_column(String(64), ForeignKey(
        "rounds.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slots: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending")
    # most recent transaction; older attempts stay in the transactions table
    tx_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("slots >= 1", name="ck_reservations_slots_ge_1"),
        CheckConstraint("amount >= 0", name="ck_reservations_amount_ge_0"),
        CheckConstraint(
            "status in ('pending','confirmed','waitlisted','assigned','refunded')", name="ck_reservations_status"),
    )


Index("idx_reservations_round", Reservation.round_id)


# --- PAYMENTS

class Transaction(Base):
    __tablename__ = "transactions"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reservation_id: Mapped[str] = mapped_column(String(64), ForeignKey(
        "reservations.id", ondelete="CASCADE"), nullable=False)
    provider: Mapped[str] = mapped_column(
        String, nullable=False)  # 'simulated' | 'stripe'
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending")
    external_id: Mapped[str | None] = mapped_column(String)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    raw_response: Mapped[dict | None] = mapped_column(JSON)
    client_secret: Mapped[str | None] = mapped_column(Text)
    payout_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_ge_0"),
        CheckConstraint(
            "status in ('pending','succeeded','refunded')", name="ck_transactions_status"),
    )


Index("idx_transactions_reservation", Transaction.reservation_id)
Index("idx_transactions_status", Transaction.status)


class PaymentWebhook(Base):
    __tablename__ = "payment_webhooks"
    # provider-assigned event id; the primary key is what makes replays idempotent
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    reservation_id: Mapped[str | None] = mapped_column(String(64))
    transaction_id: Mapped[str | None] = mapped_column(String(64))
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending")
    __table_args__ = (
        CheckConstraint("status in ('pending','processed','ignored')",
                        name="ck_payment_webhooks_status"),
    )


# --- AUDIT

class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False)

    # Actor & request context
    actor: Mapped[str | None] = mapped_column(String(128))
    request_id: Mapped[str | None] = mapped_column(String(64))
    ip: Mapped[str | None] = mapped_column(
        String(64))             # anonymized if configured
    method: Mapped[str | None] = mapped_column(String(8))
    path: Mapped[str | None] = mapped_column(String(512))

    # Event semantics
    action: Mapped[str] = mapped_column(
        String(64), nullable=False)  # controlled vocabulary
    target_type: Mapped[str | None] = mapped_column(String(32))
    target_id: Mapped[str | None] = mapped_column(String(255))
    outcome: Mapped[str | None] = mapped_column(
        String(16))          # 'success'|'failure'
    status: Mapped[int | None] = mapped_column(Integer)

    # Structured details (small, redacted)
    extra: Mapped[dict | None] = mapped_column(JSON)

    # Tamper-evident chain
    prev_hash: Mapped[str | None] = mapped_column(String(128))
    hash: Mapped[str | None] = mapped_column(String(128))
    signature: Mapped[str | None] = mapped_column(
        String(128))       # HMAC(hash, SECRET)
    key_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome IS NULL OR outcome in ('success','failure')", name="ck_audit_outcome"),
    )
