# services/payout_report.py
from __future__ import annotations
import csv
import io
import time
from decimal import Decimal

from models.presale_store import PresaleStore
from services.datetimex import to_iso_z

HEADERS = [
    "transaction_id", "reservation_id", "project_name", "round_id",
    "amount", "currency", "status", "provider", "payout_at",
]


def format_money(amount, currency: str) -> str:
    # 'USD 1,234.50'
    q = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    return f"{currency} {q:,.2f}"


def payout_rows(store: PresaleStore) -> list[list[str]]:
    reservations = {r["id"]: r for r in store.get_reservations()}
    rounds = {r["id"]: r for r in store.get_rounds()}
    projects = {p["id"]: p for p in store.get_projects()}

    rows = []
    for tx in store.get_transactions():
        res = reservations.get(tx["reservation_id"])
        rnd = rounds.get(res["round_id"]) if res else None
        project = projects.get(rnd["project_id"]) if rnd else None
        rows.append([
            tx["id"],
            tx["reservation_id"],
            project["name"] if project else "N/A",
            rnd["id"] if rnd else "N/A",
            format_money(tx["amount"], tx["currency"]),
            tx["currency"],
            tx["status"],
            tx["provider"],
            to_iso_z(tx.get("payout_at")) or "",
        ])
    return rows


def payouts_csv(store: PresaleStore) -> tuple[str, str]:
    """Return (filename, csv_text) for every transaction."""
    out = io.StringIO()
    w = csv.writer(out, lineterminator="\n")
    w.writerow(HEADERS)
    w.writerows(payout_rows(store))
    return f"payouts-{int(time.time() * 1000)}.csv", out.getvalue()
