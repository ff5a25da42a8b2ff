# services/progress.py
"""
Funding progress of a round.

compute_progress() is the single arbiter of "is this round succeeding":
the progress API and the nightly reconciliation both call it, so it must
stay pure (no I/O, no hidden state) and use the same rounding everywhere.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Mapping, Any

# reservations whose money/commitment is secured
SECURED_STATUSES = frozenset({"confirmed", "assigned"})


def D(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    # never pass float directly; stringify first to avoid binary artifacts
    return Decimal(str(x or 0))


def percent_of(fraction) -> int:
    """0.7 -> 70, rounded half-up (0.705 -> 71)."""
    return int((D(fraction) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ProgressSummary:
    total_slots: int
    confirmed_slots: int
    total_amount: Decimal
    confirmed_amount: Decimal
    percent: int

    def to_json(self) -> dict:
        d = asdict(self)
        d["total_amount"] = float(self.total_amount)
        d["confirmed_amount"] = float(self.confirmed_amount)
        return d


def compute_progress(round: Mapping[str, Any],
                     reservations: Iterable[Mapping[str, Any]]) -> ProgressSummary:
    total_slots = confirmed_slots = 0
    total_amount = confirmed_amount = Decimal("0")

    for r in reservations:
        slots = int(r.get("slots") or 0)
        amount = D(r.get("amount"))
        total_slots += slots
        total_amount += amount
        if r.get("status") in SECURED_STATUSES:
            confirmed_slots += slots
            confirmed_amount += amount

    goal = D(round.get("goal_value"))
    if goal <= 0:
        percent = 0
    else:
        metric = D(confirmed_slots) if round.get(
            "goal_type") == "reservations" else confirmed_amount
        percent = percent_of(metric / goal)
        percent = max(0, min(100, percent))

    return ProgressSummary(
        total_slots=total_slots,
        confirmed_slots=confirmed_slots,
        total_amount=total_amount,
        confirmed_amount=confirmed_amount,
        percent=percent,
    )
