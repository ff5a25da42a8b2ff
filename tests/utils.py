from datetime import timedelta

from models.presale_store import new_id
from services.datetimex import now_utc


# tests/utils.py
def seed_round(store, *, goal_type="reservations", goal_value=10, deposit=100,
               slots_per_person=5, rule="all_or_nothing", partial_threshold=0,
               deadline=None, currency="USD", status="open"):
    dev = store.create_user("Dev", email="dev@example.com", role="developer")
    project = store.create_project(f"torre-{new_id()[:8]}", "Torre Norte",
                                   currency=currency, developer_id=dev["id"])
    rnd = store.create_round(
        project["id"],
        goal_type=goal_type,
        goal_value=goal_value,
        deposit_amount=deposit,
        slots_per_person=slots_per_person,
        rule=rule,
        partial_threshold=partial_threshold,
        deadline_at=deadline or (now_utc() - timedelta(hours=1)),
        status=status,
    )
    return project, rnd


def add_reservation(store, rnd, slots=1, status="pending", with_buyer=True):
    if with_buyer:
        buyer = store.create_user("Buyer", email=f"{new_id()[:8]}@example.com")
        user_id = buyer["id"]
    else:
        user_id = new_id()
    return store.create_reservation(rnd["id"], user_id, slots, status=status)


def add_paid_reservation(store, rnd, slots=1, tx_status="succeeded",
                         status="confirmed", provider="simulated"):
    """A reservation with a transaction already recorded against it."""
    res = add_reservation(store, rnd, slots=slots, status=status)
    tx = store.create_transaction({
        "reservation_id": res["id"],
        "provider": provider,
        "amount": res["amount"],
        "currency": "USD",
        "status": tx_status,
        "external_id": f"pi_{new_id()[:12]}",
    })
    res = store.update_reservation(res["id"], {"tx_id": tx["id"]})
    return res, tx
