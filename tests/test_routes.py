import json
from datetime import timedelta

from services.datetimex import now_utc, to_iso_z
from tests.utils import seed_round, add_reservation, add_paid_reservation


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.get_json() == {"status": "ok"}


def test_readyz(client):
    assert client.get("/readyz").status_code == 200


def test_checkout_happy_path(client, store):
    _, rnd = seed_round(store)
    res = add_reservation(store, rnd)

    r = client.post("/api/checkout", json={"reservationId": res["id"]})

    assert r.status_code == 200
    body = r.get_json()
    assert set(body) == {"transactionId", "reservationStatus", "clientSecret",
                         "provider", "nextAction"}
    assert body["reservationStatus"] == "confirmed"
    assert body["provider"] == "simulated"
    assert body["nextAction"] is None
    assert store.get_transaction_by_id(body["transactionId"])["status"] == "succeeded"


def test_checkout_requires_reservation_id(client):
    r = client.post("/api/checkout", json={})
    assert r.status_code == 400
    assert r.get_json() == {"error": "reservationId is required"}


def test_checkout_unknown_reservation_is_404(client):
    r = client.post("/api/checkout", json={"reservationId": "missing"})
    assert r.status_code == 404
    assert r.get_json()["error"] == "Reservation not found"


def test_checkout_terminal_reservation_is_400(client, store):
    _, rnd = seed_round(store)
    res = add_reservation(store, rnd, status="assigned")

    r = client.post("/api/checkout", json={"reservationId": res["id"]})

    assert r.status_code == 400
    assert "assigned" in r.get_json()["error"]
    assert store.get_transactions() == []


def test_webhook_route_processes_raw_body(client, store):
    _, rnd = seed_round(store)
    res, tx = add_paid_reservation(store, rnd, tx_status="pending", status="pending")
    body = json.dumps({
        "id": "evt_http",
        "type": "payment_intent.succeeded",
        "data": {"object": {"status": "succeeded",
                            "metadata": {"transactionId": tx["id"]}}},
    }).encode("utf-8")

    r = client.post("/api/payments/webhook", data=body,
                    headers={"Content-Type": "application/json"})

    assert r.status_code == 200
    assert r.get_json() == {"id": "evt_http", "status": "processed"}
    assert store.get_reservation_by_id(res["id"])["status"] == "confirmed"


def test_webhook_route_rejects_garbage(client):
    r = client.post("/api/payments/webhook", data=b"<xml/>",
                    headers={"Content-Type": "text/plain"})
    assert r.status_code == 400
    assert "error" in r.get_json()


def test_webhook_route_for_other_provider_is_404(client):
    r = client.post("/api/payments/stripe/webhook", data=b"{}")
    assert r.status_code == 404


def test_reconcile_route(client, store):
    _, rnd = seed_round(store, goal_value=10)
    add_paid_reservation(store, rnd)

    r = client.post("/api/cron/reconcile")

    assert r.status_code == 200
    assert r.get_json() == {"processedRounds": 1, "assignments": 0,
                            "refunds": 1, "skipped": 0}


def test_reconcile_route_honours_at(client, store):
    deadline = now_utc() + timedelta(days=3)
    seed_round(store, deadline=deadline)

    early = client.post("/api/cron/reconcile")
    late = client.post("/api/cron/reconcile",
                       query_string={"at": to_iso_z(deadline + timedelta(hours=1))})

    assert early.get_json()["skipped"] == 0
    assert late.get_json()["skipped"] == 1


def test_reconcile_route_rejects_bad_at(client):
    r = client.post("/api/cron/reconcile", query_string={"at": "not-a-date"})
    assert r.status_code == 400


def test_reconcile_route_requires_cron_secret(client, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")

    assert client.post("/api/cron/reconcile").status_code == 401
    assert client.post("/api/cron/reconcile",
                       headers={"Authorization": "Bearer wrong"}).status_code == 401
    ok = client.post("/api/cron/reconcile",
                     headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200


def test_reconcile_route_reports_failure(client, app, monkeypatch):
    svc = app.extensions["payments"]

    def boom(reference_date=None):
        raise RuntimeError("database is down")

    monkeypatch.setattr(svc, "run_nightly_reconciliation", boom)
    r = client.post("/api/cron/reconcile")

    assert r.status_code == 500
    assert r.get_json() == {"error": "database is down"}


def test_round_progress(client, store):
    _, rnd = seed_round(store, goal_value=4, deposit=50)
    add_paid_reservation(store, rnd, slots=2)
    add_reservation(store, rnd, slots=1)

    r = client.get(f"/api/rounds/{rnd['id']}/progress")

    assert r.status_code == 200
    assert r.get_json() == {
        "roundId": rnd["id"], "status": "open",
        "total_slots": 3, "confirmed_slots": 2,
        "total_amount": 150.0, "confirmed_amount": 100.0, "percent": 50,
    }


def test_round_progress_unknown_round(client):
    assert client.get("/api/rounds/nope/progress").status_code == 404


def test_payouts_report_csv(client, store):
    _, rnd = seed_round(store, deposit="1234.5")
    _, tx = add_paid_reservation(store, rnd)

    r = client.get("/api/admin/payouts/report")

    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert "attachment; filename=payouts-" in r.headers["Content-Disposition"]
    lines = r.get_data(as_text=True).splitlines()
    assert lines[0] == ("transaction_id,reservation_id,project_name,round_id,"
                        "amount,currency,status,provider,payout_at")
    assert lines[1].startswith(f"{tx['id']},{tx['reservation_id']},Torre Norte,{rnd['id']},")
    assert '"USD 1,234.50"' in lines[1]


def test_payouts_report_requires_admin_token(client, monkeypatch):
    monkeypatch.setenv("ADMIN_API_TOKEN", "adm")
    assert client.get("/api/admin/payouts/report").status_code == 401
    r = client.get("/api/admin/payouts/report",
                   headers={"Authorization": "Bearer adm"})
    assert r.status_code == 200


def test_unknown_route_is_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert "error" in r.get_json()


def test_reconcile_cli(app, store):
    _, rnd = seed_round(store, goal_value=1)
    add_paid_reservation(store, rnd)

    result = app.test_cli_runner().invoke(args=["reconcile"])

    assert result.exit_code == 0
    assert "processed=1 assignments=1 refunds=0 skipped=0" in result.output
    assert store.get_round_by_id(rnd["id"])["status"] == "fulfilled"


def test_reconcile_cli_rejects_bad_timestamp(app):
    result = app.test_cli_runner().invoke(args=["reconcile", "--at", "not-a-date"])
    assert result.exit_code != 0
