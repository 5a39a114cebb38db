from __future__ import annotations

import csv
import io
from datetime import UTC, datetime

import pytest


@pytest.fixture()
def admin(make_user, auth_headers):
    make_user("root", role="admin")
    return auth_headers("root", role="admin")


def test_admin_routes_require_admin_role(client, make_user, auth_headers) -> None:
    make_user("member1")
    assert client.get("/api/admin/affiliates").status_code == 401
    resp = client.get("/api/admin/affiliates", headers=auth_headers("member1"))
    assert resp.status_code == 403


def test_rollup_and_detail(client, admin, qualified_referral) -> None:
    rows = client.get("/api/admin/affiliates", headers=admin).json()["affiliates"]
    assert rows[0]["referrerId"] == "alice"
    assert rows[0]["qualified"] == 1

    detail = client.get("/api/admin/affiliates/alice/referrals", headers=admin)
    assert detail.status_code == 200
    assert detail.json()["referrer"]["referralSlug"] == "alice-ref"
    assert client.get("/api/admin/affiliates/ghost/referrals", headers=admin).status_code == 404

    listed = client.get("/api/admin/affiliates/referrals", headers=admin).json()["referrals"]
    assert [r["id"] for r in listed] == [qualified_referral.id]
    assert listed[0]["referrer"]["id"] == "alice"


def test_manual_link_and_patch(db, client, admin, make_user) -> None:
    from affiliate_api.models import Referral

    make_user("partner", slug="partner-code")
    make_user("buyer", plan_price_cents=10000)

    assert (
        client.post(
            "/api/admin/affiliates/referrals",
            json={"referred_user_id": "buyer", "referrer_id": "buyer"},
            headers=admin,
        ).status_code
        == 400
    )

    resp = client.post(
        "/api/admin/affiliates/referrals",
        json={"referred_user_id": "buyer", "referrer_id": "partner"},
        headers=admin,
    )
    assert resp.status_code == 200
    referral_id = resp.json()["referralId"]

    again = client.post(
        "/api/admin/affiliates/referrals",
        json={"referred_user_id": "buyer", "referrer_id": "root"},
        headers=admin,
    )
    assert again.status_code == 409

    skip = client.patch(
        f"/api/admin/affiliates/referrals/{referral_id}",
        json={"status": "PAYABLE"},
        headers=admin,
    )
    assert skip.status_code == 409

    ok = client.patch(
        f"/api/admin/affiliates/referrals/{referral_id}",
        json={"status": "QUALIFIED", "notes": "verified invoice"},
        headers=admin,
    )
    assert ok.status_code == 200
    assert ok.json()["referral"]["status"] == "QUALIFIED"
    assert ok.json()["referral"]["commissionAmountCents"] == 2500

    db.expire_all()
    assert db.get(Referral, referral_id).status == "QUALIFIED"


def test_payout_flow_and_csv(client, admin, qualified_referral) -> None:
    from affiliate_api.affiliate_payables import run_affiliate_payable_job

    run_affiliate_payable_job(trigger="test", now=datetime(2026, 3, 9, tzinfo=UTC))

    created = client.post(
        "/api/admin/affiliates/payouts/create",
        json={"referrer_id": "alice"},
        headers=admin,
    )
    assert created.status_code == 200
    batch = created.json()["batch"]
    assert batch["totalAmountCents"] == 5000

    empty = client.post(
        "/api/admin/affiliates/payouts/create",
        json={"referrer_id": "alice"},
        headers=admin,
    )
    assert empty.status_code == 400

    pending = client.get(
        "/api/admin/affiliates/payouts", params={"status": "PENDING"}, headers=admin
    ).json()["batches"]
    assert [b["id"] for b in pending] == [batch["id"]]

    paid = client.post(f"/api/admin/affiliates/payouts/{batch['id']}/mark-paid", headers=admin)
    assert paid.status_code == 200
    assert paid.json()["batch"]["status"] == "PAID"
    assert paid.json()["batch"]["paidByUserId"] == "root"

    export = client.get(
        f"/api/admin/affiliates/payouts/{batch['id']}/export.csv", headers=admin
    )
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert (
        export.headers["content-disposition"]
        == f'attachment; filename="affiliate-payout-{batch["id"]}.csv"'
    )
    rows = list(csv.DictReader(io.StringIO(export.text)))
    assert rows[0]["Status"] == "PAID"
    assert rows[0]["Commission Amount"] == "50.00"

    missing = client.post("/api/admin/affiliates/payouts/pb_nope/mark-paid", headers=admin)
    assert missing.status_code == 404


def test_admin_can_trigger_payable_job(client, admin) -> None:
    resp = client.post("/api/admin/affiliates/payables/run", headers=admin)
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert "runId" in resp.json()["result"]


def test_manual_payout_crud(client, admin, make_user) -> None:
    make_user("payee")
    base = "/api/admin/affiliates/manual-payouts"

    bad = client.post(
        base,
        json={"referrer_id": "payee", "amount_cents": 0, "scheduled_for": "2026-04-01T00:00:00Z"},
        headers=admin,
    )
    assert bad.status_code == 400

    created = client.post(
        base,
        json={
            "referrer_id": "payee",
            "amount_cents": 12_000,
            "currency": "USD",
            "scheduled_for": "2026-04-01T00:00:00Z",
            "frequency": "monthly",
            "notes": "Q2 retainer",
        },
        headers=admin,
    )
    assert created.status_code == 200
    payout = created.json()["payout"]
    assert payout["currency"] == "usd"
    assert payout["nextRunAt"] == payout["scheduledFor"]
    assert payout["referrer"]["id"] == "payee"

    patched = client.patch(
        f"{base}/{payout['id']}",
        json={"amount_cents": 15_000, "frequency": None},
        headers=admin,
    )
    assert patched.status_code == 200
    assert patched.json()["payout"]["amountCents"] == 15_000
    assert patched.json()["payout"]["nextRunAt"] is None

    listed = client.get(base, headers=admin).json()["payouts"]
    assert [p["id"] for p in listed] == [payout["id"]]

    assert client.delete(f"{base}/{payout['id']}", headers=admin).status_code == 200
    assert client.delete(f"{base}/{payout['id']}", headers=admin).status_code == 404
