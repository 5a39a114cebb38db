from __future__ import annotations

from datetime import UTC, datetime, timedelta


def test_referral_from_code_to_payout(db, client, make_user, auth_headers, settings) -> None:
    from affiliate_api.affiliate_payables import run_affiliate_payable_job
    from affiliate_api.models import PayoutBatch, Referral, User
    from affiliate_api.referral_codes import validate_referral_code
    from affiliate_api.referral_lifecycle import (
        attribute_signup,
        mark_first_payment,
        mark_trial_started,
    )
    from affiliate_api.timeutil import as_aware_utc

    make_user("promoter", slug="abc123")
    make_user("ops", role="admin")
    admin = auth_headers("ops", role="admin")

    # Registration page checks the code, then the new account is linked.
    check = client.get("/api/referrals/validate", params={"code": "abc123"})
    assert check.json()["valid"] is True

    click = client.post("/api/referrals/click", json={"code": "abc123"}).json()
    newcomer = make_user("newcomer", plan_price_cents=20000)
    validation = validate_referral_code(db, "abc123", settings=settings)
    referral = attribute_signup(
        db,
        attribution=validation.attribution(),
        referred_user=newcomer,
        click_id=click["click_id"],
        settings=settings,
    )
    db.commit()
    assert referral.id == click["click_id"]
    assert referral.status == "SIGNED_UP"

    # Trial converts to a paid plan.
    now = datetime.now(UTC)
    mark_trial_started(
        db, referred_user_id="newcomer", trial_started_at=now, settings=settings
    )
    referral = mark_first_payment(
        db, referred_user_id="newcomer", paid_at=now, settings=settings
    )
    db.commit()
    assert referral.status == "QUALIFIED"
    assert referral.commission_amount_cents == 5000
    assert as_aware_utc(referral.payable_at) == as_aware_utc(referral.qualified_at) + timedelta(days=7)

    # Nothing is payable until the hold window has passed.
    assert run_affiliate_payable_job(trigger="cron", now=now + timedelta(days=6))["processed"] == 0
    later = run_affiliate_payable_job(trigger="cron", now=now + timedelta(days=7, seconds=1))
    assert later["updated"] == 1

    batch = client.post(
        "/api/admin/affiliates/payouts/create",
        json={"referrer_id": "promoter"},
        headers=admin,
    ).json()["batch"]
    assert batch["totalAmountCents"] == 5000

    paid = client.post(f"/api/admin/affiliates/payouts/{batch['id']}/mark-paid", headers=admin)
    assert paid.status_code == 200

    db.expire_all()
    stored_batch = db.get(PayoutBatch, batch["id"])
    stored_referral = db.get(Referral, referral.id)
    assert stored_batch.status == "PAID"
    assert stored_referral.status == "PAID"
    assert stored_referral.paid_at == stored_batch.paid_at
    assert stored_referral.payout_batch_id == stored_batch.id

    # A later plan change does not touch the settled commission.
    db.get(User, "newcomer").plan_price_cents = 90000
    db.commit()
    db.expire_all()
    assert db.get(Referral, referral.id).commission_amount_cents == 5000
