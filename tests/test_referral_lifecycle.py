from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest


def _as_utc(dt):
    from affiliate_api.timeutil import as_aware_utc

    return as_aware_utc(dt)


def test_only_adjacent_forward_steps_are_allowed() -> None:
    from affiliate_api.errors import InvalidTransition
    from affiliate_api.referral_lifecycle import (
        ALLOWED_TRANSITIONS,
        ReferralStatus,
        ensure_transition,
        forward_rank,
    )

    for current in ReferralStatus:
        for target in ReferralStatus:
            if target in ALLOWED_TRANSITIONS[current]:
                ensure_transition(current, target)
                assert forward_rank(target) > forward_rank(current)
            else:
                with pytest.raises(InvalidTransition):
                    ensure_transition(current, target)


def test_void_is_never_reachable_after_payable() -> None:
    from affiliate_api.referral_lifecycle import ALLOWED_TRANSITIONS, ReferralStatus

    assert ReferralStatus.VOID not in ALLOWED_TRANSITIONS[ReferralStatus.PAYABLE]
    assert ReferralStatus.VOID not in ALLOWED_TRANSITIONS[ReferralStatus.PAID]
    assert not ALLOWED_TRANSITIONS[ReferralStatus.VOID]


@pytest.mark.parametrize(
    "price, kind, value, expected",
    [
        (20000, "PERCENT", 0.25, 5000),
        (20000, "PERCENT", 25, 5000),
        (999, "PERCENT", Decimal("0.25"), 249),
        (20000, "FIXED", 5000, 5000),
        (20000, "FIXED", Decimal("2.5"), 3),
        (20000, "FIXED", Decimal("3.5"), 4),
        (None, "PERCENT", 0.25, 0),
        (0, "FIXED", 5000, 0),
    ],
)
def test_compute_commission_amount_cents(price, kind, value, expected) -> None:
    from affiliate_api.referral_lifecycle import compute_commission_amount_cents

    assert compute_commission_amount_cents(price, kind, value) == expected


def test_advance_status_stamps_once_and_never_backwards() -> None:
    from affiliate_api.models import Referral
    from affiliate_api.referral_lifecycle import ReferralStatus, advance_status

    t0 = datetime(2026, 2, 1, 10, 0, tzinfo=UTC)
    referral = Referral(id="ref_x", referrer_id="u", referral_code="c", status="PENDING")
    advance_status(referral, ReferralStatus.CLICKED, occurred_at=t0)
    # A late-arriving signup event carrying an earlier clock is clamped.
    advance_status(referral, ReferralStatus.SIGNED_UP, occurred_at=t0 - timedelta(hours=1))

    assert referral.status == "SIGNED_UP"
    assert referral.clicked_at == t0
    assert referral.signed_up_at == t0


def test_advance_status_guards_money_fields() -> None:
    from affiliate_api.errors import InvalidTransition
    from affiliate_api.models import Referral
    from affiliate_api.referral_lifecycle import ReferralStatus, advance_status

    referral = Referral(id="ref_y", referrer_id="u", referral_code="c", status="SIGNED_UP")
    with pytest.raises(InvalidTransition):
        advance_status(referral, ReferralStatus.QUALIFIED)

    referral.status = "PAYABLE"
    referral.commission_amount_cents = 100
    with pytest.raises(InvalidTransition):
        advance_status(referral, ReferralStatus.PAID)


def test_first_payment_qualifies_with_commission_and_hold(qualified_referral) -> None:
    from affiliate_api.referral_lifecycle import timeline_violations

    r = qualified_referral
    assert r.status == "QUALIFIED"
    assert r.commission_amount_cents == 5000
    assert _as_utc(r.payable_at) == _as_utc(r.qualified_at) + timedelta(days=7)
    assert _as_utc(r.qualified_at) == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert timeline_violations(r) == []


def test_commission_is_immutable_after_qualification(db, qualified_referral, settings) -> None:
    from affiliate_api.models import Referral, User
    from affiliate_api.referral_lifecycle import mark_first_payment, qualify_referral

    bob = db.get(User, "bob")
    bob.plan_price_cents = 99_900
    db.commit()

    mark_first_payment(
        db,
        referred_user_id="bob",
        paid_at=datetime(2026, 3, 2, tzinfo=UTC),
        plan_price_cents=99_900,
        settings=settings,
    )
    referral = db.get(Referral, qualified_referral.id)
    qualify_referral(
        db, referral=referral, qualified_at=datetime(2026, 3, 3, tzinfo=UTC), settings=settings
    )
    db.commit()
    db.expire_all()

    referral = db.get(Referral, qualified_referral.id)
    assert referral.commission_amount_cents == 5000
    assert _as_utc(referral.qualified_at) == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_self_referral_is_rejected(db, make_user, settings) -> None:
    from affiliate_api.errors import ValidationFailed
    from affiliate_api.referral_lifecycle import Attribution, attribute_signup

    me = make_user("solo", slug="solo-code")
    with pytest.raises(ValidationFailed):
        attribute_signup(
            db,
            attribution=Attribution(referrer_id="solo", referral_code="solo-code"),
            referred_user=me,
            settings=settings,
        )


def test_referred_user_is_attributed_once(db, make_user, settings) -> None:
    from affiliate_api.errors import Conflict
    from affiliate_api.referral_lifecycle import Attribution, attribute_signup

    make_user("ref_one", slug="one-code")
    make_user("ref_two", slug="two-code")
    newbie = make_user("newbie")

    first = attribute_signup(
        db,
        attribution=Attribution(referrer_id="ref_one", referral_code="one-code"),
        referred_user=newbie,
        settings=settings,
    )
    db.commit()
    again = attribute_signup(
        db,
        attribution=Attribution(referrer_id="ref_one", referral_code="one-code"),
        referred_user=newbie,
        settings=settings,
    )
    assert again.id == first.id

    with pytest.raises(Conflict):
        attribute_signup(
            db,
            attribution=Attribution(referrer_id="ref_two", referral_code="two-code"),
            referred_user=newbie,
            settings=settings,
        )


def test_signup_reuses_click_row(db, make_user, settings) -> None:
    from affiliate_api.referral_lifecycle import (
        Attribution,
        attribute_signup,
        record_click,
    )

    make_user("kim", slug="kim-code")
    visitor = make_user("visitor")
    attribution = Attribution(referrer_id="kim", referral_code="kim-code")
    clicked_at = datetime(2026, 4, 1, tzinfo=UTC)

    click = record_click(
        db,
        attribution=attribution,
        source="twitter",
        utm={"utm_campaign": "spring"},
        now=clicked_at,
        settings=settings,
    )
    db.commit()
    referral = attribute_signup(
        db,
        attribution=attribution,
        referred_user=visitor,
        click_id=click.id,
        signed_up_at=clicked_at + timedelta(minutes=5),
        settings=settings,
    )
    db.commit()

    assert referral.id == click.id
    assert referral.status == "SIGNED_UP"
    assert referral.utm_campaign == "spring"
    assert _as_utc(referral.clicked_at) == clicked_at
    assert referral.referred_email == "visitor@example.com"


def test_trial_start_qualifies_when_configured(db, make_user) -> None:
    from affiliate_api.core.config import Settings
    from affiliate_api.referral_lifecycle import (
        Attribution,
        attribute_signup,
        mark_trial_started,
    )

    settings = Settings(qualify_on_trial_start=True, commission_type="FIXED")
    make_user("lee", slug="lee-code")
    trialist = make_user("trialist", plan_price_cents=4900)
    attribute_signup(
        db,
        attribution=Attribution(referrer_id="lee", referral_code="lee-code"),
        referred_user=trialist,
        signed_up_at=datetime(2026, 5, 1, tzinfo=UTC),
        settings=settings,
    )
    started = datetime(2026, 5, 2, tzinfo=UTC)
    referral = mark_trial_started(
        db,
        referred_user_id="trialist",
        trial_started_at=started,
        trial_ends_at=started + timedelta(days=14),
        settings=settings,
    )
    db.commit()

    assert referral.status == "QUALIFIED"
    assert referral.commission_amount_cents == settings.fixed_commission_cents
    assert _as_utc(referral.trial_started_at) == started
    assert _as_utc(referral.payable_at) == started + timedelta(days=7)


def test_trial_start_without_flag_only_records_timestamp(db, make_user, settings) -> None:
    from affiliate_api.referral_lifecycle import (
        Attribution,
        attribute_signup,
        mark_trial_started,
    )

    make_user("max", slug="max-code")
    trialist = make_user("trialist2", plan_price_cents=4900)
    attribute_signup(
        db,
        attribution=Attribution(referrer_id="max", referral_code="max-code"),
        referred_user=trialist,
        signed_up_at=datetime(2026, 5, 1, tzinfo=UTC),
        settings=settings,
    )
    referral = mark_trial_started(
        db,
        referred_user_id="trialist2",
        trial_started_at=datetime(2026, 5, 2, tzinfo=UTC),
        settings=settings,
    )
    assert referral.status == "SIGNED_UP"
    assert referral.commission_amount_cents is None


def test_refund_voids_only_inside_hold_window(db, qualified_referral) -> None:
    from affiliate_api.referral_lifecycle import metadata_of, void_referral_if_in_hold

    qualified_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    late = void_referral_if_in_hold(
        db,
        referred_user_id="bob",
        occurred_at=qualified_at + timedelta(days=8),
        reason="refund",
    )
    assert late.status == "QUALIFIED"

    voided = void_referral_if_in_hold(
        db,
        referred_user_id="bob",
        occurred_at=qualified_at + timedelta(days=2),
        reason="chargeback",
    )
    db.commit()
    assert voided.status == "VOID"
    assert metadata_of(voided)["voidReason"] == "chargeback"
