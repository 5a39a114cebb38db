"""Referral status machine and the event entry points that drive it.

A referral moves strictly forward:

    PENDING -> CLICKED -> SIGNED_UP -> QUALIFIED -> PAYABLE -> PAID

with `VOID` as a terminal side exit while the clawback window is still open.
`advance_status` is the only function that changes `Referral.status` on a
loaded row; the bulk promotions in `affiliate_payables` and `payouts` go
through `ensure_transition` before issuing their UPDATE statements.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import uuid4

import orjson
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_api.core.config import Settings
from affiliate_api.errors import Conflict, InvalidTransition, ValidationFailed
from affiliate_api.logs import get_logger, log_event
from affiliate_api.models import Referral, User
from affiliate_api.timeutil import as_aware_utc, as_aware_utc_or_none

logger = get_logger(__name__)


class ReferralStatus(str, Enum):
    PENDING = "PENDING"
    CLICKED = "CLICKED"
    SIGNED_UP = "SIGNED_UP"
    QUALIFIED = "QUALIFIED"
    PAYABLE = "PAYABLE"
    PAID = "PAID"
    VOID = "VOID"


class CommissionType(str, Enum):
    FIXED = "FIXED"
    PERCENT = "PERCENT"


_FORWARD: tuple[ReferralStatus, ...] = (
    ReferralStatus.PENDING,
    ReferralStatus.CLICKED,
    ReferralStatus.SIGNED_UP,
    ReferralStatus.QUALIFIED,
    ReferralStatus.PAYABLE,
    ReferralStatus.PAID,
)

ALLOWED_TRANSITIONS: dict[ReferralStatus, frozenset[ReferralStatus]] = {
    ReferralStatus.PENDING: frozenset({ReferralStatus.CLICKED}),
    ReferralStatus.CLICKED: frozenset({ReferralStatus.SIGNED_UP, ReferralStatus.VOID}),
    ReferralStatus.SIGNED_UP: frozenset(
        {ReferralStatus.QUALIFIED, ReferralStatus.VOID}
    ),
    ReferralStatus.QUALIFIED: frozenset({ReferralStatus.PAYABLE, ReferralStatus.VOID}),
    ReferralStatus.PAYABLE: frozenset({ReferralStatus.PAID}),
    ReferralStatus.PAID: frozenset(),
    ReferralStatus.VOID: frozenset(),
}

# Timestamp column stamped when a row enters each status.
_STATUS_TIMESTAMP: dict[ReferralStatus, str] = {
    ReferralStatus.CLICKED: "clicked_at",
    ReferralStatus.SIGNED_UP: "signed_up_at",
    ReferralStatus.QUALIFIED: "qualified_at",
    ReferralStatus.PAID: "paid_at",
}

# Wall-clock order of the lifecycle timestamps. payable_at is scheduled at
# qualification time and therefore sits after qualified_at.
TIMELINE_FIELDS: tuple[str, ...] = (
    "clicked_at",
    "signed_up_at",
    "trial_started_at",
    "first_paid_at",
    "qualified_at",
    "payable_at",
    "paid_at",
)

QUALIFIED_OR_LATER: frozenset[ReferralStatus] = frozenset(
    {ReferralStatus.QUALIFIED, ReferralStatus.PAYABLE, ReferralStatus.PAID}
)


def status_of(referral: Referral) -> ReferralStatus:
    return ReferralStatus(str(referral.status))


def forward_rank(status: ReferralStatus) -> int:
    """Position on the forward path; VOID ranks after everything."""
    if status == ReferralStatus.VOID:
        return len(_FORWARD)
    return _FORWARD.index(status)


def ensure_transition(current: ReferralStatus, target: ReferralStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Referral cannot move from {current.value} to {target.value}",
            field="status",
        )


def _clamped(referral: Referral, occurred_at: datetime, *, exclude: str | None = None) -> datetime:
    stamps = [
        as_aware_utc(getattr(referral, f))
        for f in TIMELINE_FIELDS
        if f != exclude
        and (f != "payable_at" or exclude == "paid_at")
        and getattr(referral, f) is not None
    ]
    floor = max(stamps) if stamps else None
    at = as_aware_utc(occurred_at)
    return max(at, floor) if floor is not None else at


def advance_status(
    referral: Referral,
    target: ReferralStatus,
    *,
    occurred_at: datetime | None = None,
) -> Referral:
    """Move `referral` one step forward and stamp the matching timestamp.

    Raises InvalidTransition for anything but an adjacent forward step (or a
    VOID exit). Timestamps are written once and never move backwards relative
    to what the row already records.
    """
    current = status_of(referral)
    ensure_transition(current, target)

    if target in QUALIFIED_OR_LATER and referral.commission_amount_cents is None:
        raise InvalidTransition(
            "Referral cannot be qualified without a commission amount",
            field="commission_amount_cents",
        )
    if target == ReferralStatus.PAID and not referral.payout_batch_id:
        raise InvalidTransition(
            "Referral can only be paid through a payout batch", field="payout_batch_id"
        )

    now = as_aware_utc(occurred_at or datetime.now(UTC))
    column = _STATUS_TIMESTAMP.get(target)
    if column is not None and getattr(referral, column) is None:
        setattr(referral, column, _clamped(referral, now, exclude=column))

    referral.status = target.value
    referral.updated_at = now
    return referral


def compute_commission_amount_cents(
    plan_price_cents: int | None,
    commission_type: CommissionType | str,
    commission_value: float | Decimal,
) -> int:
    if not plan_price_cents or plan_price_cents <= 0:
        return 0
    kind = CommissionType(str(getattr(commission_type, "value", commission_type)))
    value = Decimal(str(commission_value))
    if kind == CommissionType.FIXED:
        return max(0, int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP)))
    # Rates above 1 are percentages (25 == 25%).
    rate = value / 100 if value > 1 else value
    return max(0, math.floor(Decimal(plan_price_cents) * rate))


def compute_payable_at(qualified_at: datetime | None, hold_days: int) -> datetime | None:
    if qualified_at is None:
        return None
    return as_aware_utc(qualified_at) + timedelta(days=int(hold_days))


def metadata_of(referral: Referral) -> dict:
    try:
        obj = orjson.loads((referral.metadata_json or "{}").encode("utf-8"))
    except orjson.JSONDecodeError:
        return {}
    return obj if isinstance(obj, dict) else {}


def set_metadata(referral: Referral, **fields: object) -> None:
    data = metadata_of(referral)
    data.update(fields)
    referral.metadata_json = orjson.dumps(data, default=str).decode("utf-8")


def referral_for_user(session: Session, *, referred_user_id: str) -> Referral | None:
    return session.scalar(
        select(Referral).where(Referral.referred_user_id == referred_user_id).limit(1)
    )


@dataclass(frozen=True)
class Attribution:
    referrer_id: str
    referral_code: str
    template_id: str | None = None


def record_click(
    session: Session,
    *,
    attribution: Attribution,
    source: str | None = None,
    utm: dict[str, str | None] | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> Referral:
    """Open a new attribution row for a link click (PENDING -> CLICKED)."""
    settings = settings or Settings()
    now_dt = now or datetime.now(UTC)
    utm = utm or {}
    referral = Referral(
        id=f"ref_{uuid4().hex}",
        referrer_id=attribution.referrer_id,
        referral_code=attribution.referral_code,
        slug_used=attribution.referral_code,
        status=ReferralStatus.PENDING.value,
        source=source,
        utm_source=utm.get("utm_source"),
        utm_medium=utm.get("utm_medium"),
        utm_campaign=utm.get("utm_campaign"),
        currency=settings.currency,
        metadata_json="{}",
        created_at=now_dt,
        updated_at=now_dt,
    )
    advance_status(referral, ReferralStatus.CLICKED, occurred_at=now_dt)
    session.add(referral)
    session.flush()
    log_event(
        logger,
        logging.INFO,
        "referral click recorded",
        referral_id=referral.id,
        referrer_id=attribution.referrer_id,
        referral_code=attribution.referral_code,
    )
    return referral


def attribute_signup(
    session: Session,
    *,
    attribution: Attribution,
    referred_user: User,
    click_id: str | None = None,
    signed_up_at: datetime | None = None,
    source: str | None = None,
    settings: Settings | None = None,
) -> Referral:
    """Attach a newly registered user to a referrer.

    Reuses the click row named by `click_id` when it is still an unclaimed
    CLICKED row for the same code; otherwise opens a fresh row and walks it
    through CLICKED. The master template row is never touched.
    """
    if referred_user.id == attribution.referrer_id:
        raise ValidationFailed("You cannot use your own referral code", field="ref")

    existing = referral_for_user(session, referred_user_id=referred_user.id)
    if existing is not None:
        if existing.referrer_id == attribution.referrer_id:
            return existing
        raise Conflict("This account is already linked to a referral")

    now_dt = as_aware_utc(signed_up_at or datetime.now(UTC))
    referral: Referral | None = None
    if click_id:
        candidate = session.get(Referral, click_id)
        if (
            candidate is not None
            and candidate.referred_user_id is None
            and candidate.referral_code == attribution.referral_code
            and candidate.referrer_id == attribution.referrer_id
            and status_of(candidate) == ReferralStatus.CLICKED
        ):
            referral = candidate

    if referral is None:
        referral = record_click(
            session,
            attribution=attribution,
            source=source,
            now=now_dt,
            settings=settings,
        )

    referral.referred_user_id = referred_user.id
    referral.referred_email = referral.referred_email or referred_user.email
    referral.referred_name = referral.referred_name or referred_user.name
    if source and not referral.source:
        referral.source = source
    advance_status(referral, ReferralStatus.SIGNED_UP, occurred_at=now_dt)
    session.add(referral)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict("This account is already linked to a referral") from exc

    log_event(
        logger,
        logging.INFO,
        "referral linked to user",
        referral_id=referral.id,
        referrer_id=referral.referrer_id,
        referred_user_id=referred_user.id,
        referral_code=referral.referral_code,
    )
    return referral


def mark_trial_started(
    session: Session,
    *,
    referred_user_id: str,
    trial_started_at: datetime,
    trial_ends_at: datetime | None = None,
    settings: Settings | None = None,
) -> Referral | None:
    settings = settings or Settings()
    referral = referral_for_user(session, referred_user_id=referred_user_id)
    if referral is None or status_of(referral) != ReferralStatus.SIGNED_UP:
        return referral

    if referral.trial_started_at is None:
        referral.trial_started_at = _clamped(
            referral, trial_started_at, exclude="trial_started_at"
        )
        referral.trial_ends_at = trial_ends_at or referral.trial_ends_at
        referral.updated_at = datetime.now(UTC)
        session.add(referral)

    if settings.qualify_on_trial_start:
        return qualify_referral(
            session,
            referral=referral,
            qualified_at=trial_started_at,
            is_initial=True,
            settings=settings,
        )
    return referral


def mark_first_payment(
    session: Session,
    *,
    referred_user_id: str,
    paid_at: datetime,
    plan_price_cents: int | None = None,
    currency: str | None = None,
    is_initial: bool = True,
    settings: Settings | None = None,
) -> Referral | None:
    referral = referral_for_user(session, referred_user_id=referred_user_id)
    if referral is None:
        return None
    if status_of(referral) != ReferralStatus.SIGNED_UP:
        # Duplicate billing webhooks and later renewals land here.
        return referral

    if referral.first_paid_at is None:
        referral.first_paid_at = _clamped(referral, paid_at, exclude="first_paid_at")
    return qualify_referral(
        session,
        referral=referral,
        qualified_at=paid_at,
        plan_price_cents=plan_price_cents,
        currency=currency,
        is_initial=is_initial,
        settings=settings,
    )


def qualify_referral(
    session: Session,
    *,
    referral: Referral,
    qualified_at: datetime,
    plan_price_cents: int | None = None,
    currency: str | None = None,
    is_initial: bool = True,
    settings: Settings | None = None,
) -> Referral:
    """Fix the commission and schedule the payable date (SIGNED_UP -> QUALIFIED).

    The commission is priced from the referred user's plan as it is right
    now and is never recomputed afterwards.
    """
    settings = settings or Settings()
    if status_of(referral) != ReferralStatus.SIGNED_UP:
        return referral

    if plan_price_cents is None and referral.referred_user_id:
        user = session.get(User, referral.referred_user_id)
        plan_price_cents = user.plan_price_cents if user is not None else None

    commission_type = CommissionType(referral.commission_type or settings.commission_type)
    if referral.commission_value is not None:
        commission_value = Decimal(referral.commission_value)
    elif commission_type == CommissionType.FIXED:
        commission_value = Decimal(int(settings.fixed_commission_cents))
    else:
        rate = (
            settings.initial_commission_rate
            if is_initial
            else settings.recurring_commission_rate
        )
        commission_value = Decimal(str(rate))

    hold_days = (
        referral.hold_days
        if referral.hold_days is not None
        else int(settings.referral_hold_days)
    )

    if referral.commission_amount_cents is None:
        referral.commission_amount_cents = compute_commission_amount_cents(
            plan_price_cents, commission_type, commission_value
        )
    referral.commission_type = commission_type.value
    referral.commission_value = commission_value
    referral.hold_days = hold_days
    if currency:
        referral.currency = str(currency).lower()

    advance_status(referral, ReferralStatus.QUALIFIED, occurred_at=qualified_at)
    if referral.payable_at is None:
        referral.payable_at = compute_payable_at(referral.qualified_at, hold_days)
    session.add(referral)
    session.flush()

    log_event(
        logger,
        logging.INFO,
        "referral qualified",
        referral_id=referral.id,
        referrer_id=referral.referrer_id,
        commission_amount_cents=referral.commission_amount_cents,
        payable_at=as_aware_utc(referral.payable_at).isoformat(),
    )
    return referral


def in_hold_window(referral: Referral, at: datetime) -> bool:
    payable_at = as_aware_utc_or_none(referral.payable_at)
    return payable_at is None or as_aware_utc(at) < payable_at


def void_referral(referral: Referral, *, occurred_at: datetime, reason: str) -> bool:
    """VOID `referral` if its status and hold window still allow it."""
    current = status_of(referral)
    if ReferralStatus.VOID not in ALLOWED_TRANSITIONS[current]:
        return False
    if not in_hold_window(referral, occurred_at):
        return False
    at = as_aware_utc(occurred_at)
    advance_status(referral, ReferralStatus.VOID, occurred_at=at)
    set_metadata(referral, voidedAt=at.isoformat(), voidReason=reason)
    return True


def void_referral_if_in_hold(
    session: Session,
    *,
    referred_user_id: str,
    occurred_at: datetime,
    reason: str,
) -> Referral | None:
    """Claw back a referral on refund/chargeback while its hold is still open."""
    referral = referral_for_user(session, referred_user_id=referred_user_id)
    if referral is None:
        return None
    if not void_referral(referral, occurred_at=occurred_at, reason=reason):
        return referral
    session.add(referral)
    session.flush()
    log_event(
        logger,
        logging.INFO,
        "referral voided within hold window",
        referral_id=referral.id,
        referrer_id=referral.referrer_id,
        reason=reason,
    )
    return referral


def timeline_violations(referral: Referral) -> list[str]:
    """Pairs of lifecycle timestamps recorded out of order on one row."""
    present = [
        (f, as_aware_utc(getattr(referral, f)))
        for f in TIMELINE_FIELDS
        if getattr(referral, f) is not None
    ]
    out: list[str] = []
    for (a_name, a_val), (b_name, b_val) in zip(present, present[1:]):
        if b_val < a_val:
            out.append(f"{a_name}>{b_name}")
    return out
