from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from affiliate_api.core.config import Settings
from affiliate_api.errors import NotFound
from affiliate_api.models import PayoutBatch, Referral, User
from affiliate_api.payouts import PayoutBatchStatus
from affiliate_api.referral_codes import build_links, get_or_create_referral_code
from affiliate_api.referral_lifecycle import (
    QUALIFIED_OR_LATER,
    ReferralStatus,
    status_of,
    timeline_violations,
)
from affiliate_api.timeutil import iso_or_none

RECENT_REFERRALS_LIMIT = 10
_QUALIFIED_OR_LATER_VALUES = frozenset(s.value for s in QUALIFIED_OR_LATER)


def serialize_referral(r: Referral, *, referred_user: User | None = None) -> dict[str, Any]:
    return {
        "id": r.id,
        "referrerId": r.referrer_id,
        "referralCode": r.referral_code,
        "slugUsed": r.slug_used,
        "status": r.status,
        "referredUserId": r.referred_user_id,
        "referredEmail": r.referred_email or (referred_user.email if referred_user else None),
        "referredName": r.referred_name or (referred_user.name if referred_user else None),
        "source": r.source,
        "clickedAt": iso_or_none(r.clicked_at),
        "signedUpAt": iso_or_none(r.signed_up_at),
        "trialStartedAt": iso_or_none(r.trial_started_at),
        "trialEndsAt": iso_or_none(r.trial_ends_at),
        "firstPaidAt": iso_or_none(r.first_paid_at),
        "qualifiedAt": iso_or_none(r.qualified_at),
        "payableAt": iso_or_none(r.payable_at),
        "paidAt": iso_or_none(r.paid_at),
        "commissionAmountCents": r.commission_amount_cents,
        "currency": r.currency,
        "payoutBatchId": r.payout_batch_id,
    }


def _empty_stats() -> dict[str, int]:
    return {"totalSignups": 0, "qualified": 0, "payable": 0, "paid": 0, "paidTotalCents": 0}


def _stats_by_referrer(
    session: Session, *, referrer_id: str | None = None
) -> dict[str, dict[str, int]]:
    stmt = (
        select(
            Referral.referrer_id,
            Referral.status,
            func.count(Referral.id),
            func.coalesce(func.sum(Referral.commission_amount_cents), 0),
        )
        .where(Referral.referred_user_id.is_not(None))
        .group_by(Referral.referrer_id, Referral.status)
    )
    if referrer_id is not None:
        stmt = stmt.where(Referral.referrer_id == referrer_id)

    out: dict[str, dict[str, int]] = defaultdict(_empty_stats)
    for rid, status, n, cents in session.execute(stmt).all():
        stats = out[str(rid)]
        stats["totalSignups"] += int(n)
        if status in _QUALIFIED_OR_LATER_VALUES:
            stats["qualified"] += int(n)
        if status == ReferralStatus.PAYABLE.value:
            stats["payable"] += int(n)
        elif status == ReferralStatus.PAID.value:
            stats["paid"] += int(n)
            stats["paidTotalCents"] += int(cents or 0)
    return out


def affiliate_rollup(session: Session) -> list[dict[str, Any]]:
    """Per-affiliate counts, most signups first.

    Referrers are listed in account creation order before sorting, and the
    sort is stable, so equal totals keep that order.
    """
    stats = _stats_by_referrer(session)
    owners = select(Referral.referrer_id).distinct()
    users = session.scalars(
        select(User)
        .where(User.id.in_(owners))
        .order_by(User.created_at.asc(), User.id.asc())
    ).all()

    rows = [
        {
            "referrerId": u.id,
            "name": u.name,
            "email": u.email,
            "referralSlug": u.referral_slug,
            **stats.get(u.id, _empty_stats()),
        }
        for u in users
    ]
    rows.sort(key=lambda r: r["totalSignups"], reverse=True)
    return rows


def user_referral_summary(
    session: Session, *, user: User, settings: Settings | None = None
) -> dict[str, Any]:
    settings = settings or Settings()
    code = get_or_create_referral_code(session, user=user, settings=settings)
    links = build_links(code, settings)
    stats = _stats_by_referrer(session, referrer_id=user.id).get(user.id, _empty_stats())
    recent = session.scalars(
        select(Referral)
        .where(Referral.referrer_id == user.id)
        .where(Referral.referred_user_id.is_not(None))
        .order_by(Referral.created_at.desc(), Referral.id.desc())
        .limit(RECENT_REFERRALS_LIMIT)
    ).all()
    return {
        "referralCode": code,
        "affiliateLink": links.affiliate_link,
        "shortLink": links.short_link,
        "stats": stats,
        "recentReferrals": [serialize_referral(r) for r in recent],
    }


def _with_referred_users(session: Session, referrals: list[Referral]) -> list[dict[str, Any]]:
    ids = {r.referred_user_id for r in referrals if r.referred_user_id}
    users = (
        {u.id: u for u in session.scalars(select(User).where(User.id.in_(ids)))}
        if ids
        else {}
    )
    return [
        serialize_referral(r, referred_user=users.get(r.referred_user_id or ""))
        for r in referrals
    ]


def list_user_referrals(
    session: Session, *, user_id: str, limit: int = 50, offset: int = 0
) -> list[dict[str, Any]]:
    """One page of a referrer's attributed referrals, latest signup first."""
    referrals = list(
        session.scalars(
            select(Referral)
            .where(Referral.referrer_id == user_id)
            .where(Referral.referred_user_id.is_not(None))
            .order_by(Referral.signed_up_at.desc(), Referral.id.desc())
            .limit(int(limit))
            .offset(int(offset))
        )
    )
    return _with_referred_users(session, referrals)


def list_attributed_referrals(
    session: Session, *, status: str | None = None, limit: int = 500
) -> list[dict[str, Any]]:
    stmt = select(Referral).where(Referral.referred_user_id.is_not(None))
    if status:
        stmt = stmt.where(Referral.status == str(status).strip().upper())
    referrals = list(
        session.scalars(
            stmt.order_by(Referral.created_at.desc(), Referral.id.desc()).limit(int(limit))
        )
    )
    rows = _with_referred_users(session, referrals)
    referrer_ids = {r.referrer_id for r in referrals}
    referrers: dict[str, User] = {}
    if referrer_ids:
        referrers = {
            u.id: u for u in session.scalars(select(User).where(User.id.in_(referrer_ids)))
        }
    for row in rows:
        ref = referrers.get(row["referrerId"])
        row["referrer"] = (
            {"id": ref.id, "name": ref.name, "email": ref.email} if ref else None
        )
    return rows


def affiliate_detail(session: Session, *, referrer_id: str) -> dict[str, Any]:
    referrer = session.get(User, referrer_id)
    if referrer is None:
        raise NotFound("Affiliate not found")
    referrals = list(
        session.scalars(
            select(Referral)
            .where(Referral.referrer_id == referrer_id)
            .order_by(Referral.created_at.desc(), Referral.id.desc())
        )
    )
    return {
        "referrer": {
            "id": referrer.id,
            "name": referrer.name,
            "email": referrer.email,
            "referralSlug": referrer.referral_slug,
        },
        "stats": _stats_by_referrer(session, referrer_id=referrer_id).get(
            referrer_id, _empty_stats()
        ),
        "referrals": _with_referred_users(session, referrals),
    }


@dataclass
class AuditReport:
    referrals_checked: int = 0
    batches_checked: int = 0
    issues: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues

    def add(self, kind: str, subject: str, detail: str = "") -> None:
        self.issues.append({"kind": kind, "id": subject, "detail": detail})


def audit_referrals(session: Session) -> AuditReport:
    """Read-only consistency sweep over referrals and payout batches."""
    report = AuditReport()
    referrals = list(session.scalars(select(Referral).order_by(Referral.created_at.asc())))
    report.referrals_checked = len(referrals)

    seen_referred: dict[str, str] = {}
    members: dict[str, list[Referral]] = defaultdict(list)
    for r in referrals:
        if r.referred_user_id and r.referred_user_id == r.referrer_id:
            report.add("self_referral", r.id)
        if r.referred_user_id:
            first = seen_referred.setdefault(r.referred_user_id, r.id)
            if first != r.id:
                report.add("duplicate_referred_user", r.id, f"also on {first}")

        try:
            status = status_of(r)
        except ValueError:
            report.add("unknown_status", r.id, str(r.status))
            continue
        if status in QUALIFIED_OR_LATER:
            if r.payable_at is None:
                report.add("qualified_without_payable_at", r.id)
            if r.commission_amount_cents is None:
                report.add("qualified_without_commission", r.id)
        if r.paid_at is not None and not r.payout_batch_id:
            report.add("paid_without_batch", r.id)
        if status == ReferralStatus.PAID and r.paid_at is None:
            report.add("paid_status_without_paid_at", r.id)
        for pair in timeline_violations(r):
            report.add("timestamps_out_of_order", r.id, pair)
        if r.payout_batch_id:
            members[r.payout_batch_id].append(r)

    batches = list(session.scalars(select(PayoutBatch)))
    report.batches_checked = len(batches)
    for b in batches:
        rows = members.get(b.id, [])
        total = sum(int(r.commission_amount_cents or 0) for r in rows)
        if total != int(b.total_amount_cents or 0):
            report.add(
                "batch_total_mismatch",
                b.id,
                f"batch={int(b.total_amount_cents or 0)} members={total}",
            )
        batch_paid = b.status == PayoutBatchStatus.PAID.value
        for r in rows:
            member_paid = r.status == ReferralStatus.PAID.value
            if member_paid != batch_paid:
                report.add(
                    "batch_status_mismatch", b.id, f"referral {r.id} is {r.status}"
                )
    return report
