from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from affiliate_api.affiliate_payables import run_affiliate_payable_job
from affiliate_api.affiliate_report import (
    affiliate_detail,
    affiliate_rollup,
    list_attributed_referrals,
    serialize_referral,
)
from affiliate_api.core.config import Settings
from affiliate_api.deps import AdminUser, AppSettings, DBSession, ReferralsEnabled
from affiliate_api.errors import InvalidTransition, NotFound, ValidationFailed
from affiliate_api.logs import get_logger, log_event
from affiliate_api.models import ManualPayoutSchedule, Referral, User
from affiliate_api.payouts import (
    create_payout_batch,
    export_batch_csv,
    list_payout_batches,
    mark_batch_paid,
    serialize_batch,
)
from affiliate_api.referral_codes import get_or_create_referral_code
from affiliate_api.referral_lifecycle import (
    Attribution,
    ReferralStatus,
    attribute_signup,
    ensure_transition,
    mark_first_payment,
    qualify_referral,
    set_metadata,
    status_of,
    void_referral,
)
from affiliate_api.timeutil import iso_or_none

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/admin/affiliates",
    tags=["admin-affiliates"],
    dependencies=[ReferralsEnabled],
)


class ManualReferralIn(BaseModel):
    referred_user_id: str = Field(min_length=1)
    referrer_id: str = Field(min_length=1)
    first_paid_at: datetime | None = None
    plan_price_cents: int | None = Field(default=None, ge=0)
    currency: str | None = None
    is_initial: bool = True


class ReferralPatchIn(BaseModel):
    status: Literal["QUALIFIED", "PAYABLE", "PAID", "VOID"] | None = None
    referred_name: str | None = Field(default=None, max_length=200)
    referred_email: str | None = Field(default=None, max_length=320)
    notes: str | None = Field(default=None, max_length=2000)


class PayoutCreateIn(BaseModel):
    referrer_id: str = Field(min_length=1)
    referral_ids: list[str] | None = None
    notes: str | None = Field(default=None, max_length=2000)


class ManualPayoutIn(BaseModel):
    referrer_id: str = Field(min_length=1)
    amount_cents: int = Field(ge=1)
    currency: str = Field(default="usd", min_length=1)
    scheduled_for: datetime
    frequency: str | None = None
    reminder_enabled: bool = True
    notes: str | None = None


class ManualPayoutPatchIn(BaseModel):
    amount_cents: int | None = Field(default=None, ge=1)
    currency: str | None = Field(default=None, min_length=1)
    scheduled_for: datetime | None = None
    frequency: str | None = None
    reminder_enabled: bool | None = None
    next_run_at: datetime | None = None
    notes: str | None = None


@router.get("")
def list_affiliates(_admin: User = AdminUser, db: Session = DBSession) -> dict[str, Any]:
    return {"affiliates": affiliate_rollup(db)}


@router.get("/referrals")
def list_referrals(
    status: str | None = Query(default=None),
    _admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    return {"referrals": list_attributed_referrals(db, status=status)}


@router.post("/referrals")
def link_referral(
    req: ManualReferralIn,
    admin: User = AdminUser,
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> dict[str, Any]:
    if req.referred_user_id == req.referrer_id:
        raise ValidationFailed("Cannot create a self-referral", field="referred_user_id")
    referred = db.get(User, req.referred_user_id)
    if referred is None:
        raise NotFound("Referred user not found")
    referrer = db.get(User, req.referrer_id)
    if referrer is None:
        raise NotFound("Referrer not found")

    code = get_or_create_referral_code(db, user=referrer, settings=settings)
    try:
        referral = attribute_signup(
            db,
            attribution=Attribution(referrer_id=referrer.id, referral_code=code),
            referred_user=referred,
            signed_up_at=referred.created_at,
            source="admin-manual",
            settings=settings,
        )
        if req.first_paid_at is not None:
            mark_first_payment(
                db,
                referred_user_id=referred.id,
                paid_at=req.first_paid_at,
                plan_price_cents=req.plan_price_cents,
                currency=req.currency,
                is_initial=req.is_initial,
                settings=settings,
            )
        set_metadata(
            referral,
            source="admin-manual",
            createdBy=admin.id,
            createdAt=datetime.now(UTC).isoformat(),
        )
        db.add(referral)
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_event(
        logger,
        logging.INFO,
        "manual affiliate referral linked",
        referral_id=referral.id,
        referrer_id=referrer.id,
        referred_user_id=referred.id,
        actor_id=admin.id,
    )
    return {"success": True, "referralId": referral.id}


@router.patch("/referrals/{referral_id}")
def update_referral(
    referral_id: str,
    req: ReferralPatchIn,
    admin: User = AdminUser,
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> dict[str, Any]:
    referral = db.get(Referral, referral_id)
    if referral is None:
        raise NotFound("Referral not found")

    now = datetime.now(UTC)
    if req.referred_name is not None:
        referral.referred_name = req.referred_name
    if req.referred_email is not None:
        referral.referred_email = req.referred_email
    if req.notes is not None:
        set_metadata(referral, adminNotes=req.notes)

    if req.status is not None:
        target = ReferralStatus(req.status)
        if target in (ReferralStatus.PAYABLE, ReferralStatus.PAID):
            raise InvalidTransition(
                f"{target.value} is set by the payable job and payout batches only",
                field="status",
            )
        current = status_of(referral)
        if target != current:
            ensure_transition(current, target)
            if target == ReferralStatus.QUALIFIED:
                qualify_referral(db, referral=referral, qualified_at=now, settings=settings)
            elif not void_referral(referral, occurred_at=now, reason="admin"):
                raise InvalidTransition(
                    "Referral hold window has closed", field="status"
                )

    referral.updated_at = now
    db.add(referral)
    db.commit()
    log_event(
        logger,
        logging.INFO,
        "affiliate referral updated",
        referral_id=referral.id,
        status=referral.status,
        actor_id=admin.id,
    )
    return {"referral": serialize_referral(referral)}


@router.get("/payouts")
def list_payouts(
    status: str | None = Query(default=None),
    _admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    return {"batches": list_payout_batches(db, status=status)}


@router.post("/payouts/create")
def create_payout(
    req: PayoutCreateIn,
    admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    batch = create_payout_batch(
        db,
        referrer_id=req.referrer_id,
        referral_ids=req.referral_ids,
        actor_id=admin.id,
        notes=req.notes,
    )
    return {"batch": serialize_batch(batch)}


@router.post("/payouts/{batch_id}/mark-paid")
def mark_paid(
    batch_id: str,
    admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    batch = mark_batch_paid(db, batch_id=batch_id, actor_id=admin.id)
    return {"success": True, "batch": serialize_batch(batch)}


@router.get("/payouts/{batch_id}/export.csv")
def export_payout_csv(
    batch_id: str,
    _admin: User = AdminUser,
    db: Session = DBSession,
) -> Response:
    content = export_batch_csv(db, batch_id=batch_id)
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="affiliate-payout-{batch_id}.csv"'
        },
    )


@router.post("/payables/run")
def run_payables(
    admin: User = AdminUser,
    settings: Settings = AppSettings,
) -> dict[str, Any]:
    log_event(logger, logging.INFO, "affiliate payable job triggered", actor_id=admin.id)
    return {"success": True, "result": run_affiliate_payable_job(trigger="admin", settings=settings)}


_REQUIRED_COLUMNS = ("amount_cents", "currency", "reminder_enabled", "scheduled_for")


def _manual_payout_out(p: ManualPayoutSchedule, referrer: User | None) -> dict[str, Any]:
    return {
        "id": p.id,
        "referrer": (
            {"id": referrer.id, "name": referrer.name, "email": referrer.email}
            if referrer
            else None
        ),
        "amountCents": int(p.amount_cents),
        "currency": p.currency,
        "scheduledFor": iso_or_none(p.scheduled_for),
        "frequency": p.frequency,
        "reminderEnabled": bool(p.reminder_enabled),
        "nextRunAt": iso_or_none(p.next_run_at),
        "lastSentAt": iso_or_none(p.last_sent_at),
        "notes": p.notes,
        "createdByUserId": p.created_by_user_id,
        "createdAt": iso_or_none(p.created_at),
    }


@router.get("/manual-payouts")
def list_manual_payouts(_admin: User = AdminUser, db: Session = DBSession) -> dict[str, Any]:
    rows = db.execute(
        select(ManualPayoutSchedule, User)
        .outerjoin(User, User.id == ManualPayoutSchedule.referrer_id)
        .order_by(ManualPayoutSchedule.scheduled_for.desc(), ManualPayoutSchedule.id.desc())
    ).all()
    return {"payouts": [_manual_payout_out(p, u) for p, u in rows]}


@router.post("/manual-payouts")
def create_manual_payout(
    req: ManualPayoutIn,
    admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    referrer = db.get(User, req.referrer_id)
    if referrer is None:
        raise NotFound("Referrer not found")
    frequency = (req.frequency or "").strip() or None
    payout = ManualPayoutSchedule(
        id=f"mp_{uuid4().hex}",
        referrer_id=referrer.id,
        amount_cents=int(req.amount_cents),
        currency=req.currency.strip().lower(),
        scheduled_for=req.scheduled_for,
        frequency=frequency,
        reminder_enabled=bool(req.reminder_enabled),
        next_run_at=req.scheduled_for if frequency else None,
        notes=req.notes,
        created_by_user_id=admin.id,
        created_at=datetime.now(UTC),
    )
    db.add(payout)
    db.commit()
    return {"payout": _manual_payout_out(payout, referrer)}


@router.patch("/manual-payouts/{payout_id}")
def update_manual_payout(
    payout_id: str,
    req: ManualPayoutPatchIn,
    _admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    payout = db.get(ManualPayoutSchedule, payout_id)
    if payout is None:
        raise NotFound("Manual payout not found")

    fields = req.model_dump(exclude_unset=True)
    if "currency" in fields and fields["currency"]:
        fields["currency"] = str(fields["currency"]).strip().lower()
    if "frequency" in fields:
        fields["frequency"] = (fields["frequency"] or "").strip() or None
        if fields["frequency"] is None:
            fields.setdefault("next_run_at", None)
    for name, value in fields.items():
        if name in _REQUIRED_COLUMNS and value is None:
            continue
        setattr(payout, name, value)
    db.add(payout)
    db.commit()
    return {"payout": _manual_payout_out(payout, db.get(User, payout.referrer_id))}


@router.delete("/manual-payouts/{payout_id}")
def delete_manual_payout(
    payout_id: str,
    _admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    payout = db.get(ManualPayoutSchedule, payout_id)
    if payout is None:
        raise NotFound("Manual payout not found")
    db.delete(payout)
    db.commit()
    return {"success": True}


@router.get("/{referrer_id}/referrals")
def affiliate_referrals(
    referrer_id: str,
    _admin: User = AdminUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    return affiliate_detail(db, referrer_id=referrer_id)
