from __future__ import annotations

import csv
import io
import logging
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from affiliate_api.errors import Conflict, NotFound, ValidationFailed
from affiliate_api.logs import get_logger, log_event
from affiliate_api.models import PayoutBatch, Referral, User
from affiliate_api.referral_lifecycle import ReferralStatus, ensure_transition
from affiliate_api.timeutil import as_aware_utc_or_none, iso_or_none

logger = get_logger(__name__)


class PayoutBatchStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


CSV_COLUMNS: tuple[str, ...] = (
    "Affiliate Name",
    "Affiliate Email",
    "Referral Id",
    "Referred Name",
    "Referred Email",
    "Status",
    "Signed Up At",
    "Qualified At",
    "Payable At",
    "Paid At",
    "Commission Amount",
    "Currency",
)


def format_cents(cents: int | None) -> str:
    amount = Decimal(int(cents or 0)) / Decimal(100)
    return str(amount.quantize(Decimal("0.01")))


def _batchable_referrals(
    session: Session, *, referrer_id: str, referral_ids: list[str] | None
) -> list[Referral]:
    stmt = (
        select(Referral)
        .where(Referral.referrer_id == referrer_id)
        .where(Referral.status == ReferralStatus.PAYABLE.value)
        .where(Referral.payout_batch_id.is_(None))
        .where(Referral.referred_user_id.is_not(None))
    )
    if referral_ids is not None:
        stmt = stmt.where(Referral.id.in_(referral_ids))
    return list(session.scalars(stmt.order_by(Referral.payable_at.asc(), Referral.id.asc())))


def create_payout_batch(
    session: Session,
    *,
    referrer_id: str,
    referral_ids: list[str] | None = None,
    actor_id: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> PayoutBatch:
    """Group a referrer's unbatched PAYABLE referrals into a PENDING batch.

    Batch insert and member stamping commit together. A member claimed by
    a concurrent batch in between raises Conflict and nothing is written.
    """
    now_dt = now or datetime.now(UTC)
    if session.get(User, referrer_id) is None:
        raise NotFound("Affiliate not found")

    wanted = sorted(set(referral_ids)) if referral_ids is not None else None
    if wanted is not None and not wanted:
        raise ValidationFailed("No referrals selected", field="referral_ids")

    members = _batchable_referrals(session, referrer_id=referrer_id, referral_ids=wanted)
    if not members:
        raise ValidationFailed("No payable referrals for this affiliate")
    if wanted is not None and len(members) != len(wanted):
        raise ValidationFailed(
            "Some selected referrals are not payable for this affiliate",
            field="referral_ids",
        )

    currencies = {str(r.currency or "usd").lower() for r in members}
    if len(currencies) > 1:
        raise ValidationFailed(
            "Cannot batch referrals with different currencies", field="currency"
        )

    member_ids = [r.id for r in members]
    total = sum(int(r.commission_amount_cents or 0) for r in members)
    due_dates = [d for d in (as_aware_utc_or_none(r.payable_at) for r in members) if d]

    batch = PayoutBatch(
        id=f"pb_{uuid4().hex}",
        referrer_id=referrer_id,
        status=PayoutBatchStatus.PENDING.value,
        total_amount_cents=total,
        currency=currencies.pop(),
        due_at=max(due_dates) if due_dates else None,
        created_by_user_id=actor_id,
        notes=notes,
        created_at=now_dt,
        updated_at=now_dt,
    )
    try:
        session.add(batch)
        session.flush()
        result = session.execute(
            update(Referral)
            .where(Referral.id.in_(member_ids))
            .where(Referral.status == ReferralStatus.PAYABLE.value)
            .where(Referral.payout_batch_id.is_(None))
            .values(payout_batch_id=batch.id, updated_at=now_dt)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != len(member_ids):
            raise Conflict("Referrals were claimed by another payout batch")
        session.commit()
    except Exception:
        session.rollback()
        raise

    log_event(
        logger,
        logging.INFO,
        "payout batch created",
        batch_id=batch.id,
        referrer_id=referrer_id,
        total_amount_cents=total,
        members=len(member_ids),
        actor_id=actor_id,
    )
    return batch


def _settle_batch_row(
    session: Session, *, batch_id: str, actor_id: str | None, paid_at: datetime
) -> bool:
    result = session.execute(
        update(PayoutBatch)
        .where(PayoutBatch.id == batch_id)
        .where(PayoutBatch.status == PayoutBatchStatus.PENDING.value)
        .values(
            status=PayoutBatchStatus.PAID.value,
            paid_at=paid_at,
            paid_by_user_id=actor_id,
            updated_at=paid_at,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _settle_member_referrals(
    session: Session, *, batch_id: str, actor_id: str | None, paid_at: datetime
) -> int:
    result = session.execute(
        update(Referral)
        .where(Referral.payout_batch_id == batch_id)
        .where(Referral.status == ReferralStatus.PAYABLE.value)
        .values(
            status=ReferralStatus.PAID.value,
            paid_at=paid_at,
            paid_by_user_id=actor_id,
            updated_at=paid_at,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def mark_batch_paid(
    session: Session,
    *,
    batch_id: str,
    actor_id: str | None,
    now: datetime | None = None,
) -> PayoutBatch:
    """Settle a batch and all of its member referrals in one transaction."""
    now_dt = now or datetime.now(UTC)
    batch = session.get(PayoutBatch, batch_id)
    if batch is None:
        raise NotFound("Payout batch not found")
    if batch.status == PayoutBatchStatus.PAID.value:
        return batch

    ensure_transition(ReferralStatus.PAYABLE, ReferralStatus.PAID)
    try:
        if not _settle_batch_row(
            session, batch_id=batch_id, actor_id=actor_id, paid_at=now_dt
        ):
            # Settled by a concurrent caller between the read and the update.
            session.rollback()
            session.refresh(batch)
            return batch
        members = session.scalar(
            select(func.count(Referral.id)).where(Referral.payout_batch_id == batch_id)
        )
        settled = _settle_member_referrals(
            session, batch_id=batch_id, actor_id=actor_id, paid_at=now_dt
        )
        if settled != int(members or 0):
            raise Conflict("Payout batch has members that are not payable")
        session.commit()
    except Exception:
        session.rollback()
        log_event(
            logger,
            logging.ERROR,
            "payout batch settlement failed",
            exc_info=True,
            batch_id=batch_id,
            actor_id=actor_id,
        )
        raise

    session.refresh(batch)
    log_event(
        logger,
        logging.INFO,
        "payout batch paid",
        batch_id=batch_id,
        referrer_id=batch.referrer_id,
        referrals=settled,
        actor_id=actor_id,
    )
    return batch


def batch_members(session: Session, *, batch_id: str) -> list[Referral]:
    return list(
        session.scalars(
            select(Referral)
            .where(Referral.payout_batch_id == batch_id)
            .order_by(Referral.payable_at.asc(), Referral.id.asc())
        )
    )


def export_batch_csv(session: Session, *, batch_id: str) -> str:
    batch = session.get(PayoutBatch, batch_id)
    if batch is None:
        raise NotFound("Payout batch not found")
    affiliate = session.get(User, batch.referrer_id)

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for r in batch_members(session, batch_id=batch_id):
        writer.writerow(
            [
                affiliate.name if affiliate else "",
                affiliate.email if affiliate else "",
                r.id,
                r.referred_name or "",
                r.referred_email or "",
                r.status,
                iso_or_none(r.signed_up_at) or "",
                iso_or_none(r.qualified_at) or "",
                iso_or_none(r.payable_at) or "",
                iso_or_none(r.paid_at) or "",
                format_cents(r.commission_amount_cents),
                str(r.currency or batch.currency).upper(),
            ]
        )
    return buf.getvalue()


def serialize_batch(batch: PayoutBatch, *, member_count: int | None = None) -> dict:
    out = {
        "id": batch.id,
        "referrerId": batch.referrer_id,
        "status": batch.status,
        "totalAmountCents": int(batch.total_amount_cents or 0),
        "currency": batch.currency,
        "dueAt": iso_or_none(batch.due_at),
        "paidAt": iso_or_none(batch.paid_at),
        "paidByUserId": batch.paid_by_user_id,
        "createdByUserId": batch.created_by_user_id,
        "notes": batch.notes,
        "createdAt": iso_or_none(batch.created_at),
    }
    if member_count is not None:
        out["referralCount"] = int(member_count)
    return out


def list_payout_batches(session: Session, *, status: str | None = None) -> list[dict]:
    counts = (
        select(Referral.payout_batch_id, func.count(Referral.id).label("n"))
        .where(Referral.payout_batch_id.is_not(None))
        .group_by(Referral.payout_batch_id)
        .subquery()
    )
    stmt = select(PayoutBatch, func.coalesce(counts.c.n, 0)).outerjoin(
        counts, counts.c.payout_batch_id == PayoutBatch.id
    )
    if status:
        norm = str(status).strip().upper()
        if norm not in {s.value for s in PayoutBatchStatus}:
            raise ValidationFailed(f"Unknown payout status: {status}", field="status")
        stmt = stmt.where(PayoutBatch.status == norm)
    rows = session.execute(
        stmt.order_by(PayoutBatch.created_at.desc(), PayoutBatch.id.desc())
    ).all()
    return [serialize_batch(b, member_count=n) for b, n in rows]
