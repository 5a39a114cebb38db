"""Scheduled promotion of matured referrals (QUALIFIED -> PAYABLE).

The eligible set is recomputed on every run, so there is no queue to
drain and a repeated or stolen run only promotes whatever is still due.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from affiliate_api.core.config import Settings
from affiliate_api.locks import JobLock
from affiliate_api.logs import get_logger, log_event
from affiliate_api.models import Referral
from affiliate_api.referral_lifecycle import ReferralStatus, ensure_transition

logger = get_logger(__name__)

JOB_LOCK_SCOPE = "AFFILIATE_PAYABLE_JOB_LOCK"
JOB_LOCK_KEY = "GLOBAL"


def eligible_referral_ids(session: Session, *, now: datetime) -> list[str]:
    return list(
        session.scalars(
            select(Referral.id)
            .where(Referral.status == ReferralStatus.QUALIFIED.value)
            .where(Referral.payable_at.is_not(None))
            .where(Referral.payable_at <= now)
            .order_by(Referral.payable_at.asc(), Referral.id.asc())
        ).all()
    )


class AffiliatePayableJob:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: Callable[[], Session],
        lock: JobLock | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.lock = lock or JobLock.from_settings(
            settings,
            scope=JOB_LOCK_SCOPE,
            key=JOB_LOCK_KEY,
            session_factory=session_factory,
        )

    def run(self, *, trigger: str, now: datetime | None = None) -> dict[str, Any]:
        run_id = uuid4().hex
        with self.lock.held(run_id=run_id, trigger=trigger) as attempt:
            if not attempt.acquired:
                return {"processed": 0, "updated": 0, "skipped": "locked", "runId": run_id}
            try:
                with self.session_factory() as session:
                    processed, updated = self._promote(
                        session, now=now or datetime.now(UTC)
                    )
            except Exception:
                log_event(
                    logger,
                    logging.ERROR,
                    "affiliate payable job failed",
                    exc_info=True,
                    run_id=run_id,
                    trigger=trigger,
                )
                raise

        log_event(
            logger,
            logging.INFO,
            "affiliate payable job finished",
            run_id=run_id,
            trigger=trigger,
            processed=processed,
            updated=updated,
            stolen=attempt.stolen,
        )
        return {"processed": processed, "updated": updated, "runId": run_id}

    def _promote(self, session: Session, *, now: datetime) -> tuple[int, int]:
        """Move every due QUALIFIED referral to PAYABLE in one statement."""
        ensure_transition(ReferralStatus.QUALIFIED, ReferralStatus.PAYABLE)
        try:
            ids = eligible_referral_ids(session, now=now)
            if not ids:
                return 0, 0
            result = session.execute(
                update(Referral)
                .where(Referral.id.in_(ids))
                .where(Referral.status == ReferralStatus.QUALIFIED.value)
                .values(status=ReferralStatus.PAYABLE.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        return len(ids), int(result.rowcount or 0)


def run_affiliate_payable_job(
    *,
    trigger: str,
    settings: Settings | None = None,
    session_factory: Callable[[], Session] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if session_factory is None:
        from affiliate_api.db import SessionLocal

        session_factory = SessionLocal
    job = AffiliatePayableJob(
        settings=settings or Settings(), session_factory=session_factory
    )
    return job.run(trigger=trigger, now=now)
