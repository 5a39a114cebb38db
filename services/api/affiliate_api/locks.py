from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterator
from uuid import uuid4

import orjson
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_api.core.config import Settings
from affiliate_api.logs import get_logger, log_event
from affiliate_api.models import KeyedSnapshot
from affiliate_api.timeutil import as_aware_utc

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobLockPayload:
    run_id: str
    trigger: str
    holder: str
    locked_at: datetime
    stolen: bool = False
    previous_run_id: str | None = None

    def to_json(self) -> str:
        out: dict[str, object] = {
            "runId": self.run_id,
            "trigger": self.trigger,
            "holder": self.holder,
            "lockedAt": as_aware_utc(self.locked_at).isoformat(),
        }
        if self.stolen:
            out["stolen"] = True
            out["previousRunId"] = self.previous_run_id
        return orjson.dumps(out).decode("utf-8")

    @classmethod
    def from_json(cls, raw: str | None) -> JobLockPayload | None:
        try:
            obj = orjson.loads((raw or "{}").encode("utf-8"))
        except orjson.JSONDecodeError:
            return None
        if not isinstance(obj, dict) or not obj.get("runId"):
            return None
        try:
            locked_at = datetime.fromisoformat(str(obj.get("lockedAt") or ""))
        except ValueError:
            return None
        return cls(
            run_id=str(obj["runId"]),
            trigger=str(obj.get("trigger") or "unknown"),
            holder=str(obj.get("holder") or "unknown"),
            locked_at=as_aware_utc(locked_at),
            stolen=bool(obj.get("stolen", False)),
            previous_run_id=(
                str(obj["previousRunId"]) if obj.get("previousRunId") else None
            ),
        )


@dataclass(frozen=True)
class LockAttempt:
    acquired: bool
    stolen: bool = False
    # Ours when acquired, otherwise the live holder's (None if unreadable).
    payload: JobLockPayload | None = None

    def __bool__(self) -> bool:
        return self.acquired


def _find_lock(session: Session, *, scope: str, key: str) -> KeyedSnapshot | None:
    return session.scalar(
        select(KeyedSnapshot)
        .where(KeyedSnapshot.scope == scope)
        .where(KeyedSnapshot.snapshot_key == key)
        .limit(1)
    )


def _try_insert(session: Session, *, scope: str, key: str, payload: JobLockPayload) -> bool:
    now = payload.locked_at
    session.add(
        KeyedSnapshot(
            id=f"lock_{uuid4().hex}",
            scope=scope,
            snapshot_key=key,
            cache_key=key,
            payload_json=payload.to_json(),
            created_at=now,
            updated_at=now,
        )
    )
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return False
    except Exception:
        session.rollback()
        raise
    return True


def acquire_job_lock(
    session: Session,
    *,
    scope: str,
    key: str,
    ttl: timedelta,
    run_id: str,
    trigger: str,
    holder: str,
    now: datetime | None = None,
) -> LockAttempt:
    now_dt = now or datetime.now(UTC)
    payload = JobLockPayload(
        run_id=run_id, trigger=trigger, holder=holder, locked_at=now_dt
    )

    # Two passes: the record may be released between a failed insert and the read.
    for _ in range(2):
        if _try_insert(session, scope=scope, key=key, payload=payload):
            log_event(
                logger,
                logging.INFO,
                "job lock acquired",
                scope=scope,
                run_id=run_id,
                trigger=trigger,
                holder=holder,
            )
            return LockAttempt(acquired=True, payload=payload)

        existing = _find_lock(session, scope=scope, key=key)
        if existing is None:
            continue

        current = JobLockPayload.from_json(existing.payload_json)
        last_modified = as_aware_utc(existing.updated_at)
        if now_dt - last_modified <= ttl:
            session.rollback()
            log_event(
                logger,
                logging.WARNING,
                "job lock is currently held",
                scope=scope,
                run_id=run_id,
                trigger=trigger,
                current_run_id=current.run_id if current else "unknown",
                current_holder=current.holder if current else "unknown",
                locked_at=last_modified.isoformat(),
            )
            return LockAttempt(acquired=False, payload=current)

        stolen = replace(
            payload,
            stolen=True,
            previous_run_id=current.run_id if current else "unknown",
        )
        # Compare-and-swap on the last-modified stamp so two stealers cannot both win.
        res = session.execute(
            update(KeyedSnapshot)
            .where(KeyedSnapshot.id == existing.id)
            .where(KeyedSnapshot.updated_at == existing.updated_at)
            .values(payload_json=stolen.to_json(), updated_at=now_dt)
        )
        session.commit()
        if int(res.rowcount or 0) == 1:
            log_event(
                logger,
                logging.WARNING,
                "job lock was stale and has been stolen",
                scope=scope,
                run_id=run_id,
                trigger=trigger,
                holder=holder,
                previous_run_id=stolen.previous_run_id,
                previous_holder=current.holder if current else "unknown",
                previous_locked_at=last_modified.isoformat(),
            )
            return LockAttempt(acquired=True, stolen=True, payload=stolen)

        winner = _find_lock(session, scope=scope, key=key)
        winner_payload = JobLockPayload.from_json(winner.payload_json) if winner else None
        session.rollback()
        log_event(
            logger,
            logging.WARNING,
            "job lock was stolen by a concurrent run",
            scope=scope,
            run_id=run_id,
            trigger=trigger,
            current_run_id=winner_payload.run_id if winner_payload else "unknown",
        )
        return LockAttempt(acquired=False, payload=winner_payload)

    log_event(
        logger,
        logging.WARNING,
        "job lock could not be acquired",
        scope=scope,
        run_id=run_id,
        trigger=trigger,
    )
    return LockAttempt(acquired=False)


def release_job_lock(
    session: Session,
    *,
    scope: str,
    key: str,
    run_id: str | None = None,
) -> bool:
    """Delete the lock record.

    Without `run_id` the delete is unconditional. With `run_id` only a
    record still carrying that run's payload is removed, so a run whose lock
    was stolen does not delete the thief's record.
    """
    if run_id is None:
        res = session.execute(
            delete(KeyedSnapshot)
            .where(KeyedSnapshot.scope == scope)
            .where(KeyedSnapshot.snapshot_key == key)
        )
        session.commit()
        log_event(logger, logging.INFO, "job lock released", scope=scope)
        return int(res.rowcount or 0) > 0

    existing = _find_lock(session, scope=scope, key=key)
    if existing is None:
        session.rollback()
        log_event(
            logger,
            logging.WARNING,
            "job lock already gone at release",
            scope=scope,
            run_id=run_id,
        )
        return False

    current = JobLockPayload.from_json(existing.payload_json)
    if current is None or current.run_id != run_id:
        session.rollback()
        log_event(
            logger,
            logging.WARNING,
            "job lock was taken over by another run; leaving it in place",
            scope=scope,
            run_id=run_id,
            current_run_id=current.run_id if current else "unknown",
            current_holder=current.holder if current else "unknown",
        )
        return False

    res = session.execute(
        delete(KeyedSnapshot)
        .where(KeyedSnapshot.id == existing.id)
        .where(KeyedSnapshot.updated_at == existing.updated_at)
    )
    session.commit()
    released = int(res.rowcount or 0) == 1
    log_event(
        logger,
        logging.INFO if released else logging.WARNING,
        "job lock released" if released else "job lock changed during release",
        scope=scope,
        run_id=run_id,
        trigger=current.trigger,
        holder=current.holder,
    )
    return released


class JobLock:
    """Named mutual-exclusion record for one (scope, key) pair.

    Every operation runs in its own short session so the lock row is
    committed independently of the guarded work.
    """

    def __init__(
        self,
        *,
        scope: str,
        key: str,
        ttl: timedelta,
        holder: str,
        session_factory: Callable[[], Session],
    ) -> None:
        self.scope = scope
        self.key = key
        self.ttl = ttl
        self.holder = holder
        self._session_factory = session_factory

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        scope: str,
        key: str,
        session_factory: Callable[[], Session],
    ) -> JobLock:
        return cls(
            scope=scope,
            key=key,
            ttl=timedelta(minutes=int(settings.job_lock_ttl_minutes)),
            holder=settings.resolved_lock_holder(),
            session_factory=session_factory,
        )

    def acquire(
        self, *, run_id: str, trigger: str, now: datetime | None = None
    ) -> LockAttempt:
        with self._session_factory() as session:
            return acquire_job_lock(
                session,
                scope=self.scope,
                key=self.key,
                ttl=self.ttl,
                run_id=run_id,
                trigger=trigger,
                holder=self.holder,
                now=now,
            )

    def release(self, *, run_id: str | None = None) -> bool:
        with self._session_factory() as session:
            return release_job_lock(
                session, scope=self.scope, key=self.key, run_id=run_id
            )

    def current(self) -> JobLockPayload | None:
        with self._session_factory() as session:
            row = _find_lock(session, scope=self.scope, key=self.key)
            return JobLockPayload.from_json(row.payload_json) if row else None

    @contextlib.contextmanager
    def held(self, *, run_id: str, trigger: str) -> Iterator[LockAttempt]:
        attempt = self.acquire(run_id=run_id, trigger=trigger)
        try:
            yield attempt
        finally:
            if attempt.acquired:
                self.release(run_id=run_id)
