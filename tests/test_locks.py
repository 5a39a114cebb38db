from __future__ import annotations

from datetime import UTC, datetime, timedelta

import orjson
import pytest


SCOPE = "TEST_JOB_LOCK"
KEY = "GLOBAL"


def _lock(settings):
    from affiliate_api.db import SessionLocal
    from affiliate_api.locks import JobLock

    return JobLock.from_settings(
        settings, scope=SCOPE, key=KEY, session_factory=SessionLocal
    )


def _row(db):
    from sqlalchemy import select

    from affiliate_api.models import KeyedSnapshot

    db.expire_all()
    return db.scalar(
        select(KeyedSnapshot)
        .where(KeyedSnapshot.scope == SCOPE)
        .where(KeyedSnapshot.snapshot_key == KEY)
    )


def test_second_acquire_sees_live_holder(db, settings) -> None:
    lock = _lock(settings)
    first = lock.acquire(run_id="run_a", trigger="cron")
    assert first.acquired is True
    assert first.stolen is False

    second = lock.acquire(run_id="run_b", trigger="manual")
    assert not second
    assert second.payload is not None
    assert second.payload.run_id == "run_a"
    assert second.payload.holder == "pytest"

    payload = orjson.loads(_row(db).payload_json)
    assert payload["runId"] == "run_a"
    assert payload["trigger"] == "cron"
    assert "stolen" not in payload


def test_release_then_reacquire(db, settings) -> None:
    lock = _lock(settings)
    assert lock.acquire(run_id="run_a", trigger="cron")
    assert lock.release(run_id="run_a") is True
    assert _row(db) is None
    assert lock.acquire(run_id="run_b", trigger="cron")
    assert lock.current().run_id == "run_b"


def test_stale_lock_is_stolen_and_records_previous_run(db, settings) -> None:
    lock = _lock(settings)
    long_ago = datetime.now(UTC) - timedelta(minutes=settings.job_lock_ttl_minutes + 1)
    assert lock.acquire(run_id="run_old", trigger="cron", now=long_ago)

    attempt = lock.acquire(run_id="run_new", trigger="manual")
    assert attempt.acquired is True
    assert attempt.stolen is True
    assert attempt.payload.previous_run_id == "run_old"

    payload = orjson.loads(_row(db).payload_json)
    assert payload["runId"] == "run_new"
    assert payload["stolen"] is True
    assert payload["previousRunId"] == "run_old"


def test_lock_within_ttl_is_not_stolen(db, settings) -> None:
    lock = _lock(settings)
    recent = datetime.now(UTC) - timedelta(minutes=settings.job_lock_ttl_minutes - 1)
    assert lock.acquire(run_id="run_a", trigger="cron", now=recent)
    assert not lock.acquire(run_id="run_b", trigger="cron")


def test_preempted_run_does_not_release_thiefs_lock(db, settings) -> None:
    lock = _lock(settings)
    long_ago = datetime.now(UTC) - timedelta(hours=2)
    assert lock.acquire(run_id="run_old", trigger="cron", now=long_ago)
    assert lock.acquire(run_id="run_new", trigger="cron").stolen

    assert lock.release(run_id="run_old") is False
    assert lock.current().run_id == "run_new"

    assert lock.release(run_id="run_new") is True
    assert lock.current() is None


def test_unconditional_release(db, settings) -> None:
    lock = _lock(settings)
    assert lock.acquire(run_id="run_a", trigger="cron")
    assert lock.release() is True
    assert lock.release() is False


def test_held_context_releases_on_error(db, settings) -> None:
    lock = _lock(settings)
    with pytest.raises(RuntimeError):
        with lock.held(run_id="run_a", trigger="cron") as attempt:
            assert attempt.acquired
            raise RuntimeError("boom")
    assert lock.current() is None


def test_storage_errors_fail_closed(db, settings) -> None:
    from sqlalchemy.exc import OperationalError

    from affiliate_api.db import SessionLocal
    from affiliate_api.locks import JobLock

    def broken_session():
        session = SessionLocal()

        def _commit() -> None:
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        session.commit = _commit  # type: ignore[method-assign]
        return session

    lock = JobLock(
        scope=SCOPE,
        key=KEY,
        ttl=timedelta(minutes=30),
        holder="pytest",
        session_factory=broken_session,
    )
    with pytest.raises(OperationalError):
        lock.acquire(run_id="run_a", trigger="cron")
    assert _row(db) is None


def test_payload_parsing_tolerates_garbage() -> None:
    from affiliate_api.locks import JobLockPayload

    assert JobLockPayload.from_json("not json") is None
    assert JobLockPayload.from_json('{"trigger": "cron"}') is None
    parsed = JobLockPayload.from_json(
        '{"runId": "r1", "trigger": "cron", "holder": "h", "lockedAt": "2026-01-01T00:00:00+00:00"}'
    )
    assert parsed is not None
    assert parsed.run_id == "r1"
    assert parsed.stolen is False
