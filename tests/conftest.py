from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest


_TEST_ROOT = Path(tempfile.mkdtemp(prefix="affiliate_test_"))
_DB_PATH = _TEST_ROOT / "affiliate_test.db"

os.environ["AFFILIATE_DB_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["AFFILIATE_AUTH_JWT_SECRET"] = "test-secret"
os.environ["AFFILIATE_ENVIRONMENT"] = "test"
os.environ["AFFILIATE_LOCK_HOLDER"] = "pytest"


@pytest.fixture(scope="session")
def schema() -> None:
    from affiliate_api import models  # noqa: F401
    from affiliate_api.db import Base, engine

    Base.metadata.create_all(engine)


@pytest.fixture()
def db(schema):
    from affiliate_api.db import Base, SessionLocal, engine

    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())

    with SessionLocal() as session:
        yield session


@pytest.fixture()
def settings():
    from affiliate_api.core.config import Settings

    return Settings()


@pytest.fixture()
def make_user(db):
    base = datetime(2026, 1, 1, tzinfo=UTC)
    counter = {"n": 0}

    def _make(
        user_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        role: str = "member",
        slug: str | None = None,
        plan_price_cents: int | None = None,
    ):
        from affiliate_api.models import User

        counter["n"] += 1
        user = User(
            id=user_id,
            email=email or f"{user_id}@example.com",
            name=name or user_id.title(),
            role=role,
            referral_slug=slug,
            plan_tier="pro" if plan_price_cents else None,
            plan_price_cents=plan_price_cents,
            created_at=base + timedelta(minutes=counter["n"]),
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def make_app(db):
    from fastapi.testclient import TestClient

    from affiliate_api.core.config import Settings
    from affiliate_api.main import create_app

    def _make(**overrides) -> TestClient:
        return TestClient(create_app(settings=Settings(**overrides)))

    return _make


@pytest.fixture()
def client(make_app):
    return make_app()


@pytest.fixture()
def auth_headers(settings):
    from affiliate_api.core.security import create_access_token

    def _headers(user_id: str, *, role: str = "member") -> dict[str, str]:
        token = create_access_token(subject=user_id, role=role, settings=settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def qualified_referral(db, make_user, settings) -> Iterator:
    """A referrer with one referred user qualified at a fixed instant."""
    from affiliate_api.referral_codes import (
        get_or_create_referral_code,
        validate_referral_code,
    )
    from affiliate_api.referral_lifecycle import attribute_signup, mark_first_payment

    referrer = make_user("alice", name="Alice", slug="alice-ref")
    referred = make_user("bob", name="Bob", plan_price_cents=20000)
    code = get_or_create_referral_code(db, user=referrer, settings=settings)
    attribution = validate_referral_code(db, code, settings=settings).attribution()
    qualified_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    attribute_signup(
        db,
        attribution=attribution,
        referred_user=referred,
        signed_up_at=qualified_at - timedelta(days=1),
        settings=settings,
    )
    referral = mark_first_payment(
        db, referred_user_id=referred.id, paid_at=qualified_at, settings=settings
    )
    db.commit()
    yield referral


@pytest.fixture()
def add_referral(db):
    """Insert a referral row in `status` with timestamps consistent with it."""
    from affiliate_api.models import Referral

    base = datetime(2026, 2, 1, tzinfo=UTC)
    ranks = ["PENDING", "CLICKED", "SIGNED_UP", "QUALIFIED", "PAYABLE", "PAID"]

    def _add(
        referral_id: str,
        *,
        referrer_id: str,
        referred_id: str | None,
        status: str,
        cents: int | None = 0,
        batch_id: str | None = None,
        clicked_at: datetime | None = None,
        signed_up_at: datetime | None = None,
    ):
        rank = ranks.index(status)
        qualified_at = base + timedelta(days=2) if rank >= 3 else None
        payable_at = None
        if qualified_at is not None and cents is not None:
            payable_at = qualified_at + timedelta(days=7)
        r = Referral(
            id=referral_id,
            referrer_id=referrer_id,
            referral_code=f"{referrer_id}-code",
            referred_user_id=referred_id,
            status=status,
            clicked_at=clicked_at or (base if rank >= 1 else None),
            signed_up_at=signed_up_at or (base + timedelta(days=1) if rank >= 2 else None),
            qualified_at=qualified_at,
            payable_at=payable_at,
            commission_amount_cents=cents if rank >= 3 else None,
            currency="usd",
            payout_batch_id=batch_id,
            metadata_json="{}",
            created_at=base + timedelta(minutes=len(ranks) * rank),
            updated_at=base,
        )
        db.add(r)
        db.commit()
        return r

    return _add
