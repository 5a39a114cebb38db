from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from affiliate_api.core.config import Settings
from affiliate_api.errors import ValidationFailed
from affiliate_api.logs import get_logger, log_event
from affiliate_api.models import Referral, User
from affiliate_api.referral_lifecycle import Attribution, ReferralStatus
from affiliate_api.timeutil import as_aware_utc_or_none

logger = get_logger(__name__)

SLUG_MIN_LEN = 3
SLUG_MAX_LEN = 50
_SLUG_RE = re.compile(r"^[a-z0-9-]+$")
_BASE36 = string.digits + string.ascii_lowercase

# Top-level routes of the portal; a slug doubles as a short link (/<slug>).
RESERVED_SLUGS: frozenset[str] = frozenset(
    {
        "api",
        "admin",
        "login",
        "register",
        "subscribe",
        "ref",
        "content",
        "crypto-compass",
        "portfolio",
        "learn",
        "events",
        "community",
        "dashboard",
        "account",
        "notifications",
        "me",
        "videos",
        "robots",
        "sitemap",
        "favicon",
        "_next",
        "static",
        "user",
    }
)
RESERVED_PREFIXES: tuple[str, ...] = ("ref-",)


@dataclass(frozen=True)
class CodeValidation:
    valid: bool
    error: str | None = None
    referral: Referral | None = None

    def attribution(self) -> Attribution | None:
        if not self.valid or self.referral is None:
            return None
        return Attribution(
            referrer_id=self.referral.referrer_id,
            referral_code=self.referral.referral_code,
            template_id=self.referral.id,
        )


@dataclass(frozen=True)
class ReferralLinks:
    affiliate_link: str
    short_link: str


def normalize_slug(raw: str | None) -> str:
    return str(raw or "").strip().lower()


def is_reserved(slug: str) -> bool:
    value = normalize_slug(slug)
    return value in RESERVED_SLUGS or value.startswith(RESERVED_PREFIXES)


def check_slug(raw: str | None) -> str:
    slug = normalize_slug(raw)
    if len(slug) < SLUG_MIN_LEN:
        raise ValidationFailed(
            f"Slug must be at least {SLUG_MIN_LEN} characters", field="slug"
        )
    if len(slug) > SLUG_MAX_LEN:
        raise ValidationFailed(
            f"Slug must be at most {SLUG_MAX_LEN} characters", field="slug"
        )
    if not _SLUG_RE.match(slug):
        raise ValidationFailed(
            "Slug can only contain lowercase letters, numbers, and hyphens",
            field="slug",
        )
    if slug.startswith("-") or slug.endswith("-"):
        raise ValidationFailed("Slug cannot start or end with a hyphen", field="slug")
    if "--" in slug:
        raise ValidationFailed("Slug cannot contain consecutive hyphens", field="slug")
    if is_reserved(slug):
        raise ValidationFailed(
            "This slug is reserved and cannot be used", field="slug"
        )
    return slug


def _random_base36(n: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(n))


def _slug_owner(session: Session, slug: str) -> User | None:
    return session.scalar(select(User).where(User.referral_slug == slug).limit(1))


def generate_default_slug(session: Session, *, user_id: str) -> str:
    prefix = re.sub(r"[^a-z0-9]", "", str(user_id).lower())[:6]
    slug = f"user{prefix}{_random_base36(4)}"
    if _slug_owner(session, slug) is None:
        return slug
    return f"{slug}{_random_base36(2)}"


def build_links(code: str, settings: Settings | None = None) -> ReferralLinks:
    base = (settings or Settings()).app_base_url.rstrip("/")
    return ReferralLinks(
        affiliate_link=f"{base}/register?ref={code}",
        short_link=f"{base}/{code}",
    )


def _template_expiry(settings: Settings, now: datetime) -> datetime | None:
    days = settings.referral_code_expiry_days
    if not days:
        return None
    return now + timedelta(days=int(days))


def find_master_template(
    session: Session, *, referrer_id: str, code: str | None = None
) -> Referral | None:
    stmt = (
        select(Referral)
        .where(Referral.referrer_id == referrer_id)
        .where(Referral.status == ReferralStatus.PENDING.value)
        .where(Referral.referred_user_id.is_(None))
    )
    if code is not None:
        stmt = stmt.where(Referral.referral_code == code)
    return session.scalar(stmt.order_by(Referral.created_at.asc(), Referral.id.asc()).limit(1))


def _create_master_template(
    session: Session, *, referrer_id: str, code: str, settings: Settings, now: datetime
) -> Referral:
    template = Referral(
        id=f"ref_{uuid4().hex}",
        referrer_id=referrer_id,
        referral_code=code,
        slug_used=code,
        status=ReferralStatus.PENDING.value,
        referred_user_id=None,
        currency=settings.currency,
        expires_at=_template_expiry(settings, now),
        metadata_json="{}",
        created_at=now,
        updated_at=now,
    )
    session.add(template)
    session.flush()
    return template


def get_or_create_referral_code(
    session: Session,
    *,
    user: User,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> str:
    """Return the user's referral code, issuing a slug and template if needed."""
    settings = settings or Settings()
    now_dt = now or datetime.now(UTC)

    if not user.referral_slug:
        user.referral_slug = generate_default_slug(session, user_id=user.id)
        session.add(user)
        session.flush()

    code = str(user.referral_slug)
    if find_master_template(session, referrer_id=user.id, code=code) is None:
        _create_master_template(
            session, referrer_id=user.id, code=code, settings=settings, now=now_dt
        )
    session.commit()
    return code


def set_referral_slug(
    session: Session,
    *,
    user: User,
    slug: str,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> str:
    """Assign `slug` to `user` and move their master template to it.

    The oldest master template row keeps its id and only has its code
    rewritten; a new template is created only when the user has none.
    """
    settings = settings or Settings()
    now_dt = now or datetime.now(UTC)
    value = check_slug(slug)

    owner = _slug_owner(session, value)
    if owner is not None and owner.id != user.id:
        raise ValidationFailed("This slug is already taken", field="slug")

    previous = user.referral_slug
    user.referral_slug = value
    session.add(user)

    template = find_master_template(session, referrer_id=user.id)
    if template is not None:
        template.referral_code = value
        template.slug_used = value
        template.updated_at = now_dt
        session.add(template)
    else:
        _create_master_template(
            session, referrer_id=user.id, code=value, settings=settings, now=now_dt
        )

    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ValidationFailed("This slug is already taken", field="slug") from exc

    log_event(
        logger,
        logging.INFO,
        "referral slug updated",
        user_id=user.id,
        slug=value,
        previous_slug=previous,
    )
    return value


def validate_referral_code(
    session: Session,
    code: str | None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> CodeValidation:
    """Check an inbound code and find the referral row that anchors it.

    Accepts a user's slug or a legacy code that only exists on referral
    rows. A missing master template for a known slug is created on demand.
    """
    settings = settings or Settings()
    now_dt = now or datetime.now(UTC)

    if not settings.referrals_enabled:
        return CodeValidation(valid=False, error="Referral system is disabled")

    value = str(code or "").strip()
    if not value:
        return CodeValidation(valid=False, error="Referral code is required")
    if is_reserved(value):
        return CodeValidation(valid=False, error="Invalid referral code")

    owner = _slug_owner(session, normalize_slug(value))
    if owner is not None:
        referrer_id = owner.id
        value = normalize_slug(value)
    else:
        legacy = session.scalar(
            select(Referral)
            .where(Referral.referral_code == value)
            .order_by(Referral.created_at.asc())
            .limit(1)
        )
        if legacy is None:
            return CodeValidation(valid=False, error="Invalid referral code")
        referrer_id = legacy.referrer_id

    referral = find_master_template(session, referrer_id=referrer_id, code=value)
    if referral is None:
        referral = session.scalar(
            select(Referral)
            .where(Referral.referrer_id == referrer_id)
            .where(Referral.referral_code == value)
            .order_by(Referral.created_at.asc())
            .limit(1)
        )
    if referral is None:
        # owner is set here: legacy lookups always found a row above.
        referral = _create_master_template(
            session, referrer_id=referrer_id, code=value, settings=settings, now=now_dt
        )
        session.commit()

    expires_at = as_aware_utc_or_none(referral.expires_at)
    if expires_at is not None and expires_at < now_dt:
        return CodeValidation(valid=False, error="Referral code has expired")

    return CodeValidation(valid=True, referral=referral)
