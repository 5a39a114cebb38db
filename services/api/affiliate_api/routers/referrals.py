from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from affiliate_api.affiliate_report import list_user_referrals, user_referral_summary
from affiliate_api.core.config import Settings
from affiliate_api.deps import AppSettings, CurrentUser, DBSession, ReferralsEnabled
from affiliate_api.errors import ValidationFailed
from affiliate_api.models import User
from affiliate_api.referral_codes import (
    build_links,
    get_or_create_referral_code,
    set_referral_slug,
    validate_referral_code,
)
from affiliate_api.referral_lifecycle import record_click

router = APIRouter(
    prefix="/api/referrals", tags=["referrals"], dependencies=[ReferralsEnabled]
)


class SlugOut(BaseModel):
    slug: str
    affiliate_link: str
    short_link: str


class SlugIn(BaseModel):
    slug: str = Field(min_length=1, max_length=200)


class ValidateOut(BaseModel):
    valid: bool
    error: str | None = None
    referral_code: str | None = None
    referrer_name: str | None = None


class ClickIn(BaseModel):
    code: str = Field(min_length=1, max_length=200)
    source: str | None = Field(default=None, max_length=100)
    utm_source: str | None = Field(default=None, max_length=200)
    utm_medium: str | None = Field(default=None, max_length=200)
    utm_campaign: str | None = Field(default=None, max_length=200)


class ClickOut(BaseModel):
    click_id: str
    referral_code: str


def _slug_out(slug: str, settings: Settings) -> SlugOut:
    links = build_links(slug, settings)
    return SlugOut(
        slug=slug, affiliate_link=links.affiliate_link, short_link=links.short_link
    )


@router.get("")
def my_referrals(
    user: User = CurrentUser,
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> dict[str, Any]:
    return user_referral_summary(db, user=user, settings=settings)


@router.get("/list")
def my_referral_list(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = CurrentUser,
    db: Session = DBSession,
) -> dict[str, Any]:
    return {
        "referrals": list_user_referrals(db, user_id=user.id, limit=limit, offset=offset),
        "limit": limit,
        "offset": offset,
    }


@router.get("/slug", response_model=SlugOut)
def get_slug(
    user: User = CurrentUser,
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> SlugOut:
    code = get_or_create_referral_code(db, user=user, settings=settings)
    return _slug_out(code, settings)


@router.put("/slug", response_model=SlugOut)
def put_slug(
    req: SlugIn,
    user: User = CurrentUser,
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> SlugOut:
    slug = set_referral_slug(db, user=user, slug=req.slug, settings=settings)
    return _slug_out(slug, settings)


@router.get("/validate", response_model=ValidateOut)
def validate(
    code: str = Query(default=""),
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> ValidateOut:
    result = validate_referral_code(db, code, settings=settings)
    if not result.valid or result.referral is None:
        return ValidateOut(valid=False, error=result.error)
    referrer = db.get(User, result.referral.referrer_id)
    return ValidateOut(
        valid=True,
        referral_code=result.referral.referral_code,
        referrer_name=referrer.name if referrer else None,
    )


@router.post("/click", response_model=ClickOut)
def click(
    req: ClickIn,
    db: Session = DBSession,
    settings: Settings = AppSettings,
) -> ClickOut:
    result = validate_referral_code(db, req.code, settings=settings)
    attribution = result.attribution()
    if attribution is None:
        raise ValidationFailed(result.error or "Invalid referral code", field="code")
    referral = record_click(
        db,
        attribution=attribution,
        source=req.source,
        utm={
            "utm_source": req.utm_source,
            "utm_medium": req.utm_medium,
            "utm_campaign": req.utm_campaign,
        },
        settings=settings,
    )
    db.commit()
    return ClickOut(click_id=referral.id, referral_code=referral.referral_code)
