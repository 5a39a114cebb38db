from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from affiliate_api.core.config import Settings
from affiliate_api.core.security import decode_token
from affiliate_api.db import SessionLocal
from affiliate_api.models import User


def get_db() -> Session:
    with SessionLocal() as session:
        yield session


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    return settings if isinstance(settings, Settings) else Settings()


def get_current_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> User:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_token(token, settings=settings)
    except Exception as e:  # noqa: BLE001
        raise HTTPException(status_code=401, detail="Invalid token") from e
    user = db.get(User, str(payload.get("sub")))
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if str(user.role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def require_referrals_enabled(settings: Settings = Depends(get_settings)) -> None:
    if not settings.referrals_enabled:
        raise HTTPException(status_code=503, detail="Referral system is disabled")


DBSession = Depends(get_db)
AppSettings = Depends(get_settings)
CurrentUser = Depends(get_current_user)
AdminUser = Depends(require_admin)
ReferralsEnabled = Depends(require_referrals_enabled)
