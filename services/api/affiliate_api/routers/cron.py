from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from affiliate_api.affiliate_payables import run_affiliate_payable_job
from affiliate_api.core.config import Settings
from affiliate_api.deps import AppSettings, ReferralsEnabled
from affiliate_api.errors import ConfigurationError
from affiliate_api.logs import get_logger, log_event

logger = get_logger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[ReferralsEnabled])


def _from_platform_cron(request: Request, settings: Settings) -> bool:
    return request.headers.get(settings.cron_header) == "1"


def _is_authorized(request: Request, settings: Settings, secret: str | None) -> bool:
    """Raises ConfigurationError when production runs without a cron secret."""
    if _from_platform_cron(request, settings):
        return True
    if settings.cron_secret:
        return secret is not None and secret == settings.cron_secret
    if settings.cron_auth_misconfigured:
        raise ConfigurationError("Cron secret not configured")
    return True


def _run(request: Request, settings: Settings, secret: str | None):
    try:
        authorized = _is_authorized(request, settings, secret)
    except ConfigurationError as exc:
        log_event(
            logger,
            logging.ERROR,
            "cron secret is not configured in production",
            path=request.url.path,
            code=exc.code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message},
        )
    if not authorized:
        log_event(
            logger,
            logging.WARNING,
            "unauthorized cron request",
            path=request.url.path,
        )
        return JSONResponse(
            status_code=401, content={"success": False, "error": "Unauthorized"}
        )

    trigger = "cron" if _from_platform_cron(request, settings) else "manual"
    try:
        result = run_affiliate_payable_job(trigger=trigger, settings=settings)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "affiliate payable cron failed",
            exc_info=True,
            trigger=trigger,
            request_id=getattr(request.state, "request_id", None),
        )
        content: dict[str, Any] = {
            "success": False,
            "error": "Failed to process affiliate payables",
        }
        if not settings.is_production:
            content["details"] = str(exc)[:400]
        return JSONResponse(status_code=500, content=content)

    return {"success": True, "result": result}


@router.get("/affiliate-payables")
def affiliate_payables_get(
    request: Request,
    secret: str | None = Query(default=None),
    settings: Settings = AppSettings,
):
    return _run(request, settings, secret)


@router.post("/affiliate-payables")
def affiliate_payables_post(
    request: Request,
    secret: str | None = Query(default=None),
    settings: Settings = AppSettings,
):
    return _run(request, settings, secret)
