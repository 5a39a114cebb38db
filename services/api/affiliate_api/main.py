from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from affiliate_api.core.config import Settings
from affiliate_api.db import SessionLocal
from affiliate_api.errors import AffiliateError
from affiliate_api.logs import configure_logging, get_logger, log_event

logger = get_logger("affiliate_api.http")


def _parse_csv(value: str) -> list[str]:
    raw = str(value or "").strip()
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _with_request_id(request: Request, resp: JSONResponse) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        resp.headers["X-Request-Id"] = str(request_id)
    return resp


def create_app(*, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)

    app = FastAPI(
        title="Affiliate API",
        version="0.1.0",
        openapi_url="/api/openapi.json",
        docs_url="/docs",
    )
    app.state.settings = settings

    if settings.trust_proxy_headers:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    allowed_hosts = _parse_csv(settings.allowed_hosts) or ["*"]
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_origins = _parse_csv(settings.cors_allowed_origins)
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("x-request-id") or f"req_{uuid4().hex}"
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception:
            log_event(
                logger,
                logging.ERROR,
                "request failed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=500,
                duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
            )
            raise

        response.headers["X-Request-Id"] = request_id
        log_event(
            logger,
            logging.INFO,
            "request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
        )
        return response

    @app.exception_handler(AffiliateError)
    async def _affiliate_error(request: Request, exc: AffiliateError):
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        log_event(
            logger,
            level,
            "request rejected",
            request_id=getattr(request.state, "request_id", None),
            path=request.url.path,
            code=exc.code,
            error=exc.message,
        )
        detail = exc.to_detail()
        if exc.status_code >= 500 and settings.is_production:
            detail = {"code": exc.code, "message": "Internal Server Error"}
        resp = JSONResponse(status_code=exc.status_code, content={"detail": detail})
        return _with_request_id(request, resp)

    @app.exception_handler(HTTPException)
    async def _with_request_id_http_exception(request: Request, exc: HTTPException):
        resp = await http_exception_handler(request, exc)
        return _with_request_id(request, resp)

    @app.exception_handler(RequestValidationError)
    async def _with_request_id_validation_error(
        request: Request, exc: RequestValidationError
    ):
        resp = await request_validation_exception_handler(request, exc)
        resp.status_code = 400
        return _with_request_id(request, resp)

    @app.exception_handler(Exception)
    async def _with_request_id_unhandled(request: Request, exc: Exception):
        log_event(
            logger,
            logging.ERROR,
            "unhandled error",
            exc_info=True,
            request_id=getattr(request.state, "request_id", None),
            path=request.url.path,
        )
        resp = JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
        return _with_request_id(request, resp)

    @app.get("/api/health")
    def health() -> dict[str, object]:
        db_ok = True
        try:
            with SessionLocal() as session:
                session.execute(text("SELECT 1"))
        except Exception:  # noqa: BLE001
            db_ok = False
        return {
            "status": "ok" if db_ok else "fail",
            "db": db_ok,
            "referrals_enabled": settings.referrals_enabled,
        }

    from affiliate_api.routers import admin_affiliates, cron, referrals

    app.include_router(cron.router)
    app.include_router(referrals.router)
    app.include_router(admin_affiliates.router)

    return app


app = create_app()
