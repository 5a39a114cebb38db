from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import orjson

from affiliate_api.core.config import Settings

# LogRecord attributes that are not user supplied fields.
_RESERVED = set(
    logging.LogRecord("x", logging.INFO, "x", 0, "x", None, None).__dict__
) | {"message", "asctime"}


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


class KeyValueFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = _record_fields(record)
        if not fields:
            return base
        extra = " ".join(f"{k}={v}" for k, v in fields.items())
        first, sep, rest = base.partition("\n")
        return f"{first} {extra}{sep}{rest}"


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or Settings()
    root = logging.getLogger("affiliate_api")
    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root.handlers[:] = [handler]
    root.setLevel(str(settings.log_level or "INFO").upper())
    root.propagate = True


def get_logger(name: str) -> logging.Logger:
    if not name.startswith("affiliate_api"):
        name = f"affiliate_api.{name}"
    return logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """Log `message` with `fields` attached as structured record attributes.

    Field names that collide with LogRecord attributes are prefixed with
    `f_` so they never clobber the record itself.
    """
    extra = {(f"f_{k}" if k in _RESERVED else k): v for k, v in fields.items()}
    logger.log(level, message, extra=extra, exc_info=exc_info)
