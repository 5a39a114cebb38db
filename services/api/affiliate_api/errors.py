from __future__ import annotations


class AffiliateError(Exception):
    status_code = 500
    code = "affiliate_error"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_detail(self) -> dict[str, str]:
        out = {"code": self.code, "message": self.message}
        if self.field:
            out["field"] = self.field
        return out


class ValidationFailed(AffiliateError):
    status_code = 400
    code = "validation_error"


class NotFound(AffiliateError):
    status_code = 404
    code = "not_found"


class Conflict(AffiliateError):
    status_code = 409
    code = "conflict"


class InvalidTransition(Conflict):
    code = "invalid_transition"


class ConfigurationError(AffiliateError):
    status_code = 500
    code = "configuration_error"
