from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


logger = logging.getLogger("transit.errors")


class AppError(Exception):
    status_code: int = 400
    code: str = "bad_request"
    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}


class ValidationError(AppError):
    status_code = 400
    code = "invalid_request"


class InsufficientFunds(AppError):
    status_code = 400
    code = "insufficient_funds"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient funds. Required: {required}, Available: {available}",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class NotValidForUse(AppError):
    status_code = 409
    code = "not_valid_for_use"

    def __init__(self, reason: str, subject: str = "Ticket"):
        super().__init__(f"{subject} is not valid for use", details={"reason": reason})
        self.reason = reason


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class DuplicateIdempotencyKey(ConflictError):
    code = "duplicate_idempotency_key"
    retryable = True


class ProviderError(AppError):
    status_code = 502
    code = "provider_error"
    retryable = True


class ServiceUnavailable(AppError):
    status_code = 503
    code = "service_unavailable"
    retryable = True


def _envelope(code: str, message: str, details: dict | None = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    details = dict(exc.details)
    if exc.retryable:
        details["retryable"] = True
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(status_code=exc.status_code, content=_envelope(exc.code, exc.message, details))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code") or "http_error")
        message = str(detail.get("message") or code)
        extra = {k: v for k, v in detail.items() if k not in ("code", "message")}
    else:
        code = str(detail) if detail else "http_error"
        message = code
        extra = {}
    return JSONResponse(status_code=exc.status_code, content=_envelope(code, message, extra), headers=getattr(exc, "headers", None))
