"""
Error types and FastAPI handlers.

Every error leaves the service in one envelope:

    {"error": {"code", "message", "request_id"}, "detail": message}

4xx responses are logged at WARNING, 5xx at ERROR. Provider outages and
missing webhook secrets are 503 so callers (and providers) retry later.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from flavr.core.logging import get_request_id


logger = logging.getLogger("flavr")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.status_code = status_code or type(self).status_code


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class WebhookSignatureError(AppError):
    """Delivery failed authentication; nothing was applied."""
    code = "invalid_signature"
    status_code = 400


class WebhookConfigurationError(AppError):
    """No secret configured for the provider, so its webhooks are refused."""
    code = "webhook_not_configured"
    status_code = 503


class ProviderUnavailableError(AppError):
    """Provider gave no definitive answer."""
    code = "provider_unavailable"
    status_code = 503


class ConfigurationError(AppError):
    code = "configuration_error"
    status_code = 503


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    rid = _request_id_for(request)
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "request.error",
        extra={"request_id": rid, "error_code": code, "status": status_code, "path": request.url.path},
    )
    response = JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    return error_response(request, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": _request_id_for(request)})
    return error_response(request, 500, "internal_error", "Unexpected error")
