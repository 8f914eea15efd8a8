"""
errors.py — Domain error taxonomy and the FastAPI handlers that render it.

Services raise these; routes never build error payloads by hand. Every error
body has the same shape: {"success": false, "error": <message>, "code": <code>}.
"""

import os
import re
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

APP_ENV = os.getenv("APP_ENV", "development")

GENERIC_INTERNAL_ERROR = "An internal error occurred. Please try again later."


class FlyFileError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = GENERIC_INTERNAL_ERROR

    def __init__(self, message: str = None, code: str = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)


class ValidationError(FlyFileError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request data"


class AuthenticationError(FlyFileError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Invalid or expired credentials"


class AuthorizationError(FlyFileError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Not authorized"


class PlanLimitError(FlyFileError):
    status_code = 403
    code = "PLAN_LIMIT_EXCEEDED"
    default_message = "Your plan does not allow this action"


class CsrfError(FlyFileError):
    status_code = 403
    code = "CSRF_VALIDATION_FAILED"
    default_message = "Request origin not allowed"


class NotFoundError(FlyFileError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(FlyFileError):
    status_code = 409
    code = "CONFLICT"
    default_message = "The resource changed concurrently, please retry"


class ExpiredError(FlyFileError):
    status_code = 410
    code = "EXPIRED"
    default_message = "Resource has expired"


class RateLimitedError(FlyFileError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Too many requests. Please try again shortly."

    def __init__(self, retry_after: int = 60, limit: int = None, message: str = None):
        self.retry_after = max(1, int(retry_after))
        self.limit = limit
        super().__init__(message)


class DecryptionError(FlyFileError):
    status_code = 500
    code = "DECRYPTION_FAILED"
    default_message = "Failed to decrypt file"


class ExternalServiceError(FlyFileError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"
    default_message = "An upstream service failed. Please try again later."


# Redacted from client-facing messages in production
SENSITIVE_PATTERNS = [
    re.compile(r"(/[\w.\-]+){2,}\.(py|json|cfg|ini)", re.IGNORECASE),
    re.compile(r"File \"[^\"]+\", line \d+"),
    re.compile(r"\b(sqlalchemy|psycopg2|sqlite|boto|botocore|stripe|cloudflare|r2|s3|bucket)\b", re.IGNORECASE),
    re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"),
    re.compile(r"localhost|127\.0\.0\.1|0\.0\.0\.0", re.IGNORECASE),
    re.compile(r"[A-Za-z0-9_\-]{24,}"),
]


def is_production() -> bool:
    return APP_ENV == "production"


def sanitize_error_message(message: str) -> str:
    """Strip internals from a message before it reaches a client (production only)."""
    if not is_production():
        return message

    sanitized = message
    for pattern in SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[REDACTED]", sanitized)

    if sanitized.count("[REDACTED]") > 2:
        return GENERIC_INTERNAL_ERROR
    return sanitized


def error_body(message: str, code: str, **extra) -> dict:
    body = {"success": False, "error": message, "code": code}
    body.update(extra)
    return body


def register_exception_handlers(app: FastAPI):

    @app.exception_handler(FlyFileError)
    async def flyfile_error_handler(request: Request, exc: FlyFileError):
        headers = {}
        extra = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
            if exc.limit is not None:
                headers["X-RateLimit-Limit"] = str(exc.limit)
                headers["X-RateLimit-Remaining"] = "0"
            extra["retry_after"] = exc.retry_after

        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
            message = sanitize_error_message(exc.message)
        else:
            message = exc.message

        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(message, exc.code, **extra),
            headers=headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request data"
        return JSONResponse(status_code=400, content=error_body(message, "VALIDATION_ERROR"))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error on {request.method} {request.url.path}: "
            f"{type(exc).__name__}: {exc}\n{traceback.format_exc()}"
        )
        if is_production():
            message = GENERIC_INTERNAL_ERROR
        else:
            message = f"{type(exc).__name__}: {exc}"
        return JSONResponse(status_code=500, content=error_body(message, "INTERNAL_ERROR"))
