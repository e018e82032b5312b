"""
Error rendering

Every failure leaves the API in one envelope:
    {"success": false, "message": ..., "code": ..., "details"?: ..., "retryable"?: true}

ShippingBridgeError subclasses carry their own status and code. Anything
else is caught by ErrorSanitizationMiddleware, logged with a reference id,
and returned as a generic 500. Carrier keys and bearer tokens are scrubbed
from any message that reaches a client.
"""
import logging
import re
import traceback
import uuid
from typing import Union

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shipping_bridge.core.config import settings
from shipping_bridge.core.exceptions import ShippingBridgeError

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "An unexpected error occurred. Please try again later."
MAX_MESSAGE_LENGTH = 200

# Messages mentioning these are internal and replaced wholesale
SENSITIVE_PATTERNS = (
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "traceback",
    "file \"",
    "password",
    "credential",
)

# Stallion keys and Authorization values are masked in place
_KEY_PATTERN = re.compile(r"(bearer\s+|sk_[a-z]+_)[A-Za-z0-9_\-]+", re.IGNORECASE)


def is_sensitive_error(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PATTERNS)


def mask_keys(message: str) -> str:
    return _KEY_PATTERN.sub(lambda m: m.group(1) + "*****", message)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """Client-safe version of an internal error message."""
    message = mask_keys(error if isinstance(error, str) else str(error))

    if settings.DEBUG:
        return message
    if is_sensitive_error(message):
        return GENERIC_MESSAGE
    if len(message) > MAX_MESSAGE_LENGTH:
        return message[:MAX_MESSAGE_LENGTH] + "..."
    return message


async def shipping_error_handler(request: Request, exc: ShippingBridgeError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"[{exc.code}] {request.method} {request.url.path}: {exc.message}")

    content = {
        "success": False,
        "message": sanitize_error_message(exc.message) if exc.status_code >= 500 else mask_keys(exc.message),
        "code": exc.code,
    }
    if exc.details:
        content["details"] = exc.details
    if getattr(exc, "retryable", False):
        content["retryable"] = True

    return JSONResponse(status_code=exc.status_code, content=content)


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """Last-resort 500 for exceptions no handler claimed."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = uuid.uuid4().hex[:12]
            logger.error(
                f"Unhandled exception [{error_id}] {request.method} {request.url.path}: "
                f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
            )

            content = {
                "success": False,
                "message": sanitize_error_message(e) if settings.DEBUG else GENERIC_MESSAGE,
                "code": "INTERNAL_ERROR",
                "errorId": error_id,
            }
            return JSONResponse(status_code=500, content=content)
