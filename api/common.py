"""
Common utilities shared between the public and admin APIs.

Includes the JSON response envelope used by every endpoint:
    {"success": true, "data": ..., "message": ..., "pagination": ...}
    {"success": false, "error": "..."}
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from api.database import database
from api.db_retry import DatabaseLockedError
from api.errors import ERROR_MESSAGES
from config import (
    STORAGE_CHECK_TIMEOUT,
    TRUSTED_PROXIES,
    UPLOADS_DIR,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes read back may be naive even
    though they were stored as UTC. Naive values are assumed to be UTC.

    Examples:
        >>> ensure_utc(datetime(2024, 1, 1, 12, 0, 0))  # naive
        datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """UTC ISO-8601 string for a stored datetime, or None."""
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp from a request body.

    Empty values return None; naive timestamps are taken as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For only from trusted proxies.

    Security: X-Forwarded-For is only trusted when the direct client IP is in
    TRUSTED_PROXIES, so clients cannot spoof it to dodge rate limits.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # The first entry is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def success_response(
    data: Any = None,
    message: Optional[str] = None,
    pagination: Optional[dict] = None,
) -> dict:
    """Build the success envelope. Optional keys are omitted when empty."""
    body: dict = {"success": True, "data": data}
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


def error_response(error: str, status_code: int, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error},
        headers=headers,
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'"
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID (client-supplied or generated UUID4) to request state and response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle slowapi limit errors with the standard envelope."""
    logger.warning(f"Endpoint rate limit exceeded for {get_real_ip(request)} on {request.url.path}: {exc.detail}")
    return error_response(ERROR_MESSAGES["rate_limited"], 429)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else ERROR_MESSAGES["general"]
    return error_response(detail, exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
        message = f"入力内容が正しくありません: {field}"
    else:
        message = "入力内容が正しくありません"
    return error_response(message, 400)


async def database_locked_handler(request: Request, exc: DatabaseLockedError) -> JSONResponse:
    logger.error(f"Database unavailable after retries on {request.url.path}: {exc}")
    return error_response(ERROR_MESSAGES["database"], 503, headers={"Retry-After": "5"})


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path} (request_id={get_request_id(request)}): {exc}")
    return error_response(ERROR_MESSAGES["general"], 500)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing exception handlers on an app."""
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(DatabaseLockedError, database_locked_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


def _check_storage_sync() -> bool:
    """
    Verify the upload directory exists and is writable.

    Runs in a thread pool so a hung network mount cannot block the event loop.
    """
    if os.environ.get("ORGVIDEO_TEST_MODE"):
        return True

    try:
        if not UPLOADS_DIR.exists():
            return False
        test_file = UPLOADS_DIR / f".health_check_{uuid.uuid4().hex}"
        test_file.write_text("health check")
        test_file.unlink()
        return True
    except OSError:
        return False


async def check_health() -> dict:
    """
    Perform health checks for database and storage.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    checks = {
        "database": False,
        "storage": False,
    }

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    try:
        loop = asyncio.get_running_loop()
        checks["storage"] = await asyncio.wait_for(
            loop.run_in_executor(None, _check_storage_sync),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out - possible stale mount")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
