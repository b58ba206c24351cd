"""
HTTP plumbing shared by the API: client IP resolution, middleware, rate-limit
handling and health checks.
"""

import asyncio
import logging
import os
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from config import CACHE_DIR, STORAGE_CHECK_TIMEOUT, TRUSTED_PROXIES

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For header only from trusted proxies.

    Security: X-Forwarded-For is only trusted when the direct client IP is in TRUSTED_PROXIES.
    This prevents attackers from spoofing the header to bypass rate limiting.
    Configure VSTREAM_TRUSTED_PROXIES with your proxy IPs (e.g., "127.0.0.1,10.0.0.1").
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # The first entry is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


class RequestIDMiddleware:
    """
    Attach a request id to every request (incoming X-Request-ID or a new UUID)
    and echo it on the response.

    Pure ASGI so streaming bodies pass through untouched.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = ""
        for name, value in scope.get("headers", []):
            if name == b"x-request-id":
                incoming = value.decode("latin-1").strip()
                break
        request_id = incoming[:64] if incoming else uuid.uuid4().hex
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[REQUEST_ID_HEADER] = request_id
            await send(message)

        await self.app(scope, receive, send_with_request_id)


class SecurityHeadersMiddleware:
    """Add security headers to all responses."""

    HEADERS = {
        # Prevent MIME-type sniffing
        "X-Content-Type-Options": "nosniff",
        # Control referrer information
        "Referrer-Policy": "strict-origin-when-cross-origin",
        # Video responses are embedded by players on other origins, so no X-Frame-Options here
        "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    }

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in self.HEADERS.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_headers)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with the API's error body."""
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "Rate limit exceeded",
            "details": str(exc.detail),
        },
    )


def _check_cache_dir_sync() -> bool:
    """
    Verify the cache directory exists and is writable.

    Runs in a thread pool; a write test catches read-only mounts and full disks.
    """
    if os.environ.get("VSTREAM_TEST_MODE"):
        return True

    try:
        CACHE_DIR.mkdir(parents=True, exist_ok=True)
        test_file = CACHE_DIR / f".health_check_{uuid.uuid4().hex}"
        test_file.write_text("health check")
        test_file.unlink()
        return True
    except OSError as e:
        logger.warning(f"Cache directory check failed: {e}")
        return False


async def check_health() -> dict:
    """
    Perform health checks for database and cache storage.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    from api.database import database

    checks = {
        "database": False,
        "cache_storage": False,
    }

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    try:
        checks["cache_storage"] = await asyncio.wait_for(
            asyncio.to_thread(_check_cache_dir_sync),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Cache storage health check timed out")

    healthy = all(checks.values())
    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
