"""Security headers middleware: defense-in-depth for production."""
from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses.

    Routes that set their own framing policy (the proxy player allows
    same-origin framing) keep it; everything else is DENY.
    """

    # Payment, admin, and player responses must never be cached
    _NO_CACHE_PREFIXES = (
        "/api/v1/payments/",
        "/api/v1/admin/",
        "/api/v1/v/play/",
        "/api/v1/me/",
    )

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"

        if "x-frame-options" not in response.headers:
            response.headers["X-Frame-Options"] = "DENY"

        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=()"
        )

        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )

        path = request.url.path
        if any(path.startswith(p) for p in self._NO_CACHE_PREFIXES):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
            response.headers["Pragma"] = "no-cache"

        return response
