"""Security headers for every API response."""

from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from akshayapatra.config import settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # The address step reads the browser location; the fee step hands off
        # to the payment page.
        response.headers["Permissions-Policy"] = (
            "geolocation=(self), microphone=(), camera=(), payment=(self)"
        )

        # Wizard responses carry per-user progress; never let a proxy keep them
        if request.url.path.startswith("/api/profile-setup"):
            response.headers["Cache-Control"] = "no-store"

        return response
