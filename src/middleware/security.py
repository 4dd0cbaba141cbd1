"""Response hardening for the integration endpoints.

Every response gets the baseline browser headers. Paths that can carry
OAuth material (the callback page, the connect endpoint) are additionally
marked uncacheable so an authorization code never lands in a proxy or
browser cache.
"""

from __future__ import annotations

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
    # The callback page uses inline style attributes; scripts stay blocked.
    "Content-Security-Policy": (
        "default-src 'none'; style-src 'unsafe-inline'; frame-ancestors 'none'"
    ),
}

NO_STORE_SUFFIXES: tuple[str, ...] = ("/callback", "/connect")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        headers: dict[str, str] | None = None,
        no_store_suffixes: tuple[str, ...] = NO_STORE_SUFFIXES,
    ) -> None:
        super().__init__(app)
        self.headers = SECURITY_HEADERS if headers is None else headers
        self.no_store_suffixes = no_store_suffixes

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for header, value in self.headers.items():
            response.headers.setdefault(header, value)
        if request.url.path.endswith(self.no_store_suffixes):
            response.headers["Cache-Control"] = "no-store"
        return response
