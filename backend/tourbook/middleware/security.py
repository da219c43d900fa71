"""
Response hardening headers and request body limits.
"""
from typing import Callable, Iterable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = structlog.get_logger(__name__)

SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self'; base-uri 'self'; font-src 'self' https: data:; "
        "frame-ancestors 'self'; img-src 'self' data: https:; object-src 'none'; "
        "script-src 'self' https://js.stripe.com; frame-src https://js.stripe.com; "
        "style-src 'self' https: 'unsafe-inline'; upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach the usual hardening headers to every response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Reject JSON and urlencoded bodies over ``max_bytes``.

    Multipart uploads and paths in ``exempt_paths`` (the payment webhook)
    are not limited here.
    """

    LIMITED_TYPES = ("application/json", "application/x-www-form-urlencoded")

    def __init__(self, app, max_bytes: int, exempt_paths: Iterable[str] = ()):
        super().__init__(app)
        self.max_bytes = max_bytes
        self.exempt_paths = tuple(exempt_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_type = request.headers.get("content-type", "").lower()
        if request.url.path in self.exempt_paths or not content_type.startswith(self.LIMITED_TYPES):
            return await call_next(request)

        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit():
            size = int(declared)
        else:
            size = len(await request.body())

        if size > self.max_bytes:
            logger.warning("request_body_too_large", size=size, limit=self.max_bytes)
            return JSONResponse(
                status_code=413,
                content={
                    "status": "fail",
                    "message": f"Request body is larger than {self.max_bytes // 1024}kb",
                },
            )
        return await call_next(request)
