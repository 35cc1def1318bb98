import re
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_DEFAULT_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    # OAuth callback redirects must not leak code/state to the frontend
    "Referrer-Policy": "no-referrer",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers for an API that only serves JSON and redirects."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        for header, value in _DEFAULT_SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        # Checkout URLs and connection status are per-tenant; public plans opt in to caching.
        response.headers.setdefault("Cache-Control", "no-store")
        return response


def resolve_request_id(raw: str | None) -> str:
    """Reuse a well-formed client id for correlation, otherwise mint one."""
    candidate = (raw or "").strip()
    if candidate and _REQUEST_ID_RE.match(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id to every log line of the request and echoes it back.

    Mercado Pago sends its own x-request-id on webhooks; that value is part of
    the signature manifest and is read from the raw headers, not from here.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = resolve_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
