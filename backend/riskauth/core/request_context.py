# backend/riskauth/core/request_context.py
"""
Request context for login handling and audit logging.

Extracts the client IP and user agent once per request, keeps them in a
context variable the audit service picks up, and builds the LoginContext
the risk engine consumes.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from riskauth.schemas.auth import GeoInfo, LoginContext
from riskauth.services.geolocation import GeoLookup, get_geo_lookup

FINGERPRINT_HEADER = "X-Device-Fingerprint"
MAX_USER_AGENT_LENGTH = 512


@dataclass
class RequestContext:
    """Context attached to each request for audit logging."""

    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    ip_address: str = "unknown"
    user_agent: str | None = None


# Context variable for request-scoped data
_request_context: ContextVar[RequestContext | None] = ContextVar("request_context", default=None)


def get_request_context() -> RequestContext | None:
    """Get the current request context."""
    return _request_context.get()


def set_request_context(ctx: RequestContext) -> None:
    """Set the current request context."""
    _request_context.set(ctx)


def get_client_ip(request: Request) -> str:
    """
    Resolve the client address.

    Order: first hop of X-Forwarded-For, then X-Real-IP, then the socket peer.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _truncated_user_agent(request: Request) -> str | None:
    user_agent = request.headers.get("User-Agent", "")
    if user_agent and len(user_agent) > MAX_USER_AGENT_LENGTH:
        user_agent = user_agent[: MAX_USER_AGENT_LENGTH - 3] + "..."
    return user_agent or None


def build_login_context(
    request: Request,
    *,
    device_fingerprint: str | None = None,
    geo: GeoInfo | None = None,
    now: datetime | None = None,
) -> LoginContext:
    """
    Build the LoginContext for a login submission.

    The fingerprint falls back to the X-Device-Fingerprint header. Use
    resolve_login_context() to fill in geolocation from the client IP.
    """
    fingerprint = device_fingerprint or request.headers.get(FINGERPRINT_HEADER)
    return LoginContext.create(
        get_client_ip(request),
        user_agent=_truncated_user_agent(request),
        device_fingerprint=fingerprint.strip() if fingerprint else None,
        geo=geo,
        now=now,
    )


async def resolve_login_context(
    request: Request,
    *,
    device_fingerprint: str | None = None,
    lookup: GeoLookup | None = None,
    now: datetime | None = None,
) -> LoginContext:
    """Build the LoginContext with geolocation resolved for the client IP."""
    lookup = lookup or get_geo_lookup()
    geo = await lookup.lookup(get_client_ip(request))
    return build_login_context(request, device_fingerprint=device_fingerprint, geo=geo, now=now)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that creates and attaches request context.

    Must be added early in the middleware stack.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        ctx = RequestContext(
            ip_address=get_client_ip(request),
            user_agent=_truncated_user_agent(request),
        )

        token = _request_context.set(ctx)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = ctx.request_id
            return response
        finally:
            _request_context.reset(token)
