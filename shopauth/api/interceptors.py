"""Per-route request guards.

Each route declares its guards as one explicit, ordered
:class:`InterceptorChain` passed to ``Depends``; there is no global CSRF or
throttling middleware and no decorator metadata. A chain runs its
interceptors in order against a shared :class:`RequestContext` and stops at
the first one that raises.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

from fastapi import Request, Response

from shopauth.logging import get_logger
from shopauth.service.auth import AuthContext
from shopauth.service.csrf import CSRF_COOKIE_NAME, CSRF_HEADER_NAME
from shopauth.service.errors import AuthenticationError
from shopauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

ACCESS_COOKIE_NAME = "access_token"
REFRESH_COOKIE_NAME = "refresh_token"


@dataclass
class RequestContext:
    request: Request
    response: Response
    runtime: Runtime
    principal: Optional[AuthContext] = None
    notes: dict = field(default_factory=dict)

    @property
    def client_ip(self) -> str:
        return self.request.client.host if self.request.client else "unknown"


class Interceptor(Protocol):
    async def __call__(self, ctx: RequestContext) -> None: ...


def extract_access_token(request: Request) -> Optional[str]:
    """Bearer header for service callers, cookie for browsers."""
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return request.cookies.get(ACCESS_COOKIE_NAME)


class RequireSession:
    """Resolve the caller's live session or reject with 401."""

    async def __call__(self, ctx: RequestContext) -> None:
        token = extract_access_token(ctx.request)
        if not token:
            raise AuthenticationError("authentication required")
        ctx.principal = await ctx.runtime.auth.authenticate(token)


class OptionalSession:
    """Resolve the caller's session if there is a usable one."""

    async def __call__(self, ctx: RequestContext) -> None:
        token = extract_access_token(ctx.request)
        if not token:
            return
        try:
            ctx.principal = await ctx.runtime.auth.authenticate(token)
        except AuthenticationError as exc:
            logger.info("optional_session_unresolved", reason=exc.error_code)


class CsrfProtect:
    """Double-submit check; bound to the session's token once one is resolved."""

    async def __call__(self, ctx: RequestContext) -> None:
        expected = ctx.principal.session.csrf_token if ctx.principal else None
        ctx.runtime.auth.csrf.validate(
            ctx.request.method,
            ctx.request.url.path,
            ctx.request.headers.get(CSRF_HEADER_NAME),
            ctx.request.cookies.get(CSRF_COOKIE_NAME),
            expected=expected,
        )


class RateLimit:
    """Fixed-window throttle keyed by ``action`` and a request-derived identifier.

    ``limit_setting`` and ``window_setting`` name :class:`Settings` fields so
    the chain can be declared at import time, before settings are loaded.
    """

    def __init__(
        self,
        action: str,
        *,
        limit_setting: str,
        window_setting: str,
        key: Optional[Callable[[RequestContext], str]] = None,
    ):
        self.action = action
        self.limit_setting = limit_setting
        self.window_setting = window_setting
        self.key = key or (lambda ctx: ctx.client_ip)

    async def __call__(self, ctx: RequestContext) -> None:
        settings = ctx.runtime.settings
        limit = getattr(settings, self.limit_setting)
        decision = await ctx.runtime.auth.limiter.check_and_increment(
            self.action, self.key(ctx), limit, getattr(settings, self.window_setting)
        )
        ctx.response.headers["X-RateLimit-Limit"] = str(decision.limit)
        ctx.response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        ctx.response.headers["X-RateLimit-Reset"] = str(decision.retry_after)


class InterceptorChain:
    """An ordered list of interceptors usable as a FastAPI dependency."""

    def __init__(self, *interceptors: Interceptor):
        self.interceptors: Sequence[Interceptor] = interceptors

    async def __call__(self, request: Request, response: Response) -> RequestContext:
        ctx = RequestContext(request=request, response=response, runtime=get_runtime())
        for interceptor in self.interceptors:
            await interceptor(ctx)
        return ctx


__all__ = [
    "ACCESS_COOKIE_NAME",
    "CsrfProtect",
    "InterceptorChain",
    "OptionalSession",
    "REFRESH_COOKIE_NAME",
    "RateLimit",
    "RequestContext",
    "RequireSession",
    "extract_access_token",
]
