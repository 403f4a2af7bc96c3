from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Response

from shopauth.api.interceptors import (
    ACCESS_COOKIE_NAME,
    REFRESH_COOKIE_NAME,
    CsrfProtect,
    InterceptorChain,
    OptionalSession,
    RateLimit,
    RequestContext,
    RequireSession,
)
from shopauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
    SessionInfo,
    SessionListResponse,
    TokenRefreshRequest,
)
from shopauth.config import Settings
from shopauth.logging import get_correlation_id, get_logger
from shopauth.service.csrf import CSRF_COOKIE_NAME
from shopauth.service.errors import InvalidRefreshToken
from shopauth.storage.models import SessionRecord, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE_PATH = "/auth"

# Guard chains, in the order they run.
PUBLIC_WRITE = InterceptorChain(CsrfProtect())
REFRESH_GUARDS = InterceptorChain(
    CsrfProtect(),
    RateLimit("refresh:ip", limit_setting="refresh_max_attempts", window_setting="refresh_window"),
)
RESET_GUARDS = InterceptorChain(
    CsrfProtect(),
    RateLimit("reset:ip", limit_setting="reset_max_attempts", window_setting="reset_window"),
)
LOGOUT_GUARDS = InterceptorChain(OptionalSession(), CsrfProtect())
SESSION_WRITE = InterceptorChain(RequireSession(), CsrfProtect())
PASSWORD_CHANGE_GUARDS = InterceptorChain(
    RequireSession(),
    CsrfProtect(),
    RateLimit(
        "change-password:account",
        limit_setting="login_max_attempts",
        window_setting="login_window",
        key=lambda ctx: ctx.principal.user_id,
    ),
)
SESSION_READ = InterceptorChain(RequireSession())


def _envelope(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _apply_session_cookies(
    response: Response, session: SessionRecord, tokens: TokenPair, settings: Settings
) -> None:
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        tokens.access_token,
        max_age=settings.access_token_ttl,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path=REFRESH_COOKIE_PATH,
    )
    # Script-readable so the front end can echo it in X-CSRF-Token.
    response.set_cookie(
        CSRF_COOKIE_NAME,
        session.csrf_token,
        max_age=settings.refresh_token_ttl,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name, path in (
        (ACCESS_COOKIE_NAME, "/"),
        (REFRESH_COOKIE_NAME, REFRESH_COOKIE_PATH),
        (CSRF_COOKIE_NAME, "/"),
    ):
        response.delete_cookie(
            name, path=path, secure=settings.cookie_secure, httponly=name != CSRF_COOKIE_NAME, samesite="strict"
        )


def _auth_response(session: SessionRecord, tokens: TokenPair, *, new_device: bool = False) -> AuthResponse:
    return AuthResponse(
        user_id=session.user_id,
        session_id=session.session_id,
        session_expires_at=session.expires_at,
        access_token=tokens.access_token,
        access_expires_at=tokens.access_expires_at,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        csrf_token=session.csrf_token,
        new_device=new_device,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, ctx: RequestContext = Depends(PUBLIC_WRITE)):
    """Create an account; every violated password rule is reported at once."""
    record = await ctx.runtime.auth.register(body.email, body.password, client_ip=ctx.client_ip)
    return _envelope(RegisterResponse(user_id=record.user_id, email=record.identifier))


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    response: Response,
    ctx: RequestContext = Depends(PUBLIC_WRITE),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint", max_length=512),
):
    """Authenticate with e-mail and password.

    Raises:
        401: invalid credentials (unknown account and wrong password alike)
        403: account locked
        429: too many attempts for this address or account
    """
    runtime = ctx.runtime
    result = await runtime.auth.login(
        body.email,
        body.password,
        client_ip=ctx.client_ip,
        fingerprint=body.device_fingerprint or x_device_fingerprint or "",
    )
    _apply_session_cookies(response, result.session, result.tokens, runtime.settings)
    return _envelope(
        _auth_response(result.session, result.tokens, new_device="new_device" in result.warnings)
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    ctx: RequestContext = Depends(REFRESH_GUARDS),
):
    refresh_token = (body.refresh_token if body else None) or ctx.request.cookies.get(
        REFRESH_COOKIE_NAME
    )
    if not refresh_token:
        raise InvalidRefreshToken()
    tokens, session = await ctx.runtime.auth.refresh(refresh_token)
    _apply_session_cookies(response, session, tokens, ctx.runtime.settings)
    return _envelope(_auth_response(session, tokens))


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, ctx: RequestContext = Depends(LOGOUT_GUARDS)):
    """Revoke the current session. Calling it again is a successful no-op."""
    auth = ctx.runtime.auth
    if ctx.principal:
        await auth.logout(ctx.principal.session_id)
    else:
        await auth.logout_by_refresh_token(ctx.request.cookies.get(REFRESH_COOKIE_NAME))
    _clear_session_cookies(response, ctx.runtime.settings)
    return _envelope(MessageResponse(message="logged out"))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(response: Response, ctx: RequestContext = Depends(SESSION_WRITE)):
    revoked = await ctx.runtime.auth.logout_all(ctx.principal.user_id)
    _clear_session_cookies(response, ctx.runtime.settings)
    return _envelope({"revoked": revoked})


@router.get("/sessions", response_model=Envelope)
async def list_sessions(ctx: RequestContext = Depends(SESSION_READ)):
    principal = ctx.principal
    sessions = await ctx.runtime.auth.list_sessions(principal.user_id)
    items = [
        SessionInfo(
            session_id=s.session_id,
            created_at=s.created_at,
            expires_at=s.expires_at,
            current=s.session_id == principal.session_id,
        )
        for s in sessions
    ]
    return _envelope(SessionListResponse(items=items))


@router.get("/me", response_model=Envelope)
async def me(ctx: RequestContext = Depends(SESSION_READ)):
    record = await ctx.runtime.auth.get_profile(ctx.principal)
    return _envelope(
        ProfileResponse(
            user_id=record.user_id,
            email=record.identifier,
            session_id=ctx.principal.session_id,
            failed_attempt_count=record.failed_attempt_count,
        )
    )


@router.post("/forgot-password", response_model=Envelope, status_code=202)
async def forgot_password(body: PasswordResetRequest, ctx: RequestContext = Depends(RESET_GUARDS)):
    """Start a password reset. The response is identical whether or not the account exists."""
    await ctx.runtime.auth.forgot_password(body.email)
    return _envelope(
        MessageResponse(message="if the account exists, reset instructions have been sent")
    )


@router.post("/reset-password", response_model=Envelope)
async def reset_password(
    body: PasswordResetConfirm, response: Response, ctx: RequestContext = Depends(RESET_GUARDS)
):
    await ctx.runtime.auth.reset_password(body.token, body.new_password)
    _clear_session_cookies(response, ctx.runtime.settings)
    return _envelope(MessageResponse(message="password updated"))


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest, ctx: RequestContext = Depends(PASSWORD_CHANGE_GUARDS)
):
    revoked = await ctx.runtime.auth.change_password(
        ctx.principal, body.current_password, body.new_password
    )
    return _envelope({"message": "password updated", "other_sessions_revoked": revoked})
