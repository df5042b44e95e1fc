from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response

from sessionguard.api.schemas import (
    AccountStatusRequest,
    AuthResponse,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    SessionInfo,
    SessionListResponse,
    SignupRequest,
    TokenRefreshRequest,
    UserProfile,
)
from sessionguard.logging import get_logger
from sessionguard.service.auth import AuthResult
from sessionguard.service.csrf import CSRF_COOKIE
from sessionguard.service.errors import AuthenticationError, NotFoundError
from sessionguard.service.gateway import AuthContext, AuthGateway
from sessionguard.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


def _apply_session_cookies(response: Response, result: AuthResult) -> None:
    """Access and refresh credentials ride in HTTP-only strict cookies.

    The CSRF cookie stays readable by scripts so the page can echo it back in
    the request header.
    """
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        result.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )
    _apply_csrf_cookie(response, result.csrf_token)


def _apply_csrf_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.csrf_token_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, CSRF_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, samesite="strict")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        role=result.user.role,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        csrf_token=result.csrf_token,
        requires_captcha=bool(result.rate_limit and result.rate_limit.requires_captcha),
    )


def _apply_rate_limit_headers(response: Response, result: AuthResult) -> None:
    if result.rate_limit is None:
        return
    now = datetime.now(timezone.utc)
    for name, value in result.rate_limit.headers(now).items():
        response.headers[name] = value


async def get_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.gateway.authenticate(authorization, access_token)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    return AuthGateway.require_role(principal, "admin")


async def _enforce_api_limit(request: Request, principal: AuthContext) -> None:
    runtime = get_runtime()
    result = await runtime.rate_limiter.check(
        "api", ip_address=_client_ip(request), identifier=f"user:{principal.user_id}"
    )
    runtime.auth.raise_if_denied(result)


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account and start a session on the calling device.

    Raises:
        403: signup disabled
        409: email or handle already registered
        429: too many registrations from this address
    """
    runtime = get_runtime()
    result = await runtime.auth.signup(
        body.email,
        body.password,
        body.handle,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        device_id=body.device_id,
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or handle plus password.

    Raises:
        401: invalid credentials
        403: account banned or suspended
        429: rate limited, or identifier locked out
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identifier,
        body.password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        device_id=body.device_id,
    )
    _apply_session_cookies(response, result)
    _apply_rate_limit_headers(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    raw = (body.refresh_token if body else None) or refresh_token
    if not raw:
        raise AuthenticationError("refresh token required")
    result = await runtime.auth.refresh(
        raw, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        (body.refresh_token if body else None) or refresh_token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    _clear_session_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="session revoked"))


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.tokens.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionInfo(
                    session_id=s.session_id,
                    device_id=s.device_id,
                    ip_address=s.ip_address,
                    user_agent=s.user_agent,
                    created_at=s.created_at,
                    last_used_at=s.last_used_at,
                    expires_at=s.expires_at,
                )
                for s in sessions
            ]
        ),
    )


@router.delete("/auth/sessions/{device_id}", response_model=Envelope, tags=["auth"])
async def revoke_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_device(principal.user_id, device_id)
    if not revoked:
        raise NotFoundError("no active session for device", detail={"device_id": device_id})
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    token = runtime.csrf.issue(principal.user_id)
    _apply_csrf_cookie(response, token)
    return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token))


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, request: Request):
    # Same response whether or not the address exists
    runtime = get_runtime()
    outcome = await runtime.auth.request_password_reset(
        body.email, ip_address=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=outcome.message))


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.confirm_password_reset(
        body.token,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    # Every session was revoked along with the old password
    _clear_session_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(request: Request, principal: AuthContext = Depends(get_user)):
    await _enforce_api_limit(request, principal)
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(
        status="ok",
        data=UserProfile(
            id=user.id,
            email=user.email,
            handle=user.handle,
            role=user.role,
            status=user.status,
            suspended_until=user.suspended_until,
            created_at=user.created_at,
        ),
    )


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: AccountStatusRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_account_status(
        user_id,
        body.status,
        suspended_until=body.suspended_until,
        note=body.note,
        actor_id=principal.user_id,
    )
    return Envelope(
        status="ok",
        data=UserProfile(
            id=user.id,
            email=user.email,
            handle=user.handle,
            role=user.role,
            status=user.status,
            suspended_until=user.suspended_until,
            created_at=user.created_at,
        ),
    )
