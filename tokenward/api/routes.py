from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Request, Response

from tokenward.api.schemas import (
    AccountStatusRequest,
    AdminActionResponse,
    AuthResponse,
    DeviceResponse,
    DeviceSummaryResponse,
    Envelope,
    LocationResponse,
    LoginRequest,
    LogoutAllResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    SessionListResponse,
    SessionResponse,
    SessionStatsResponse,
    SignupRequest,
    TokenRefreshRequest,
    UserResponse,
    WhoAmIResponse,
)
from tokenward.logging import get_logger
from tokenward.service.auth import AuthContext, AuthResult, AuthService
from tokenward.service.errors import RateLimitedError, ValidationError
from tokenward.service.runtime import check_rate_limit, get_runtime
from tokenward.service.sessions import SessionStats
from tokenward.storage.models import ClientMetadata, Credential, DeviceInfo, SessionLocation

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
RATE_LIMIT_WINDOW_SECONDS = 60


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limited", key=key, limit=limit)
        raise RateLimitedError(info.reset_seconds)

    return info


def _client_metadata(request: Request) -> ClientMetadata:
    return ClientMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _access_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Cookie first, then ``Authorization: Bearer``."""

    return request.cookies.get(ACCESS_COOKIE) or _bearer_token(authorization)


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate_request(
        _access_token(request, authorization), _client_metadata(request)
    )


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    AuthService.ensure_role(principal, "admin")
    return principal


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.auth.optional_authenticate(
        _access_token(request, authorization), _client_metadata(request)
    )


def _user_to_response(user: Credential) -> UserResponse:
    return UserResponse(**user.public_view())


def _device_to_response(device: DeviceInfo) -> DeviceResponse:
    return DeviceResponse(browser=device.browser, os=device.os, device=device.device)


def _location_to_response(location: Optional[SessionLocation]) -> Optional[LocationResponse]:
    if location is None:
        return None
    return LocationResponse(country=location.country, city=location.city, region=location.region)


def _stats_to_response(stats: SessionStats) -> SessionStatsResponse:
    return SessionStatsResponse(
        total_active_sessions=stats.total_active_sessions,
        devices=[
            DeviceSummaryResponse(
                device=_device_to_response(summary.device),
                last_activity=summary.last_activity,
                ip_address=summary.ip_address,
                location=_location_to_response(summary.location),
            )
            for summary in stats.devices
        ],
        oldest_session=stats.oldest_session,
        newest_session=stats.newest_session,
    )


def _auth_to_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(result.credential),
        session_id=result.session.id,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        access_expires_at=result.access_expires_at,
        refresh_expires_at=result.refresh_expires_at,
    )


def _apply_auth_cookies(response: Response, result: AuthResult) -> None:
    settings = get_runtime().settings
    now = datetime.now(timezone.utc)
    response.set_cookie(
        ACCESS_COOKIE,
        result.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=max(0, int((result.access_expires_at - now).total_seconds())),
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=max(0, int((result.refresh_expires_at - now).total_seconds())),
        path=settings.refresh_cookie_path,
    )


def _clear_auth_cookies(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        ACCESS_COOKIE, path="/", secure=settings.cookie_secure, samesite="strict", httponly=True
    )
    response.delete_cookie(
        REFRESH_COOKIE,
        path=settings.refresh_cookie_path,
        secure=settings.cookie_secure,
        samesite="strict",
        httponly=True,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create a user account and start its first session.

    Raises:
        400: weak password or email already in use
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    result = await runtime.auth.signup(
        body.firstname,
        body.lastname,
        body.email,
        body.password,
        body.phone,
        _client_metadata(request),
        confirm_password=body.password_confirm,
    )
    _apply_auth_cookies(response, result)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials
        403: account locked or blocked
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    result = await runtime.auth.login(body.email, body.password, _client_metadata(request))
    _apply_auth_cookies(response, result)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/login/admin", response_model=Envelope, tags=["auth"])
async def admin_login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:admin:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    result = await runtime.auth.admin_login(
        body.email, body.password, _client_metadata(request)
    )
    _apply_auth_cookies(response, result)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(None),
):
    """Rotate a refresh token into a new token pair.

    The refresh cookie is read first, then ``refresh_token`` from the body.
    A refresh token can be used once; replaying it fails.
    """
    runtime = get_runtime()
    metadata = _client_metadata(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{metadata.ip_address or 'unknown'}",
        runtime.settings.refresh_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    refresh_token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    result = await runtime.auth.refresh(refresh_token, metadata)
    _apply_auth_cookies(response, result)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_identity(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/auth/whoami", response_model=Envelope, tags=["auth"])
async def whoami(principal: Optional[AuthContext] = Depends(get_optional_user)):
    """Report the caller's identity without requiring authentication."""

    if principal is None:
        return Envelope(status="ok", data=WhoAmIResponse(authenticated=False))
    return Envelope(
        status="ok",
        data=WhoAmIResponse(authenticated=True, user=_user_to_response(principal.credential)),
    )


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal,
        firstname=body.firstname,
        lastname=body.lastname,
        phone=body.phone,
        email=body.email,
        name=body.name,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the caller's password and end every session.

    Tokens issued before the change stop working; the client must log in again.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user_id}",
        limit=5,
        window_seconds=300,
    )
    await runtime.auth.change_password(
        principal, body.current_password, body.new_password, body.confirm_password
    )
    _clear_auth_cookies(response)
    return Envelope(
        status="ok",
        data={"message": "Password changed successfully. Please login again"},
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal, _client_metadata(request))
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/logout/all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data=LogoutAllResponse(sessions_invalidated=count))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    views = await runtime.auth.list_sessions(principal)
    stats = await runtime.auth.session_stats(principal)
    sessions = [
        SessionResponse(
            id=view["id"],
            device=_device_to_response(view["device"]),
            ip_address=view["ip_address"],
            location=_location_to_response(view["location"]),
            last_activity=view["last_activity"],
            created_at=view["created_at"],
            is_current=view["is_current"],
        )
        for view in views
    ]
    return Envelope(
        status="ok",
        data=SessionListResponse(sessions=sessions, stats=_stats_to_response(stats)),
    )


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: AccountStatusRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_account_status(user_id, body.status)
    logger.info(
        "admin_account_status_set",
        admin_id=principal.user_id,
        user_id=user_id,
        status=body.status,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/admin/users/{user_id}/logout", response_model=Envelope, tags=["admin"])
async def admin_force_logout(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    count = await runtime.auth.force_logout(user_id)
    logger.info("admin_forced_logout", admin_id=principal.user_id, user_id=user_id)
    return Envelope(
        status="ok",
        data=AdminActionResponse(user_id=user_id, sessions_invalidated=count),
    )


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    if user_id == principal.user_id:
        raise ValidationError("Administrators cannot delete their own account")
    runtime = get_runtime()
    await runtime.auth.delete_identity(user_id)
    logger.info("admin_deleted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=AdminActionResponse(user_id=user_id, deleted=True))
