from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    Path,
    Query,
    Request,
    Response,
    UploadFile,
)
from pydantic import ValidationError as PydanticValidationError

from gadgetgalaxy.api.error_handling import validation_errors
from gadgetgalaxy.api.schemas import (
    AdminUserUpdateRequest,
    EmailRequest,
    GoogleAuthRequest,
    LoginRequest,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    serialize_account,
)
from gadgetgalaxy.config import get_settings
from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.errors import RateLimited, ServiceError, ValidationError
from gadgetgalaxy.service.images import ImageUpload
from gadgetgalaxy.service.runtime import check_rate_limit, get_runtime
from gadgetgalaxy.service.session import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    AuthenticatedRequest,
    authorize,
)
from gadgetgalaxy.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

FORGOT_PASSWORD_MESSAGE = "If an account exists with that email, a password reset link has been sent"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["RateLimit-Limit"] = str(self.limit)
        response.headers["RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket.

    Raises:
        RateLimited: when the bucket is empty (429 with ``Retry-After``)
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimited(retry_after=max(1, reset_seconds))
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _auth_limit(request: Request, response: Response) -> None:
    settings = get_settings()
    await _enforce_rate_limit(
        get_runtime(),
        f"auth:{_client_ip(request)}",
        settings.auth_rate_limit_per_window,
        settings.auth_rate_limit_window_seconds,
        response=response,
    )


async def _api_limit(request: Request, response: Response) -> None:
    settings = get_settings()
    await _enforce_rate_limit(
        get_runtime(),
        f"api:{_client_ip(request)}",
        settings.api_rate_limit_per_window,
        settings.api_rate_limit_window_seconds,
        response=response,
    )


def _apply_session_cookies(response: Response, tokens: TokenPair, *, samesite: str = "strict") -> None:
    runtime = get_runtime()
    secure = runtime.settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite=samesite,
        max_age=int(runtime.tokens.access_ttl.total_seconds()),
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite=samesite,
        max_age=int(runtime.tokens.refresh_ttl.total_seconds()),
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_settings().cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", httponly=True, secure=secure, samesite="strict")


def _parse_form(model, **values):
    """Validate multipart fields with the same rules as the JSON bodies."""
    try:
        return model(**{key: value for key, value in values.items() if value is not None})
    except PydanticValidationError as exc:
        raise ValidationError(errors=validation_errors(exc.errors())) from None


async def _read_image(image: Optional[UploadFile]) -> Optional[ImageUpload]:
    if image is None or not image.filename:
        return None
    # One byte past the cap is enough to reject oversized files
    data = await image.read(get_settings().max_upload_bytes + 1)
    return ImageUpload(filename=image.filename, content_type=image.content_type, data=data)


async def get_auth_context(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthenticatedRequest:
    runtime = get_runtime()
    ctx = await asyncio.to_thread(runtime.sessions.authenticate, authorization, dict(request.cookies))
    if ctx.refreshed_tokens is not None:
        _apply_session_cookies(response, ctx.refreshed_tokens)
    return ctx


async def get_admin_context(
    request: Request,
    response: Response,
    ctx: AuthenticatedRequest = Depends(get_auth_context),
) -> AuthenticatedRequest:
    authorize(ctx, "admin")
    settings = get_settings()
    await _enforce_rate_limit(
        get_runtime(),
        f"admin:{ctx.account.id}",
        settings.admin_rate_limit_per_hour,
        3600,
        response=response,
    )
    return ctx


async def _profile_limit(
    response: Response, ctx: AuthenticatedRequest = Depends(get_auth_context)
) -> AuthenticatedRequest:
    settings = get_settings()
    await _enforce_rate_limit(
        get_runtime(),
        f"profile:{ctx.account.id}",
        settings.profile_rate_limit_per_window,
        settings.api_rate_limit_window_seconds,
        response=response,
    )
    return ctx


def _session_body(result, **extra) -> dict:
    return {
        "success": True,
        **extra,
        "token": result.tokens.access_token,
        "user": serialize_account(result.account),
    }


@router.get("/health", tags=["system"])
async def health():
    return {
        "status": "OK",
        "message": "API is running",
        "timestamp": _now_iso(),
        "environment": get_settings().environment.value,
    }


@router.post("/auth/register", status_code=201, tags=["auth"], dependencies=[Depends(_auth_limit)])
async def register(
    response: Response,
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
):
    """Create a local account and email a verification link.

    The session returned here is usable only after the email is verified.
    """
    body = _parse_form(RegisterRequest, name=name, email=email, password=password)
    upload = await _read_image(image)
    result = await get_runtime().auth.register(
        name=body.name, email=body.email, password=body.password, image=upload
    )
    _apply_session_cookies(response, result.tokens)
    return _session_body(result, message="Registration successful")


@router.post("/auth/login", tags=["auth"], dependencies=[Depends(_auth_limit)])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: unknown email, wrong password or locked account
        403: inactive or unverified account
    """
    result = await get_runtime().auth.login(body.email, body.password)
    _apply_session_cookies(response, result.tokens)
    return _session_body(result)


@router.post("/auth/logout", tags=["auth"], dependencies=[Depends(_api_limit)])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    account_id = None
    try:
        ctx = await asyncio.to_thread(runtime.sessions.authenticate, authorization, dict(request.cookies))
        account_id = ctx.account.id
    except ServiceError as exc:
        logger.info("logout_without_session", reason=exc.error_code)
    await runtime.auth.logout(account_id)
    _clear_session_cookies(response)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/auth/verify-email", tags=["auth"], dependencies=[Depends(_api_limit)])
async def verify_email(response: Response, token: Optional[str] = Query(None, max_length=256)):
    if not token:
        raise ValidationError("Verification token is required")
    result = await get_runtime().auth.verify_email(token)
    _apply_session_cookies(response, result.tokens)
    return _session_body(result, message="Email verified successfully")


@router.post("/auth/resend-verification", tags=["auth"])
async def resend_verification(body: EmailRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.resend_verification_limit_per_hour,
        3600,
        response=response,
    )
    await runtime.auth.resend_verification(body.email)
    return {"success": True, "message": "Verification email sent successfully"}


@router.post("/auth/google", tags=["auth"], dependencies=[Depends(_auth_limit)])
async def google_sign_in(body: GoogleAuthRequest, response: Response):
    """Sign in or register with a Google ID token."""
    result = await get_runtime().auth.google_sign_in(
        body.credential or "", is_registration=body.is_registration
    )
    # Lax so the cookies survive the redirect back from the consent screen
    _apply_session_cookies(response, result.tokens, samesite="lax")
    message = "Google registration successful" if body.is_registration else "Google login successful"
    return _session_body(result, message=message)


@router.post("/auth/refresh", tags=["auth"], dependencies=[Depends(_api_limit)])
async def refresh_tokens(request: Request, response: Response):
    ctx = await asyncio.to_thread(get_runtime().sessions.refresh, request.cookies.get(REFRESH_COOKIE))
    _apply_session_cookies(response, ctx.refreshed_tokens)
    return {"success": True, "token": ctx.refreshed_tokens.access_token}


@router.post("/auth/forgot-password", tags=["auth"], dependencies=[Depends(_auth_limit)])
async def forgot_password(body: EmailRequest):
    await get_runtime().auth.forgot_password(body.email)
    return {"success": True, "message": FORGOT_PASSWORD_MESSAGE}


@router.post("/auth/reset-password", tags=["auth"], dependencies=[Depends(_auth_limit)])
async def reset_password(body: ResetPasswordRequest):
    if not body.token:
        raise ValidationError("Reset token is required")
    await get_runtime().auth.reset_password(body.token, body.password)
    return {"success": True, "message": "Password has been reset successfully"}


@router.get("/auth/profile", tags=["auth"], dependencies=[Depends(_api_limit)])
async def get_profile(ctx: AuthenticatedRequest = Depends(_profile_limit)):
    account = await get_runtime().auth.get_profile(ctx.account.id)
    return {"success": True, "user": serialize_account(account)}


@router.put("/auth/profile", tags=["auth"], dependencies=[Depends(_api_limit)])
async def update_profile(
    ctx: AuthenticatedRequest = Depends(_profile_limit),
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
):
    body = _parse_form(ProfileUpdateRequest, name=name, email=email)
    upload = await _read_image(image)
    account = await get_runtime().auth.update_profile(
        ctx.account, name=body.name, email=body.email, image=upload
    )
    return {"success": True, "message": "Profile updated successfully", "user": serialize_account(account)}


@router.put("/auth/password", tags=["auth"], dependencies=[Depends(_api_limit)])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    ctx: AuthenticatedRequest = Depends(_profile_limit),
):
    result = await get_runtime().auth.change_password(
        ctx.account, body.current_password, body.new_password
    )
    _apply_session_cookies(response, result.tokens)
    return _session_body(result, message="Password updated successfully")


@router.get("/auth/check", tags=["auth"], dependencies=[Depends(_api_limit)])
async def check_auth(response: Response, ctx: AuthenticatedRequest = Depends(get_auth_context)):
    settings = get_settings()
    await _enforce_rate_limit(
        get_runtime(),
        f"check:{ctx.account.id}",
        settings.check_rate_limit_per_window,
        settings.api_rate_limit_window_seconds,
        response=response,
    )
    return {"success": True, "isAuthenticated": True, "user": serialize_account(ctx.account)}


@router.get("/auth/admin", tags=["auth"], dependencies=[Depends(_api_limit)])
async def admin_check(ctx: AuthenticatedRequest = Depends(get_admin_context)):
    return {"success": True, "message": "Admin access granted", "timestamp": _now_iso()}


@router.get("/users", tags=["users"], dependencies=[Depends(_api_limit)])
async def list_users(
    ctx: AuthenticatedRequest = Depends(get_admin_context),
    role: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    accounts, total = await get_runtime().auth.list_accounts(
        role=role, is_active=is_active, search=search, page=page, limit=limit
    )
    return {
        "success": True,
        "users": [serialize_account(account) for account in accounts],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.get("/users/stats", tags=["users"], dependencies=[Depends(_api_limit)])
async def user_stats(ctx: AuthenticatedRequest = Depends(get_admin_context)):
    return {"success": True, "stats": await get_runtime().auth.account_stats()}


@router.get("/users/{account_id}", tags=["users"], dependencies=[Depends(_api_limit)])
async def get_user(
    account_id: str = Path(..., max_length=64),
    ctx: AuthenticatedRequest = Depends(get_admin_context),
):
    account = await get_runtime().auth.get_account(account_id)
    return {"success": True, "user": serialize_account(account)}


@router.put("/users/{account_id}", tags=["users"], dependencies=[Depends(_api_limit)])
async def update_user(
    account_id: str = Path(..., max_length=64),
    ctx: AuthenticatedRequest = Depends(get_admin_context),
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    role: Optional[str] = Form(None),
    is_active: Optional[str] = Form(None, alias="isActive"),
    image: Optional[UploadFile] = File(None),
):
    body = _parse_form(
        AdminUserUpdateRequest,
        name=name,
        email=email,
        password=password,
        role=role,
        isActive=is_active,
    )
    upload = await _read_image(image)
    account = await get_runtime().auth.admin_update_account(
        ctx.account,
        account_id,
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
        is_active=body.is_active,
        image=upload,
    )
    return {"success": True, "message": "User updated successfully", "user": serialize_account(account)}


@router.put("/users/{account_id}/role", tags=["users"], dependencies=[Depends(_api_limit)])
async def update_user_role(
    body: RoleUpdateRequest,
    account_id: str = Path(..., max_length=64),
    ctx: AuthenticatedRequest = Depends(get_admin_context),
):
    account = await get_runtime().auth.set_role(ctx.account, account_id, body.role)
    return {"success": True, "message": "User role updated successfully", "user": serialize_account(account)}


@router.put("/users/{account_id}/password", tags=["users"], dependencies=[Depends(_api_limit)])
async def update_user_password(
    body: PasswordChangeRequest,
    account_id: str = Path(..., max_length=64),
    ctx: AuthenticatedRequest = Depends(get_admin_context),
):
    await get_runtime().auth.admin_set_password(
        ctx.account, account_id, body.current_password, body.new_password
    )
    return {"success": True, "message": "Password updated successfully"}


@router.patch("/users/{account_id}/toggle-status", tags=["users"], dependencies=[Depends(_api_limit)])
async def toggle_user_status(
    account_id: str = Path(..., max_length=64),
    ctx: AuthenticatedRequest = Depends(get_admin_context),
):
    account = await get_runtime().auth.toggle_status(ctx.account, account_id)
    state = "activated" if account.is_active else "deactivated"
    return {"success": True, "message": f"User {state} successfully", "user": serialize_account(account)}
