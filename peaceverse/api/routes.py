from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Response

from peaceverse.api.error_handling import service_error_response
from peaceverse.api.schemas import (
    BatchDeleteRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    Pagination,
    ProfileResponse,
    ResendOtpRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignupRequest,
    SignupResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
    VerifyOtpRequest,
)
from peaceverse.config import get_settings
from peaceverse.logging import get_logger
from peaceverse.service.auth import AuthContext, SessionGrant
from peaceverse.service.errors import AuthenticationError, ValidationError
from peaceverse.service.runtime import get_runtime
from peaceverse.storage.models import Role, UserAccount

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def _user_response(user: UserAccount) -> UserResponse:
    return UserResponse(**user.public_view())


def _set_auth_cookies(response: Response, grant: SessionGrant) -> None:
    settings = get_settings()
    common = {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": settings.cookie_samesite,
        "path": "/",
    }
    response.set_cookie(
        ACCESS_COOKIE,
        grant.tokens.access_token,
        max_age=settings.access_token_ttl_seconds,
        **common,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        grant.tokens.refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        **common,
    )


def _clear_auth_cookies(response: Response) -> None:
    settings = get_settings()
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.is_production,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def _session_envelope(grant: SessionGrant) -> Envelope:
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=_user_response(grant.user),
            access_expires_at=grant.tokens.access_expires_at,
            refresh_expires_at=grant.tokens.refresh_expires_at,
        ),
    )


async def require_auth(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    """Resolve the caller from a Bearer header, falling back to the access cookie."""
    runtime = get_runtime()
    return runtime.auth.authenticate(_bearer_token(authorization) or access_cookie)


def require_role(*roles: Role):
    """Dependency factory admitting the given roles; admin always passes."""

    async def _dependency(
        ctx: AuthContext = Depends(require_auth),
    ) -> AuthContext:
        get_runtime().auth.authorize(ctx, roles)
        return ctx

    return _dependency


# signup and verification


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Register an account and send OTPs to both the email address and the phone.

    The account cannot log in until both codes are verified. Accounts that stay
    unverified past the retention window are removed by the background sweep.
    """
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("signup", body.email)
    result = await runtime.auth.signup(body.email, body.phone_number, body.password)
    return Envelope(
        status="ok",
        data=SignupResponse(
            user_id=result.user.id,
            email=result.user.email,
            email_sent=result.email_sent,
            sms_sent=result.sms_sent,
        ),
    )


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_email_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("verify", body.email)
    user = await runtime.auth.verify_email_otp(body.email, body.otp)
    return Envelope(
        status="ok",
        data={"message": "email verified", "user": _user_response(user)},
    )


@router.post("/auth/verify-phone-otp", response_model=Envelope, tags=["auth"])
async def verify_phone_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("verify", body.email)
    user = await runtime.auth.verify_phone_otp(body.email, body.otp)
    return Envelope(
        status="ok",
        data={"message": "phone verified", "user": _user_response(user)},
    )


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOtpRequest):
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("resend", body.email)
    sent = await runtime.auth.resend_otp(body.email, body.channel)
    return Envelope(status="ok", data={"channel": body.channel, "sent": sent})


# sessions


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password and set the session cookies.

    The refresh session is persisted before the response is built, so the
    cookie never names a jti the revocation store has not seen.
    """
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("login", body.email)
    grant = await runtime.auth.login(body.email, body.password)
    _set_auth_cookies(response, grant)
    return _session_envelope(grant)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    try:
        grant = await runtime.auth.refresh(refresh_cookie)
    except AuthenticationError as exc:
        error_response = service_error_response(exc)
        _clear_auth_cookies(error_response)
        return error_response
    _set_auth_cookies(response, grant)
    return _session_envelope(grant)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    try:
        ctx = runtime.auth.authenticate(_bearer_token(authorization) or access_cookie)
    except AuthenticationError as exc:
        # stale cookies are cleared even when the request is rejected
        error_response = service_error_response(exc)
        _clear_auth_cookies(error_response)
        return error_response
    revoked = await runtime.auth.logout(ctx, refresh_cookie)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"message": "logged out", "revoked": revoked})


# password reset


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("forgot", body.email)
    sent = await runtime.auth.forgot_password(body.email)
    return Envelope(
        status="ok", data={"message": "password reset code sent", "sent": sent}
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    await runtime.auth.enforce_rate_limit("reset", body.email)
    await runtime.auth.reset_password(body.email, body.otp, body.new_password)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"message": "password reset successful"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    user = runtime.auth.get_account(ctx.user_id)
    return Envelope(status="ok", data=_user_response(user))


# profile


@router.get("/profile", response_model=Envelope, tags=["profile"])
async def get_profile(ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    user = runtime.auth.get_account(ctx.user_id)
    return Envelope(
        status="ok",
        data=ProfileResponse(
            email=user.email, role=user.role.value, last_login=user.last_login
        ),
    )


@router.get("/profile/editor", response_model=Envelope, tags=["profile"])
async def get_editor_area(ctx: AuthContext = Depends(require_role(Role.EDITOR))):
    return Envelope(
        status="ok",
        data={"message": "welcome to the editor area", "role": ctx.role.value},
    )


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    search: Optional[str] = Query(None, max_length=254),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: AuthContext = Depends(require_role(Role.ADMIN)),
):
    runtime = get_runtime()
    listing = runtime.auth.list_users(search=search, page=page, limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_user_response(user) for user in listing.items],
            pagination=Pagination(
                total=listing.total,
                page=listing.page,
                limit=listing.limit,
                total_pages=listing.total_pages,
            ),
        ),
    )


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: str,
    body: UpdateUserRequest,
    principal: AuthContext = Depends(require_role(Role.ADMIN)),
):
    if body.email is None and body.role is None and body.is_active is None:
        raise ValidationError("no fields to update")
    runtime = get_runtime()
    user = await runtime.auth.update_user(
        user_id,
        email=body.email,
        role=Role(body.role) if body.role else None,
        is_active=body.is_active,
    )
    logger.info(
        "admin_action", action="update_user", actor=principal.user_id, target=user_id
    )
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str, principal: AuthContext = Depends(require_role(Role.ADMIN))
):
    runtime = get_runtime()
    await runtime.auth.delete_user(user_id)
    logger.info(
        "admin_action", action="delete_user", actor=principal.user_id, target=user_id
    )
    return Envelope(status="ok", data={"deleted": user_id})


@router.post("/admin/users/batch-delete", response_model=Envelope, tags=["admin"])
async def admin_batch_delete_users(
    body: BatchDeleteRequest,
    principal: AuthContext = Depends(require_role(Role.ADMIN)),
):
    runtime = get_runtime()
    deleted = await runtime.auth.delete_users(body.ids)
    logger.info(
        "admin_action",
        action="batch_delete_users",
        actor=principal.user_id,
        requested=len(body.ids),
        deleted=deleted,
    )
    return Envelope(status="ok", data={"deleted": deleted})
