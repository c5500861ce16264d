from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from vib3sales.api.schemas import (
    AuthPayload,
    EmailVerificationRequest,
    Envelope,
    LeadPatchRequest,
    LeadSaveRequest,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RefreshPayload,
    SessionInfo,
    SignupRequest,
    TokenRefreshRequest,
    lead_payload,
)
from vib3sales.logging import get_logger
from vib3sales.service.auth import AuthContext, AuthResult, sanitize_user
from vib3sales.service.crm import export_filename
from vib3sales.service.runtime import check_rate_limit, get_runtime
from vib3sales.storage.models import SOURCE_TYPES, LeadStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")
crm_router = APIRouter(prefix="/api/crm/leads")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    """Create an HTTPException whose detail is already in envelope form."""
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return HTTPException(
        status_code=status_code, detail={"status": "error", "error": error}, headers=headers
    )


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def _enforce_api_rate_limit(request: Request, response: Response) -> None:
    """Per-client-IP throttle for the auth surface."""
    runtime = get_runtime()
    settings = runtime.settings
    if settings.api_rate_limit <= 0:
        return
    key = f"api:{_client_ip(request) or 'unknown'}"
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        key,
        settings.api_rate_limit,
        settings.api_rate_limit_window_seconds,
        return_remaining=True,
    )
    response.headers["X-RateLimit-Limit"] = str(settings.api_rate_limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("api_rate_limited", path=request.url.path)
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later.",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


async def get_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, request.cookies.get(ACCESS_COOKIE))
    request.state.auth = ctx
    return ctx


def _apply_session_cookies(
    response: Response, access_token: str, refresh_token: str, *, remember_me: bool
) -> None:
    settings = get_runtime().settings
    access_max_age = refresh_max_age = None
    if remember_me:
        access_max_age = int(settings.access_token_ttl.total_seconds())
        refresh_max_age = int(settings.refresh_token_ttl.total_seconds())
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=settings.auth_cookie_secure,
        samesite="lax",
        max_age=access_max_age,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=settings.auth_cookie_secure,
        samesite="lax",
        max_age=refresh_max_age,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.auth_cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


async def _auth_payload(result: AuthResult, message: str) -> dict:
    csrf_token = await get_runtime().csrf.issue(result.session.id)
    return AuthPayload(
        message=message,
        user=sanitize_user(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        csrf_token=csrf_token,
        requires_verification=result.requires_verification,
    ).model_dump()


@router.post(
    "/signup",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(_enforce_api_rate_limit)],
)
async def signup(body: SignupRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.signup(
        body.email,
        body.password,
        body.name,
        profile=body.profile(),
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    _apply_session_cookies(response, result.access_token, result.refresh_token, remember_me=False)
    data = await _auth_payload(result, "Account created successfully. Please verify your email.")
    return Envelope(status="ok", data=data)


@router.post(
    "/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_api_rate_limit)],
)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    _apply_session_cookies(
        response, result.access_token, result.refresh_token, remember_me=body.remember_me
    )
    data = await _auth_payload(result, "Login successful")
    return Envelope(status="ok", data=data)


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx.session_id, ctx.user_id)
    await runtime.csrf.revoke(ctx.session_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "Logout successful"})


@router.post(
    "/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_api_rate_limit)],
)
async def refresh_tokens(
    request: Request, response: Response, body: Optional[TokenRefreshRequest] = None
):
    runtime = get_runtime()
    cookie_token = request.cookies.get(REFRESH_COOKIE)
    token = (body.refresh_token if body else None) or cookie_token
    result = await runtime.auth.refresh(token)
    if cookie_token:
        # cookie clients get the rotated access token back as a cookie
        response.set_cookie(
            ACCESS_COOKIE,
            result.access_token,
            httponly=True,
            secure=runtime.settings.auth_cookie_secure,
            samesite="lax",
            path="/",
        )
    data = RefreshPayload(access_token=result.access_token, user=sanitize_user(result.user))
    return Envelope(status="ok", data=data.model_dump())


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(ctx: AuthContext = Depends(get_auth_context)):
    user = get_runtime().auth.get_profile(ctx.user_id)
    return Envelope(status="ok", data={"user": sanitize_user(user)})


@router.patch("/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, ctx: AuthContext = Depends(get_auth_context)):
    user = get_runtime().auth.update_profile(
        ctx.user_id, body.model_dump(exclude_unset=True, by_alias=False)
    )
    return Envelope(status="ok", data={"user": sanitize_user(user)})


@router.post(
    "/verify-email",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_api_rate_limit)],
)
async def verify_email(body: EmailVerificationRequest):
    user = await get_runtime().auth.verify_email(body.token)
    return Envelope(
        status="ok",
        data={"message": "Email verified successfully", "user": sanitize_user(user)},
    )


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(ctx: AuthContext = Depends(get_auth_context)):
    await get_runtime().auth.resend_verification(ctx.user_id)
    return Envelope(status="ok", data={"message": "Verification email sent"})


@router.post(
    "/forgot-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_api_rate_limit)],
)
async def forgot_password(body: PasswordResetRequest):
    message = await get_runtime().auth.forgot_password(body.email)
    return Envelope(status="ok", data={"message": message})


@router.post(
    "/reset-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(_enforce_api_rate_limit)],
)
async def reset_password(body: PasswordResetConfirm, response: Response):
    await get_runtime().auth.reset_password(body.token, body.new_password)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "Password reset successfully"})


@router.get("/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    sessions = get_runtime().auth.list_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data={
            "sessions": [
                SessionInfo.from_session(session, ctx.session_id).model_dump()
                for session in sessions
            ]
        },
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    # owner-scoped: another user's id revokes nothing and still answers 200
    if runtime.auth.revoke_session(session_id, ctx.user_id):
        await runtime.csrf.revoke(session_id)
    return Envelope(status="ok", data={"message": "Session revoked successfully"})


@router.get("/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(ctx: AuthContext = Depends(get_auth_context)):
    token = await get_runtime().csrf.issue(ctx.session_id)
    return Envelope(status="ok", data={"csrfToken": token})


# crm
@crm_router.get("", response_model=Envelope, tags=["crm"])
async def list_leads(
    status: Optional[LeadStatus] = Query(None),
    source: Optional[Literal["business", "social", "job"]] = Query(None),
    q: Optional[str] = Query(None, max_length=256),
    ctx: AuthContext = Depends(get_auth_context),
):
    leads = get_runtime().crm.list(ctx.user_id, status=status, source=source, q=q)
    return Envelope(status="ok", data={"leads": [lead_payload(lead) for lead in leads]})


@crm_router.post("", response_model=Envelope, tags=["crm"])
async def save_lead(body: LeadSaveRequest, ctx: AuthContext = Depends(get_auth_context)):
    lead = get_runtime().crm.save(
        ctx.user_id, body.to_source(), status=body.status, priority=body.priority
    )
    return Envelope(status="ok", data={"lead": lead_payload(lead)})


@crm_router.get("/export", tags=["crm"])
async def export_leads(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = runtime.auth.require_verified(ctx)
    body = runtime.crm.export_csv(ctx.user_id)
    filename = export_filename(user.name)
    logger.info("crm_export", user_id=ctx.user_id)
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@crm_router.delete("/by-source/{source}/{source_id}", response_model=Envelope, tags=["crm"])
async def unsave_lead(source: str, source_id: str, ctx: AuthContext = Depends(get_auth_context)):
    if source not in SOURCE_TYPES:
        raise _http_error(
            "validation_error", f"unknown source '{source}'", status_code=400
        )
    get_runtime().crm.unsave(ctx.user_id, source, source_id)
    return Envelope(status="ok", data={"message": "Lead removed"})


@crm_router.patch("/{lead_id}", response_model=Envelope, tags=["crm"])
async def patch_lead(
    lead_id: str, body: LeadPatchRequest, ctx: AuthContext = Depends(get_auth_context)
):
    lead = get_runtime().crm.patch(ctx.user_id, lead_id, body.changes())
    return Envelope(status="ok", data={"lead": lead_payload(lead) if lead else None})


@crm_router.delete("/{lead_id}", response_model=Envelope, tags=["crm"])
async def delete_lead(lead_id: str, ctx: AuthContext = Depends(get_auth_context)):
    get_runtime().crm.delete(ctx.user_id, lead_id)
    return Envelope(status="ok", data={"message": "Lead deleted"})
