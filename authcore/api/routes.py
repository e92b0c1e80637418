from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from authcore.api.schemas import (
    AccountTokenRequest,
    AuthResponse,
    BackupCodesResponse,
    CsrfResponse,
    EmailAddressRequest,
    EmailChangeCancelRequest,
    EmailChangePreviewResponse,
    EmailChangeRequest,
    EmailChangeResponse,
    EmailChangeVerifyRequest,
    EmailChangeVerifyResponse,
    Envelope,
    GenericMessageResponse,
    IdentityResponse,
    LoginRequest,
    MFADisableRequest,
    MFAStatusResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    ResetTokenStatusResponse,
    RevokeResponse,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    SignupResponse,
    StepUpCodeRequest,
    StepUpCompleteRequest,
    StepUpStatusResponse,
    TotpCodeRequest,
    TotpSetupResponse,
    VerifyEmailResponse,
)
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, ForbiddenError, RateLimitedError
from authcore.service.login import (
    LoginDone,
    LoginRequireStepUp,
    complete_step_up as complete_step_up_flow,
    login as login_flow,
)
from authcore.service.runtime import get_runtime
from authcore.service.sessions import AuthContext
from authcore.storage.models import ClientMetadata, Identity, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _client_metadata(request: Request) -> ClientMetadata:
    return ClientMetadata(
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        country=request.headers.get("CF-IPCountry"),
        city=request.headers.get("CF-IPCity"),
    )


def get_session_token(
    request: Request,
    session_token: Optional[str] = Header(None, convert_underscores=False),
) -> Optional[str]:
    """Session token from the ``session_token`` header, else the session cookie."""
    if session_token:
        return session_token
    return request.cookies.get(get_runtime().settings.session_cookie_name)


async def get_auth(token: Optional[str] = Depends(get_session_token)) -> AuthContext:
    return get_runtime().sessions.resolve(token)


def _set_session_cookie(response: Response, session_token: str, expires_at: datetime) -> None:
    runtime = get_runtime()
    max_age = max(0, int((expires_at - datetime.now(expires_at.tzinfo)).total_seconds()))
    response.set_cookie(
        key=runtime.settings.session_cookie_name,
        value=session_token,
        max_age=max_age,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(get_runtime().settings.session_cookie_name, path="/")


def _identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        email_verified=identity.email_verified_at is not None,
        two_factor_enabled=identity.totp_enabled,
        created_at=identity.created_at,
    )


def _session_response(session: Session, current_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        last_active=session.last_active,
        expires_at=session.expires_at,
        ip_address=session.client.ip_address,
        user_agent=session.client.user_agent,
        location=session.client.location,
        current=session.id == current_id,
    )


# ---------------------------------------------------------------------------
# auth


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf_token(request: Request, response: Response):
    """Return the CSRF token, reusing the one already in the cookie."""
    csrf = get_runtime().csrf
    token = csrf.issue(request.cookies.get(csrf.cookie_name))
    csrf.set_cookie(response, token)
    return Envelope(status="ok", data=CsrfResponse(csrf_token=token))


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Register an account; the emailed link must be followed before login."""
    result = await get_runtime().accounts.signup(
        body.email, body.password, name=body.name, client_ip=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data=SignupResponse(
            identity_id=result.identity.id,
            email=result.identity.email,
            verification_sent=result.verification_sent,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: AccountTokenRequest, request: Request):
    identity = await get_runtime().accounts.verify_email(
        body.token, client_ip=_client_ip(request)
    )
    return Envelope(status="ok", data=VerifyEmailResponse(email=identity.email))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailAddressRequest, request: Request):
    await get_runtime().accounts.resend_verification(body.email, client_ip=_client_ip(request))
    return Envelope(
        status="ok",
        data=GenericMessageResponse(
            message="If the email exists and is unverified, a verification link will be sent."
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailAddressRequest, request: Request):
    await get_runtime().accounts.request_password_reset(
        body.email, client_ip=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data=GenericMessageResponse(
            message="If an account exists with this email, you will receive a password reset link."
        ),
    )


@router.get("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def validate_reset_token(token: str = Query(..., min_length=1, max_length=256)):
    """Check a reset link before the password form is shown; the token stays usable."""
    valid = get_runtime().accounts.validate_reset_token(token)
    return Envelope(status="ok", data=ResetTokenStatusResponse(valid=valid))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request, response: Response):
    revoked = await get_runtime().accounts.reset_password(
        body.token, body.password, client_ip=_client_ip(request)
    )
    _clear_session_cookie(response)
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login.

    Returns ``done`` with a full session, or ``require_step_up`` with a
    short-lived pending session that must be completed with a second factor.
    """
    runtime = get_runtime()
    result = await login_flow(
        body.email,
        body.password,
        _client_metadata(request),
        store=runtime.store,
        credentials=runtime.credentials,
        sessions=runtime.sessions,
        rate_limiter=runtime.rate_limiter,
        settings=runtime.settings,
        audit=runtime.audit,
    )
    if isinstance(result, LoginDone):
        _set_session_cookie(response, result.session.token, result.session.expires_at)
        return Envelope(
            status="ok",
            data=AuthResponse(
                status="done",
                identity_id=result.identity.id,
                email=result.identity.email,
                session_id=result.session.id,
                session_expires_at=result.session.expires_at,
            ),
        )
    if isinstance(result, LoginRequireStepUp):
        _set_session_cookie(response, result.session_token, result.expires_at)
        return Envelope(
            status="ok",
            data=AuthResponse(
                status="require_step_up",
                identity_id=result.identity_id,
                requires_step_up=True,
                session_token=result.session_token,
                session_expires_at=result.expires_at,
            ),
        )
    if result.reason == "rate_limited":
        raise RateLimitedError(
            "too many login attempts, please try again later",
            retry_after_seconds=result.retry_after_seconds,
            limit=runtime.settings.login_max_attempts,
        )
    if result.reason == "email_not_verified":
        raise ForbiddenError(
            "please verify your email before signing in",
            detail={"code": "EMAIL_NOT_VERIFIED"},
        )
    raise AuthenticationError("invalid credentials")


@router.post("/auth/step-up/complete", response_model=Envelope, tags=["auth"])
async def complete_step_up(
    body: StepUpCompleteRequest,
    response: Response,
    token: Optional[str] = Depends(get_session_token),
):
    runtime = get_runtime()
    if not token:
        raise AuthenticationError("no pending session")
    session = await complete_step_up_flow(
        token, body.code, sessions=runtime.sessions, step_up=runtime.step_up
    )
    _set_session_cookie(response, session.token, session.expires_at)
    return Envelope(
        status="ok",
        data=AuthResponse(
            status="done",
            identity_id=session.identity_id,
            session_id=session.id,
            session_expires_at=session.expires_at,
        ),
    )


@router.get("/auth/step-up/status", response_model=Envelope, tags=["auth"])
async def step_up_status(token: Optional[str] = Depends(get_session_token)):
    """Whether sensitive actions for the caller need a second-factor code."""
    runtime = get_runtime()
    ctx = runtime.sessions.resolve(token, allow_pending=True)
    return Envelope(
        status="ok",
        data=StepUpStatusResponse(
            requires_step_up=runtime.step_up.requires_step_up(ctx.identity.id)
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, token: Optional[str] = Depends(get_session_token)):
    if token:
        get_runtime().sessions.delete_session(token)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(ctx: AuthContext = Depends(get_auth)):
    return Envelope(status="ok", data=_identity_response(ctx.identity))


# ---------------------------------------------------------------------------
# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: AuthContext = Depends(get_auth)):
    sessions = get_runtime().sessions.list_sessions(ctx.identity.id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[_session_response(s, ctx.session.id) for s in sessions]
        ),
    )


@router.post("/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(ctx: AuthContext = Depends(get_auth)):
    revoked = get_runtime().sessions.revoke_all_except(ctx.identity.id, ctx.session.token)
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    response: Response,
    session_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth),
):
    get_runtime().sessions.revoke_session(session_id, ctx.identity.id)
    if session_id == ctx.session.id:
        _clear_session_cookie(response)
    return Envelope(status="ok", data=RevokeResponse(revoked=1))


# ---------------------------------------------------------------------------
# two-factor


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(ctx: AuthContext = Depends(get_auth)):
    enrollment = await get_runtime().two_factor.begin_setup(ctx.identity.id)
    return Envelope(
        status="ok",
        data=TotpSetupResponse(secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri),
    )


@router.post("/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(body: TotpCodeRequest, ctx: AuthContext = Depends(get_auth)):
    codes = await get_runtime().two_factor.enable(ctx.identity.id, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: MFADisableRequest, ctx: AuthContext = Depends(get_auth)):
    await get_runtime().two_factor.disable(
        ctx.identity.id,
        password=body.password,
        code=body.code,
        session_token=ctx.session.token,
    )
    return Envelope(status="ok", data={"enabled": False})


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    body: StepUpCodeRequest, ctx: AuthContext = Depends(get_auth)
):
    codes = await get_runtime().two_factor.regenerate_backup_codes(
        ctx.identity.id, body.code, session_token=ctx.session.token
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(ctx: AuthContext = Depends(get_auth)):
    status = get_runtime().two_factor.status(ctx.identity.id)
    return Envelope(
        status="ok",
        data=MFAStatusResponse(
            enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


# ---------------------------------------------------------------------------
# account


@router.post("/account/password", response_model=Envelope, tags=["account"])
async def change_password(body: PasswordChangeRequest, ctx: AuthContext = Depends(get_auth)):
    revoked = await get_runtime().accounts.change_password(
        ctx.identity.id,
        body.current_password,
        body.new_password,
        step_up_code=body.code,
        session_token=ctx.session.token,
    )
    return Envelope(status="ok", data=RevokeResponse(revoked=revoked))


@router.post("/email-change", response_model=Envelope, status_code=202, tags=["account"])
async def request_email_change(body: EmailChangeRequest, ctx: AuthContext = Depends(get_auth)):
    requested = await get_runtime().email_change.request_change(
        ctx.identity.id, body.new_email, body.code, session_token=ctx.session.token
    )
    return Envelope(
        status="ok",
        data=EmailChangeResponse(new_email=requested.new_email, expires_at=requested.expires_at),
    )


@router.post("/email-change/verify", response_model=Envelope, tags=["account"])
async def verify_email_change(
    body: EmailChangeVerifyRequest,
    request: Request,
    token: Optional[str] = Depends(get_session_token),
):
    """Finalize a change from the link sent to the new address.

    Every session except the one presenting the link is signed out.
    """
    verified = await get_runtime().email_change.verify(
        body.token, token, client_ip=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data=EmailChangeVerifyResponse(
            email=verified.new_email, sessions_revoked=verified.sessions_revoked
        ),
    )


@router.get("/email-change/cancel", response_model=Envelope, tags=["account"])
async def preview_email_change_cancel(
    request: Request, cancel_token: str = Query(..., min_length=1, max_length=256)
):
    preview = await get_runtime().email_change.preview(
        cancel_token, client_ip=_client_ip(request)
    )
    return Envelope(
        status="ok",
        data=EmailChangePreviewResponse(
            old_email=preview.old_email,
            new_email=preview.new_email,
            expires_at=preview.expires_at,
        ),
    )


@router.post("/email-change/cancel", response_model=Envelope, tags=["account"])
async def cancel_email_change(body: EmailChangeCancelRequest, request: Request):
    await get_runtime().email_change.cancel(body.cancel_token, client_ip=_client_ip(request))
    return Envelope(status="ok", data={"cancelled": True})
