from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "expired",
    "step_up_required",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """At least 8 characters drawn from three of: lower, upper, digit, symbol."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    classes = sum(
        bool(re.search(pattern, value))
        for pattern in (r"[a-z]", r"[A-Z]", r"\d", r"[^a-zA-Z0-9]")
    )
    if classes < 3:
        raise ValueError(
            "password must contain three of: lowercase, uppercase, digits, symbols"
        )
    return value


def _validate_code(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class CsrfResponse(BaseModel):
    csrf_token: str


class SignupRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SignupResponse(BaseModel):
    identity_id: str
    email: str
    verification_sent: bool
    message: str = "Check your email to verify your account."


class EmailAddressRequest(BaseModel):
    """Body of the forgot-password and resend-verification requests."""

    email: str

    @field_validator("email")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        return _validate_email(value)


class GenericMessageResponse(BaseModel):
    message: str


class AccountTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class VerifyEmailResponse(BaseModel):
    email: str
    verified: bool = True


class ResetTokenStatusResponse(BaseModel):
    valid: bool


class PasswordResetRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    status: Literal["done", "require_step_up"]
    identity_id: str
    session_expires_at: datetime
    requires_step_up: bool = False
    email: Optional[str] = None
    session_id: Optional[str] = None
    session_token: Optional[str] = None


class StepUpCompleteRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class StepUpStatusResponse(BaseModel):
    requires_step_up: bool


class IdentityResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    email_verified: bool
    two_factor_enabled: bool
    created_at: datetime


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_active: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    current: bool = False


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class RevokeResponse(BaseModel):
    revoked: int


class TotpSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class TotpCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class StepUpCodeRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: Optional[str]) -> Optional[str]:
        return _validate_code(value)


class MFADisableRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=128)
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: Optional[str]) -> Optional[str]:
        return _validate_code(value)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class MFAStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int


class PasswordChangeRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: str
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: Optional[str]) -> Optional[str]:
        return _validate_code(value)


class EmailChangeRequest(BaseModel):
    new_email: str
    code: Optional[str] = Field(default=None, max_length=16)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: Optional[str]) -> Optional[str]:
        return _validate_code(value)


class EmailChangeResponse(BaseModel):
    new_email: str
    expires_at: datetime


class EmailChangeVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailChangeVerifyResponse(BaseModel):
    email: str
    sessions_revoked: int


class EmailChangeCancelRequest(BaseModel):
    cancel_token: str = Field(..., min_length=1, max_length=256)


class EmailChangePreviewResponse(BaseModel):
    old_email: str
    new_email: str
    expires_at: datetime
