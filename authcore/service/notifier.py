from __future__ import annotations

import re
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Annotated, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from authcore.logging import get_logger

logger = get_logger(__name__)


class _Notice(BaseModel):
    model_config = ConfigDict(frozen=True)


class EmailChangeRequestedNotice(_Notice):
    kind: Literal["email_change_requested"] = "email_change_requested"
    new_email: str
    cancel_token: str
    expires_at: datetime


class PasswordChangedNotice(_Notice):
    kind: Literal["password_changed"] = "password_changed"
    changed_at: datetime


class TwoFactorDisabledNotice(_Notice):
    kind: Literal["two_factor_disabled"] = "two_factor_disabled"
    disabled_at: datetime


SecurityNotice = Annotated[
    Union[EmailChangeRequestedNotice, PasswordChangedNotice, TwoFactorDisabledNotice],
    Field(discriminator="kind"),
]

security_notice_adapter: TypeAdapter[SecurityNotice] = TypeAdapter(SecurityNotice)


class Notifier(Protocol):
    def send_verification(self, email: str, token: str) -> bool: ...

    def send_security_notice(self, email: str, notice: SecurityNotice) -> bool: ...

    def send_account_verification(self, email: str, token: str) -> bool: ...

    def send_password_reset(self, email: str, token: str) -> bool: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


_LINK_TOKEN = re.compile(r"([?&][a-z_]*token=)[^\s&]+")


def redact_link_tokens(text: str) -> str:
    """Blank out ``token=`` query values so emailed links are safe to log."""
    return _LINK_TOKEN.sub(r"\1[redacted]", text)


class EmailNotifier:
    """SMTP delivery of verification links and security notices.

    Without SMTP settings (dev mode) only a redacted preview is logged and the
    send is reported as not delivered.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Authcore",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            # Nothing is delivered; link tokens never reach the log.
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=redact_link_tokens(text_body[:200]),
            )
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_verification(self, email: str, token: str) -> bool:
        """Send the confirmation link for a new email address."""
        verify_url = f"{self.base_url}/email-change/verify?token={token}"
        text_body = f"""Confirm your new email address

Someone (hopefully you) asked to use this address for their account.
Visit the link below to confirm the change:

{verify_url}

This link will expire in 24 hours. If you did not request this, ignore this email.
"""
        return self._send_email(email, "Confirm your new email address", text_body)

    def send_account_verification(self, email: str, token: str) -> bool:
        """Send the confirmation link for a newly registered address."""
        verify_url = f"{self.base_url}/verify-email?token={token}"
        text_body = f"""Welcome! Confirm your email address

Visit the link below to activate your account:

{verify_url}

This link will expire in 24 hours. If you did not sign up, ignore this email.
"""
        return self._send_email(email, "Confirm your email address", text_body)

    def send_password_reset(self, email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        text_body = f"""Reset your password

A password reset was requested for your account. Choose a new password here:

{reset_url}

This link will expire in 1 hour and can be used once. Resetting signs out every device.
If you did not request this, ignore this email; your password is unchanged.
"""
        return self._send_email(email, "Reset your password", text_body)

    def send_security_notice(self, email: str, notice: SecurityNotice) -> bool:
        subject, text_body = self._render_notice(notice)
        return self._send_email(email, subject, text_body)

    def _render_notice(self, notice: SecurityNotice) -> tuple[str, str]:
        if isinstance(notice, EmailChangeRequestedNotice):
            cancel_url = f"{self.base_url}/email-change/cancel?cancel_token={notice.cancel_token}"
            return (
                "Your account email is being changed",
                f"""A request was made to change your account email to {redact_email(notice.new_email)}.

If this was not you, cancel the change before {notice.expires_at:%Y-%m-%d %H:%M UTC}:

{cancel_url}
""",
            )
        if isinstance(notice, PasswordChangedNotice):
            return (
                "Your password was changed",
                f"""Your account password was changed at {notice.changed_at:%Y-%m-%d %H:%M UTC}.

All other sessions have been signed out. If this was not you, reset your password immediately.
""",
            )
        if isinstance(notice, TwoFactorDisabledNotice):
            return (
                "Two-factor authentication disabled",
                f"""Two-factor authentication was disabled on your account at {notice.disabled_at:%Y-%m-%d %H:%M UTC}.

If you did not make this change, secure your account immediately.
""",
            )
        raise ValueError(f"unknown notice kind: {notice!r}")
