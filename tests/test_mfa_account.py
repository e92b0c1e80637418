"""Tests for TOTP enrolment, signup and password change."""

import pytest

from authcore.service.errors import (
    ConflictError,
    RateLimitedError,
    StepUpRequiredError,
    ValidationError,
)
from authcore.service.mfa import TwoFactorService
from authcore.service.notifier import PasswordChangedNotice, TwoFactorDisabledNotice

PASSWORD = "Correct-Horse-9"
NEW_PASSWORD = "Battery-Staple-42"


@pytest.fixture
def two_factor(store, totp, backup_codes, credentials, step_up, rate_limiter, notifier, settings, audit, clock):
    return TwoFactorService(
        store,
        totp,
        backup_codes,
        credentials,
        step_up,
        rate_limiter,
        notifier,
        settings,
        audit=audit,
        clock=clock,
    )


class TestTwoFactorEnrolment:
    async def test_setup_then_enable(self, two_factor, make_identity, totp, clock, step_up):
        identity = make_identity()
        enrollment = await two_factor.begin_setup(identity.id)
        assert enrollment.otpauth_uri.startswith("otpauth://totp/")
        # an unconfirmed secret does not gate anything yet
        assert step_up.requires_step_up(identity.id) is False

        codes = await two_factor.enable(identity.id, totp.code_at(enrollment.secret, clock.timestamp()))
        assert len(codes) == 8
        assert step_up.requires_step_up(identity.id) is True
        status = two_factor.status(identity.id)
        assert status.enabled is True
        assert status.backup_codes_remaining == 8

    async def test_enable_with_wrong_code(self, two_factor, make_identity):
        identity = make_identity()
        await two_factor.begin_setup(identity.id)
        with pytest.raises(ValidationError):
            await two_factor.enable(identity.id, "000000")
        assert two_factor.status(identity.id).enabled is False

    async def test_enable_without_setup(self, two_factor, make_identity):
        identity = make_identity()
        with pytest.raises(ValidationError):
            await two_factor.enable(identity.id, "123456")

    async def test_setup_when_already_enabled(self, two_factor, mfa_identity):
        with pytest.raises(ConflictError):
            await two_factor.begin_setup(mfa_identity.id)

    async def test_setup_is_rate_limited(self, two_factor, make_identity):
        identity = make_identity()
        for _ in range(10):
            await two_factor.begin_setup(identity.id)
        with pytest.raises(RateLimitedError):
            await two_factor.begin_setup(identity.id)


class TestTwoFactorDisable:
    async def test_disable_needs_password(self, two_factor, mfa_identity, notifier):
        with pytest.raises(ValidationError):
            await two_factor.disable(mfa_identity.id)
        with pytest.raises(ValidationError):
            await two_factor.disable(mfa_identity.id, password="Wrong-Horse-9")
        await two_factor.disable(mfa_identity.id, password=PASSWORD)

        status = two_factor.status(mfa_identity.id)
        assert status.enabled is False
        assert status.backup_codes_remaining == 0
        to_email, notice = notifier.send_security_notice.call_args.args
        assert to_email == "alice@example.com"
        assert isinstance(notice, TwoFactorDisabledNotice)

    async def test_passwordless_identity_uses_second_factor(
        self, two_factor, make_identity, totp, backup_codes, clock
    ):
        secret = totp.generate_secret()
        identity = make_identity(password=None, totp_secret=secret)
        with pytest.raises(StepUpRequiredError):
            await two_factor.disable(identity.id)
        await two_factor.disable(identity.id, code=totp.code_at(secret, clock.timestamp()))
        assert two_factor.status(identity.id).enabled is False

    async def test_regenerate_requires_code(self, two_factor, mfa_identity, totp, clock, backup_codes):
        with pytest.raises(StepUpRequiredError):
            await two_factor.regenerate_backup_codes(mfa_identity.id, None)
        fresh = await two_factor.regenerate_backup_codes(
            mfa_identity.id, totp.code_at(mfa_identity.totp_secret, clock.timestamp())
        )
        assert set(fresh).isdisjoint(mfa_identity.backup_plain)
        assert backup_codes.consume(mfa_identity.id, mfa_identity.backup_plain[0]) is False


class TestSignup:
    async def test_signup_creates_unverified_identity(self, accounts, credentials, audit, notifier):
        result = await accounts.signup(" New@Example.com", PASSWORD, client_ip="10.1.1.1")
        identity = result.identity
        assert identity.email == "new@example.com"
        assert identity.email_verified_at is None
        assert credentials.verify(identity, PASSWORD) is True
        assert result.verification_sent is True
        assert "signup" in audit.names()
        to_email, token = notifier.send_account_verification.call_args.args
        assert to_email == "new@example.com"
        assert token

    async def test_verification_email_failure_keeps_identity(self, accounts, notifier, store):
        notifier.send_account_verification.side_effect = ConnectionError("smtp down")
        result = await accounts.signup("new@example.com", PASSWORD, client_ip="10.1.1.1")
        assert result.verification_sent is False
        with store.transaction() as repo:
            assert repo.get_identity(result.identity.id) is not None

    async def test_duplicate_email_conflicts(self, accounts, make_identity):
        make_identity()
        with pytest.raises(ConflictError):
            await accounts.signup("ALICE@example.com", PASSWORD, client_ip="10.1.1.1")

    async def test_signup_is_rate_limited_per_ip(self, accounts):
        for n in range(3):
            await accounts.signup(f"u{n}@example.com", PASSWORD, client_ip="10.1.1.1")
        with pytest.raises(RateLimitedError):
            await accounts.signup("u9@example.com", PASSWORD, client_ip="10.1.1.1")
        await accounts.signup("u9@example.com", PASSWORD, client_ip="10.1.1.2")


class TestChangePassword:
    async def test_change_revokes_other_sessions(
        self, accounts, make_identity, sessions, store, credentials, notifier
    ):
        identity = make_identity()
        current = sessions.create_session(identity.id, False)
        sessions.create_session(identity.id, False)
        revoked = await accounts.change_password(
            identity.id, PASSWORD, NEW_PASSWORD, session_token=current.token
        )
        assert revoked == 1
        assert [s.id for s in sessions.list_sessions(identity.id)] == [current.id]
        with store.transaction() as repo:
            updated = repo.get_identity(identity.id)
        assert credentials.verify(updated, NEW_PASSWORD) is True
        assert isinstance(notifier.send_security_notice.call_args.args[1], PasswordChangedNotice)

    async def test_wrong_current_password(self, accounts, make_identity, store, credentials):
        identity = make_identity()
        with pytest.raises(ValidationError):
            await accounts.change_password(identity.id, "Wrong-Horse-9", NEW_PASSWORD)
        with store.transaction() as repo:
            assert credentials.verify(repo.get_identity(identity.id), PASSWORD) is True

    async def test_mfa_identity_needs_code(self, accounts, mfa_identity, totp, clock):
        with pytest.raises(StepUpRequiredError):
            await accounts.change_password(mfa_identity.id, PASSWORD, NEW_PASSWORD)
        await accounts.change_password(
            mfa_identity.id,
            PASSWORD,
            NEW_PASSWORD,
            step_up_code=totp.code_at(mfa_identity.totp_secret, clock.timestamp()),
        )

    async def test_notice_failure_does_not_undo_change(
        self, accounts, make_identity, store, credentials, notifier
    ):
        identity = make_identity()
        notifier.send_security_notice.side_effect = ConnectionError("smtp down")
        await accounts.change_password(identity.id, PASSWORD, NEW_PASSWORD)
        with store.transaction() as repo:
            assert credentials.verify(repo.get_identity(identity.id), NEW_PASSWORD) is True
