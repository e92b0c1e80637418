"""Tests for the step-up gate in front of sensitive actions."""

import pytest

from authcore.service.errors import (
    AuthenticationError,
    RateLimitedError,
    StepUpRequiredError,
    ValidationError,
)


def _current_code(totp, clock, identity):
    return totp.code_at(identity.totp_secret, clock.timestamp())


class TestRequireStepUp:
    async def test_identity_without_mfa_passes(self, step_up, make_identity):
        identity = make_identity()
        result = await step_up.require_step_up(identity.id, None)
        assert result.ok is True
        assert result.requires_step_up is False

    async def test_missing_code_requires_step_up(self, step_up, mfa_identity):
        result = await step_up.require_step_up(mfa_identity.id, None)
        assert result.ok is False
        assert result.requires_step_up is True

    async def test_valid_totp_passes(self, step_up, mfa_identity, totp, clock, audit):
        result = await step_up.require_step_up(
            mfa_identity.id, _current_code(totp, clock, mfa_identity)
        )
        assert result.ok is True
        assert result.method == "totp"
        assert "step_up_succeeded" in audit.names()

    async def test_backup_code_passes_once(self, step_up, mfa_identity, backup_codes):
        code = mfa_identity.backup_plain[0]
        result = await step_up.require_step_up(mfa_identity.id, code)
        assert result.method == "backup_code"
        assert backup_codes.remaining(mfa_identity.id) == 7
        reused = await step_up.require_step_up(mfa_identity.id, code)
        assert reused.ok is False
        assert reused.method is None

    async def test_wrong_code_is_rejected_and_audited(self, step_up, mfa_identity, audit):
        result = await step_up.require_step_up(mfa_identity.id, "000000")
        assert result.ok is False
        assert result.requires_step_up is True
        assert result.method is None
        assert "step_up_failed" in audit.names()
        assert "step_up_succeeded" not in audit.names()

    async def test_every_call_reverifies(self, step_up, mfa_identity, totp, clock):
        await step_up.require_step_up(mfa_identity.id, _current_code(totp, clock, mfa_identity))
        result = await step_up.require_step_up(mfa_identity.id, None)
        assert result.ok is False

    async def test_code_attempts_are_rate_limited(self, step_up, mfa_identity):
        for _ in range(5):
            result = await step_up.require_step_up(mfa_identity.id, "000000")
            assert result.ok is False
        with pytest.raises(RateLimitedError):
            await step_up.require_step_up(mfa_identity.id, "000000")

    async def test_foreign_session_token_is_rejected(
        self, step_up, sessions, mfa_identity, make_identity
    ):
        other = make_identity("mallory@example.com")
        foreign = sessions.create_session(other.id, False)
        with pytest.raises(AuthenticationError):
            await step_up.require_step_up(mfa_identity.id, None, foreign.token)


class TestEnforce:
    async def test_enforce_raises_403_with_flag(self, step_up, mfa_identity):
        with pytest.raises(StepUpRequiredError) as exc_info:
            await step_up.enforce(mfa_identity.id, None)
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["requiresStepUp"] is True

    async def test_enforce_rejects_wrong_code_as_invalid(self, step_up, mfa_identity):
        with pytest.raises(ValidationError) as exc_info:
            await step_up.enforce(mfa_identity.id, "000000")
        assert exc_info.value.status_code == 400
        assert not isinstance(exc_info.value, StepUpRequiredError)

    async def test_enforce_treats_blank_code_as_missing(self, step_up, mfa_identity):
        with pytest.raises(StepUpRequiredError):
            await step_up.enforce(mfa_identity.id, "   ")

    async def test_enforce_passes_with_valid_code(self, step_up, mfa_identity, totp, clock):
        result = await step_up.enforce(mfa_identity.id, _current_code(totp, clock, mfa_identity))
        assert result.ok is True
        assert result.method == "totp"

    def test_requires_step_up_flag(self, step_up, mfa_identity, make_identity):
        plain = make_identity("plain@example.com")
        assert step_up.requires_step_up(mfa_identity.id) is True
        assert step_up.requires_step_up(plain.id) is False
