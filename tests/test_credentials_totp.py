"""Tests for password verification, TOTP and backup codes."""

import base64
import hashlib
import hmac
import re
import struct
import threading

from authcore.storage.models import Identity

PASSWORD = "Correct-Horse-9"


def _reference_totp(secret: str, timestamp: float, interval: int = 30) -> str:
    key = base64.b32decode(secret + "=" * ((8 - len(secret) % 8) % 8))
    digest = hmac.new(key, struct.pack(">Q", int(timestamp // interval)), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    value = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return f"{value % 1_000_000:06d}"


class TestCredentialVerifier:
    def test_correct_password_verifies(self, credentials):
        identity = Identity(id="i1", email="a@example.com", password_hash=credentials.hash_password(PASSWORD))
        assert credentials.verify(identity, PASSWORD) is True

    def test_wrong_password_fails(self, credentials):
        identity = Identity(id="i1", email="a@example.com", password_hash=credentials.hash_password(PASSWORD))
        assert credentials.verify(identity, "not-it") is False

    def test_identity_without_password_fails(self, credentials):
        identity = Identity(id="i1", email="a@example.com")
        assert credentials.verify(identity, PASSWORD) is False

    def test_missing_identity_fails(self, credentials):
        assert credentials.verify(None, PASSWORD) is False

    def test_corrupt_hash_fails_closed(self, credentials):
        identity = Identity(id="i1", email="a@example.com", password_hash="not-a-hash")
        assert credentials.verify(identity, PASSWORD) is False

    def test_hashes_are_argon2id(self, credentials):
        assert credentials.hash_password(PASSWORD).startswith("$argon2id$")
        assert credentials.needs_rehash("garbage") is True


class TestTotpVerifier:
    """RFC 6238 with a +/-2 step window."""

    def test_rfc6238_sha1_vector(self, totp):
        # RFC 6238 appendix B, seed "12345678901234567890", T=59 -> 94287082 (8 digits)
        secret = base64.b32encode(b"12345678901234567890").decode()
        assert totp.code_at(secret, 59) == "287082"

    def test_matches_reference_implementation(self, totp, clock):
        secret = totp.generate_secret()
        assert totp.code_at(secret, clock.timestamp()) == _reference_totp(secret, clock.timestamp())

    def test_current_code_verifies(self, totp, clock):
        secret = totp.generate_secret()
        assert totp.verify(secret, totp.code_at(secret, clock.timestamp())) is True

    def test_codes_within_two_steps_verify(self, totp, clock):
        secret = totp.generate_secret()
        for steps in (-2, -1, 1, 2):
            code = totp.code_at(secret, clock.timestamp() + steps * 30)
            assert totp.verify(secret, code) is True

    def test_codes_three_steps_away_fail(self, totp, clock):
        secret = totp.generate_secret()
        current = {totp.code_at(secret, clock.timestamp() + s * 30) for s in range(-2, 3)}
        for steps in (-3, 3):
            code = totp.code_at(secret, clock.timestamp() + steps * 30)
            if code not in current:
                assert totp.verify(secret, code) is False

    def test_malformed_input_is_rejected(self, totp):
        secret = totp.generate_secret()
        assert totp.verify(secret, "12345") is False
        assert totp.verify(secret, "abcdef") is False
        assert totp.verify(secret, None) is False
        assert totp.verify(None, "123456") is False
        assert totp.verify("!!not-base32!!", "123456") is False

    def test_provisioning_uri(self, totp):
        uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", "alice@example.com")
        assert uri.startswith("otpauth://totp/authcore%3Aalice%40example.com?")
        assert "secret=JBSWY3DPEHPK3PXP" in uri
        assert "algorithm=SHA1" in uri


class TestBackupCodes:
    def test_generated_format(self, backup_codes):
        codes = backup_codes.generate()
        assert len(codes) == 8
        assert len(set(codes)) == 8
        assert all(re.match(r"^[0-9A-F]{5}-[0-9A-F]{5}$", c) for c in codes)

    def test_only_hashes_are_stored(self, mfa_identity, store):
        with store.transaction() as repo:
            stored = repo.get_identity(mfa_identity.id).backup_codes
        assert len(stored) == 8
        for code in mfa_identity.backup_plain:
            assert code not in stored
            assert code.replace("-", "") not in stored

    def test_code_is_single_use(self, mfa_identity, backup_codes):
        code = mfa_identity.backup_plain[0]
        assert backup_codes.consume(mfa_identity.id, code) is True
        assert backup_codes.consume(mfa_identity.id, code) is False
        assert backup_codes.remaining(mfa_identity.id) == 7

    def test_hyphen_and_case_insensitive(self, mfa_identity, backup_codes):
        code = mfa_identity.backup_plain[1].replace("-", "").lower()
        assert backup_codes.consume(mfa_identity.id, code) is True

    def test_unknown_code_does_not_mutate(self, mfa_identity, backup_codes):
        assert backup_codes.consume(mfa_identity.id, "00000-00000") is False
        assert backup_codes.consume(mfa_identity.id, "not a code") is False
        assert backup_codes.remaining(mfa_identity.id) == 8

    def test_concurrent_consumption_succeeds_once(self, mfa_identity, backup_codes):
        code = mfa_identity.backup_plain[2]
        outcomes = []

        def _use():
            outcomes.append(backup_codes.consume(mfa_identity.id, code))

        threads = [threading.Thread(target=_use) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count(True) == 1

    def test_replace_invalidates_old_codes(self, mfa_identity, backup_codes):
        fresh = backup_codes.replace(mfa_identity.id)
        assert backup_codes.consume(mfa_identity.id, mfa_identity.backup_plain[0]) is False
        assert backup_codes.consume(mfa_identity.id, fresh[0]) is True
