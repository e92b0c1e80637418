"""Integration tests for the HTTP auth flow.

Covers CSRF enforcement, signup confirmation, password reset, password login
with and without a second factor, session listing and revocation, and the
email change links.
"""

import time

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.runtime import get_runtime
from authcore.storage.models import utcnow

PASSWORD = "Correct-Horse-9"


def _with_csrf(client: TestClient) -> TestClient:
    response = client.get("/v1/auth/csrf")
    assert response.status_code == 200
    client.headers["X-CSRF-Token"] = response.json()["data"]["csrf_token"]
    return client


@pytest.fixture
def client():
    """Test client that already carries a CSRF cookie and header."""
    with TestClient(app_module.app) as test_client:
        yield _with_csrf(test_client)


@pytest.fixture
def identity():
    runtime = get_runtime()
    with runtime.store.transaction() as repo:
        created = repo.create_identity(
            "alice@example.com", password_hash=runtime.credentials.hash_password(PASSWORD)
        )
        repo.mark_email_verified(created.id, at=utcnow())
        return repo.get_identity(created.id)


@pytest.fixture
def mfa_secret(identity):
    runtime = get_runtime()
    secret = runtime.totp.generate_secret()
    with runtime.store.transaction() as repo:
        repo.set_totp(identity.id, secret, enabled=True)
    return secret


def _current_code(secret):
    runtime = get_runtime()
    return runtime.totp.code_at(secret, time.time())


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


class TestCsrf:
    def test_post_without_token_is_forbidden(self, identity):
        with TestClient(app_module.app) as bare:
            response = bare.post(
                "/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
            )
        assert response.status_code == 403
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "forbidden"

    def test_csrf_rejection_carries_cors_headers(self, identity):
        with TestClient(app_module.app) as bare:
            response = bare.post(
                "/v1/auth/login",
                json={"email": "alice@example.com", "password": PASSWORD},
                headers={"Origin": "http://localhost:3000"},
            )
        assert response.status_code == 403
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert response.headers["access-control-allow-credentials"] == "true"
        assert response.headers["X-Request-ID"]

    def test_valid_session_does_not_bypass_csrf(self, client, identity):
        assert _login(client).status_code == 200
        del client.headers["X-CSRF-Token"]
        response = client.post("/v1/sessions/revoke-others")
        assert response.status_code == 403

    def test_mismatched_header_is_forbidden(self, client, identity):
        client.headers["X-CSRF-Token"] = "not-the-cookie"
        assert _login(client).status_code == 403

    def test_csrf_token_is_reused_while_cookie_lives(self, client):
        first = client.headers["X-CSRF-Token"]
        again = client.get("/v1/auth/csrf").json()["data"]["csrf_token"]
        assert again == first


class TestLoginFlow:
    def test_login_without_mfa(self, client, identity):
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "done"
        assert data["identity_id"] == identity.id
        assert "session_token" in response.cookies

        me = client.get("/v1/me")
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"

    def test_wrong_password(self, client, identity):
        response = _login(client, password="Wrong-Horse-9")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_step_up_login(self, client, identity, mfa_secret):
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "require_step_up"
        assert data["requires_step_up"] is True

        pending = client.get("/v1/me")
        assert pending.status_code == 401
        assert pending.json()["error"]["code"] == "step_up_required"
        assert pending.json()["error"]["details"]["requiresStepUp"] is True

        status = client.get("/v1/auth/step-up/status")
        assert status.json()["data"]["requires_step_up"] is True

        wrong = client.post("/v1/auth/step-up/complete", json={"code": "000000"})
        assert wrong.status_code == 400

        done = client.post("/v1/auth/step-up/complete", json={"code": _current_code(mfa_secret)})
        assert done.status_code == 200
        assert done.json()["data"]["status"] == "done"
        assert client.get("/v1/me").status_code == 200

    def test_session_token_header_is_accepted(self, client, identity, mfa_secret):
        token = _login(client).json()["data"]["session_token"]
        client.cookies.clear()
        _with_csrf(client)
        response = client.post(
            "/v1/auth/step-up/complete",
            json={"code": _current_code(mfa_secret)},
            headers={"session_token": token},
        )
        assert response.status_code == 200

    def test_login_rate_limit_headers(self, client, identity):
        for _ in range(5):
            _login(client, password="Wrong-Horse-9")
        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_logout(self, client, identity):
        _login(client)
        assert client.post("/v1/auth/logout").status_code == 200
        assert client.get("/v1/me").status_code == 401


class TestSessions:
    def test_list_marks_current_session(self, client, identity):
        runtime = get_runtime()
        runtime.sessions.create_session(identity.id, False)
        _login(client)
        response = client.get("/v1/sessions")
        assert response.status_code == 200
        sessions = response.json()["data"]["sessions"]
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1

    def test_revoke_others(self, client, identity):
        runtime = get_runtime()
        for _ in range(2):
            runtime.sessions.create_session(identity.id, False)
        _login(client)
        response = client.post("/v1/sessions/revoke-others")
        assert response.json()["data"]["revoked"] == 2
        assert len(client.get("/v1/sessions").json()["data"]["sessions"]) == 1

    def test_cannot_revoke_foreign_session(self, client, identity):
        runtime = get_runtime()
        with runtime.store.transaction() as repo:
            bob = repo.create_identity("bob@example.com")
        bobs = runtime.sessions.create_session(bob.id, False)
        _login(client)
        response = client.delete(f"/v1/sessions/{bobs.id}")
        assert response.status_code == 403
        assert len(runtime.sessions.list_sessions(bob.id)) == 1


class TestEmailChange:
    def _pending_change(self, identity_id):
        store = get_runtime().store
        with store.transaction() as repo:
            return next(
                c for c in repo._store.email_changes.values() if c.identity_id == identity_id
            )

    def test_request_requires_code_for_mfa_identity(self, client, identity, mfa_secret):
        _login(client)
        client.post("/v1/auth/step-up/complete", json={"code": _current_code(mfa_secret)})
        response = client.post("/v1/email-change", json={"new_email": "new@example.com"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "step_up_required"

    def test_verify_link_changes_email_and_signs_out(self, client, identity):
        _login(client)
        response = client.post("/v1/email-change", json={"new_email": "new@example.com"})
        assert response.status_code == 202
        change = self._pending_change(identity.id)

        # the link is opened elsewhere, without cookies or CSRF header
        with TestClient(app_module.app) as other:
            verified = other.post("/v1/email-change/verify", json={"token": change.verify_token})
            assert verified.status_code == 200
            assert verified.json()["data"] == {"email": "new@example.com", "sessions_revoked": 1}

            again = other.post("/v1/email-change/verify", json={"token": change.verify_token})
            assert again.status_code == 400
            assert again.json()["error"]["code"] == "conflict"

        assert client.get("/v1/me").status_code == 401

    def test_cancel_link_with_preview(self, client, identity):
        _login(client)
        client.post("/v1/email-change", json={"new_email": "new@example.com"})
        change = self._pending_change(identity.id)

        with TestClient(app_module.app) as other:
            preview = other.get("/v1/email-change/cancel", params={"cancel_token": change.cancel_token})
            assert preview.status_code == 200
            assert preview.json()["data"]["old_email"] == "al***@example.com"

            cancelled = other.post(
                "/v1/email-change/cancel", json={"cancel_token": change.cancel_token}
            )
            assert cancelled.status_code == 200

            verify = other.post("/v1/email-change/verify", json={"token": change.verify_token})
            assert verify.status_code == 400
            assert "cancelled" in verify.json()["error"]["message"]

    def test_unknown_link_token(self, client):
        response = client.post("/v1/email-change/verify", json={"token": "nope"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


@pytest.fixture
def outbox(monkeypatch):
    """Capture link tokens the notifier would have emailed."""
    notifier = get_runtime().notifier
    sent = {"verify": [], "reset": []}

    def _capture(kind):
        def _send(email, token):
            sent[kind].append((email, token))
            return True

        return _send

    monkeypatch.setattr(notifier, "send_account_verification", _capture("verify"))
    monkeypatch.setattr(notifier, "send_password_reset", _capture("reset"))
    return sent


class TestSignupVerification:
    def test_signup_then_verify_then_login(self, client, outbox):
        signup = client.post(
            "/v1/auth/signup", json={"email": "Carol@Example.com", "password": PASSWORD}
        )
        assert signup.status_code == 201
        data = signup.json()["data"]
        assert data["email"] == "carol@example.com"
        assert data["verification_sent"] is True
        assert "session_token" not in signup.cookies

        blocked = _login(client, "carol@example.com")
        assert blocked.status_code == 403
        assert blocked.json()["error"]["details"] == {"code": "EMAIL_NOT_VERIFIED"}

        (email, token), = outbox["verify"]
        assert email == "carol@example.com"
        with TestClient(app_module.app) as other:
            verified = other.post("/v1/auth/verify-email", json={"token": token})
            assert verified.status_code == 200
            assert verified.json()["data"] == {"email": "carol@example.com", "verified": True}

        assert _login(client, "carol@example.com").status_code == 200

    def test_unverified_wrong_password_stays_generic(self, client, outbox):
        client.post("/v1/auth/signup", json={"email": "carol@example.com", "password": PASSWORD})
        response = _login(client, "carol@example.com", "Wrong-Horse-9")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_resend_answers_the_same_for_unknown_addresses(self, client, identity, outbox):
        known = client.post("/v1/auth/resend-verification", json={"email": "alice@example.com"})
        unknown = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert outbox["verify"] == []


class TestPasswordReset:
    def test_forgot_then_reset_signs_out_everywhere(self, client, identity, outbox):
        assert _login(client).status_code == 200
        forgot = client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        ghost = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert forgot.status_code == ghost.status_code == 200
        assert forgot.json() == ghost.json()
        (_, token), = outbox["reset"]

        status = client.get("/v1/auth/reset-password", params={"token": token})
        assert status.json()["data"] == {"valid": True}

        reset = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "Battery-Staple-42"}
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["revoked"] == 1
        assert client.get("/v1/me").status_code == 401

        assert client.get("/v1/auth/reset-password", params={"token": token}).json()["data"] == {
            "valid": False
        }
        assert _login(client).status_code == 401
        assert _login(client, password="Battery-Staple-42").status_code == 200

    def test_reset_rejects_weak_password(self, client, identity, outbox):
        client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        (_, token), = outbox["reset"]
        response = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "short"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        status = client.get("/v1/auth/reset-password", params={"token": token})
        assert status.json()["data"] == {"valid": True}

    def test_reset_requires_csrf(self, identity):
        with TestClient(app_module.app) as bare:
            response = bare.post(
                "/v1/auth/reset-password", json={"token": "x", "password": "Battery-Staple-42"}
            )
        assert response.status_code == 403
