"""
tests/test_api_auth.py -- Integration tests for the auth routes of both identity classes.

These tests exercise the full stack: FastAPI routing -> request gate dependency
-> SessionCoordinator / OtpChallengeManager -> stores -> response envelope.

Fixtures used (from conftest.py):
  - api: ApiContext with a module-scoped TestClient, a clean cookie jar per
    test, a manager admin (admin@example.com) and a user (user@acme.io), both
    with password PASSWORD.
"""

from __future__ import annotations

import smtplib

import pytest
from conftest import PASSWORD, create_admin, create_user

from api.limiter import limiter
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE
from core.config import get_settings

USER = "/api/v1/auth"
ADMIN = "/api/v1/admin/auth"


def _login(api, prefix: str, email: str, password: str = PASSWORD, remember: bool = True):
    return api.client.post(f"{prefix}/login", json={"email": email, "password": password, "remember": remember})


class TestLogin:
    def test_user_login_sets_cookies_and_envelope(self, api) -> None:
        resp = _login(api, USER, "user@acme.io")

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["email"] == "user@acme.io"
        assert body["data"]["company_id"] == 4
        assert "password_hash" not in body["data"]
        assert body["data"]["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert api.client.cookies.get(ACCESS_COOKIE) == body["data"]["access_token"]
        assert api.client.cookies.get(REFRESH_COOKIE) == body["data"]["refresh_token"]

    def test_login_without_remember_sets_no_refresh_cookie(self, api) -> None:
        resp = _login(api, USER, "user@acme.io", remember=False)

        assert resp.status_code == 200
        assert resp.json()["data"]["refresh_token"] is None
        assert api.client.cookies.get(REFRESH_COOKIE) is None

    def test_admin_login(self, api) -> None:
        resp = _login(api, ADMIN, "admin@example.com")

        assert resp.status_code == 200
        assert resp.json()["data"]["is_manager"] is True
        assert resp.json()["data"]["kind"] == "admin"

    def test_wrong_password_is_401(self, api) -> None:
        resp = _login(api, USER, "user@acme.io", password="wrong-password")

        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "unauthorized"

    def test_unknown_email_is_404(self, api) -> None:
        resp = _login(api, USER, "ghost@acme.io")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_user_cannot_log_in_as_admin(self, api) -> None:
        assert _login(api, ADMIN, "user@acme.io").status_code == 404

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "user@acme.io", "password": "short"},
            {"password": PASSWORD},
        ],
    )
    def test_invalid_body_is_422(self, api, payload) -> None:
        resp = api.client.post(f"{USER}/login", json=payload)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRequestGate:
    def test_is_authenticated_with_cookie(self, api) -> None:
        _login(api, USER, "user@acme.io", remember=False)

        resp = api.client.get(f"{USER}/is-authenticated")

        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == api.user.id

    def test_is_authenticated_with_bearer_header(self, api) -> None:
        token = _login(api, USER, "user@acme.io", remember=False).json()["data"]["access_token"]
        api.client.cookies.clear()

        resp = api.client.get(f"{USER}/is-authenticated", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 200

    def test_cookie_with_bearer_prefix_accepted(self, api) -> None:
        token = _login(api, USER, "user@acme.io", remember=False).json()["data"]["access_token"]
        api.client.cookies.clear()
        api.client.cookies.set(ACCESS_COOKIE, f"Bearer {token}")

        assert api.client.get(f"{USER}/is-authenticated").status_code == 200

    def test_missing_token_is_401(self, api) -> None:
        resp = api.client.get(f"{USER}/is-authenticated")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_garbage_token_is_401(self, api) -> None:
        resp = api.client.get(f"{USER}/is-authenticated", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_user_token_rejected_on_admin_routes(self, api) -> None:
        token = _login(api, USER, "user@acme.io", remember=False).json()["data"]["access_token"]
        api.client.cookies.clear()

        resp = api.client.get(f"{ADMIN}/is-authenticated", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 401


class TestRefreshAndLogout:
    def test_refresh_issues_new_access_cookie(self, api) -> None:
        login = _login(api, USER, "user@acme.io").json()["data"]

        resp = api.client.post(f"{USER}/refresh-token")

        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["refresh_token"] == login["refresh_token"]
        assert api.client.cookies.get(ACCESS_COOKIE) == data["access_token"]

    def test_refresh_without_cookie_is_400(self, api) -> None:
        resp = api.client.post(f"{USER}/refresh-token")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_admin_refresh_token_rejected_by_user_mount(self, api) -> None:
        _login(api, ADMIN, "admin@example.com")
        assert api.client.post(f"{USER}/refresh-token").status_code == 404

    def test_logout_clears_cookies_and_kills_refresh_token(self, api) -> None:
        refresh_token = _login(api, USER, "user@acme.io").json()["data"]["refresh_token"]

        resp = api.client.post(f"{USER}/logout")

        assert resp.status_code == 200
        assert api.client.cookies.get(ACCESS_COOKIE) is None
        assert api.client.cookies.get(REFRESH_COOKIE) is None

        api.client.cookies.set(REFRESH_COOKIE, refresh_token)
        assert api.client.post(f"{USER}/refresh-token").status_code == 404

    def test_logout_requires_access_token(self, api) -> None:
        _login(api, USER, "user@acme.io")
        refresh_token = api.client.cookies.get(REFRESH_COOKIE)
        api.client.cookies.clear()
        api.client.cookies.set(REFRESH_COOKIE, refresh_token)

        assert api.client.post(f"{USER}/logout").status_code == 401


class TestPasswordReset:
    def test_full_reset_flow(self, api) -> None:
        create_user(api.store, email="reset@acme.io", company_id=4)

        sent = api.client.post(f"{USER}/send-otp-code", json={"email": "reset@acme.io"})
        assert sent.status_code == 200, sent.text
        code = api.notifier.last_code

        verified = api.client.put(f"{USER}/verify-otp-code", json={"email": "reset@acme.io", "otp_code": code})
        assert verified.status_code == 200

        reset = api.client.put(
            f"{USER}/reset-password",
            json={
                "email": "reset@acme.io",
                "new_password": "fresh-password-1",
                "confirm_new_password": "fresh-password-1",
            },
        )
        assert reset.status_code == 200
        assert _login(api, USER, "reset@acme.io", password="fresh-password-1").status_code == 200
        assert _login(api, USER, "reset@acme.io").status_code == 401

    def test_reset_before_verify_is_401(self, api) -> None:
        create_user(api.store, email="early@acme.io", company_id=4)
        api.client.post(f"{USER}/send-otp-code", json={"email": "early@acme.io"})

        resp = api.client.put(
            f"{USER}/reset-password",
            json={"email": "early@acme.io", "new_password": "fresh-password-1", "confirm_new_password": "fresh-password-1"},
        )
        assert resp.status_code == 401

    def test_mismatched_confirmation_is_422(self, api) -> None:
        resp = api.client.put(
            f"{USER}/reset-password",
            json={"email": "user@acme.io", "new_password": "fresh-password-1", "confirm_new_password": "other-password"},
        )
        assert resp.status_code == 422

    def test_wrong_code_is_401(self, api) -> None:
        create_user(api.store, email="guess@acme.io", company_id=4)
        api.client.post(f"{USER}/send-otp-code", json={"email": "guess@acme.io"})
        wrong = "000000" if api.notifier.last_code != "000000" else "111111"

        resp = api.client.put(f"{USER}/verify-otp-code", json={"email": "guess@acme.io", "otp_code": wrong})

        assert resp.status_code == 401

    def test_unknown_email_is_404(self, api) -> None:
        resp = api.client.post(f"{ADMIN}/send-otp-code", json={"email": "nobody@example.com"})
        assert resp.status_code == 404

    def test_delivery_failure_is_500_with_code(self, api) -> None:
        api.notifier.fail_with = smtplib.SMTPException("relay refused")

        resp = api.client.post(f"{ADMIN}/send-otp-code", json={"email": "admin@example.com"})

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "delivery_failed"


class TestBlockIdentity:
    def test_manager_blocks_and_unblocks_user(self, api) -> None:
        target = create_user(api.store, email="blockme@acme.io", company_id=4)
        _login(api, USER, "blockme@acme.io", remember=False)
        user_token = api.client.cookies.get(ACCESS_COOKIE)
        # Prime the identity cache.
        assert api.client.get(f"{USER}/is-authenticated").status_code == 200

        api.client.cookies.clear()
        _login(api, ADMIN, "admin@example.com", remember=False)
        resp = api.client.patch(
            f"{ADMIN}/identities/{target.id}/block", json={"kind": "user", "is_blocked": True}
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["is_blocked"] is True

        api.client.cookies.clear()
        gate = api.client.get(f"{USER}/is-authenticated", headers={"Authorization": f"Bearer {user_token}"})
        assert gate.status_code == 403
        assert _login(api, USER, "blockme@acme.io").status_code == 403

        _login(api, ADMIN, "admin@example.com", remember=False)
        resp = api.client.patch(
            f"{ADMIN}/identities/{target.id}/block", json={"kind": "user", "is_blocked": False}
        )
        assert resp.status_code == 200
        api.client.cookies.clear()
        assert _login(api, USER, "blockme@acme.io").status_code == 200

    def test_non_manager_admin_is_forbidden(self, api) -> None:
        create_admin(api.store, email="clerk@example.com")
        _login(api, ADMIN, "clerk@example.com", remember=False)

        resp = api.client.patch(f"{ADMIN}/identities/{api.user.id}/block", json={"kind": "user", "is_blocked": True})

        assert resp.status_code == 403

    def test_user_token_cannot_manage(self, api) -> None:
        _login(api, USER, "user@acme.io", remember=False)
        resp = api.client.patch(f"{ADMIN}/identities/{api.user.id}/block", json={"kind": "user", "is_blocked": True})
        assert resp.status_code == 401

    def test_manager_cannot_block_self(self, api) -> None:
        _login(api, ADMIN, "admin@example.com", remember=False)
        resp = api.client.patch(
            f"{ADMIN}/identities/{api.admin.id}/block", json={"kind": "admin", "is_blocked": True}
        )
        assert resp.status_code == 400

    def test_unknown_identity_is_404(self, api) -> None:
        _login(api, ADMIN, "admin@example.com", remember=False)
        resp = api.client.patch(f"{ADMIN}/identities/99999/block", json={"kind": "user", "is_blocked": True})
        assert resp.status_code == 404

    def test_unknown_kind_is_422(self, api) -> None:
        _login(api, ADMIN, "admin@example.com", remember=False)
        resp = api.client.patch(f"{ADMIN}/identities/{api.user.id}/block", json={"kind": "robot", "is_blocked": True})
        assert resp.status_code == 422


class TestRateLimits:
    @pytest.fixture(autouse=True)
    def fresh_counters(self):
        limiter.reset()
        yield
        limiter.reset()

    def test_login_limit_is_counted_per_mount(self, api, monkeypatch) -> None:
        monkeypatch.setattr(get_settings(), "login_rate_limit", "3/minute")

        statuses = [_login(api, USER, "user@acme.io", password="wrong-password").status_code for _ in range(4)]

        assert statuses == [401, 401, 401, 429]
        blocked = _login(api, USER, "user@acme.io")
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert _login(api, ADMIN, "admin@example.com").status_code == 200

    def test_otp_verify_is_throttled(self, api, monkeypatch) -> None:
        monkeypatch.setattr(get_settings(), "otp_rate_limit", "2/minute")
        payload = {"email": "nobody@acme.io", "otp_code": "123456"}

        statuses = [api.client.put(f"{USER}/verify-otp-code", json=payload).status_code for _ in range(3)]

        assert statuses == [404, 404, 429]
