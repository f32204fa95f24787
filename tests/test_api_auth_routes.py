"""
tests/test_api_auth_routes.py -- Integration tests for the /api/v1 auth and user routes.

Uses the module-scoped api_client fixture from conftest.py: real route
handlers and middleware, an isolated in-memory database and a fake mailer.
The database is shared by every test in this module, so each test uses its
own email address. The TestClient cookie jar is also shared; tests that care
about which credentials are sent clear it first.

Coverage:
  - Signup / verify / login happy path, cookies and Cache-Control
  - Request validation and the {"error": {...}} envelope
  - Cookie-first, Bearer-second token lookup on /users/me
  - Refresh via cookie and via JSON body; rotation kills the old pair
  - Logout with and without credentials
  - Forgot / reset password, change password, lockout
"""

from __future__ import annotations

from fastapi.testclient import TestClient

PASSWORD = "correct-horse-battery"


def _signup_and_verify(client: TestClient, mailer, email: str) -> dict:
    resp = client.post("/api/v1/auth/signup", json={"name": "Tester", "email": email, "password": PASSWORD})
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/v1/auth/verify-email", json={"token": mailer.last_token("verification")})
    assert resp.status_code == 200, resp.text
    return resp.json()["user"]


def _change_body(current: str = PASSWORD, new: str = "brand-new-password", confirm: str | None = None) -> dict:
    return {"current_password": current, "new_password": new, "confirm_password": new if confirm is None else confirm}


def _login(client: TestClient, email: str, password: str = PASSWORD, remember_me: bool = False):
    client.cookies.clear()
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password, "remember_me": remember_me},
    )


class TestHealth:
    def test_health(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestSignupRoute:
    def test_signup_created_without_secrets(self, api_client) -> None:
        client, mailer = api_client
        resp = client.post(
            "/api/v1/auth/signup",
            json={"name": "Sam", "email": "sam@example.com", "password": PASSWORD, "company_name": "Acme"},
        )
        assert resp.status_code == 201
        user = resp.json()["user"]
        assert user["email"] == "sam@example.com"
        assert user["is_email_verified"] is False
        assert user["company_name"] == "Acme"
        assert "hashed_password" not in user
        assert "token" not in resp.json()
        assert mailer.outbox[-1][:2] == ("verification", "sam@example.com")

    def test_second_signup_while_pending(self, api_client) -> None:
        client, _mailer = api_client
        body = {"name": "Pat", "email": "pat@example.com", "password": PASSWORD}
        assert client.post("/api/v1/auth/signup", json=body).status_code == 201
        resp = client.post("/api/v1/auth/signup", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "verification_already_sent"

    def test_short_password_rejected(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.post("/api/v1/auth/signup", json={"name": "Kim", "email": "kim@example.com", "password": "short"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_bad_email_rejected(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.post("/api/v1/auth/signup", json={"name": "Kim", "email": "not-an-email", "password": PASSWORD})
        assert resp.status_code == 422

    def test_short_name_rejected(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.post("/api/v1/auth/signup", json={"name": "K", "email": "k@example.com", "password": PASSWORD})
        assert resp.status_code == 422

    def test_bad_verification_token(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.post("/api/v1/auth/verify-email", json={"token": "nope"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_verification_token"


class TestLoginRoute:
    def test_login_sets_cookies_and_no_store(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "lee@example.com")

        resp = _login(client, "lee@example.com")

        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        body = resp.json()
        assert body["user"]["email"] == "lee@example.com"
        assert body["token_type"] == "bearer"
        cookies = " ".join(resp.headers.get_list("set-cookie")).lower()
        assert "access_token=" in cookies
        assert "refresh_token=" in cookies
        assert "httponly" in cookies
        assert client.cookies.get("access_token") == body["access_token"]

    def test_bad_credentials(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "max@example.com")
        resp = _login(client, "max@example.com", password="wrong-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert resp.headers["cache-control"] == "no-store"

    def test_unverified_login(self, api_client) -> None:
        client, _mailer = api_client
        client.post("/api/v1/auth/signup", json={"name": "Una", "email": "una@example.com", "password": PASSWORD})
        resp = _login(client, "una@example.com")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "email_not_verified"

    def test_lockout_returns_429(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "lock@example.com")
        for _ in range(5):
            assert _login(client, "lock@example.com", password="wrong-password").status_code == 401
        resp = _login(client, "lock@example.com")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "too_many_attempts"


class TestCurrentUser:
    def test_cookie_auth(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "cara@example.com")
        _login(client, "cara@example.com")
        resp = client.get("/api/v1/users/me")
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "cara@example.com"

    def test_bearer_auth(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "bea@example.com")
        token = _login(client, "bea@example.com").json()["access_token"]
        client.cookies.clear()
        resp = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "bea@example.com"

    def test_no_token(self, api_client) -> None:
        client, _mailer = api_client
        client.cookies.clear()
        resp = client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_required"

    def test_invalid_token(self, api_client) -> None:
        client, _mailer = api_client
        client.cookies.clear()
        resp = client.get("/api/v1/users/me", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"


class TestRefreshRoute:
    def test_refresh_via_cookie_rotates(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "rob@example.com")
        first = _login(client, "rob@example.com").json()

        resp = client.post("/api/v1/auth/refresh-token")

        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        second = resp.json()
        assert second["access_token"] != first["access_token"]
        assert second["refresh_token"] != first["refresh_token"]
        assert client.cookies.get("refresh_token") == second["refresh_token"]

        client.cookies.clear()
        stale = client.post("/api/v1/auth/refresh-token", json={"refresh_token": first["refresh_token"]})
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "invalid_refresh_token"

        old_access = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {first['access_token']}"})
        assert old_access.json()["error"]["code"] == "invalid_token"

    def test_refresh_via_body(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "bod@example.com")
        tokens = _login(client, "bod@example.com").json()
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200

    def test_refresh_requires_token(self, api_client) -> None:
        client, _mailer = api_client
        client.cookies.clear()
        resp = client.post("/api/v1/auth/refresh-token")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "refresh_token_required"


class TestLogoutRoute:
    def test_logout_without_credentials(self, api_client) -> None:
        client, _mailer = api_client
        client.cookies.clear()
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_expired"

    def test_logout_revokes_and_clears(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "lou@example.com")
        token = _login(client, "lou@example.com").json()["access_token"]

        resp = client.post("/api/v1/auth/logout")

        assert resp.status_code == 200
        assert "max-age=0" in " ".join(resp.headers.get_list("set-cookie")).lower()
        client.cookies.clear()
        after = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"})
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "invalid_token"

    def test_logout_with_bearer(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "bill@example.com")
        token = _login(client, "bill@example.com").json()["access_token"]
        client.cookies.clear()
        resp = client.post("/api/v1/auth/logout", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        after = client.get("/api/v1/users/me", headers={"Authorization": f"Bearer {token}"})
        assert after.status_code == 401


class TestPasswordRoutes:
    def test_forgot_unknown_email(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "user_not_found"

    def test_forgot_then_reset(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "rita@example.com")
        assert client.post("/api/v1/auth/forgot-password", json={"email": "rita@example.com"}).status_code == 200

        resp = client.post(
            "/api/v1/auth/reset-password",
            json={"token": mailer.last_token("reset"), "password": "brand-new-password"},
        )

        assert resp.status_code == 200
        assert _login(client, "rita@example.com").status_code == 401
        assert _login(client, "rita@example.com", password="brand-new-password").status_code == 200

    def test_reset_with_bad_token(self, api_client) -> None:
        client, _mailer = api_client
        resp = client.post("/api/v1/auth/reset-password", json={"token": "nope", "password": "brand-new-password"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_reset_token"

    def test_change_password(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "carl@example.com")
        _login(client, "carl@example.com")

        wrong = client.post(
            "/api/v1/users/change-password",
            json=_change_body(current="wrong-password"),
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "incorrect_password"

        ok = client.post(
            "/api/v1/users/change-password",
            json=_change_body(),
        )
        assert ok.status_code == 200
        assert mailer.outbox[-1] == ("password_changed", "carl@example.com", None)

    def test_change_password_requires_auth(self, api_client) -> None:
        client, _mailer = api_client
        client.cookies.clear()
        resp = client.post(
            "/api/v1/users/change-password",
            json=_change_body(),
        )
        assert resp.status_code == 401

    def test_change_password_confirmation_must_match(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "cleo@example.com")
        _login(client, "cleo@example.com")
        resp = client.post("/api/v1/users/change-password", json=_change_body(confirm="something-else"))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert _login(client, "cleo@example.com").status_code == 200


class TestProfileRoute:
    def test_update_profile(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "pia@example.com")
        _login(client, "pia@example.com")

        resp = client.put("/api/v1/users/profile", json={"name": "Pia Renamed", "company_name": "Globex"})

        assert resp.status_code == 200
        user = resp.json()["user"]
        assert user["name"] == "Pia Renamed"
        assert user["company_name"] == "Globex"
        assert user["email"] == "pia@example.com"
        assert client.get("/api/v1/users/me").json()["user"]["name"] == "Pia Renamed"

    def test_email_is_not_editable(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "ed@example.com")
        _login(client, "ed@example.com")
        resp = client.put("/api/v1/users/profile", json={"name": "Ed", "email": "other@example.com"})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "ed@example.com"

    def test_short_name_rejected(self, api_client) -> None:
        client, mailer = api_client
        _signup_and_verify(client, mailer, "nia@example.com")
        _login(client, "nia@example.com")
        resp = client.put("/api/v1/users/profile", json={"name": "N"})
        assert resp.status_code == 422

    def test_requires_auth(self, api_client) -> None:
        client, _mailer = api_client
        client.cookies.clear()
        resp = client.put("/api/v1/users/profile", json={"name": "Nobody"})
        assert resp.status_code == 401
