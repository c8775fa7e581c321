"""
tests/test_api_users.py -- Integration tests for /api/v1/users routes.

Covers:
  - GET/PATCH /users/me with and without a token
  - PUT /users/me/password: wrong current password, weak password, success
  - DELETE /users/me: account disappears and its sessions stop working
  - DELETE /users/{id}: admin only, not on self, 404 for unknown users
  - unknown routes and wrong methods use the same error envelope
"""

from __future__ import annotations

from fastapi.testclient import TestClient

PASSWORD = "Aa1!aaaa"


def _session(client: TestClient, email: str = "a@x.com", name: str = "Alice") -> dict:
    """Register email and return its login response body."""
    client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD, "name": name})
    client.app.state.dispatcher.drain()
    return client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD}).json()


def _admin_session(client: TestClient) -> dict:
    client.app.state.credentials.seed_admin("admin@x.com", PASSWORD, "Admin")
    return client.post("/api/v1/auth/login", json={"email": "admin@x.com", "password": PASSWORD}).json()


def bearer(pair: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {pair['access_token']}"}


class TestProfile:
    def test_get_me(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        resp = api_client.get("/api/v1/users/me", headers=bearer(pair))
        assert resp.status_code == 200
        assert resp.json()["email"] == "a@x.com"

    def test_get_me_unauthenticated(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_patch_name(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        resp = api_client.patch("/api/v1/users/me", json={"name": "Alicia"}, headers=bearer(pair))
        assert resp.status_code == 200
        assert resp.json()["name"] == "Alicia"
        assert resp.json()["email"] == "a@x.com"

    def test_patch_email_taken(self, api_client: TestClient) -> None:
        _session(api_client, email="b@x.com", name="Bob")
        pair = _session(api_client)
        resp = api_client.patch("/api/v1/users/me", json={"email": "b@x.com"}, headers=bearer(pair))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_email"

    def test_patch_rejects_unknown_fields(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        resp = api_client.patch("/api/v1/users/me", json={"role": "admin"}, headers=bearer(pair))
        assert resp.status_code == 422


class TestChangePassword:
    def test_wrong_current_password(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        resp = api_client.put(
            "/api/v1/users/me/password",
            json={"current_password": "Nope1!nope", "new_password": "Cc3#cccc"},
            headers=bearer(pair),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "wrong_current_password"

    def test_weak_new_password(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        resp = api_client.put(
            "/api/v1/users/me/password",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=bearer(pair),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "weak_password"

    def test_change_password(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        resp = api_client.put(
            "/api/v1/users/me/password",
            json={"current_password": PASSWORD, "new_password": "Cc3#cccc"},
            headers=bearer(pair),
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Password changed."
        login = api_client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": "Cc3#cccc"})
        assert login.status_code == 200


class TestDelete:
    def test_delete_me(self, api_client: TestClient) -> None:
        pair = _session(api_client)
        assert api_client.delete("/api/v1/users/me", headers=bearer(pair)).status_code == 204

        assert api_client.get("/api/v1/users/me", headers=bearer(pair)).status_code == 401
        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert resp.status_code == 401
        login = api_client.post("/api/v1/auth/login", json={"email": "a@x.com", "password": PASSWORD})
        assert login.status_code == 401

    def test_admin_bans_user(self, api_client: TestClient) -> None:
        victim = _session(api_client)
        admin = _admin_session(api_client)
        resp = api_client.delete(f"/api/v1/users/{victim['user']['id']}", headers=bearer(admin))
        assert resp.status_code == 204
        resp = api_client.post("/api/v1/auth/refresh", json={"refresh_token": victim["refresh_token"]})
        assert resp.status_code == 401

    def test_ban_requires_admin(self, api_client: TestClient) -> None:
        other = _session(api_client, email="b@x.com", name="Bob")
        pair = _session(api_client)
        resp = api_client.delete(f"/api/v1/users/{other['user']['id']}", headers=bearer(pair))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_cannot_ban_self(self, api_client: TestClient) -> None:
        admin = _admin_session(api_client)
        resp = api_client.delete(f"/api/v1/users/{admin['user']['id']}", headers=bearer(admin))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "cannot_ban_self"

    def test_ban_unknown_user(self, api_client: TestClient) -> None:
        admin = _admin_session(api_client)
        resp = api_client.delete("/api/v1/users/9999", headers=bearer(admin))
        assert resp.status_code == 404


def test_unknown_route_uses_error_envelope(api_client: TestClient) -> None:
    resp = api_client.get("/api/v1/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"


def test_wrong_method_uses_error_envelope(api_client: TestClient) -> None:
    resp = api_client.post("/api/v1/health")
    assert resp.status_code == 405
    assert resp.json()["error"]["code"] == "http_405"
