"""HTTP-level tests for the auth API.

Runs the FastAPI app in-process against the memory store; the runtime is
rebuilt for every test by the autouse fixture in conftest.
"""

import asyncio
import importlib.util
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

import tessera.app as app_module
from tessera.service.runtime import get_runtime

ALICE = {"email": "alice@example.com", "password": "Str0ng!Pass1", "firstName": "Alice", "lastName": "Liddell"}
BOB = {"email": "bob@example.com", "password": "B0b!Secure99", "firstName": "Bob", "lastName": "Builder"}


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, account):
    resp = client.post("/v1/auth/register", json=account)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["user"]


def _login(client, account):
    resp = client.post(
        "/v1/auth/login", json={"email": account["email"], "password": account["password"]}
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _make_admin(email):
    store = get_runtime().store
    user = store.get_user_by_email(email)
    store.assign_role(user.id, store.get_role("admin").id)
    return user


def _assert_error(resp, status, code):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == code
    assert body["message"]
    return body


class TestAuthFlow:
    """End-to-end register, login, me, refresh and logout."""

    def test_full_session_lifecycle(self, client):
        user = _register(client, ALICE)
        assert user["email"] == "alice@example.com"
        assert user["roles"] == ["user"]
        assert "password" not in str(user).lower()

        tokens = _login(client, ALICE)
        assert tokens["tokenType"] == "Bearer"
        assert tokens["expiresIn"] == 15 * 60
        assert tokens["refreshToken"]
        assert tokens["user"]["id"] == user["id"]

        me = client.get("/v1/auth/me", headers=_auth(tokens["accessToken"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["roles"] == ["user"]
        assert "data.read" in me.json()["data"]["user"]["permissions"]

        refreshed = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert refreshed.status_code == 200
        new_access = refreshed.json()["data"]["accessToken"]
        assert new_access != tokens["accessToken"]
        assert "refreshToken" not in refreshed.json()["data"]
        assert refreshed.json()["message"] == "Token refreshed successfully"

        stale = client.get("/v1/auth/me", headers=_auth(tokens["accessToken"]))
        _assert_error(stale, 401, "SESSION_REVOKED")

        logout = client.post("/v1/auth/logout", headers=_auth(new_access))
        assert logout.status_code == 200
        assert logout.json() == {"success": True, "data": None, "message": "Logged out successfully"}

        after = client.get("/v1/auth/me", headers=_auth(new_access))
        _assert_error(after, 401, "SESSION_REVOKED")

        reuse = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        _assert_error(reuse, 401, "INVALID_REFRESH_TOKEN")

    def test_sessions_listing_marks_current(self, client):
        _register(client, ALICE)
        first = _login(client, ALICE)
        _login(client, ALICE)

        resp = client.get("/v1/auth/sessions", headers=_auth(first["accessToken"]))

        sessions = resp.json()["data"]["sessions"]
        assert len(sessions) == 2
        current = [s for s in sessions if s["current"]]
        assert [s["sessionId"] for s in current] == [first["sessionId"]]

    def test_logout_all_revokes_every_session(self, client):
        _register(client, ALICE)
        first = _login(client, ALICE)
        second = _login(client, ALICE)

        resp = client.post("/v1/auth/logout-all", headers=_auth(first["accessToken"]))

        assert resp.json()["data"]["sessionsRevoked"] == 2
        _assert_error(client.get("/v1/auth/me", headers=_auth(second["accessToken"])), 401, "SESSION_REVOKED")

    def test_change_password_forces_reauthentication(self, client):
        _register(client, ALICE)
        tokens = _login(client, ALICE)

        resp = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": ALICE["password"], "newPassword": "N3w!Passphrase"},
            headers=_auth(tokens["accessToken"]),
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["sessionsRevoked"] == 1
        _assert_error(client.get("/v1/auth/me", headers=_auth(tokens["accessToken"])), 401, "SESSION_REVOKED")
        _login(client, {**ALICE, "password": "N3w!Passphrase"})

    def test_change_password_wrong_current(self, client):
        _register(client, ALICE)
        tokens = _login(client, ALICE)

        resp = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": "Wr0ng!Pass1", "newPassword": "N3w!Passphrase"},
            headers=_auth(tokens["accessToken"]),
        )

        _assert_error(resp, 400, "INVALID_CURRENT_PASSWORD")


class TestLockoutOverHttp:
    """Brute-force lockout as seen by clients."""

    def test_sixth_attempt_is_locked(self, client):
        _register(client, BOB)
        bad = {"email": BOB["email"], "password": "Wr0ng!Pass1"}

        for _ in range(5):
            _assert_error(client.post("/v1/auth/login", json=bad), 401, "INVALID_CREDENTIALS")

        locked = client.post(
            "/v1/auth/login", json={"email": BOB["email"], "password": BOB["password"]}
        )

        body = _assert_error(locked, 423, "ACCOUNT_LOCKED")
        assert body["details"]["locked_until"]
        entries = get_runtime().store.list_audit_entries(action="user.login")
        assert entries[0].details["reason"] == "account_locked"
        assert entries[0].details["locked_until"] is not None
        assert entries[1].details["locked_until"] is not None

    def test_unknown_account_is_indistinguishable(self, client):
        _register(client, BOB)

        unknown = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": BOB["password"]}
        )
        wrong = client.post(
            "/v1/auth/login", json={"email": BOB["email"], "password": "Wr0ng!Pass1"}
        )

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()


class TestErrorEnvelope:
    """Every failure renders the same envelope."""

    def test_missing_token(self, client):
        _assert_error(client.get("/v1/auth/me"), 401, "NO_TOKEN")

    def test_wrong_scheme(self, client):
        resp = client.get("/v1/auth/me", headers={"Authorization": "Basic abc"})
        _assert_error(resp, 401, "INVALID_TOKEN_FORMAT")

    def test_garbage_token(self, client):
        resp = client.get("/v1/auth/me", headers=_auth("not-a-jwt"))
        _assert_error(resp, 401, "INVALID_TOKEN")

    def test_invalid_email_lists_field(self, client):
        resp = client.post("/v1/auth/register", json={**ALICE, "email": "not-an-email"})

        body = _assert_error(resp, 400, "VALIDATION_ERROR")
        assert any(item["field"] == "email" for item in body["details"])

    def test_weak_password_reports_rules(self, client):
        resp = client.post("/v1/auth/register", json={**ALICE, "password": "weakpass"})

        body = _assert_error(resp, 400, "WEAK_PASSWORD")
        assert "Password must contain an uppercase letter" in body["details"]["errors"]

    def test_duplicate_email(self, client):
        _register(client, ALICE)

        resp = client.post("/v1/auth/register", json={**ALICE, "email": "ALICE@example.com"})

        _assert_error(resp, 409, "EMAIL_EXISTS")

    def test_unknown_route(self, client):
        body = _assert_error(client.get("/v1/nope"), 404, "NOT_FOUND")

        assert body["details"] == {"path": "/v1/nope", "method": "GET"}
        assert "/v1/nope" in body["message"]

    def test_login_rate_limit(self, client):
        limit = get_runtime().settings.login_rate_limit_per_minute
        payload = {"email": "ghost@example.com", "password": "Wr0ng!Pass1"}

        for _ in range(limit):
            assert client.post("/v1/auth/login", json=payload).status_code == 401

        resp = client.post("/v1/auth/login", json=payload)

        _assert_error(resp, 429, "RATE_LIMIT_EXCEEDED")
        assert int(resp.headers["Retry-After"]) >= 1


class TestAuthorization:
    """Role, permission and ownership gates on the HTTP surface."""

    def test_assign_role_requires_admin(self, client):
        alice = _register(client, ALICE)
        tokens = _login(client, ALICE)

        resp = client.post(
            "/v1/auth/assign-role",
            json={"userId": alice["id"], "roleName": "manager"},
            headers=_auth(tokens["accessToken"]),
        )

        body = _assert_error(resp, 403, "INSUFFICIENT_ROLE")
        assert body["details"]["required"] == ["admin"]

    def test_admin_assigns_role(self, client):
        _register(client, ALICE)
        bob = _register(client, BOB)
        _make_admin(ALICE["email"])
        admin = _login(client, ALICE)
        expires = (datetime.now(timezone.utc) + timedelta(days=7)).isoformat()

        resp = client.post(
            "/v1/auth/assign-role",
            json={"userId": bob["id"], "roleName": "manager", "expiresAt": expires},
            headers=_auth(admin["accessToken"]),
        )

        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["roleName"] == "manager"
        bob_tokens = _login(client, BOB)
        assert set(bob_tokens["user"]["roles"]) == {"manager", "user"}

    def test_assign_role_rejects_past_expiry_and_unknown_role(self, client):
        _register(client, ALICE)
        bob = _register(client, BOB)
        _make_admin(ALICE["email"])
        admin = _login(client, ALICE)
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()

        expired = client.post(
            "/v1/auth/assign-role",
            json={"userId": bob["id"], "roleName": "manager", "expiresAt": past},
            headers=_auth(admin["accessToken"]),
        )
        unknown = client.post(
            "/v1/auth/assign-role",
            json={"userId": bob["id"], "roleName": "superhero"},
            headers=_auth(admin["accessToken"]),
        )

        _assert_error(expired, 400, "VALIDATION_ERROR")
        _assert_error(unknown, 404, "ROLE_NOT_FOUND")

    def test_list_users_requires_permission(self, client):
        _register(client, ALICE)
        _register(client, BOB)
        user_tokens = _login(client, BOB)
        _make_admin(ALICE["email"])
        admin = _login(client, ALICE)

        denied = client.get("/v1/users", headers=_auth(user_tokens["accessToken"]))
        allowed = client.get("/v1/users?limit=1", headers=_auth(admin["accessToken"]))

        _assert_error(denied, 403, "INSUFFICIENT_PERMISSION")
        assert allowed.status_code == 200
        data = allowed.json()["data"]
        assert data["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert len(data["users"]) == 1

    def test_user_profile_ownership(self, client):
        alice = _register(client, ALICE)
        bob = _register(client, BOB)
        tokens = _login(client, ALICE)

        own = client.get(f"/v1/users/{alice['id']}", headers=_auth(tokens["accessToken"]))
        other = client.get(f"/v1/users/{bob['id']}", headers=_auth(tokens["accessToken"]))

        assert own.status_code == 200
        assert own.json()["data"]["user"]["email"] == ALICE["email"]
        _assert_error(other, 403, "NOT_RESOURCE_OWNER")

    def test_admin_reads_any_profile_and_unlocks(self, client):
        _register(client, ALICE)
        bob = _register(client, BOB)
        for _ in range(5):
            client.post("/v1/auth/login", json={"email": BOB["email"], "password": "Wr0ng!Pass1"})
        _make_admin(ALICE["email"])
        admin = _login(client, ALICE)

        profile = client.get(f"/v1/users/{bob['id']}", headers=_auth(admin["accessToken"]))
        unlock = client.post(f"/v1/users/{bob['id']}/unlock", headers=_auth(admin["accessToken"]))

        assert profile.status_code == 200
        assert unlock.status_code == 200
        _login(client, BOB)

    def test_roles_endpoints(self, client):
        _register(client, ALICE)
        tokens = _login(client, ALICE)

        listing = client.get("/v1/roles", headers=_auth(tokens["accessToken"]))
        detail = client.get("/v1/roles/manager", headers=_auth(tokens["accessToken"]))
        missing = client.get("/v1/roles/superhero", headers=_auth(tokens["accessToken"]))

        names = [role["name"] for role in listing.json()["data"]["roles"]]
        assert names == ["admin", "manager", "user"]
        role = detail.json()["data"]["role"]
        assert "data.delete" in role["permissions"]
        assert role["userCount"] == 0
        _assert_error(missing, 404, "ROLE_NOT_FOUND")

    def test_audit_requires_system_admin(self, client):
        _register(client, ALICE)
        tokens = _login(client, ALICE)
        denied = client.get("/v1/audit", headers=_auth(tokens["accessToken"]))
        _assert_error(denied, 403, "INSUFFICIENT_PERMISSION")

        _make_admin(ALICE["email"])
        admin = _login(client, ALICE)
        resp = client.get("/v1/audit?action=user.login", headers=_auth(admin["accessToken"]))

        assert resp.status_code == 200
        entries = resp.json()["data"]["entries"]
        assert entries and all(e["action"] == "user.login" for e in entries)


class TestKeysAndHealth:
    """Key publication, rotation and health probe."""

    def test_jwks_and_rotation(self, client):
        _register(client, ALICE)
        _make_admin(ALICE["email"])
        admin = _login(client, ALICE)

        before = client.get("/v1/auth/jwks").json()["keys"]
        rotated = client.post("/v1/admin/keys/rotate", headers=_auth(admin["accessToken"]))
        after = client.get("/v1/auth/jwks").json()["keys"]

        assert len(before) == 1
        assert rotated.status_code == 200
        new_kid = rotated.json()["data"]["keyId"]
        assert {k["kid"] for k in after} == {before[0]["kid"], new_kid}
        # Token signed by the retired key still works inside its window
        assert client.get("/v1/auth/me", headers=_auth(admin["accessToken"])).status_code == 200

    def test_healthz_and_headers(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["API-Version"] == app_module.__version__
        assert "no-store" in resp.headers["Cache-Control"]

    def test_lifespan_warms_key_and_closes_cleanly(self):
        with TestClient(app_module.app) as client:
            assert get_runtime().store.get_active_signing_key() is not None
            assert client.get("/healthz").status_code == 200


class TestBootstrapScript:
    """The admin bootstrap script creates or promotes through the engine."""

    @pytest.fixture
    def bootstrap(self):
        path = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
        spec = importlib.util.spec_from_file_location("bootstrap_admin", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module.bootstrap_admin

    def test_create_then_already_admin(self, bootstrap):
        created = asyncio.run(bootstrap("root@example.com", "R00t!Passw0rd"))
        again = asyncio.run(bootstrap("root@example.com", "R00t!Passw0rd"))

        assert created["status"] == "created"
        assert again["status"] == "already_admin"

    def test_promotes_existing_user(self, bootstrap, client):
        _register(client, ALICE)

        result = asyncio.run(bootstrap(ALICE["email"], ALICE["password"]))

        assert result["status"] == "promoted"
        assert "admin" in _login(client, ALICE)["user"]["roles"]
