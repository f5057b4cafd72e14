"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Signup
- Login with password and session cookie
- Session validation and revocation
- Lockout after repeated failures
- Password change
- One-time pad reset
"""

import pytest
from fastapi.testclient import TestClient

from userservice import app as app_module
from userservice.service.errors import ServerError
from userservice.service.runtime import get_runtime, reset_runtime_for_tests
from userservice.storage.errors import StorageError

PASSWORD = "correct horse battery staple"


class RecordingNotifier:
    def __init__(self):
        self.delivered = []

    async def deliver(self, user_id, pad, redirect):
        self.delivered.append((user_id, pad, redirect))


@pytest.fixture
def notifier():
    notifier = RecordingNotifier()
    reset_runtime_for_tests(notifier=notifier)
    return notifier


@pytest.fixture
def client(notifier):
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _signup(client, name="alice", password=PASSWORD):
    return client.post("/v1/auth/signup", json={"name": name, "password": password})


def _login(client, name="alice", password=PASSWORD):
    return client.post("/v1/auth/login", json={"name": name, "password": password})


class TestSignup:
    def test_signup_creates_user(self, client):
        response = _signup(client)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["name"] == "alice"
        assert data["last_login"] is None
        assert "password_hash" not in data
        assert "salt" not in data

    def test_duplicate_name(self, client):
        _signup(client)
        response = _signup(client)
        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"


class TestLoginAndSessions:
    def test_login_sets_cookie_and_session_validates(self, client):
        _signup(client)
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        token = data["session"]["token"]
        assert data["session"]["ttl_seconds"] == 900
        assert f"us-authn={token}" in response.headers["set-cookie"]

        assert client.get(f"/v1/auth/sessions/{token}").status_code == 200
        assert client.delete(f"/v1/auth/sessions/{token}").status_code == 200
        response = client.get(f"/v1/auth/sessions/{token}")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_second_login_reports_previous(self, client):
        _signup(client)
        first = _login(client).json()["data"]["profile"]
        second = _login(client).json()["data"]["profile"]
        assert first["last_login"] is None
        assert second["last_login"] is not None

    def test_unknown_user_and_wrong_password_look_the_same(self, client):
        _signup(client)
        unknown = _login(client, name="bob")
        wrong = _login(client, password="nope")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout(self, client):
        _signup(client)
        for _ in range(4):
            assert _login(client, password="nope").status_code == 401
        locked = _login(client)
        assert locked.status_code == 403
        assert locked.json()["error"] == _login(client, name="bob").json()["error"]

    def test_session_cap(self, client):
        _signup(client)
        for _ in range(5):
            assert _login(client).status_code == 200
        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_unknown_session(self, client):
        assert client.get("/v1/auth/sessions/made-up").status_code == 403
        assert client.delete("/v1/auth/sessions/made-up").status_code == 403


class TestPasswordChange:
    def test_change_with_current_password(self, client):
        _signup(client)
        response = client.patch(
            "/v1/auth/password",
            json={"name": "alice", "current_password": PASSWORD, "new_password": "new secret"},
        )
        assert response.status_code == 200
        assert "us-authn=" in response.headers["set-cookie"]
        assert _login(client).status_code == 401
        assert _login(client, password="new secret").status_code == 200

    def test_unchanged_password(self, client):
        _signup(client)
        response = client.patch(
            "/v1/auth/password",
            json={"name": "alice", "current_password": PASSWORD, "new_password": PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "passwords_unchanged"

    def test_requires_current_password_without_pad(self, client):
        _signup(client)
        response = client.patch(
            "/v1/auth/password", json={"name": "alice", "new_password": "new secret"}
        )
        assert response.status_code == 400


class TestPadReset:
    def test_full_reset_flow(self, client, notifier):
        _signup(client)
        old_token = _login(client).json()["data"]["session"]["token"]
        for _ in range(5):
            _login(client, password="nope")

        response = client.post("/v1/auth/reset", json={"name": "alice", "redirect": "/reset"})
        assert response.status_code == 202
        [(_, pad, _)] = notifier.delivered

        response = client.get(f"/v1/auth/otp/{pad}", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/reset"
        assert f"authn-pad={pad}" in response.headers["set-cookie"]

        response = client.patch(
            "/v1/auth/password",
            json={"name": "alice", "new_password": "new secret"},
            headers={"Cookie": f"authn-pad={pad}"},
        )
        assert response.status_code == 200
        assert 'authn-pad=""' in response.headers["set-cookie"]

        assert client.get(f"/v1/auth/sessions/{old_token}").status_code == 403
        assert _login(client, password="new secret").status_code == 200

    def test_reset_for_unknown_name_is_accepted(self, client, notifier):
        response = client.post("/v1/auth/reset", json={"name": "nobody"})
        assert response.status_code == 202
        assert notifier.delivered == []

    @pytest.mark.parametrize(
        "redirect",
        [
            "https://evil.example",
            "//evil.example",
            "/\\evil.example",
            "\\\\evil.example",
            "/\t/evil.example",
            "/\n/evil.example",
            "evil.example/reset",
        ],
    )
    def test_reset_rejects_external_redirect(self, client, notifier, redirect):
        _signup(client)
        response = client.post("/v1/auth/reset", json={"name": "alice", "redirect": redirect})
        assert response.status_code == 422
        assert notifier.delivered == []

    def test_reset_accepts_local_path_with_query(self, client, notifier):
        _signup(client)
        response = client.post(
            "/v1/auth/reset", json={"name": "alice", "redirect": "/reset?step=2"}
        )
        assert response.status_code == 202
        assert notifier.delivered[0][2] == "/reset?step=2"

    def test_reset_answer_does_not_depend_on_pad_store(self, client, notifier, monkeypatch):
        _signup(client)
        sessions = get_runtime().sessions

        async def broken(user_id, remote, redirect):
            raise ServerError.for_operation("hset")

        monkeypatch.setattr(sessions, "issue_pad", broken)
        known = client.post("/v1/auth/reset", json={"name": "alice"})
        unknown = client.post("/v1/auth/reset", json={"name": "nobody"})
        assert known.status_code == unknown.status_code == 202
        assert known.json()["data"] == unknown.json()["data"]
        assert notifier.delivered == []

    def test_unknown_pad(self, client):
        response = client.get("/v1/auth/otp/made-up", follow_redirects=False)
        assert response.status_code == 403


class TestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "MemoryStore"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_store_failure_does_not_expose_operation(self, client, monkeypatch):
        _signup(client)
        store = get_runtime().store

        def broken(identifier):
            raise StorageError("fetch_credential", "connection reset")

        monkeypatch.setattr(store, "fetch_credential", broken)
        response = _login(client)
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["details"] is None
        assert "fetch_credential" not in response.text

    def test_client_errors_keep_their_details(self, client):
        _signup(client)
        response = _signup(client)
        assert response.json()["error"]["details"] == {"field": "name"}
