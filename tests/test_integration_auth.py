"""End-to-end HTTP flows against the in-memory runtime."""

import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from sesame import app as app_module
from sesame.config import Settings
from sesame.service.oauth import OAuthClient
from sesame.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(to_email, secret):
        sent.append((to_email, secret))
        return True

    monkeypatch.setattr(get_runtime().email, "send_magic_link", fake_send)
    return sent


def _sign_in(client, outbox, email="zoe@example.com"):
    response = client.post("/v1/auth/magic-link/request", json={"email": email})
    assert response.status_code == 202
    to_email, secret = outbox[-1]
    response = client.post(
        "/v1/auth/magic-link/verify", json={"email": to_email, "token": secret}
    )
    assert response.status_code == 200
    return response.json()["data"]


class TestMagicLinkFlow:
    def test_request_verify_and_session(self, client, outbox):
        response = client.post(
            "/v1/auth/magic-link/request", json={"email": " Zoe@Example.com "}
        )
        assert response.status_code == 202
        assert response.json()["status"] == "ok"
        assert outbox[0][0] == "zoe@example.com"
        assert outbox[0][1] not in response.text

        response = client.post(
            "/v1/auth/magic-link/verify",
            json={"email": "zoe@example.com", "token": outbox[0][1]},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "zoe@example.com"
        assert data["user"]["plan"] == "free_trial"
        assert data["user"]["last_sign_in_method"] == "magic_link"
        assert response.cookies.get("session_id") == data["session_id"]
        assert "httponly" in response.headers["set-cookie"].lower()

        session = client.get("/v1/auth/session")
        assert session.status_code == 200
        assert session.json()["data"]["user"]["id"] == data["user"]["id"]

    def test_token_is_single_use(self, client, outbox):
        _sign_in(client, outbox)
        to_email, secret = outbox[-1]
        replay = client.post(
            "/v1/auth/magic-link/verify", json={"email": to_email, "token": secret}
        )
        assert replay.status_code == 401
        assert replay.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }

    def test_invalid_email_is_rejected(self, client, outbox):
        response = client.post("/v1/auth/magic-link/request", json={"email": "nope"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert outbox == []

    def test_bad_token_and_unknown_email_look_the_same(self, client, outbox):
        client.post("/v1/auth/magic-link/request", json={"email": "zoe@example.com"})
        wrong = client.post(
            "/v1/auth/magic-link/verify", json={"email": "zoe@example.com", "token": "x" * 64}
        )
        unknown = client.post(
            "/v1/auth/magic-link/verify", json={"email": "who@example.com", "token": "x" * 64}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]


class TestSessionEndpoints:
    def test_requires_authentication(self, client):
        response = client.get("/v1/auth/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_bearer_token_is_accepted(self, client, outbox):
        data = _sign_in(client, outbox)
        fresh = TestClient(app_module.app)
        response = fresh.get(
            "/v1/account", headers={"Authorization": f"Bearer {data['session_id']}"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "zoe@example.com"

    def test_logout_revokes_session(self, client, outbox):
        data = _sign_in(client, outbox)
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200

        stale = TestClient(app_module.app).get(
            "/v1/auth/session", headers={"Authorization": f"Bearer {data['session_id']}"}
        )
        assert stale.status_code == 401

    def test_logout_all_revokes_every_session(self, client, outbox):
        first = _sign_in(client, outbox)
        second = _sign_in(TestClient(app_module.app), outbox)

        response = client.post("/v1/auth/logout-all")
        assert response.json()["data"]["revoked"] == 2
        for data in (first, second):
            stale = TestClient(app_module.app).get(
                "/v1/auth/session", headers={"Authorization": f"Bearer {data['session_id']}"}
            )
            assert stale.status_code == 401


class TestAccountEndpoints:
    def test_profile_update(self, client, outbox):
        _sign_in(client, outbox)
        response = client.patch(
            "/v1/account", json={"name": "Zoe Z", "phone": "+44 20 7946 0958"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Zoe Z"
        assert response.json()["data"]["phone"] == "+442079460958"

        # Omitting phone leaves it alone; explicit null clears it.
        kept = client.patch("/v1/account", json={"name": "Zoe"})
        assert kept.json()["data"]["phone"] == "+442079460958"
        cleared = client.patch("/v1/account", json={"phone": None})
        assert cleared.json()["data"]["phone"] is None
        assert cleared.json()["data"]["name"] == "Zoe"

    def test_plan_cannot_be_changed_by_the_account_holder(self, client, outbox):
        user = _sign_in(client, outbox)["user"]
        response = client.put("/v1/account/plan", json={"plan": "lifetime"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert get_runtime().store.get_user(user["id"]).plan.value == "free_trial"
        assert client.get("/v1/account").json()["data"]["plan"] == "free_trial"

    def test_email_change_signs_everyone_out(self, client, outbox):
        _sign_in(client, outbox)
        response = client.put("/v1/account/email", json={"email": "zoe.new@example.com"})
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "zoe.new@example.com"
        assert client.get("/v1/auth/session").status_code == 401

    def test_email_change_conflict(self, client, outbox):
        _sign_in(TestClient(app_module.app), outbox, email="taken@example.com")
        _sign_in(client, outbox)
        response = client.put("/v1/account/email", json={"email": "taken@example.com"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_delete_account(self, client, outbox):
        data = _sign_in(client, outbox)
        response = client.delete("/v1/account")
        assert response.status_code == 200
        assert get_runtime().store.get_user(data["user"]["id"]) is None
        assert client.get("/v1/auth/session").status_code == 401


class TestPasskeyFlow:
    def test_register_login_and_replay(self, client, outbox, verifier):
        get_runtime().passkeys.verifier = verifier
        user = _sign_in(client, outbox)["user"]

        start = client.post("/v1/auth/passkey/register/start")
        assert start.status_code == 200
        assert start.json()["data"]["options"]["challenge"] == "reg-1"
        finish = client.post(
            "/v1/auth/passkey/register/finish",
            json={"credential": {"id": "cred-a"}, "device_name": "Phone"},
        )
        assert finish.status_code == 201
        passkey = finish.json()["data"]
        assert passkey["device_name"] == "Phone"
        assert "public_key" not in passkey

        anonymous = TestClient(app_module.app)
        login = anonymous.post(
            "/v1/auth/passkey/login/start", json={"email": "zoe@example.com"}
        )
        assert login.status_code == 200
        assert login.json()["data"]["credential_ids"] == ["cred-a"]
        signed_in = anonymous.post(
            "/v1/auth/passkey/login/finish",
            json={"credential": {"id": "cred-a", "sign_count": 1}},
        )
        assert signed_in.status_code == 200
        assert signed_in.json()["data"]["user"]["id"] == user["id"]
        assert signed_in.json()["data"]["user"]["last_sign_in_method"] == "passkey"

        anonymous.post("/v1/auth/passkey/login/start", json={"email": "zoe@example.com"})
        replay = anonymous.post(
            "/v1/auth/passkey/login/finish",
            json={"credential": {"id": "cred-a", "sign_count": 1}},
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid credentials"

        listed = client.get("/v1/account/passkeys")
        assert [p["credential_id"] for p in listed.json()["data"]["items"]] == ["cred-a"]
        deleted = client.delete(f"/v1/account/passkeys/{passkey['id']}")
        assert deleted.status_code == 200
        assert client.get("/v1/account/passkeys").json()["data"]["items"] == []

    def test_free_trial_account_can_add_more_passkeys(self, client, outbox, verifier):
        get_runtime().passkeys.verifier = verifier
        _sign_in(client, outbox)
        for credential_id in ("cred-a", "cred-b", "cred-c"):
            assert client.post("/v1/auth/passkey/register/start").status_code == 200
            finish = client.post(
                "/v1/auth/passkey/register/finish", json={"credential": {"id": credential_id}}
            )
            assert finish.status_code == 201
        listed = client.get("/v1/account/passkeys").json()["data"]["items"]
        assert len(listed) == 3

    def test_login_start_for_unknown_email(self, client):
        response = client.post(
            "/v1/auth/passkey/login/start", json={"email": "ghost@example.com"}
        )
        assert response.status_code == 401


def _oauth_runtime(routes):
    runtime = get_runtime()

    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.method} {request.url.scheme}://{request.url.host}{request.url.path}"
        status, payload = routes.get(key, (404, {}))
        return httpx.Response(status, json=payload)

    settings = Settings(
        oauth_google_client_id="google-id",
        oauth_google_client_secret="google-secret",
        oauth_apple_client_id="apple-id",
        oauth_apple_client_secret="apple-secret",
        oauth_redirect_uri="http://localhost:8000/v1/auth/oauth",
    )
    runtime.oauth = OAuthClient(
        settings, runtime.challenges, transport=httpx.MockTransport(handler)
    )
    return runtime


class TestOAuthFlow:
    def test_unknown_provider_is_404(self, client):
        response = client.get("/v1/auth/oauth/myspace/start")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_unconfigured_provider_is_400(self, client):
        response = client.get("/v1/auth/oauth/microsoft/start")
        assert response.status_code == 400

    def test_google_callback_signs_in(self, client):
        _oauth_runtime(
            {
                "POST https://oauth2.googleapis.com/token": (200, {"access_token": "at"}),
                "GET https://openidconnect.googleapis.com/v1/userinfo": (
                    200,
                    {"sub": "g-1", "email": "olga@example.com", "email_verified": True},
                ),
            }
        )
        started = client.get("/v1/auth/oauth/google/start").json()["data"]

        response = client.get(
            "/v1/auth/oauth/google/callback",
            params={"code": "abc", "state": started["state"]},
        )
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["email"] == "olga@example.com"
        assert user["last_sign_in_provider"] == "google"

        reused = client.get(
            "/v1/auth/oauth/google/callback",
            params={"code": "abc", "state": started["state"]},
        )
        assert reused.status_code == 401

    def test_apple_form_post_callback(self, client):
        claims = {"sub": "apple-9", "email": "pia@example.com", "email_verified": "true"}
        body = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
        _oauth_runtime(
            {"POST https://appleid.apple.com/auth/token": (200, {"id_token": f"h.{body}.s"})}
        )
        started = client.get("/v1/auth/oauth/apple/start").json()["data"]

        response = client.post(
            "/v1/auth/oauth/apple/callback",
            data={"code": "abc", "state": started["state"]},
        )
        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "pia@example.com"

    def test_link_provider_to_signed_in_account(self, client, outbox):
        user = _sign_in(client, outbox)["user"]
        _oauth_runtime(
            {
                "POST https://oauth2.googleapis.com/token": (200, {"access_token": "at"}),
                "GET https://openidconnect.googleapis.com/v1/userinfo": (
                    200,
                    {"sub": "g-77", "email": "other@example.com", "email_verified": True},
                ),
            }
        )
        started = client.get("/v1/auth/oauth/google/start").json()["data"]

        response = client.post(
            "/v1/auth/oauth/google/link", json={"code": "abc", "state": started["state"]}
        )
        assert response.status_code == 201
        assert response.json()["data"]["provider"] == "google"
        linked = get_runtime().store.list_oauth_identities(user["id"])
        assert [i.provider_user_id for i in linked] == ["g-77"]


class TestOperationalEndpoints:
    def test_healthz_reports_memory_backends(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["type"] == "memory"
        assert data["checks"]["redis"]["status"] == "not_configured"

    def test_security_and_correlation_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
