import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from sesame.config import Settings
from sesame.service.errors import InvalidCredentialError, ValidationError
from sesame.service.oauth import OAuthClient
from sesame.storage.models import OAuthProvider


def _settings(**overrides):
    values = {
        "oauth_google_client_id": "google-id",
        "oauth_google_client_secret": "google-secret",
        "oauth_github_client_id": "github-id",
        "oauth_github_client_secret": "github-secret",
        "oauth_apple_client_id": "apple-id",
        "oauth_apple_client_secret": "apple-secret",
        "oauth_redirect_uri": "http://localhost:8000/v1/auth/oauth",
    }
    values.update(overrides)
    return Settings(**values)


def _id_token(claims: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
    return f"header.{body}.signature"


def _transport(routes: dict) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.method} {request.url.scheme}://{request.url.host}{request.url.path}"
        status, payload = routes.get(key, (404, {"error": "not found"}))
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_start_stores_state_and_builds_url(challenges):
    client = OAuthClient(_settings(), challenges)

    started = await client.start(OAuthProvider.GOOGLE)

    url = urlparse(started["authorization_url"])
    params = parse_qs(url.query)
    assert url.netloc == "accounts.google.com"
    assert params["state"] == [started["state"]]
    assert params["redirect_uri"] == ["http://localhost:8000/v1/auth/oauth/google/callback"]
    assert params["client_id"] == ["google-id"]
    assert await challenges.get(f"oauth:{started['state']}") == "google"


@pytest.mark.asyncio
async def test_unconfigured_provider_cannot_start(challenges):
    client = OAuthClient(_settings(), challenges)
    assert client.is_configured(OAuthProvider.MICROSOFT) is False
    with pytest.raises(ValidationError):
        await client.start(OAuthProvider.MICROSOFT)


@pytest.mark.asyncio
async def test_google_exchange_returns_verified_identity(challenges):
    transport = _transport(
        {
            "POST https://oauth2.googleapis.com/token": (200, {"access_token": "at"}),
            "GET https://openidconnect.googleapis.com/v1/userinfo": (
                200,
                {"sub": "g-1", "email": "amy@example.com", "email_verified": True},
            ),
        }
    )
    client = OAuthClient(_settings(), challenges, transport=transport)
    started = await client.start(OAuthProvider.GOOGLE)

    identity = await client.complete(OAuthProvider.GOOGLE, "code", started["state"])

    assert identity.subject == "g-1"
    assert identity.email == "amy@example.com"
    assert identity.email_verified is True


@pytest.mark.asyncio
async def test_state_is_single_use_and_bound_to_provider(challenges):
    transport = _transport(
        {
            "POST https://oauth2.googleapis.com/token": (200, {"access_token": "at"}),
            "GET https://openidconnect.googleapis.com/v1/userinfo": (
                200,
                {"sub": "g-1", "email": "amy@example.com", "email_verified": True},
            ),
        }
    )
    client = OAuthClient(_settings(), challenges, transport=transport)

    started = await client.start(OAuthProvider.GOOGLE)
    with pytest.raises(InvalidCredentialError):
        await client.complete(OAuthProvider.GITHUB, "code", started["state"])
    # The mismatched attempt consumed the state.
    with pytest.raises(InvalidCredentialError):
        await client.complete(OAuthProvider.GOOGLE, "code", started["state"])

    with pytest.raises(InvalidCredentialError):
        await client.complete(OAuthProvider.GOOGLE, "code", "never-issued")


@pytest.mark.asyncio
async def test_github_uses_verified_primary_email(challenges):
    transport = _transport(
        {
            "POST https://github.com/login/oauth/access_token": (200, {"access_token": "at"}),
            "GET https://api.github.com/user": (
                200,
                {"id": 42, "login": "bea", "email": "public@example.com"},
            ),
            "GET https://api.github.com/user/emails": (
                200,
                [
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "bea@example.com", "primary": True, "verified": True},
                ],
            ),
        }
    )
    client = OAuthClient(_settings(), challenges, transport=transport)
    started = await client.start(OAuthProvider.GITHUB)

    identity = await client.complete(OAuthProvider.GITHUB, "code", started["state"])

    assert identity.subject == "42"
    assert identity.email == "bea@example.com"
    assert identity.email_verified is True


@pytest.mark.asyncio
async def test_apple_identity_comes_from_id_token(challenges):
    id_token = _id_token({"sub": "apple-1", "email": "cy@example.com", "email_verified": "true"})
    transport = _transport(
        {"POST https://appleid.apple.com/auth/token": (200, {"id_token": id_token})}
    )
    client = OAuthClient(_settings(), challenges, transport=transport)
    started = await client.start(OAuthProvider.APPLE)
    assert "response_mode=form_post" in started["authorization_url"]

    identity = await client.complete(OAuthProvider.APPLE, "code", started["state"])

    assert identity.subject == "apple-1"
    assert identity.email_verified is True


@pytest.mark.asyncio
async def test_token_endpoint_failure_is_invalid_credential(challenges):
    transport = _transport(
        {"POST https://oauth2.googleapis.com/token": (400, {"error": "invalid_grant"})}
    )
    client = OAuthClient(_settings(), challenges, transport=transport)
    started = await client.start(OAuthProvider.GOOGLE)

    with pytest.raises(InvalidCredentialError) as excinfo:
        await client.complete(OAuthProvider.GOOGLE, "bad-code", started["state"])
    assert excinfo.value.reason == "oauth_exchange_failed"
