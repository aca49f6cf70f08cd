from __future__ import annotations

import base64
import json
import secrets
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from sesame.config import Settings
from sesame.logging import get_logger
from sesame.service.errors import InternalError, InvalidCredentialError, ValidationError
from sesame.service.ports import ChallengeStore
from sesame.storage.errors import StorageError
from sesame.storage.models import OAuthProvider

OAUTH_PROVIDERS: Dict[OAuthProvider, Dict[str, Optional[str]]] = {
    OAuthProvider.GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
    OAuthProvider.GITHUB: {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    OAuthProvider.MICROSOFT: {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/oidc/userinfo",
        "scope": "openid email profile",
    },
    OAuthProvider.APPLE: {
        "auth_url": "https://appleid.apple.com/auth/authorize",
        "token_url": "https://appleid.apple.com/auth/token",
        # Apple has no userinfo endpoint; identity comes from the id_token.
        "userinfo_url": None,
        "scope": "name email",
    },
}

logger = get_logger(__name__)


@dataclass
class ProviderIdentity:
    provider: OAuthProvider
    subject: str
    email: str
    email_verified: bool
    name: Optional[str] = None


def _claim_is_true(value: object) -> bool:
    # Apple sends booleans as strings.
    return value is True or (isinstance(value, str) and value.lower() == "true")


def _decode_id_token_claims(id_token: str) -> dict:
    """Read the claims of an id_token received directly from the token endpoint.

    The token arrives over the TLS back channel from the provider, which
    authenticates the issuer, so the signature is not re-checked here.
    """
    try:
        payload = id_token.split(".")[1]
        padded = payload + "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except (IndexError, ValueError) as exc:
        raise InvalidCredentialError("oauth_id_token_malformed") from exc
    if not isinstance(claims, dict):
        raise InvalidCredentialError("oauth_id_token_malformed")
    return claims


class OAuthClient:
    """Authorization-code flow against the configured providers.

    ``state`` values live in the challenge store under ``oauth:{state}`` and
    are consumed exactly once by :meth:`complete`.
    """

    def __init__(
        self,
        settings: Settings,
        challenges: ChallengeStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.challenges = challenges
        self.transport = transport

    def _credentials(self, provider: OAuthProvider) -> Tuple[Optional[str], Optional[str]]:
        key = provider.value
        return (
            getattr(self.settings, f"oauth_{key}_client_id"),
            getattr(self.settings, f"oauth_{key}_client_secret"),
        )

    def is_configured(self, provider: OAuthProvider) -> bool:
        client_id, client_secret = self._credentials(provider)
        return bool(client_id and client_secret and self.settings.oauth_redirect_uri)

    def _redirect_uri(self, provider: OAuthProvider) -> str:
        base = self.settings.oauth_redirect_uri
        if not base:
            raise ValidationError("OAuth redirect URI is not configured")
        parsed = urlparse(base)
        if parsed.scheme not in {"https", "http"} or not parsed.netloc:
            raise ValidationError("OAuth redirect URI must be an absolute http(s) URL")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        return f"{base.rstrip('/')}/{provider.value}/callback"

    async def start(self, provider: OAuthProvider) -> dict:
        if not self.is_configured(provider):
            logger.warning("oauth_not_configured", provider=provider.value)
            raise ValidationError(f"OAuth provider {provider.value} is not configured")
        client_id, _ = self._credentials(provider)
        redirect_uri = self._redirect_uri(provider)

        state = secrets.token_urlsafe(32)
        try:
            await self.challenges.store(
                f"oauth:{state}", provider.value, self.settings.oauth_state_ttl_seconds
            )
        except StorageError as exc:
            raise InternalError("challenge store unavailable") from exc

        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == OAuthProvider.GOOGLE:
            params["prompt"] = "select_account"
        if provider == OAuthProvider.APPLE:
            # Apple posts the callback as a form when scopes are requested.
            params["response_mode"] = "form_post"
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider.value,
        }

    async def complete(self, provider: OAuthProvider, code: str, state: str) -> ProviderIdentity:
        if not code or not state:
            raise InvalidCredentialError("oauth_callback_incomplete")
        try:
            stored = await self.challenges.take(f"oauth:{state}")
        except StorageError as exc:
            logger.error("oauth_state_pop_failed", error=str(exc))
            raise InternalError("challenge store unavailable") from exc
        if stored != provider.value:
            raise InvalidCredentialError("oauth_state_invalid")
        return await self._exchange_code(provider, code)

    async def _exchange_code(self, provider: OAuthProvider, code: str) -> ProviderIdentity:
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider.value)
            raise InvalidCredentialError("oauth_not_configured")
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                if not isinstance(token_result, dict):
                    raise InvalidCredentialError("oauth_token_invalid")

                if provider == OAuthProvider.APPLE:
                    id_token = token_result.get("id_token")
                    if not id_token:
                        raise InvalidCredentialError("oauth_id_token_missing")
                    identity = self._parse_claims(provider, _decode_id_token_claims(id_token))
                else:
                    access_token = token_result.get("access_token")
                    if not access_token:
                        logger.error("oauth_no_access_token", provider=provider.value)
                        raise InvalidCredentialError("oauth_token_invalid")
                    headers = {"Authorization": f"Bearer {access_token}"}
                    if provider == OAuthProvider.GITHUB:
                        headers["Accept"] = "application/vnd.github+json"
                    userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                    userinfo_response.raise_for_status()
                    userinfo = userinfo_response.json()
                    if not isinstance(userinfo, dict):
                        raise InvalidCredentialError("oauth_userinfo_invalid")
                    identity = self._parse_claims(provider, userinfo)
                    if provider == OAuthProvider.GITHUB and not identity.email_verified:
                        identity = await self._github_primary_email(client, headers, identity)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider.value,
                status_code=exc.response.status_code,
            )
            raise InvalidCredentialError("oauth_exchange_failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider.value, error=str(exc))
            raise InvalidCredentialError("oauth_exchange_failed") from exc

        if not identity.subject or not identity.email:
            logger.error("oauth_identity_incomplete", provider=provider.value)
            raise InvalidCredentialError("oauth_identity_incomplete")
        logger.info("oauth_exchange_success", provider=provider.value)
        return identity

    def _parse_claims(self, provider: OAuthProvider, claims: dict) -> ProviderIdentity:
        """Map provider payloads onto subject, email and verification flag."""
        if provider == OAuthProvider.GITHUB:
            return ProviderIdentity(
                provider=provider,
                subject=str(claims.get("id") or ""),
                email=claims.get("email") or "",
                # The profile email is not guaranteed verified; see /user/emails.
                email_verified=False,
                name=claims.get("name") or claims.get("login"),
            )
        if provider == OAuthProvider.MICROSOFT:
            return ProviderIdentity(
                provider=provider,
                subject=str(claims.get("sub") or ""),
                email=claims.get("email") or "",
                # Entra ID does not assert ownership of the email claim.
                email_verified=False,
                name=claims.get("name"),
            )
        return ProviderIdentity(
            provider=provider,
            subject=str(claims.get("sub") or ""),
            email=claims.get("email") or "",
            email_verified=_claim_is_true(claims.get("email_verified")),
            name=claims.get("name"),
        )

    async def _github_primary_email(
        self, client: httpx.AsyncClient, headers: dict, identity: ProviderIdentity
    ) -> ProviderIdentity:
        response = await client.get("https://api.github.com/user/emails", headers=headers)
        if response.status_code != 200:
            return identity
        emails = response.json()
        primary = next(
            (
                e.get("email")
                for e in emails
                if isinstance(e, dict) and e.get("primary") and e.get("verified")
            ),
            None,
        )
        if not primary:
            return identity
        return ProviderIdentity(
            provider=identity.provider,
            subject=identity.subject,
            email=primary,
            email_verified=True,
            name=identity.name,
        )
