"""Capabilities the authentication services are constructed with.

Services receive an ``AuthStore``, a ``ChallengeStore`` and a
``CredentialVerifier`` explicitly; nothing in the service layer reaches for a
global instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from sesame.storage.models import (
    MagicLinkToken,
    OAuthIdentity,
    OAuthProvider,
    Passkey,
    Session,
    User,
    UserPlan,
)


class AuthStore(Protocol):
    # Users
    def create_user(
        self, email: str, name: str, *, plan: UserPlan = UserPlan.FREE_TRIAL
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # Sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> bool: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    # OAuth identities
    def create_oauth_identity(
        self,
        user_id: str,
        provider: OAuthProvider,
        provider_user_id: str,
        provider_email: Optional[str] = None,
    ) -> OAuthIdentity: ...

    def get_oauth_identity(
        self, provider: OAuthProvider, provider_user_id: str
    ) -> Optional[OAuthIdentity]: ...

    def list_oauth_identities(self, user_id: str) -> List[OAuthIdentity]: ...

    def delete_user_oauth_identities(self, user_id: str) -> int: ...

    # Passkeys
    def create_passkey(
        self,
        user_id: str,
        credential_id: str,
        public_key: bytes,
        *,
        transports: Optional[List[str]] = None,
        device_name: Optional[str] = None,
    ) -> Passkey: ...

    def get_passkey(self, credential_id: str) -> Optional[Passkey]: ...

    def list_passkeys(self, user_id: str) -> List[Passkey]: ...

    def update_passkey_sign_count(
        self, credential_id: str, expected_count: int, new_count: int
    ) -> bool:
        """Set the counter only if it still equals ``expected_count``."""
        ...

    def delete_passkey(self, passkey_id: str) -> bool: ...

    def delete_user_passkeys(self, user_id: str) -> int: ...

    # Magic links
    def save_magic_link(self, token: MagicLinkToken) -> None: ...

    def get_magic_link(self, email: str) -> Optional[MagicLinkToken]: ...

    def mark_magic_link_used(self, email: str, token_hash: str) -> bool:
        """Flip ``used`` only if the record still holds ``token_hash`` unused."""
        ...

    def delete_magic_link(self, email: str) -> bool: ...

    def delete_expired_magic_links(self, now: datetime) -> int: ...


class ChallengeStore(Protocol):
    async def store(self, key: str, state: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def take(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``."""
        ...


@dataclass
class RegisteredCredential:
    credential_id: str
    public_key: bytes
    transports: List[str] = field(default_factory=list)


class CredentialVerificationError(Exception):
    """The verifier rejected a ceremony response."""


class CredentialVerifier(Protocol):
    async def begin_registration(
        self,
        user_id: str,
        email: str,
        name: str,
        exclude_credential_ids: Sequence[str] = (),
    ) -> Tuple[dict, str]: ...

    async def finish_registration(
        self, state: str, response: dict
    ) -> RegisteredCredential: ...

    async def begin_authentication(
        self, passkeys: Sequence[Passkey]
    ) -> Tuple[dict, str]: ...

    async def finish_authentication(self, state: str, response: dict) -> int: ...


__all__ = [
    "AuthStore",
    "ChallengeStore",
    "CredentialVerifier",
    "CredentialVerificationError",
    "RegisteredCredential",
]
