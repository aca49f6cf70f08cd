from __future__ import annotations

from typing import Optional, Tuple

from sesame.config import Settings
from sesame.logging import get_logger, redact_email
from sesame.service.errors import (
    ConflictError,
    ConsistencyError,
    InvalidCredentialError,
    ValidationError,
    translate_storage_errors,
)
from sesame.service.ports import AuthStore
from sesame.service.sessions import SessionManager
from sesame.service.users import find_or_create_user, record_sign_in
from sesame.service.validation import normalize_email, validate_email
from sesame.storage.errors import ConstraintViolation
from sesame.storage.models import OAuthIdentity, OAuthProvider, Session, SignInMethod, User

logger = get_logger(__name__)


class FederatedIdentityResolver:
    """Maps a provider identity onto a local user and signs them in.

    Resolution order for a login:

    1. an existing ``(provider, subject)`` link wins;
    2. otherwise a user whose email matches the provider-reported email gets a
       new link (account linking);
    3. otherwise a new FreeTrial user and link are created.

    Step 2 avoids duplicate accounts when someone who signed up by email later
    uses a provider. It is not a security check: it takes the provider's
    word that the caller owns the address. Providers that report the address
    as unverified are refused at this step unless
    ``oauth_trust_unverified_email`` is set.
    """

    def __init__(self, store: AuthStore, sessions: SessionManager, settings: Settings) -> None:
        self.store = store
        self.sessions = sessions
        self.trust_unverified_email = settings.oauth_trust_unverified_email

    async def resolve_login(
        self,
        provider: OAuthProvider,
        provider_user_id: str,
        provider_email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        email_verified: bool = True,
    ) -> Tuple[User, Session]:
        if not provider_user_id:
            raise InvalidCredentialError("oauth_subject_missing")
        email = normalize_email(provider_email or "")

        with translate_storage_errors("resolve_oauth_login"):
            identity = self.store.get_oauth_identity(provider, provider_user_id)
            if identity:
                user = self._owner_of(identity)
                path = "existing_link"
            else:
                user, path = self._link_or_create(
                    provider, provider_user_id, email, email_verified
                )
            user = record_sign_in(self.store, user, SignInMethod.OAUTH, provider)

        session = await self.sessions.issue(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        logger.info(
            "oauth_login_resolved",
            provider=provider.value,
            user_id=user.id,
            path=path,
        )
        return user, session

    def _owner_of(self, identity: OAuthIdentity) -> User:
        user = self.store.get_user(identity.user_id)
        if not user:
            logger.error(
                "oauth_identity_user_missing",
                identity_id=identity.id,
                user_id=identity.user_id,
            )
            raise ConsistencyError(
                "oauth identity references a missing user",
                detail={"identity_id": identity.id},
            )
        return user

    def _link_or_create(
        self,
        provider: OAuthProvider,
        provider_user_id: str,
        email: str,
        email_verified: bool,
    ) -> Tuple[User, str]:
        try:
            email = validate_email(email)
        except ValidationError as exc:
            raise InvalidCredentialError("oauth_email_invalid") from exc

        existing = self.store.get_user_by_email(email)
        if existing and not email_verified and not self.trust_unverified_email:
            logger.warning(
                "oauth_link_refused_unverified_email",
                provider=provider.value,
                to=redact_email(email),
            )
            raise InvalidCredentialError("oauth_email_unverified")

        if existing:
            user, path = existing, "email_match_link"
        else:
            user, created = find_or_create_user(self.store, email)
            path = "new_user" if created else "email_match_link"

        try:
            self.store.create_oauth_identity(user.id, provider, provider_user_id, email)
        except ConstraintViolation:
            # A concurrent login created the link first; resolve through it.
            winner = self.store.get_oauth_identity(provider, provider_user_id)
            if not winner:
                raise
            return self._owner_of(winner), "existing_link"
        return user, path

    async def link_account(
        self,
        user_id: str,
        provider: OAuthProvider,
        provider_user_id: str,
        email: Optional[str] = None,
    ) -> OAuthIdentity:
        """Attach another provider to an authenticated user.

        Idempotent for the same user; a subject already owned by someone else
        is a conflict.
        """
        provider_email = normalize_email(email) if email else None
        with translate_storage_errors("link_oauth_account"):
            existing = self.store.get_oauth_identity(provider, provider_user_id)
            if existing:
                if existing.user_id != user_id:
                    raise ConflictError(
                        "provider account is linked to another user",
                        detail={"provider": provider.value},
                    )
                return existing
            if not self.store.get_user(user_id):
                raise ConsistencyError("linking user does not exist", detail={"user_id": user_id})
            identity = self.store.create_oauth_identity(
                user_id, provider, provider_user_id, provider_email
            )
        logger.info("oauth_account_linked", provider=provider.value, user_id=user_id)
        return identity
