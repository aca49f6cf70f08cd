from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sesame.config import Settings
from sesame.logging import get_logger, redact_email
from sesame.service.errors import InvalidCredentialError, translate_storage_errors
from sesame.service.ports import AuthStore
from sesame.service.sessions import SessionManager
from sesame.service.users import find_or_create_user, record_sign_in
from sesame.service.validation import normalize_email, validate_email
from sesame.storage.models import MagicLinkToken, Session, SignInMethod, User

logger = get_logger(__name__)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class MagicLinkAuthenticator:
    """Issues and redeems single-use email sign-in tokens.

    Only the SHA-256 digest of a secret is stored. The raw secret is handed
    back to the caller for delivery and never persisted or logged.
    """

    def __init__(self, store: AuthStore, sessions: SessionManager, settings: Settings) -> None:
        self.store = store
        self.sessions = sessions
        self.ttl = timedelta(minutes=settings.magic_link_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(self, email: str) -> str:
        normalized = validate_email(email)
        secret = secrets.token_hex(32)
        token = MagicLinkToken(
            email=normalized,
            token_hash=hash_secret(secret),
            expires_at=self._now() + self.ttl,
            used=False,
        )
        with translate_storage_errors("issue_magic_link"):
            # Replaces any earlier token for this address.
            self.store.save_magic_link(token)
        logger.info("magic_link_issued", to=redact_email(normalized))
        return secret

    async def redeem(
        self,
        email: str,
        secret: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Session]:
        normalized = normalize_email(email or "")
        with translate_storage_errors("redeem_magic_link"):
            token = self.store.get_magic_link(normalized)
            if not token:
                raise InvalidCredentialError("magic_link_missing")
            if token.used:
                raise InvalidCredentialError("magic_link_used")
            if token.expires_at <= self._now():
                raise InvalidCredentialError("magic_link_expired")
            presented_hash = hash_secret(secret or "")
            if not hmac.compare_digest(presented_hash, token.token_hash):
                raise InvalidCredentialError("magic_link_mismatch")
            if not self.store.mark_magic_link_used(normalized, token.token_hash):
                # A concurrent redemption flipped the flag first.
                logger.warning("magic_link_race_lost", to=redact_email(normalized))
                raise InvalidCredentialError("magic_link_used")

            user, created = find_or_create_user(self.store, normalized)
            user = record_sign_in(self.store, user, SignInMethod.MAGIC_LINK)
        session = await self.sessions.issue(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        logger.info("magic_link_redeemed", user_id=user.id, new_user=created)
        return user, session

    async def sweep_expired(self) -> int:
        with translate_storage_errors("sweep_expired_magic_links"):
            count = self.store.delete_expired_magic_links(self._now())
        if count:
            logger.info("expired_magic_links_swept", count=count)
        return count
