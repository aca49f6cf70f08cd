from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sesame.config import Settings
from sesame.logging import get_logger
from sesame.service.errors import (
    ConsistencyError,
    InvalidCredentialError,
    translate_storage_errors,
)
from sesame.service.ports import AuthStore
from sesame.storage.errors import StorageError
from sesame.storage.models import Session, User

logger = get_logger(__name__)


class SessionManager:
    """Issues, validates, renews and revokes sessions.

    This is the only place that decides whether a session id authenticates a
    caller. Authenticators call :meth:`issue` once a credential has been
    proven; request handlers call :meth:`validate`.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.ttl = timedelta(days=settings.session_ttl_days)
        self.renewal_threshold = timedelta(days=settings.session_renewal_threshold_days)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            user_id, self.ttl, user_agent=user_agent, ip_address=ip_address
        )
        with translate_storage_errors("issue_session"):
            stored = self.store.create_session(session)
        logger.info("session_issued", user_id=user_id, expires_at=stored.expires_at.isoformat())
        return stored

    async def resolve(self, session_id: str) -> Tuple[User, Session]:
        """Return the owner and the (possibly renewed) session."""
        if not session_id:
            raise InvalidCredentialError("session_missing")
        now = self._now()
        with translate_storage_errors("validate_session"):
            session = self.store.get_session(session_id)
            if not session:
                raise InvalidCredentialError("session_unknown")
            if session.is_expired(now):
                # Expired sessions are removed, never extended.
                self.store.delete_session(session_id)
                logger.info("session_expired", user_id=session.user_id)
                raise InvalidCredentialError("session_expired")
            user = self.store.get_user(session.user_id)
        if not user:
            logger.error("session_user_missing", user_id=session.user_id)
            raise ConsistencyError(
                "session references a missing user", detail={"user_id": session.user_id}
            )

        if session.expires_at - now < self.renewal_threshold:
            new_expiry = now + self.ttl
            try:
                self.store.update_session_expiry(session.id, new_expiry)
            except StorageError as exc:
                # Renewal is best-effort; the session is still valid as stored.
                logger.warning(
                    "session_renewal_failed", user_id=user.id, error=str(exc)
                )
            else:
                session.expires_at = new_expiry
                logger.info("session_renewed", user_id=user.id)
        return user, session

    async def validate(self, session_id: str) -> User:
        user, _ = await self.resolve(session_id)
        return user

    async def verify_light(self, session_id: str) -> bool:
        """Liveness check with no renewal or cleanup side effects."""
        if not session_id:
            return False
        with translate_storage_errors("verify_session"):
            session = self.store.get_session(session_id)
        return bool(session and not session.is_expired(self._now()))

    async def logout(self, session_id: str) -> None:
        with translate_storage_errors("logout"):
            removed = self.store.delete_session(session_id)
        if removed:
            logger.info("session_logged_out")

    async def revoke_all(self, user_id: str) -> int:
        with translate_storage_errors("revoke_all_sessions"):
            count = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    async def sweep_expired(self) -> int:
        with translate_storage_errors("sweep_expired_sessions"):
            count = self.store.delete_expired_sessions(self._now())
        if count:
            logger.info("expired_sessions_swept", count=count)
        return count
