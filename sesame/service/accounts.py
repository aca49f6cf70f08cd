from __future__ import annotations

from typing import Any, Optional

from sesame.logging import get_logger
from sesame.service.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    ServiceError,
    translate_storage_errors,
)
from sesame.service.ports import AuthStore
from sesame.service.sessions import SessionManager
from sesame.service.validation import (
    clean_phone_number,
    validate_display_name,
    validate_email,
)
from sesame.storage.errors import StorageError
from sesame.storage.models import User, UserPlan

logger = get_logger(__name__)

_UNSET = object()


class AccountLifecycleManager:
    """Profile, plan and email changes plus cascading account deletion."""

    def __init__(self, store: AuthStore, sessions: SessionManager) -> None:
        self.store = store
        self.sessions = sessions

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def get_profile(self, user_id: str) -> User:
        with translate_storage_errors("get_profile"):
            return self._require_user(user_id)

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Any = _UNSET,
    ) -> User:
        """Update display name and/or phone; an empty phone clears it."""
        fields: dict = {}
        if name is not None:
            fields["name"] = validate_display_name(name)
        if phone is not _UNSET:
            fields["phone"] = clean_phone_number(phone) if phone else None
        with translate_storage_errors("update_profile"):
            user = self._require_user(user_id)
            if not fields:
                return user
            updated = self.store.update_user(user.id, **fields)
        if not updated:
            raise NotFoundError("user not found")
        logger.info("profile_updated", user_id=user_id, fields=sorted(fields))
        return updated

    async def update_plan(self, user_id: str, plan: UserPlan) -> User:
        plan = UserPlan(plan)
        with translate_storage_errors("update_plan"):
            self._require_user(user_id)
            updated = self.store.update_user(user_id, plan=plan)
        if not updated:
            raise NotFoundError("user not found")
        logger.info("plan_updated", user_id=user_id, plan=plan.value)
        return updated

    async def update_email(self, user_id: str, new_email: str) -> User:
        """Change the account email and force re-authentication everywhere."""
        email = validate_email(new_email)
        with translate_storage_errors("update_email"):
            user = self._require_user(user_id)
            owner = self.store.get_user_by_email(email)
            if owner and owner.id != user.id:
                raise ConflictError("email already in use", detail={"field": "email"})
            updated = self.store.update_user(user.id, email=email)
        if not updated:
            raise NotFoundError("user not found")
        revoked = await self.sessions.revoke_all(user.id)
        logger.info("email_updated", user_id=user.id, sessions_revoked=revoked)
        return updated

    async def delete_account(self, user_id: str) -> None:
        """Delete the user and everything hanging off it.

        Steps run in dependency order and are each idempotent. A failure
        part-way leaves earlier deletions in place; calling again finishes
        the job.
        """
        step = "load_user"
        try:
            user = self.store.get_user(user_id)
            if not user:
                logger.info("account_delete_noop", user_id=user_id)
                return
            step = "revoke_sessions"
            await self.sessions.revoke_all(user.id)
            step = "delete_oauth_identities"
            identities = self.store.delete_user_oauth_identities(user.id)
            step = "delete_passkeys"
            passkeys = self.store.delete_user_passkeys(user.id)
            step = "delete_magic_links"
            self.store.delete_magic_link(user.email)
            step = "delete_user"
            self.store.delete_user(user.id)
        except (StorageError, ServiceError) as exc:
            logger.error(
                "account_delete_failed",
                user_id=user_id,
                step=step,
                error_type=type(exc).__name__,
            )
            raise InternalError(
                "account deletion incomplete", detail={"step": step}
            ) from exc
        logger.info(
            "account_deleted",
            user_id=user_id,
            identities=identities,
            passkeys=passkeys,
        )
