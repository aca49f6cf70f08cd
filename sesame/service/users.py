"""User-graph helpers shared by the authenticators."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple

from sesame.logging import get_logger
from sesame.service.errors import ConsistencyError
from sesame.service.ports import AuthStore
from sesame.service.validation import name_from_email
from sesame.storage.errors import ConstraintViolation
from sesame.storage.models import OAuthProvider, SignInMethod, User, UserPlan

logger = get_logger(__name__)


def find_or_create_user(store: AuthStore, email: str) -> Tuple[User, bool]:
    """Return the user owning ``email``, creating a FreeTrial account if needed.

    The second element is True when the account was created by this call.
    Email uniqueness is enforced by the store; losing the creation race to a
    concurrent request yields the winner's record.
    """
    existing = store.get_user_by_email(email)
    if existing:
        return existing, False
    try:
        user = store.create_user(email, name_from_email(email), plan=UserPlan.FREE_TRIAL)
    except ConstraintViolation:
        winner = store.get_user_by_email(email)
        if not winner:
            raise
        return winner, False
    logger.info("user_created", user_id=user.id)
    return user, True


def record_sign_in(
    store: AuthStore,
    user: User,
    method: SignInMethod,
    provider: Optional[OAuthProvider] = None,
) -> User:
    updated = store.update_user(
        user.id,
        last_sign_in_at=datetime.now(timezone.utc),
        last_sign_in_method=method,
        last_sign_in_provider=provider,
    )
    if not updated:
        raise ConsistencyError("user disappeared during sign-in", detail={"user_id": user.id})
    return updated
