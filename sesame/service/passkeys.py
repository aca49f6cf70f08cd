from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from sesame.config import Settings
from sesame.logging import get_logger
from sesame.service.errors import (
    ConsistencyError,
    InternalError,
    InvalidCredentialError,
    NotFoundError,
    ReplayDetectedError,
    translate_storage_errors,
)
from sesame.service.ports import (
    AuthStore,
    ChallengeStore,
    CredentialVerificationError,
    CredentialVerifier,
)
from sesame.service.sessions import SessionManager
from sesame.service.users import record_sign_in
from sesame.service.validation import normalize_email
from sesame.storage.errors import StorageError
from sesame.storage.models import Passkey, Session, SignInMethod, User

logger = get_logger(__name__)


def registration_key(user_id: str) -> str:
    return f"reg:{user_id}"


def authentication_key(email: str) -> str:
    return f"auth:{email}"


@dataclass
class AuthenticationChallenge:
    challenge: dict
    # Hint for the client UI only; the server looks credentials up itself.
    credential_ids: List[str] = field(default_factory=list)


class PasskeyAuthenticator:
    """Runs WebAuthn registration and authentication ceremonies.

    Ceremony state produced by the verifier is kept in the challenge store
    under ``reg:{user_id}`` or ``auth:{email}`` and consumed exactly once.
    The core never looks inside it.
    """

    def __init__(
        self,
        store: AuthStore,
        challenges: ChallengeStore,
        verifier: CredentialVerifier,
        sessions: SessionManager,
        settings: Settings,
    ) -> None:
        self.store = store
        self.challenges = challenges
        self.verifier = verifier
        self.sessions = sessions
        self.challenge_ttl = settings.passkey_challenge_ttl_seconds

    async def _take_state(self, key: str) -> Optional[str]:
        try:
            return await self.challenges.take(key)
        except StorageError as exc:
            raise InternalError("challenge store unavailable") from exc

    async def _put_state(self, key: str, state: str) -> None:
        try:
            await self.challenges.store(key, state, self.challenge_ttl)
        except StorageError as exc:
            raise InternalError("challenge store unavailable") from exc

    # -- registration ------------------------------------------------------

    async def start_registration(self, user_id: str) -> dict:
        with translate_storage_errors("start_passkey_registration"):
            user = self.store.get_user(user_id)
            if not user:
                raise InvalidCredentialError("passkey_registration_user_missing")
            existing = self.store.list_passkeys(user.id)

        challenge, state = await self.verifier.begin_registration(
            user.id,
            user.email,
            user.name,
            [p.credential_id for p in existing],
        )
        await self._put_state(registration_key(user.id), state)
        logger.info("passkey_registration_started", user_id=user.id)
        return challenge

    async def finish_registration(
        self,
        user_id: str,
        response: dict,
        *,
        device_name: Optional[str] = None,
    ) -> Passkey:
        state = await self._take_state(registration_key(user_id))
        if state is None:
            raise InvalidCredentialError("passkey_registration_state_missing")
        try:
            credential = await self.verifier.finish_registration(state, response)
        except CredentialVerificationError as exc:
            logger.warning("passkey_registration_rejected", user_id=user_id, error=str(exc))
            raise InvalidCredentialError("passkey_registration_rejected") from exc

        with translate_storage_errors("finish_passkey_registration"):
            passkey = self.store.create_passkey(
                user_id,
                credential.credential_id,
                credential.public_key,
                transports=credential.transports,
                device_name=device_name,
            )
        logger.info("passkey_registered", user_id=user_id, passkey_id=passkey.id)
        return passkey

    # -- authentication ----------------------------------------------------

    async def start_authentication(self, email: str) -> AuthenticationChallenge:
        normalized = normalize_email(email or "")
        with translate_storage_errors("start_passkey_authentication"):
            user = self.store.get_user_by_email(normalized) if normalized else None
            passkeys = self.store.list_passkeys(user.id) if user else []
        # Same failure for "no such user" and "no passkeys".
        if not user or not passkeys:
            raise InvalidCredentialError("passkey_authentication_unavailable")

        challenge, state = await self.verifier.begin_authentication(passkeys)
        await self._put_state(authentication_key(user.email), state)
        logger.info("passkey_authentication_started", user_id=user.id)
        return AuthenticationChallenge(
            challenge=challenge,
            credential_ids=[p.credential_id for p in passkeys],
        )

    async def finish_authentication(
        self,
        response: dict,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Session]:
        credential_id = _credential_id_of(response)
        if not credential_id:
            raise InvalidCredentialError("passkey_credential_id_missing")

        with translate_storage_errors("finish_passkey_authentication"):
            passkey = self.store.get_passkey(credential_id)
            if not passkey:
                raise InvalidCredentialError("passkey_unknown")
            user = self.store.get_user(passkey.user_id)
        if not user:
            logger.error("passkey_user_missing", passkey_id=passkey.id, user_id=passkey.user_id)
            raise ConsistencyError(
                "passkey references a missing user", detail={"passkey_id": passkey.id}
            )

        state = await self._take_state(authentication_key(user.email))
        if state is None:
            raise InvalidCredentialError("passkey_authentication_state_missing")
        try:
            new_count = await self.verifier.finish_authentication(state, response)
        except CredentialVerificationError as exc:
            logger.warning("passkey_assertion_rejected", user_id=user.id, error=str(exc))
            raise InvalidCredentialError("passkey_assertion_rejected") from exc

        if new_count <= passkey.sign_count:
            raise _replay(passkey, user, passkey.sign_count, new_count)

        with translate_storage_errors("update_passkey_counter"):
            if not self.store.update_passkey_sign_count(
                passkey.credential_id, passkey.sign_count, new_count
            ):
                # Another assertion advanced the counter between read and write.
                current = self.store.get_passkey(passkey.credential_id)
                stored = current.sign_count if current else passkey.sign_count
                raise _replay(passkey, user, stored, new_count)
            user = record_sign_in(self.store, user, SignInMethod.PASSKEY)

        session = await self.sessions.issue(
            user.id, ip_address=ip_address, user_agent=user_agent
        )
        logger.info("passkey_authenticated", user_id=user.id, passkey_id=passkey.id)
        return user, session

    # -- management --------------------------------------------------------

    async def list_passkeys(self, user_id: str) -> List[Passkey]:
        with translate_storage_errors("list_passkeys"):
            return self.store.list_passkeys(user_id)

    async def delete_passkey(self, user_id: str, passkey_id: str) -> None:
        with translate_storage_errors("delete_passkey"):
            owned = {p.id for p in self.store.list_passkeys(user_id)}
            if passkey_id not in owned:
                raise NotFoundError("passkey not found")
            self.store.delete_passkey(passkey_id)
        logger.info("passkey_deleted", user_id=user_id, passkey_id=passkey_id)


def _credential_id_of(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    value = response.get("id") or response.get("rawId")
    return value if isinstance(value, str) and value else None


def _replay(passkey: Passkey, user: User, stored: int, presented: int) -> ReplayDetectedError:
    # Non-increasing counters mean a cloned authenticator; alert on these.
    logger.error(
        "passkey_replay_detected",
        alert=True,
        user_id=user.id,
        passkey_id=passkey.id,
        stored_count=stored,
        presented_count=presented,
    )
    return ReplayDetectedError(passkey.credential_id, stored, presented)
