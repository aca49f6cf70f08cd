from __future__ import annotations

import base64
import hashlib
import json
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from sesame.logging import get_logger
from sesame.storage.errors import ConstraintViolation, StorageError
from sesame.storage.models import (
    MagicLinkToken,
    OAuthIdentity,
    OAuthProvider,
    Passkey,
    Session,
    SignInMethod,
    User,
    UserPlan,
    utcnow,
)

_USER_FIELDS = {
    "name",
    "email",
    "phone",
    "plan",
    "last_sign_in_at",
    "last_sign_in_method",
    "last_sign_in_provider",
}


class MemoryStore:
    """In-process store for tests and single-node development.

    When ``fs_root`` is given the whole state is snapshotted to
    ``{fs_root}/state/auth_state.json`` after each write and reloaded on start.
    Session ids are bearer secrets, so the snapshot is Fernet-encrypted when an
    ``encryption_key`` is configured.
    """

    def __init__(
        self, fs_root: str | None = None, *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.identities: Dict[str, OAuthIdentity] = {}
        self.passkeys: Dict[str, Passkey] = {}
        self.magic_links: Dict[str, MagicLinkToken] = {}
        # RLock so compound operations can call the single-entity helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._cipher = (
            Fernet(self._derive_cipher_key(encryption_key)) if encryption_key else None
        )
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    # -- users -------------------------------------------------------------

    def create_user(
        self, email: str, name: str, *, plan: UserPlan = UserPlan.FREE_TRIAL
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, name, plan=plan)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email and any(
                u.email == new_email and u.id != user_id for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            self.sessions[session_id] = replace(sess, expires_at=expires_at)
            self._persist_state()
            return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- oauth identities --------------------------------------------------

    def create_oauth_identity(
        self,
        user_id: str,
        provider: OAuthProvider,
        provider_user_id: str,
        provider_email: Optional[str] = None,
    ) -> OAuthIdentity:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.identities.values():
                if existing.provider == provider and existing.provider_user_id == provider_user_id:
                    raise ConstraintViolation(
                        "oauth identity already linked",
                        {"provider": provider.value},
                    )
            identity = OAuthIdentity(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider=provider,
                provider_user_id=provider_user_id,
                provider_email=provider_email,
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return replace(identity)

    def get_oauth_identity(
        self, provider: OAuthProvider, provider_user_id: str
    ) -> Optional[OAuthIdentity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.provider == provider and identity.provider_user_id == provider_user_id:
                    return replace(identity)
            return None

    def list_oauth_identities(self, user_id: str) -> List[OAuthIdentity]:
        with self._data_lock:
            return [
                replace(i)
                for i in sorted(self.identities.values(), key=lambda i: i.created_at)
                if i.user_id == user_id
            ]

    def delete_user_oauth_identities(self, user_id: str) -> int:
        with self._data_lock:
            stale = [iid for iid, i in self.identities.items() if i.user_id == user_id]
            for iid in stale:
                self.identities.pop(iid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- passkeys ----------------------------------------------------------

    def create_passkey(
        self,
        user_id: str,
        credential_id: str,
        public_key: bytes,
        *,
        transports: Optional[List[str]] = None,
        device_name: Optional[str] = None,
    ) -> Passkey:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(p.credential_id == credential_id for p in self.passkeys.values()):
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            passkey = Passkey(
                id=str(uuid.uuid4()),
                user_id=user_id,
                credential_id=credential_id,
                public_key=bytes(public_key),
                sign_count=0,
                transports=list(transports or []),
                device_name=device_name,
            )
            self.passkeys[passkey.id] = passkey
            self._persist_state()
            return replace(passkey)

    def get_passkey(self, credential_id: str) -> Optional[Passkey]:
        with self._data_lock:
            for passkey in self.passkeys.values():
                if passkey.credential_id == credential_id:
                    return replace(passkey)
            return None

    def list_passkeys(self, user_id: str) -> List[Passkey]:
        with self._data_lock:
            return [
                replace(p)
                for p in sorted(self.passkeys.values(), key=lambda p: p.created_at)
                if p.user_id == user_id
            ]

    def update_passkey_sign_count(
        self, credential_id: str, expected_count: int, new_count: int
    ) -> bool:
        with self._data_lock:
            for pid, passkey in self.passkeys.items():
                if passkey.credential_id != credential_id:
                    continue
                if passkey.sign_count != expected_count:
                    return False
                self.passkeys[pid] = replace(
                    passkey, sign_count=new_count, last_used_at=utcnow()
                )
                self._persist_state()
                return True
            return False

    def delete_passkey(self, passkey_id: str) -> bool:
        with self._data_lock:
            removed = self.passkeys.pop(passkey_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_passkeys(self, user_id: str) -> int:
        with self._data_lock:
            stale = [pid for pid, p in self.passkeys.items() if p.user_id == user_id]
            for pid in stale:
                self.passkeys.pop(pid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- magic links -------------------------------------------------------

    def save_magic_link(self, token: MagicLinkToken) -> None:
        with self._data_lock:
            self.magic_links[token.email] = replace(token)
            self._persist_state()

    def get_magic_link(self, email: str) -> Optional[MagicLinkToken]:
        with self._data_lock:
            token = self.magic_links.get(email)
            return replace(token) if token else None

    def mark_magic_link_used(self, email: str, token_hash: str) -> bool:
        with self._data_lock:
            token = self.magic_links.get(email)
            if not token or token.used or token.token_hash != token_hash:
                return False
            self.magic_links[email] = replace(token, used=True)
            self._persist_state()
            return True

    def delete_magic_link(self, email: str) -> bool:
        with self._data_lock:
            removed = self.magic_links.pop(email, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_expired_magic_links(self, now: datetime) -> int:
        with self._data_lock:
            stale = [e for e, t in self.magic_links.items() if t.expires_at <= now]
            for email in stale:
                self.magic_links.pop(email, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_state.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "phone": user.phone,
            "plan": user.plan.value,
            "last_sign_in_at": self._serialize_datetime(user.last_sign_in_at),
            "last_sign_in_method": (
                user.last_sign_in_method.value if user.last_sign_in_method else None
            ),
            "last_sign_in_provider": (
                user.last_sign_in_provider.value if user.last_sign_in_provider else None
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name") or data["email"].partition("@")[0],
            phone=data.get("phone"),
            plan=UserPlan(data.get("plan", UserPlan.FREE_TRIAL.value)),
            last_sign_in_at=self._deserialize_datetime(data.get("last_sign_in_at")),
            last_sign_in_method=(
                SignInMethod(data["last_sign_in_method"])
                if data.get("last_sign_in_method")
                else None
            ),
            last_sign_in_provider=(
                OAuthProvider(data["last_sign_in_provider"])
                if data.get("last_sign_in_provider")
                else None
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "user_agent": sess.user_agent,
            "ip_address": sess.ip_address,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )

    def _serialize_identity(self, identity: OAuthIdentity) -> dict:
        return {
            "id": identity.id,
            "user_id": identity.user_id,
            "provider": identity.provider.value,
            "provider_user_id": identity.provider_user_id,
            "provider_email": identity.provider_email,
            "created_at": self._serialize_datetime(identity.created_at),
        }

    def _deserialize_identity(self, data: dict) -> OAuthIdentity:
        return OAuthIdentity(
            id=data["id"],
            user_id=data["user_id"],
            provider=OAuthProvider(data["provider"]),
            provider_user_id=data["provider_user_id"],
            provider_email=data.get("provider_email"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_passkey(self, passkey: Passkey) -> dict:
        return {
            "id": passkey.id,
            "user_id": passkey.user_id,
            "credential_id": passkey.credential_id,
            "public_key": base64.b64encode(passkey.public_key).decode("ascii"),
            "sign_count": passkey.sign_count,
            "transports": passkey.transports,
            "device_name": passkey.device_name,
            "last_used_at": self._serialize_datetime(passkey.last_used_at),
            "created_at": self._serialize_datetime(passkey.created_at),
        }

    def _deserialize_passkey(self, data: dict) -> Passkey:
        return Passkey(
            id=data["id"],
            user_id=data["user_id"],
            credential_id=data["credential_id"],
            public_key=base64.b64decode(data["public_key"]),
            sign_count=int(data.get("sign_count", 0)),
            transports=list(data.get("transports") or []),
            device_name=data.get("device_name"),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_magic_link(self, token: MagicLinkToken) -> dict:
        return {
            "email": token.email,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "used": token.used,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_magic_link(self, data: dict) -> MagicLinkToken:
        return MagicLinkToken(
            email=data["email"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=bool(data.get("used", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "passkeys": [self._serialize_passkey(p) for p in self.passkeys.values()],
            "magic_links": [
                self._serialize_magic_link(t) for t in self.magic_links.values()
            ],
        }
        payload = json.dumps(state, indent=2).encode()
        if self._cipher:
            payload = self._cipher.encrypt(payload)
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_bytes(payload)
            tmp_path.replace(path)
        except OSError as exc:
            raise StorageError("failed to persist in-memory state", {"path": str(path)}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return False
        if self._cipher:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken as exc:
                self.logger.error("memory_state_decrypt_failed", path=str(path))
                raise StorageError("cannot decrypt persisted state", {"path": str(path)}) from exc
        data = json.loads(raw)
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.passkeys = {
            p["id"]: self._deserialize_passkey(p) for p in data.get("passkeys", [])
        }
        self.magic_links = {
            t["email"]: self._deserialize_magic_link(t) for t in data.get("magic_links", [])
        }
        self.logger.info(
            "memory_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            passkeys=len(self.passkeys),
        )
        return True


class MemoryChallengeStore:
    """Process-local challenge store with per-entry expiry.

    Expired entries are evicted lazily on access and by ``purge_expired``.
    Only suitable for a single worker process.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        state, deadline = entry
        if deadline <= self._clock():
            self._entries.pop(key, None)
            return None
        return state

    async def store(self, key: str, state: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (state, self._clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def take(self, key: str) -> Optional[str]:
        with self._lock:
            state = self._live(key)
            self._entries.pop(key, None)
            return state

    async def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [k for k, (_, deadline) in self._entries.items() if deadline <= now]
            for key in stale:
                self._entries.pop(key, None)
            return len(stale)
