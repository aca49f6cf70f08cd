from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        phone TEXT,
        plan TEXT NOT NULL DEFAULT 'free_trial',
        last_sign_in_at TIMESTAMPTZ,
        last_sign_in_method TEXT,
        last_sign_in_provider TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_identity (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        provider_email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS passkey (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        credential_id TEXT NOT NULL UNIQUE,
        public_key BYTEA NOT NULL,
        sign_count BIGINT NOT NULL DEFAULT 0,
        transports TEXT[] NOT NULL DEFAULT '{}',
        device_name TEXT,
        last_used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS passkey_user_idx ON passkey (user_id)",
    """
    CREATE TABLE IF NOT EXISTS magic_link_token (
        email TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

# Columns update_user may touch; values are bound as parameters.
_USER_COLUMNS = (
    "name",
    "email",
    "phone",
    "plan",
    "last_sign_in_at",
    "last_sign_in_method",
    "last_sign_in_provider",
)


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class PostgresStore:
    """Postgres-backed repository for users, sessions and credentials."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(
        self, operation: str, *, conflict_message: str = "duplicate record"
    ) -> Iterator[psycopg.Connection]:
        try:
            with self._connect() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            raise ConstraintViolation(
                conflict_message, {"constraint": constraint, "operation": operation}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced record does not exist", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StorageError("database operation failed", {"operation": operation}) from exc

    def _ensure_schema(self) -> None:
        with self._transaction("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._transaction("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            phone=row.get("phone"),
            plan=UserPlan(row.get("plan") or UserPlan.FREE_TRIAL.value),
            last_sign_in_at=row.get("last_sign_in_at"),
            last_sign_in_method=(
                SignInMethod(row["last_sign_in_method"])
                if row.get("last_sign_in_method")
                else None
            ),
            last_sign_in_provider=(
                OAuthProvider(row["last_sign_in_provider"])
                if row.get("last_sign_in_provider")
                else None
            ),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    @staticmethod
    def _identity_from_row(row: dict) -> OAuthIdentity:
        return OAuthIdentity(
            id=row["id"],
            user_id=row["user_id"],
            provider=OAuthProvider(row["provider"]),
            provider_user_id=row["provider_user_id"],
            provider_email=row.get("provider_email"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _passkey_from_row(row: dict) -> Passkey:
        return Passkey(
            id=row["id"],
            user_id=row["user_id"],
            credential_id=row["credential_id"],
            public_key=bytes(row["public_key"]),
            sign_count=int(row["sign_count"]),
            transports=list(row.get("transports") or []),
            device_name=row.get("device_name"),
            last_used_at=row.get("last_used_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _magic_link_from_row(row: dict) -> MagicLinkToken:
        return MagicLinkToken(
            email=row["email"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self, email: str, name: str, *, plan: UserPlan = UserPlan.FREE_TRIAL
    ) -> User:
        user = User.new(email, name, plan=plan)
        with self._transaction("create_user", conflict_message="email already exists") as conn:
            conn.execute(
                """
                INSERT INTO app_user (id, email, name, plan, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (user.id, user.email, user.name, user.plan.value, user.created_at, user.updated_at),
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._transaction("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._transaction("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        columns = [col for col in _USER_COLUMNS if col in fields]
        assignments = ", ".join(f"{col} = %s" for col in columns + ["updated_at"])
        params = [_db_value(fields[col]) for col in columns] + [utcnow(), user_id]
        with self._transaction("update_user", conflict_message="email already exists") as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._transaction("delete_user") as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        return cur.rowcount > 0

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._transaction("create_session") as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.created_at,
                    session.expires_at,
                    session.user_agent,
                    session.ip_address,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> bool:
        with self._transaction("update_session_expiry") as conn:
            cur = conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s",
                (expires_at, session_id),
            )
        return cur.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self._transaction("delete_session") as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        return cur.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._transaction("delete_user_sessions") as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
        return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._transaction("delete_expired_sessions") as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
        return cur.rowcount

    # -- oauth identities --------------------------------------------------

    def create_oauth_identity(
        self,
        user_id: str,
        provider: OAuthProvider,
        provider_user_id: str,
        provider_email: Optional[str] = None,
    ) -> OAuthIdentity:
        identity = OAuthIdentity(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=provider,
            provider_user_id=provider_user_id,
            provider_email=provider_email,
        )
        with self._transaction(
            "create_oauth_identity", conflict_message="oauth identity already linked"
        ) as conn:
            conn.execute(
                """
                INSERT INTO oauth_identity (id, user_id, provider, provider_user_id, provider_email, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    identity.id,
                    identity.user_id,
                    identity.provider.value,
                    identity.provider_user_id,
                    identity.provider_email,
                    identity.created_at,
                ),
            )
        return identity

    def get_oauth_identity(
        self, provider: OAuthProvider, provider_user_id: str
    ) -> Optional[OAuthIdentity]:
        with self._transaction("get_oauth_identity") as conn:
            row = conn.execute(
                "SELECT * FROM oauth_identity WHERE provider = %s AND provider_user_id = %s",
                (provider.value, provider_user_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def list_oauth_identities(self, user_id: str) -> List[OAuthIdentity]:
        with self._transaction("list_oauth_identities") as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_identity WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._identity_from_row(row) for row in rows]

    def delete_user_oauth_identities(self, user_id: str) -> int:
        with self._transaction("delete_user_oauth_identities") as conn:
            cur = conn.execute("DELETE FROM oauth_identity WHERE user_id = %s", (user_id,))
        return cur.rowcount

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
        passkey = Passkey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            credential_id=credential_id,
            public_key=bytes(public_key),
            sign_count=0,
            transports=list(transports or []),
            device_name=device_name,
        )
        with self._transaction(
            "create_passkey", conflict_message="credential already registered"
        ) as conn:
            conn.execute(
                """
                INSERT INTO passkey (id, user_id, credential_id, public_key, sign_count, transports, device_name, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    passkey.id,
                    passkey.user_id,
                    passkey.credential_id,
                    passkey.public_key,
                    passkey.sign_count,
                    passkey.transports,
                    passkey.device_name,
                    passkey.created_at,
                ),
            )
        return passkey

    def get_passkey(self, credential_id: str) -> Optional[Passkey]:
        with self._transaction("get_passkey") as conn:
            row = conn.execute(
                "SELECT * FROM passkey WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return self._passkey_from_row(row) if row else None

    def list_passkeys(self, user_id: str) -> List[Passkey]:
        with self._transaction("list_passkeys") as conn:
            rows = conn.execute(
                "SELECT * FROM passkey WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._passkey_from_row(row) for row in rows]

    def update_passkey_sign_count(
        self, credential_id: str, expected_count: int, new_count: int
    ) -> bool:
        # Compare-and-set: a concurrent use that already advanced the counter
        # leaves zero matching rows.
        with self._transaction("update_passkey_sign_count") as conn:
            cur = conn.execute(
                """
                UPDATE passkey
                SET sign_count = %s, last_used_at = now()
                WHERE credential_id = %s AND sign_count = %s
                """,
                (new_count, credential_id, expected_count),
            )
        return cur.rowcount == 1

    def delete_passkey(self, passkey_id: str) -> bool:
        with self._transaction("delete_passkey") as conn:
            cur = conn.execute("DELETE FROM passkey WHERE id = %s", (passkey_id,))
        return cur.rowcount > 0

    def delete_user_passkeys(self, user_id: str) -> int:
        with self._transaction("delete_user_passkeys") as conn:
            cur = conn.execute("DELETE FROM passkey WHERE user_id = %s", (user_id,))
        return cur.rowcount

    # -- magic links -------------------------------------------------------

    def save_magic_link(self, token: MagicLinkToken) -> None:
        with self._transaction("save_magic_link") as conn:
            conn.execute(
                """
                INSERT INTO magic_link_token (email, token_hash, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (email) DO UPDATE
                SET token_hash = EXCLUDED.token_hash,
                    expires_at = EXCLUDED.expires_at,
                    used = EXCLUDED.used,
                    created_at = EXCLUDED.created_at
                """,
                (token.email, token.token_hash, token.expires_at, token.used, token.created_at),
            )

    def get_magic_link(self, email: str) -> Optional[MagicLinkToken]:
        with self._transaction("get_magic_link") as conn:
            row = conn.execute(
                "SELECT * FROM magic_link_token WHERE email = %s", (email,)
            ).fetchone()
        return self._magic_link_from_row(row) if row else None

    def mark_magic_link_used(self, email: str, token_hash: str) -> bool:
        with self._transaction("mark_magic_link_used") as conn:
            cur = conn.execute(
                """
                UPDATE magic_link_token
                SET used = TRUE
                WHERE email = %s AND token_hash = %s AND used = FALSE
                """,
                (email, token_hash),
            )
        return cur.rowcount == 1

    def delete_magic_link(self, email: str) -> bool:
        with self._transaction("delete_magic_link") as conn:
            cur = conn.execute("DELETE FROM magic_link_token WHERE email = %s", (email,))
        return cur.rowcount > 0

    def delete_expired_magic_links(self, now: datetime) -> int:
        with self._transaction("delete_expired_magic_links") as conn:
            cur = conn.execute(
                "DELETE FROM magic_link_token WHERE expires_at <= %s", (now,)
            )
        return cur.rowcount
