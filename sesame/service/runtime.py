from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sesame.config import get_settings, reset_settings_cache
from sesame.logging import get_logger
from sesame.service.accounts import AccountLifecycleManager
from sesame.service.email import EmailService
from sesame.service.identity import FederatedIdentityResolver
from sesame.service.magic_link import MagicLinkAuthenticator
from sesame.service.oauth import OAuthClient
from sesame.service.passkeys import PasskeyAuthenticator
from sesame.service.sessions import SessionManager
from sesame.service.webauthn import WebAuthnVerifier
from sesame.storage.memory import MemoryChallengeStore, MemoryStore
from sesame.storage.postgres import PostgresStore
from sesame.storage.redis_cache import RedisChallengeStore, SyncRedisChallengeStore

logger = get_logger(__name__)

ChallengeBackend = Union[RedisChallengeStore, SyncRedisChallengeStore, MemoryChallengeStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: builds the collaborators once and wires the services."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                # Test runs keep state in-process only.
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(
                    fs_root=fs_root, encryption_key=self.settings.state_encryption_key
                )
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.challenges: ChallengeBackend = self._build_challenge_store()

        self.verifier = WebAuthnVerifier(
            rp_id=self.settings.rp_id,
            rp_name=self.settings.rp_name,
            origin=self.settings.rp_origin,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            link_ttl_minutes=self.settings.magic_link_ttl_minutes,
        )
        self.oauth = OAuthClient(self.settings, self.challenges)

        self.sessions = SessionManager(self.store, self.settings)
        self.magic_links = MagicLinkAuthenticator(self.store, self.sessions, self.settings)
        self.passkeys = PasskeyAuthenticator(
            self.store, self.challenges, self.verifier, self.sessions, self.settings
        )
        self.identities = FederatedIdentityResolver(self.store, self.sessions, self.settings)
        self.accounts = AccountLifecycleManager(self.store, self.sessions)

        logger.info(
            "runtime_initialized",
            challenge_store=type(self.challenges).__name__,
            email_configured=self.email.is_configured,
            rp_id=self.settings.rp_id,
        )

    def _build_challenge_store(self) -> ChallengeBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding the pool to a test loop
                if self.settings.test_mode:
                    store = SyncRedisChallengeStore(self.settings.redis_url)
                else:
                    store = RedisChallengeStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for passkey and OAuth challenges across workers; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; ceremony state is "
                "process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryChallengeStore()

    async def sweep(self) -> dict:
        """Delete expired sessions, magic links and in-memory challenges."""
        result = {
            "sessions": await self.sessions.sweep_expired(),
            "magic_links": await self.magic_links.sweep_expired(),
        }
        if isinstance(self.challenges, MemoryChallengeStore):
            result["challenges"] = await self.challenges.purge_expired()
        return result

    async def close(self) -> None:
        if not isinstance(self.challenges, MemoryChallengeStore):
            await self.challenges.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.challenges, SyncRedisChallengeStore):
            runtime.challenges.client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
