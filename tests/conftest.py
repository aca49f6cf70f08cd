import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sesame_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Ceremony state stays in-process unless a test Redis is provided explicitly
os.environ.setdefault("REDIS_URL", "")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sesame.config import Settings  # noqa: E402
from sesame.service.ports import CredentialVerificationError, RegisteredCredential  # noqa: E402
from sesame.service.runtime import reset_runtime_for_tests  # noqa: E402
from sesame.service.sessions import SessionManager  # noqa: E402
from sesame.storage.memory import MemoryChallengeStore, MemoryStore  # noqa: E402


class FakeVerifier:
    """Credential verifier double.

    Responses are plain dicts: ``{"id": ..., "sign_count": n}`` for
    assertions and ``{"id": ...}`` for registrations. ``{"reject": True}``
    makes the ceremony fail.
    """

    def __init__(self):
        self.issued_states = []
        self.received_states = []

    async def begin_registration(self, user_id, email, name, exclude_credential_ids=()):
        state = json.dumps(
            {"kind": "registration", "user_id": user_id, "n": len(self.issued_states)}
        )
        self.issued_states.append(state)
        return {"challenge": f"reg-{len(self.issued_states)}", "exclude": list(exclude_credential_ids)}, state

    async def finish_registration(self, state, response):
        self.received_states.append(state)
        if response.get("reject"):
            raise CredentialVerificationError("attestation rejected")
        return RegisteredCredential(
            credential_id=response["id"],
            public_key=f"pk-{response['id']}".encode(),
            transports=["internal"],
        )

    async def begin_authentication(self, passkeys):
        state = json.dumps(
            {"kind": "authentication", "credentials": [p.credential_id for p in passkeys]}
        )
        self.issued_states.append(state)
        return {"challenge": f"auth-{len(self.issued_states)}"}, state

    async def finish_authentication(self, state, response):
        self.received_states.append(state)
        offered = json.loads(state)["credentials"]
        if response.get("reject") or response.get("id") not in offered:
            raise CredentialVerificationError("assertion rejected")
        return int(response["sign_count"])


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(test_mode=True, use_memory_store=True, redis_url=None)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def challenges():
    return MemoryChallengeStore()


@pytest.fixture
def sessions(store, settings):
    return SessionManager(store, settings)


@pytest.fixture
def verifier():
    return FakeVerifier()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
