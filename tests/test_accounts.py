import pytest

from sesame.service.accounts import AccountLifecycleManager
from sesame.service.errors import (
    ConflictError,
    InternalError,
    InvalidCredentialError,
    NotFoundError,
    ValidationError,
)
from sesame.storage.errors import StorageError
from sesame.storage.models import MagicLinkToken, OAuthProvider, UserPlan, utcnow


@pytest.fixture
def accounts(store, sessions):
    return AccountLifecycleManager(store, sessions)


@pytest.fixture
def user(store):
    return store.create_user("uma@example.com", "Uma")


@pytest.mark.asyncio
async def test_get_profile(accounts, user):
    profile = await accounts.get_profile(user.id)
    assert profile.email == "uma@example.com"
    with pytest.raises(NotFoundError):
        await accounts.get_profile("ghost")


@pytest.mark.asyncio
async def test_update_name_and_phone(accounts, user):
    updated = await accounts.update_profile(user.id, name="  Uma K. ", phone="(415) 555-0100")
    assert updated.name == "Uma K."
    assert updated.phone == "+14155550100"

    cleared = await accounts.update_profile(user.id, phone="")
    assert cleared.phone is None
    assert cleared.name == "Uma K."


@pytest.mark.asyncio
async def test_update_profile_without_fields_is_noop(accounts, user):
    same = await accounts.update_profile(user.id)
    assert same.name == user.name
    assert same.updated_at == user.updated_at


@pytest.mark.asyncio
async def test_invalid_profile_values(accounts, user):
    with pytest.raises(ValidationError):
        await accounts.update_profile(user.id, name="   ")
    with pytest.raises(ValidationError):
        await accounts.update_profile(user.id, name="x" * 101)
    with pytest.raises(ValidationError):
        await accounts.update_profile(user.id, phone="12345")


@pytest.mark.asyncio
async def test_update_plan(accounts, user):
    updated = await accounts.update_plan(user.id, UserPlan.LIFETIME)
    assert updated.plan == UserPlan.LIFETIME
    with pytest.raises(NotFoundError):
        await accounts.update_plan("ghost", UserPlan.PLUS)


@pytest.mark.asyncio
async def test_update_email_revokes_all_sessions(accounts, sessions, user):
    first = await sessions.issue(user.id)
    second = await sessions.issue(user.id)

    updated = await accounts.update_email(user.id, " Uma.New@Example.com ")

    assert updated.email == "uma.new@example.com"
    for session in (first, second):
        with pytest.raises(InvalidCredentialError):
            await sessions.validate(session.id)


@pytest.mark.asyncio
async def test_update_email_rejects_taken_or_invalid(accounts, store, user):
    store.create_user("taken@example.com", "Taken")
    with pytest.raises(ConflictError):
        await accounts.update_email(user.id, "taken@example.com")
    with pytest.raises(ValidationError):
        await accounts.update_email(user.id, "nope")
    # Re-saving the current address is allowed.
    same = await accounts.update_email(user.id, "uma@example.com")
    assert same.email == "uma@example.com"


@pytest.mark.asyncio
async def test_delete_account_cascades(accounts, store, sessions, user):
    other = store.create_user("vic@example.com", "Vic")
    await sessions.issue(user.id)
    kept_session = await sessions.issue(other.id)
    store.create_oauth_identity(user.id, OAuthProvider.GOOGLE, "g-1")
    store.create_passkey(user.id, "cred-a", b"pk")
    store.create_passkey(other.id, "cred-b", b"pk")
    store.save_magic_link(
        MagicLinkToken(email=user.email, token_hash="h", expires_at=utcnow())
    )

    await accounts.delete_account(user.id)

    assert store.get_user(user.id) is None
    assert store.get_user_by_email(user.email) is None
    assert all(s.user_id != user.id for s in store.sessions.values())
    assert store.list_oauth_identities(user.id) == []
    assert store.list_passkeys(user.id) == []
    assert store.get_magic_link(user.email) is None
    assert store.get_session(kept_session.id) is not None
    assert store.get_passkey("cred-b") is not None


@pytest.mark.asyncio
async def test_delete_missing_account_is_noop(accounts, user):
    await accounts.delete_account(user.id)
    await accounts.delete_account(user.id)


@pytest.mark.asyncio
async def test_delete_failure_reports_step_and_can_resume(accounts, store, user, monkeypatch):
    store.create_passkey(user.id, "cred-a", b"pk")
    original = store.delete_user_passkeys

    def failing(user_id):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "delete_user_passkeys", failing)
    with pytest.raises(InternalError) as excinfo:
        await accounts.delete_account(user.id)
    assert excinfo.value.detail == {"step": "delete_passkeys"}
    assert store.get_user(user.id) is not None

    monkeypatch.setattr(store, "delete_user_passkeys", original)
    await accounts.delete_account(user.id)
    assert store.get_user(user.id) is None
    assert store.get_passkey("cred-a") is None
