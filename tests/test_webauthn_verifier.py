import json

import pytest

from sesame.service.ports import CredentialVerificationError
from sesame.service.webauthn import WebAuthnVerifier
from sesame.storage.models import Passkey


@pytest.fixture
def webauthn():
    return WebAuthnVerifier(rp_id="localhost", rp_name="Sesame", origin="http://localhost:8000")


@pytest.mark.asyncio
async def test_registration_options_and_state(webauthn):
    options, state = await webauthn.begin_registration(
        "user-1", "a@example.com", "A", exclude_credential_ids=["Y3JlZC1h"]
    )

    assert options["rp"]["id"] == "localhost"
    assert options["user"]["name"] == "a@example.com"
    assert options["excludeCredentials"][0]["id"] == "Y3JlZC1h"
    data = json.loads(state)
    assert data["kind"] == "registration"
    assert data["user_id"] == "user-1"
    assert data["challenge"] == options["challenge"]


@pytest.mark.asyncio
async def test_authentication_state_lists_offered_credentials(webauthn):
    passkey = Passkey(id="p1", user_id="u1", credential_id="Y3JlZC1h", public_key=b"\x01\x02")

    options, state = await webauthn.begin_authentication([passkey])

    assert options["allowCredentials"][0]["id"] == "Y3JlZC1h"
    data = json.loads(state)
    assert data["kind"] == "authentication"
    assert set(data["credentials"]) == {"Y3JlZC1h"}


@pytest.mark.asyncio
async def test_state_of_wrong_kind_is_rejected(webauthn):
    _, auth_state = await webauthn.begin_authentication([])
    with pytest.raises(CredentialVerificationError):
        await webauthn.finish_registration(auth_state, {"id": "x"})
    with pytest.raises(CredentialVerificationError):
        await webauthn.finish_registration("not json", {"id": "x"})


@pytest.mark.asyncio
async def test_malformed_attestation_is_rejected(webauthn):
    _, state = await webauthn.begin_registration("user-1", "a@example.com", "A")
    with pytest.raises(CredentialVerificationError):
        await webauthn.finish_registration(state, {"id": "x", "response": {}})


@pytest.mark.asyncio
async def test_assertion_for_credential_not_offered(webauthn):
    passkey = Passkey(id="p1", user_id="u1", credential_id="Y3JlZC1h", public_key=b"\x01")
    _, state = await webauthn.begin_authentication([passkey])
    with pytest.raises(CredentialVerificationError):
        await webauthn.finish_authentication(state, {"id": "b3RoZXI", "response": {}})
