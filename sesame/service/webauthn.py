"""Credential verifier backed by py_webauthn.

Ceremony state is a small versioned JSON document. The authenticators store
it verbatim in the challenge store and hand it back unchanged.
"""

from __future__ import annotations

import json
from typing import List, Sequence, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from sesame.logging import get_logger
from sesame.service.ports import CredentialVerificationError, RegisteredCredential
from sesame.storage.models import Passkey

logger = get_logger(__name__)

STATE_VERSION = 1


def _load_state(state: str, kind: str) -> dict:
    try:
        data = json.loads(state)
    except (TypeError, ValueError) as exc:
        raise CredentialVerificationError("ceremony state is not valid JSON") from exc
    if not isinstance(data, dict) or data.get("v") != STATE_VERSION or data.get("kind") != kind:
        raise CredentialVerificationError("unsupported ceremony state")
    return data


class WebAuthnVerifier:
    def __init__(self, *, rp_id: str, rp_name: str, origin: str, timeout_ms: int = 60000) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout_ms = timeout_ms

    async def begin_registration(
        self,
        user_id: str,
        email: str,
        name: str,
        exclude_credential_ids: Sequence[str] = (),
    ) -> Tuple[dict, str]:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=email,
            user_display_name=name,
            timeout=self.timeout_ms,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(cid))
                for cid in exclude_credential_ids
            ],
        )
        state = {
            "v": STATE_VERSION,
            "kind": "registration",
            "challenge": bytes_to_base64url(options.challenge),
            "user_id": user_id,
        }
        return json.loads(options_to_json(options)), json.dumps(state)

    async def finish_registration(self, state: str, response: dict) -> RegisteredCredential:
        data = _load_state(state, "registration")
        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(data["challenge"]),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except (WebAuthnException, KeyError, ValueError) as exc:
            raise CredentialVerificationError(str(exc)) from exc
        return RegisteredCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes(verified.credential_public_key),
            transports=_transports_of(response),
        )

    async def begin_authentication(self, passkeys: Sequence[Passkey]) -> Tuple[dict, str]:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(id=base64url_to_bytes(p.credential_id))
                for p in passkeys
            ],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        state = {
            "v": STATE_VERSION,
            "kind": "authentication",
            "challenge": bytes_to_base64url(options.challenge),
            "credentials": {
                p.credential_id: bytes_to_base64url(p.public_key) for p in passkeys
            },
        }
        return json.loads(options_to_json(options)), json.dumps(state)

    async def finish_authentication(self, state: str, response: dict) -> int:
        data = _load_state(state, "authentication")
        credential_id = response.get("id") if isinstance(response, dict) else None
        public_key = data.get("credentials", {}).get(credential_id or "")
        if not public_key:
            raise CredentialVerificationError("credential was not offered in this ceremony")
        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(data["challenge"]),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(public_key),
                # The library's own counter check is skipped; the caller
                # enforces strict monotonicity against stored state.
                credential_current_sign_count=0,
            )
        except (WebAuthnException, KeyError, ValueError) as exc:
            raise CredentialVerificationError(str(exc)) from exc
        return int(verified.new_sign_count)


def _transports_of(response: dict) -> List[str]:
    inner = response.get("response") if isinstance(response, dict) else None
    transports = inner.get("transports") if isinstance(inner, dict) else None
    if not isinstance(transports, list):
        return []
    return [str(t) for t in transports]
