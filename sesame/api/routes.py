from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Form, Header, Request, Response

from sesame.api.schemas import (
    AuthResponse,
    EmailUpdateRequest,
    Envelope,
    MagicLinkRequest,
    MagicLinkVerifyRequest,
    OAuthIdentityResponse,
    OAuthLinkRequest,
    OAuthStartResponse,
    PasskeyListResponse,
    PasskeyLoginFinishRequest,
    PasskeyLoginStartRequest,
    PasskeyLoginStartResponse,
    PasskeyRegisterFinishRequest,
    PasskeyResponse,
    ProfileUpdateRequest,
    SessionResponse,
    UserResponse,
)
from sesame.logging import get_logger, redact_email
from sesame.service.errors import InvalidCredentialError, NotFoundError
from sesame.service.runtime import get_runtime
from sesame.storage.models import OAuthProvider, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"


@dataclass
class Principal:
    user: User
    session: Session


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def get_principal(
    authorization: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> Principal:
    # An explicit bearer token takes precedence over the cookie.
    session_id = _bearer_token(authorization) or session_cookie
    if not session_id:
        raise InvalidCredentialError("session_missing")
    user, session = await get_runtime().sessions.resolve(session_id)
    return Principal(user=user, session=session)


def _provider_or_404(provider: str) -> OAuthProvider:
    try:
        return OAuthProvider(provider)
    except ValueError:
        raise NotFoundError("unknown provider", detail={"provider": provider}) from None


def _apply_session_cookie(response: Response, session: Session) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=get_runtime().settings.cookie_secure,
        samesite="lax",
    )


def _signed_in(response: Response, user: User, session: Session) -> Envelope:
    _apply_session_cookie(response, session)
    return Envelope(status="ok", data=AuthResponse.build(user, session))


# -- magic links -------------------------------------------------------------


@router.post("/auth/magic-link/request", response_model=Envelope, status_code=202, tags=["auth"])
async def request_magic_link(body: MagicLinkRequest):
    """Email a one-time sign-in link.

    Always answers 202 so the response does not reveal whether the address
    belongs to an account.
    """
    runtime = get_runtime()
    secret = await runtime.magic_links.issue(body.email)
    sent = await asyncio.to_thread(runtime.email.send_magic_link, body.email, secret)
    if not sent:
        logger.warning("magic_link_delivery_failed", to=redact_email(body.email))
    return Envelope(status="ok", data={"message": "check your email for a sign-in link"})


@router.post("/auth/magic-link/verify", response_model=Envelope, tags=["auth"])
async def verify_magic_link(body: MagicLinkVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    user, session = await runtime.magic_links.redeem(
        body.email, body.token, **_client_meta(request)
    )
    return _signed_in(response, user, session)


# -- passkeys ----------------------------------------------------------------


@router.post("/auth/passkey/register/start", response_model=Envelope, tags=["passkeys"])
async def passkey_register_start(principal: Principal = Depends(get_principal)):
    options = await get_runtime().passkeys.start_registration(principal.user.id)
    return Envelope(status="ok", data={"options": options})


@router.post("/auth/passkey/register/finish", response_model=Envelope, status_code=201, tags=["passkeys"])
async def passkey_register_finish(
    body: PasskeyRegisterFinishRequest, principal: Principal = Depends(get_principal)
):
    passkey = await get_runtime().passkeys.finish_registration(
        principal.user.id, body.credential, device_name=body.device_name
    )
    return Envelope(status="ok", data=PasskeyResponse.from_passkey(passkey))


@router.post("/auth/passkey/login/start", response_model=Envelope, tags=["passkeys"])
async def passkey_login_start(body: PasskeyLoginStartRequest):
    challenge = await get_runtime().passkeys.start_authentication(body.email)
    return Envelope(
        status="ok",
        data=PasskeyLoginStartResponse(
            options=challenge.challenge, credential_ids=challenge.credential_ids
        ),
    )


@router.post("/auth/passkey/login/finish", response_model=Envelope, tags=["passkeys"])
async def passkey_login_finish(
    body: PasskeyLoginFinishRequest, request: Request, response: Response
):
    user, session = await get_runtime().passkeys.finish_authentication(
        body.credential, **_client_meta(request)
    )
    return _signed_in(response, user, session)


# -- oauth -------------------------------------------------------------------


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["oauth"])
async def oauth_start(provider: str):
    started = await get_runtime().oauth.start(_provider_or_404(provider))
    return Envelope(status="ok", data=OAuthStartResponse(**started))


async def _complete_oauth_login(
    provider: str, code: Optional[str], state: Optional[str], request: Request, response: Response
) -> Envelope:
    runtime = get_runtime()
    oauth_provider = _provider_or_404(provider)
    identity = await runtime.oauth.complete(oauth_provider, code or "", state or "")
    user, session = await runtime.identities.resolve_login(
        oauth_provider,
        identity.subject,
        identity.email,
        email_verified=identity.email_verified,
        **_client_meta(request),
    )
    return _signed_in(response, user, session)


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    provider: str,
    request: Request,
    response: Response,
    code: Optional[str] = None,
    state: Optional[str] = None,
):
    return await _complete_oauth_login(provider, code, state, request, response)


@router.post("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback_form_post(
    provider: str,
    request: Request,
    response: Response,
    code: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
):
    # Apple delivers the callback as a form post.
    return await _complete_oauth_login(provider, code, state, request, response)


@router.post("/auth/oauth/{provider}/link", response_model=Envelope, status_code=201, tags=["oauth"])
async def oauth_link(
    provider: str, body: OAuthLinkRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    oauth_provider = _provider_or_404(provider)
    identity = await runtime.oauth.complete(oauth_provider, body.code, body.state)
    linked = await runtime.identities.link_account(
        principal.user.id, oauth_provider, identity.subject, identity.email
    )
    return Envelope(status="ok", data=OAuthIdentityResponse.from_identity(linked))


# -- sessions ----------------------------------------------------------------


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=UserResponse.from_user(principal.user),
            session_expires_at=principal.session.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(get_principal)):
    await get_runtime().sessions.logout(principal.session.id)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    revoked = await get_runtime().sessions.revoke_all(principal.user.id)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"revoked": revoked})


# -- account -----------------------------------------------------------------


@router.get("/account", response_model=Envelope, tags=["account"])
async def get_account(principal: Principal = Depends(get_principal)):
    user = await get_runtime().accounts.get_profile(principal.user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/account", response_model=Envelope, tags=["account"])
async def update_account(
    body: ProfileUpdateRequest, principal: Principal = Depends(get_principal)
):
    changes: dict = {}
    if body.name is not None:
        changes["name"] = body.name
    # Only touch the phone when the client sent the field at all.
    if "phone" in body.model_fields_set:
        changes["phone"] = body.phone
    user = await get_runtime().accounts.update_profile(principal.user.id, **changes)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/account/email", response_model=Envelope, tags=["account"])
async def update_account_email(
    body: EmailUpdateRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
):
    """Change the account email.

    Every session, including the caller's, is revoked; the client must sign
    in again with the new address.
    """
    user = await get_runtime().accounts.update_email(principal.user.id, body.email)
    _clear_session_cookie(response)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/account", response_model=Envelope, tags=["account"])
async def delete_account(response: Response, principal: Principal = Depends(get_principal)):
    await get_runtime().accounts.delete_account(principal.user.id)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"message": "account deleted"})


@router.get("/account/passkeys", response_model=Envelope, tags=["account"])
async def list_account_passkeys(principal: Principal = Depends(get_principal)):
    passkeys = await get_runtime().passkeys.list_passkeys(principal.user.id)
    return Envelope(
        status="ok",
        data=PasskeyListResponse(items=[PasskeyResponse.from_passkey(p) for p in passkeys]),
    )


@router.delete("/account/passkeys/{passkey_id}", response_model=Envelope, tags=["account"])
async def delete_account_passkey(passkey_id: str, principal: Principal = Depends(get_principal)):
    await get_runtime().passkeys.delete_passkey(principal.user.id, passkey_id)
    return Envelope(status="ok", data={"message": "passkey deleted"})
