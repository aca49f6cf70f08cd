from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sesame.service.validation import MAX_NAME_LENGTH, is_valid_email, normalize_email
from sesame.storage.models import OAuthIdentity, OAuthProvider, Passkey, Session, User, UserPlan

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if not is_valid_email(normalized):
        raise ValueError("invalid email address")
    return normalized


# -- requests ---------------------------------------------------------------


class MagicLinkRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkVerifyRequest(BaseModel):
    # Not validated here: any mismatch must look like a bad token.
    email: str = Field(..., max_length=320)
    token: str = Field(..., max_length=256)


class PasskeyRegisterFinishRequest(BaseModel):
    credential: Dict[str, Any]
    device_name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)


class PasskeyLoginStartRequest(BaseModel):
    email: str = Field(..., max_length=320)


class PasskeyLoginFinishRequest(BaseModel):
    credential: Dict[str, Any]


class OAuthLinkRequest(BaseModel):
    code: str
    state: str


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    # Explicit null or empty string clears the phone number.
    phone: Optional[str] = Field(default=None, max_length=32)


class EmailUpdateRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


# -- responses --------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    plan: UserPlan
    last_sign_in_at: Optional[datetime] = None
    last_sign_in_method: Optional[str] = None
    last_sign_in_provider: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            phone=user.phone,
            plan=user.plan,
            last_sign_in_at=user.last_sign_in_at,
            last_sign_in_method=(
                user.last_sign_in_method.value if user.last_sign_in_method else None
            ),
            last_sign_in_provider=(
                user.last_sign_in_provider.value if user.last_sign_in_provider else None
            ),
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    session_expires_at: datetime

    @classmethod
    def build(cls, user: User, session: Session) -> "AuthResponse":
        return cls(
            user=UserResponse.from_user(user),
            session_id=session.id,
            session_expires_at=session.expires_at,
        )


class SessionResponse(BaseModel):
    user: UserResponse
    session_expires_at: datetime


class PasskeyResponse(BaseModel):
    id: str
    credential_id: str
    device_name: Optional[str] = None
    transports: List[str] = Field(default_factory=list)
    sign_count: int
    last_used_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_passkey(cls, passkey: Passkey) -> "PasskeyResponse":
        return cls(
            id=passkey.id,
            credential_id=passkey.credential_id,
            device_name=passkey.device_name,
            transports=list(passkey.transports or []),
            sign_count=passkey.sign_count,
            last_used_at=passkey.last_used_at,
            created_at=passkey.created_at,
        )


class PasskeyListResponse(BaseModel):
    items: List[PasskeyResponse]


class PasskeyLoginStartResponse(BaseModel):
    options: Dict[str, Any]
    credential_ids: List[str] = Field(default_factory=list)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: OAuthProvider


class OAuthIdentityResponse(BaseModel):
    id: str
    provider: OAuthProvider
    provider_email: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_identity(cls, identity: OAuthIdentity) -> "OAuthIdentityResponse":
        return cls(
            id=identity.id,
            provider=identity.provider,
            provider_email=identity.provider_email,
            created_at=identity.created_at,
        )
