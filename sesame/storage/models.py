from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserPlan(str, Enum):
    """Subscription tiers, listed from lowest to highest."""

    FREE_TRIAL = "free_trial"
    PLUS = "plus"
    PREMIUM = "premium"
    LIFETIME = "lifetime"


class SignInMethod(str, Enum):
    MAGIC_LINK = "magic_link"
    PASSKEY = "passkey"
    OAUTH = "oauth"


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    APPLE = "apple"
    GITHUB = "github"
    MICROSOFT = "microsoft"


@dataclass
class User:
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    plan: UserPlan = UserPlan.FREE_TRIAL
    last_sign_in_at: Optional[datetime] = None
    last_sign_in_method: Optional[SignInMethod] = None
    last_sign_in_provider: Optional[OAuthProvider] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, name: str, *, plan: UserPlan = UserPlan.FREE_TRIAL) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            plan=plan,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            # 256 bits from the OS CSPRNG; the id is the bearer secret
            id=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class OAuthIdentity:
    id: str
    user_id: str
    provider: OAuthProvider
    provider_user_id: str
    provider_email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Passkey:
    id: str
    user_id: str
    credential_id: str
    public_key: bytes
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    device_name: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MagicLinkToken:
    email: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_redeemable(self, now: datetime | None = None) -> bool:
        return not self.used and self.expires_at > (now or utcnow())
