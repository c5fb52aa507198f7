from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OtpPurpose(str, Enum):
    VERIFICATION = "verification"
    MFA = "mfa"
    PASSWORD_RESET = "password_reset"


class OtpStatus(str, Enum):
    """Outcome of an atomic OTP consume attempt."""

    CONSUMED = "consumed"
    EXPIRED = "expired"
    USED = "used"
    MISSING = "missing"


@dataclass
class User:
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    tenant_id: Optional[str] = None
    password_hash: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    email_verified_at: Optional[datetime] = None
    phone_verified_at: Optional[datetime] = None
    is_mfa_enabled: bool = False
    mfa_recovery_code_hash: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Identity:
    id: str
    user_id: str
    provider: str
    provider_id: str
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    refresh_token_hash: Optional[str] = None
    data: Dict = field(default_factory=dict)
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    tenant_id: Optional[str] = None
    last_active: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_seconds: int,
        *,
        device_name: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
        tenant_id: str | None = None,
        data: Dict | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            data=dict(data or {}),
            device_name=device_name,
            user_agent=user_agent,
            ip_address=ip_address,
            tenant_id=tenant_id,
            last_active=now,
            created_at=now,
        )

    @property
    def is_mfa_verified(self) -> bool:
        return bool(self.data.get("is_mfa_verified", False))

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Otp:
    id: str
    user_id: str
    purpose: OtpPurpose
    code: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaDevice:
    """A TOTP authenticator bound to a user; only verified devices count as MFA methods."""

    id: str
    user_id: str
    secret: str
    device_name: str = "Authenticator"
    verified: bool = False
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    is_active: bool = True
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    guard: str = "web"
    tenant_id: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_system(self) -> bool:
        return self.tenant_id is None
