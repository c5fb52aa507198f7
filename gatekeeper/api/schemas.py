from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from gatekeeper.config import MfaMethod

MAX_METADATA_DEPTH = 10


def _validate_json_depth(obj: Any, max_depth: int = MAX_METADATA_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_email(value: Optional[str]) -> Optional[str]:
    """NFKC-normalize and lowercase; shape checks stay light since providers re-normalize."""
    if value is None:
        return None
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if not normalized:
        return None
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("invalid email address")
    if len(normalized) > 254:
        raise ValueError("email address too long")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is the stable ``error_code`` of the failure."""

    code: str = Field(..., pattern=r"^[a-z_]+$")
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class DeviceInfo(BaseModel):
    device_name: Optional[str] = Field(default=None, max_length=128)


class SignupRequest(DeviceInfo):
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = Field(default=None, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_email(value)

    @field_validator("metadata")
    @classmethod
    def _validate_metadata(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class LoginRequest(DeviceInfo):
    """Credentials are provider specific; ``provider`` picks the validator."""

    provider: str = Field(default="email", max_length=32)
    credentials: Dict[str, Any] = Field(default_factory=dict)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = Field(default=None, max_length=128)
    tenant_id: Optional[str] = Field(default=None, max_length=128)
    trusted_device_token: Optional[str] = Field(default=None, max_length=256)
    create_user_if_not_exists: bool = False

    @model_validator(mode="after")
    def _fold_credentials(self) -> "LoginRequest":
        # Top-level email/phone/password are shorthands for the credentials map
        for name in ("email", "phone", "password"):
            value = getattr(self, name)
            if value is not None and name not in self.credentials:
                self.credentials[name] = value
        return self


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class UserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    tenant_id: Optional[str] = None
    is_verified: bool = False
    is_mfa_enabled: bool = False
    roles: List[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    tokens: Optional[TokenPairResponse] = None
    trusted_device_token: Optional[str] = None
    requires_mfa: bool = False


class MfaChallengeResponse(BaseModel):
    requires_mfa: bool = True
    user_id: str
    challenge_token: str
    methods: List[MfaMethod]
    default_method: Optional[MfaMethod] = None
    expires_at: datetime


class SendMfaCodeRequest(BaseModel):
    method: MfaMethod
    challenge_token: Optional[str] = Field(default=None, max_length=4096)


class SendMfaCodeResponse(BaseModel):
    method: Optional[MfaMethod] = None
    destination: Optional[str] = None
    expires_at: datetime


class VerifyMfaRequest(DeviceInfo):
    challenge_token: str = Field(..., max_length=4096)
    code: str = Field(..., min_length=1, max_length=32)
    method: MfaMethod
    remember_device: bool = False


class VerifySessionMfaRequest(DeviceInfo):
    code: str = Field(..., min_length=1, max_length=32)
    method: MfaMethod
    remember_device: bool = False


class TotpSetupRequest(BaseModel):
    device_name: Optional[str] = Field(default=None, max_length=64)


class TotpSetupResponse(BaseModel):
    device_id: str
    secret: str
    provisioning_uri: str


class TotpVerifyRequest(BaseModel):
    secret: str = Field(..., max_length=128)
    code: str = Field(..., min_length=6, max_length=8)


class MfaDeviceResponse(BaseModel):
    id: str
    device_name: str
    verified: bool
    last_used_at: Optional[datetime] = None
    created_at: datetime


class MfaStatusResponse(BaseModel):
    enabled: bool
    required: bool
    enabled_methods: List[MfaMethod]
    verified_methods: List[MfaMethod]
    has_recovery_code: bool


class RecoveryCodeResponse(BaseModel):
    recovery_code: str


class MfaResetRequest(BaseModel):
    recovery_code: str = Field(..., max_length=64)


class SessionResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    last_active_at: datetime
    created_at: datetime
    expires_at: datetime
    is_current: bool = False


class LogoutAllRequest(BaseModel):
    keep_current: bool = False


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_email(value)

    @model_validator(mode="after")
    def _require_contact(self) -> "ForgotPasswordRequest":
        if not self.email and not self.phone:
            raise ValueError("email or phone is required")
        return self


class VerifyResetCodeRequest(ForgotPasswordRequest):
    code: str = Field(..., min_length=1, max_length=32)


class ResetPasswordRequest(ForgotPasswordRequest):
    code: str = Field(..., min_length=1, max_length=32)
    new_password: str = Field(..., min_length=1, max_length=128)


class ResetPasswordWithTokenRequest(BaseModel):
    token: str = Field(..., max_length=4096)
    new_password: str = Field(..., min_length=1, max_length=128)


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
