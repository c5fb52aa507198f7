from __future__ import annotations

import hmac
import os
import re
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


class SessionStorageType(str, Enum):
    """Where session records live."""

    MEMORY = "memory"
    DATABASE = "database"
    REDIS = "redis"


class MfaMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    TOTP = "totp"


class OtpFormat(str, Enum):
    NUMERIC = "numeric"
    ALPHANUMERIC = "alphanumeric"


class TokenDelivery(str, Enum):
    """How issued tokens reach the client.

    - BODY: tokens are returned in the response payload
    - COOKIE: tokens are set as two httpOnly cookies (access, refresh)
    """

    BODY = "body"
    COOKIE = "cookie"


class SameSite(str, Enum):
    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


_DURATION_UNITS: dict[str, float] = {
    "ms": 0.001,
    "msec": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
    "y": 31557600,
    "yr": 31557600,
    "year": 31557600,
    "years": 31557600,
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_duration(value: Any) -> int:
    """Convert a duration such as ``"15m"``, ``"7d"`` or ``"2 days"`` to whole seconds.

    Bare numbers (int or digit strings) are taken as seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        unit = unit.lower() or "s"
        if unit not in _DURATION_UNITS:
            raise ValueError(f"unknown duration unit {unit!r} in {value!r}")
        seconds = float(amount) * _DURATION_UNITS[unit]
    else:
        raise ValueError(f"invalid duration: {value!r}")
    if seconds < 1:
        raise ValueError(f"duration must be at least one second: {value!r}")
    return int(seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_DURATION_FIELDS = (
    "access_token_expiry",
    "refresh_token_expiry",
    "password_reset_token_expiry",
    "mfa_challenge_expiry",
    "otp_expiry",
    "email_verification_otp_expiry",
    "password_reset_otp_expiry",
    "trusted_device_expiry",
)


class Settings(BaseModel):
    """Immutable engine configuration, built once and passed to every component."""

    app_name: str = env_field("Gatekeeper", "APP_NAME")

    # Signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_external_secret: str | None = env_field(
        None,
        "JWT_EXTERNAL_SECRET",
        description="Key used to verify third-party bearer JWTs; required by the jwt provider",
    )
    jwt_provider_enabled: bool = env_field(False, "JWT_PROVIDER_ENABLED")

    # Storage
    session_storage: SessionStorageType = env_field(
        SessionStorageType.MEMORY, "SESSION_STORAGE"
    )
    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON file the memory store persists to; unset keeps state in-process only",
    )
    mfa_encryption_key: str | None = env_field(None, "MFA_ENCRYPTION_KEY")

    # Token and session lifetimes
    access_token_expiry: str = env_field("15m", "ACCESS_TOKEN_EXPIRY")
    refresh_token_expiry: str = env_field(
        "30d",
        "REFRESH_TOKEN_EXPIRY",
        description="Refresh token lifetime; also the lifetime of the session record",
    )
    password_reset_token_expiry: str = env_field("1h", "PASSWORD_RESET_TOKEN_EXPIRY")
    mfa_challenge_expiry: str = env_field("10m", "MFA_CHALLENGE_EXPIRY")
    max_sessions_per_user: int = env_field(
        10, "MAX_SESSIONS_PER_USER", description="0 disables the cap", ge=0
    )
    sliding_expiration: bool = env_field(True, "SLIDING_EXPIRATION")

    # Token delivery
    token_delivery: TokenDelivery = env_field(TokenDelivery.BODY, "TOKEN_DELIVERY")
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    cookie_samesite: SameSite = env_field(SameSite.LAX, "COOKIE_SAMESITE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    access_cookie_name: str = env_field("accessToken", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")

    # Registration and credential providers
    registration_enabled: bool = env_field(True, "REGISTRATION_ENABLED")
    auto_login_after_signup: bool = env_field(True, "AUTO_LOGIN_AFTER_SIGNUP")
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    email_auth_enabled: bool = env_field(True, "EMAIL_AUTH_ENABLED")
    phone_auth_enabled: bool = env_field(False, "PHONE_AUTH_ENABLED")
    oauth_google_enabled: bool = env_field(False, "OAUTH_GOOGLE_ENABLED")
    oauth_github_enabled: bool = env_field(False, "OAUTH_GITHUB_ENABLED")
    oauth_facebook_enabled: bool = env_field(False, "OAUTH_FACEBOOK_ENABLED")
    oauth_microsoft_enabled: bool = env_field(False, "OAUTH_MICROSOFT_ENABLED")
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS")

    # MFA policy
    mfa_enabled: bool = env_field(False, "MFA_ENABLED")
    mfa_required: bool = env_field(
        False, "MFA_REQUIRED", description="Require MFA for every user regardless of opt-in"
    )
    mfa_methods: List[MfaMethod] = env_field(
        [MfaMethod.EMAIL, MfaMethod.TOTP], "MFA_METHODS"
    )
    mfa_allow_user_toggle: bool = env_field(True, "MFA_ALLOW_USER_TOGGLE")
    mfa_default_otp: str | None = env_field(
        None,
        "MFA_DEFAULT_OTP",
        description="NON-PRODUCTION ONLY: literal code that always satisfies MFA verification",
    )
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS", ge=1)
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS", ge=1)
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=12)
    otp_format: OtpFormat = env_field(OtpFormat.NUMERIC, "OTP_FORMAT")
    otp_expiry: str = env_field("15m", "OTP_EXPIRY")
    email_verification_otp_expiry: str = env_field("30m", "EMAIL_VERIFICATION_OTP_EXPIRY")
    password_reset_otp_expiry: str = env_field("15m", "PASSWORD_RESET_OTP_EXPIRY")
    trusted_device_expiry: str = env_field("30d", "TRUSTED_DEVICE_EXPIRY")

    # Tenancy and roles
    default_tenant_slug: str | None = env_field(None, "DEFAULT_TENANT_SLUG")
    default_tenant_name: str | None = env_field(None, "DEFAULT_TENANT_NAME")
    default_roles: List[str] = env_field(["user"], "DEFAULT_ROLES")
    default_guard: str = env_field("web", "DEFAULT_GUARD")

    # Password hashing
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("jwt_secret must be at least 32 characters")
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("mfa_methods", mode="before")
    @classmethod
    def _split_methods(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip().lower() for part in value.split(",") if part.strip()]
        return value

    @field_validator("default_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("default_tenant_slug")
    @classmethod
    def _validate_slug(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not re.fullmatch(r"[a-z0-9_-]+", value):
            raise ValueError(
                "default_tenant_slug must be lowercase letters, numbers, '-' or '_'"
            )
        return value

    @field_validator("mfa_default_otp")
    @classmethod
    def _blank_default_otp(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _validate_durations(self) -> "Settings":
        for name in _DURATION_FIELDS:
            try:
                parse_duration(getattr(self, name))
            except ValueError as exc:
                raise ValueError(f"{name}: {exc}") from exc
        return self

    @model_validator(mode="after")
    def _validate_external_jwt(self) -> "Settings":
        # Our own tokens must never verify as third-party bearer credentials
        if self.jwt_provider_enabled and not self.jwt_external_secret:
            raise ValueError("JWT_EXTERNAL_SECRET is required when JWT_PROVIDER_ENABLED is on")
        if self.jwt_external_secret and hmac.compare_digest(
            self.jwt_external_secret.encode(), self.jwt_secret.encode()
        ):
            raise ValueError("JWT_EXTERNAL_SECRET must differ from JWT_SECRET")
        return self

    def seconds(self, name: str) -> int:
        """Resolve one of the duration settings to seconds."""
        if name not in _DURATION_FIELDS:
            raise KeyError(name)
        return parse_duration(getattr(self, name))

    def security_warnings(self) -> list[str]:
        """Describe settings that must never reach production."""
        warnings: list[str] = []
        if self.mfa_default_otp:
            warnings.append(
                "MFA_DEFAULT_OTP is set: the literal code satisfies every MFA check"
            )
        if self.token_delivery == TokenDelivery.COOKIE and not self.cookie_secure:
            warnings.append("COOKIE_SECURE is off while tokens are delivered in cookies")
        if self.cookie_samesite == SameSite.NONE and not self.cookie_secure:
            warnings.append("COOKIE_SAMESITE=none requires COOKIE_SECURE")
        return warnings
