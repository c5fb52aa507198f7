from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for engine errors.

    Every error carries a stable machine-readable ``error_code`` and the
    ``domain`` it belongs to, plus an HTTP ``status_code`` hint for callers
    that map errors onto a transport:

    - credentials: login and registration failures
    - token: signature, expiry and token-type failures
    - mfa: second-factor policy and verification failures
    - session: missing or expired session records
    - otp: one-time code lookups and consumption
    - validation: malformed requests
    - user / tenant: identity records
    """

    status_code: int = 400
    error_code: str = "validation_error"
    domain: str = "validation"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "code": self.error_code,
            "domain": self.domain,
            "message": self.message,
            "detail": self.detail,
        }


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


# credentials


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    domain = "credentials"


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"
    domain = "credentials"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"
    domain = "credentials"


class RegistrationDisabledError(ForbiddenError):
    error_code = "registration_disabled"
    domain = "credentials"


class ProviderUnavailableError(ServiceError):
    """The external identity provider could not be reached (502)."""
    status_code = 502
    error_code = "provider_unavailable"
    domain = "credentials"


# token


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"
    domain = "token"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"
    domain = "token"


class RefreshTokenInvalidError(TokenInvalidError):
    error_code = "refresh_token_invalid"


class RefreshTokenExpiredError(TokenExpiredError):
    error_code = "refresh_token_expired"


# mfa


class MfaNotEnabledError(ForbiddenError):
    error_code = "mfa_not_enabled"
    domain = "mfa"


class MfaRequiredError(AuthenticationError):
    error_code = "mfa_required"
    domain = "mfa"


class MfaCodeInvalidError(AuthenticationError):
    error_code = "mfa_code_invalid"
    domain = "mfa"


class MfaCodeExpiredError(AuthenticationError):
    error_code = "mfa_code_expired"
    domain = "mfa"


class MfaMethodUnavailableError(ValidationError):
    error_code = "mfa_method_unavailable"
    domain = "mfa"


class MfaDeviceNotFoundError(NotFoundError):
    error_code = "mfa_device_not_found"
    domain = "mfa"


class MfaLockedOutError(RateLimitedError):
    error_code = "mfa_locked_out"
    domain = "mfa"


class TogglingNotAllowedError(ForbiddenError):
    error_code = "mfa_toggling_not_allowed"
    domain = "mfa"


class CannotEnableWithoutMethodError(ValidationError):
    error_code = "mfa_cannot_enable_without_method"
    domain = "mfa"


class RecoveryCodeInvalidError(AuthenticationError):
    error_code = "mfa_recovery_code_invalid"
    domain = "mfa"


# session


class SessionNotFoundError(AuthenticationError):
    error_code = "session_not_found"
    domain = "session"


class SessionExpiredError(AuthenticationError):
    error_code = "session_expired"
    domain = "session"


class MaxSessionsReachedError(ForbiddenError):
    error_code = "max_sessions_reached"
    domain = "session"


# otp


class OtpInvalidError(ValidationError):
    error_code = "otp_invalid"
    domain = "otp"


class OtpExpiredError(ValidationError):
    error_code = "otp_expired"
    domain = "otp"


class OtpAlreadyUsedError(ValidationError):
    error_code = "otp_already_used"
    domain = "otp"


class OtpNotFoundError(ValidationError):
    error_code = "otp_not_found"
    domain = "otp"


# validation


class InvalidProviderError(ValidationError):
    error_code = "invalid_provider"


class MissingRequiredFieldsError(ValidationError):
    error_code = "missing_required_fields"


class PasswordPolicyError(ValidationError):
    error_code = "password_policy_violation"


# user


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"
    domain = "user"


class EmailAlreadyExistsError(ConflictError):
    error_code = "email_already_exists"
    domain = "user"


class PhoneAlreadyExistsError(ConflictError):
    error_code = "phone_already_exists"
    domain = "user"


# tenant


class TenantNotFoundError(NotFoundError):
    error_code = "tenant_not_found"
    domain = "tenant"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "EmailNotVerifiedError",
    "RegistrationDisabledError",
    "ProviderUnavailableError",
    "TokenInvalidError",
    "TokenExpiredError",
    "RefreshTokenInvalidError",
    "RefreshTokenExpiredError",
    "MfaNotEnabledError",
    "MfaRequiredError",
    "MfaCodeInvalidError",
    "MfaCodeExpiredError",
    "MfaMethodUnavailableError",
    "MfaDeviceNotFoundError",
    "MfaLockedOutError",
    "TogglingNotAllowedError",
    "CannotEnableWithoutMethodError",
    "RecoveryCodeInvalidError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "MaxSessionsReachedError",
    "OtpInvalidError",
    "OtpExpiredError",
    "OtpAlreadyUsedError",
    "OtpNotFoundError",
    "InvalidProviderError",
    "MissingRequiredFieldsError",
    "PasswordPolicyError",
    "UserNotFoundError",
    "EmailAlreadyExistsError",
    "PhoneAlreadyExistsError",
    "TenantNotFoundError",
]
