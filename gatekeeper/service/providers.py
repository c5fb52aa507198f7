"""Credential providers: turn caller-supplied credentials into a canonical identity.

Every provider satisfies the ``CredentialProvider`` protocol and is looked up
by name in a ``ProviderRegistry``. Providers only validate; resolving or
creating the local user is the orchestrator's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import httpx

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import (
    InvalidCredentialsError,
    InvalidProviderError,
    MissingRequiredFieldsError,
    OtpAlreadyUsedError,
    OtpExpiredError,
    OtpInvalidError,
    ProviderUnavailableError,
    ServiceError,
)
from gatekeeper.service.mfa import MfaService
from gatekeeper.service.passwords import PasswordService
from gatekeeper.service.tokens import ENGINE_TOKEN_TYPES, TokenService
from gatekeeper.storage.common import normalize_email, normalize_phone
from gatekeeper.storage.models import OtpPurpose, User

logger = get_logger(__name__)

EMAIL = "email"
PHONE = "phone"
JWT = "jwt"
GOOGLE = "google"
GITHUB = "github"
FACEBOOK = "facebook"
MICROSOFT = "microsoft"

OAUTH_USERINFO_URLS = {
    GOOGLE: "https://www.googleapis.com/oauth2/v2/userinfo",
    GITHUB: "https://api.github.com/user",
    FACEBOOK: "https://graph.facebook.com/me?fields=id,name,email,picture",
    MICROSOFT: "https://graph.microsoft.com/v1.0/me",
}
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"


class LocalUserLookup(Protocol):
    def get_user_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> Optional[User]: ...

    def get_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]: ...


@dataclass
class ProviderUser:
    """Canonical result of a successful ``validate``.

    ``user`` is set by local providers that already resolved the account
    while checking the password.
    """

    provider_user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    user: Optional[User] = None


class CredentialProvider(Protocol):
    name: str
    skip_mfa: bool

    @property
    def enabled(self) -> bool: ...

    def required_fields(self) -> List[str]: ...

    def link_user_with(self) -> str: ...

    def normalize_id(self, provider_user_id: str) -> str: ...

    async def validate(
        self, credentials: Mapping[str, Any], *, tenant_id: Optional[str] = None
    ) -> ProviderUser: ...


def missing_fields(provider: CredentialProvider, credentials: Mapping[str, Any]) -> List[str]:
    return [name for name in provider.required_fields() if not credentials.get(name)]


def require_fields(provider: CredentialProvider, credentials: Mapping[str, Any]) -> None:
    missing = missing_fields(provider, credentials)
    if missing:
        raise MissingRequiredFieldsError(
            f"Missing required fields: {', '.join(missing)}",
            detail={"missing": missing, "provider": provider.name},
        )


def scoped_identity_id(tenant_id: Optional[str], value: str) -> str:
    """Identity id for local providers, where uniqueness is per tenant."""
    return f"{tenant_id}:{value}" if tenant_id else value


class EmailPasswordProvider:
    name = EMAIL
    skip_mfa = False

    def __init__(
        self, settings: Settings, users: LocalUserLookup, passwords: PasswordService
    ) -> None:
        self.settings = settings
        self.users = users
        self.passwords = passwords

    @property
    def enabled(self) -> bool:
        return self.settings.email_auth_enabled

    def required_fields(self) -> List[str]:
        return ["email", "password"]

    def link_user_with(self) -> str:
        return "email"

    def normalize_id(self, provider_user_id: str) -> str:
        return normalize_email(provider_user_id) or ""

    async def validate(
        self, credentials: Mapping[str, Any], *, tenant_id: Optional[str] = None
    ) -> ProviderUser:
        email = self.normalize_id(str(credentials.get("email") or ""))
        password = str(credentials.get("password") or "")
        user = self.users.get_user_by_email(email, tenant_id) if email else None
        # Unknown users still pay for one hash verification
        if not self.passwords.verify(user.password_hash if user else None, password):
            logger.info("login_password_rejected", provider=self.name)
            raise InvalidCredentialsError("Invalid credentials")
        assert user is not None
        return ProviderUser(
            provider_user_id=scoped_identity_id(tenant_id, email),
            email=email,
            phone=user.phone,
            user=user,
        )


class PhoneProvider:
    """Phone number plus either the account password or a verification code."""

    name = PHONE
    skip_mfa = False

    def __init__(
        self,
        settings: Settings,
        users: LocalUserLookup,
        passwords: PasswordService,
        mfa: MfaService,
    ) -> None:
        self.settings = settings
        self.users = users
        self.passwords = passwords
        self.mfa = mfa

    @property
    def enabled(self) -> bool:
        return self.settings.phone_auth_enabled

    def required_fields(self) -> List[str]:
        return ["phone"]

    def link_user_with(self) -> str:
        return "phone"

    def normalize_id(self, provider_user_id: str) -> str:
        return normalize_phone(provider_user_id) or ""

    async def validate(
        self, credentials: Mapping[str, Any], *, tenant_id: Optional[str] = None
    ) -> ProviderUser:
        phone = self.normalize_id(str(credentials.get("phone") or ""))
        password = credentials.get("password")
        code = credentials.get("code")
        if not password and not code:
            raise MissingRequiredFieldsError(
                "Either password or code is required",
                detail={"missing": ["password|code"], "provider": self.name},
            )
        user = self.users.get_user_by_phone(phone, tenant_id) if phone else None
        if password:
            if not self.passwords.verify(user.password_hash if user else None, str(password)):
                logger.info("login_password_rejected", provider=self.name)
                raise InvalidCredentialsError("Invalid credentials")
        else:
            if not user:
                raise InvalidCredentialsError("Invalid credentials")
            try:
                self.mfa.consume_code(user.id, OtpPurpose.VERIFICATION, str(code))
            except (OtpInvalidError, OtpExpiredError, OtpAlreadyUsedError) as exc:
                logger.info("login_code_rejected", provider=self.name, reason=exc.error_code)
                raise InvalidCredentialsError("Invalid credentials")
        assert user is not None
        return ProviderUser(
            provider_user_id=scoped_identity_id(tenant_id, phone),
            email=user.email,
            phone=phone,
            user=user,
        )


class JwtBearerProvider:
    """Accepts a token signed by a trusted issuer sharing ``jwt_external_secret``.

    Tokens carrying one of the engine's own ``type`` values are refused: a
    session-bound token is never a login credential.
    """

    name = JWT
    skip_mfa = False

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._verifier = (
            TokenService(settings, secret=settings.jwt_external_secret)
            if settings.jwt_external_secret
            else None
        )

    @property
    def enabled(self) -> bool:
        return self.settings.jwt_provider_enabled and self._verifier is not None

    def required_fields(self) -> List[str]:
        return ["token"]

    def link_user_with(self) -> str:
        return "email"

    def normalize_id(self, provider_user_id: str) -> str:
        return provider_user_id.strip()

    async def validate(
        self, credentials: Mapping[str, Any], *, tenant_id: Optional[str] = None
    ) -> ProviderUser:
        if self._verifier is None:
            raise InvalidCredentialsError("Bearer token login is not configured")
        try:
            payload = self._verifier.verify_token(str(credentials.get("token") or ""))
        except ServiceError as exc:
            logger.info("jwt_provider_token_rejected", reason=exc.error_code)
            raise InvalidCredentialsError("Invalid bearer token")
        if payload.get("type") in ENGINE_TOKEN_TYPES:
            logger.warning("jwt_provider_engine_token_rejected", token_type=payload.get("type"))
            raise InvalidCredentialsError("Invalid bearer token")
        subject = payload.get("sub")
        if not subject:
            raise InvalidCredentialsError("Bearer token has no subject")
        metadata = {k: v for k, v in payload.items() if k not in ("exp", "iat", "type")}
        return ProviderUser(
            provider_user_id=self.normalize_id(str(subject)),
            email=normalize_email(payload.get("email")),
            phone=normalize_phone(payload.get("phone")),
            metadata=metadata,
        )


class OAuthProvider:
    """Social login from a provider-issued access token via the userinfo endpoint.

    The external identity provider already performed its own checks, so
    these logins skip the local MFA step.
    """

    skip_mfa = True

    def __init__(
        self,
        name: str,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if name not in OAUTH_USERINFO_URLS:
            raise InvalidProviderError(f"Unsupported OAuth provider: {name}")
        self.name = name
        self.settings = settings
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(getattr(self.settings, f"oauth_{self.name}_enabled", False))

    def required_fields(self) -> List[str]:
        return ["token"]

    def link_user_with(self) -> str:
        return "email"

    def normalize_id(self, provider_user_id: str) -> str:
        return str(provider_user_id).strip()

    async def validate(
        self, credentials: Mapping[str, Any], *, tenant_id: Optional[str] = None
    ) -> ProviderUser:
        token = str(credentials.get("token") or "")
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if self.name == GITHUB:
            headers["Accept"] = "application/vnd.github+json"
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(OAUTH_USERINFO_URLS[self.name], headers=headers)
                response.raise_for_status()
                userinfo = response.json()
                if not isinstance(userinfo, dict):
                    raise InvalidCredentialsError("Unexpected userinfo payload")
                identity = self._parse_userinfo(userinfo)
                if self.name == GITHUB and not identity.email:
                    identity.email = await self._github_primary_email(client, headers)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("oauth_userinfo_rejected", provider=self.name, status_code=status)
            if status in (400, 401, 403):
                raise InvalidCredentialsError(f"Invalid {self.name} token")
            raise ProviderUnavailableError(f"{self.name} userinfo request failed")
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_failed", provider=self.name, error=str(exc))
            raise ProviderUnavailableError(f"{self.name} is unreachable")
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", provider=self.name, error=str(exc))
            raise InvalidCredentialsError("Unexpected userinfo payload")

        if not identity.provider_user_id:
            logger.error("oauth_identity_missing_uid", provider=self.name)
            raise InvalidCredentialsError(f"{self.name} did not return a user id")
        logger.info("oauth_userinfo_success", provider=self.name)
        return identity

    def _parse_userinfo(self, userinfo: Dict[str, Any]) -> ProviderUser:
        if self.name == GOOGLE:
            uid, email = userinfo.get("id") or userinfo.get("sub"), userinfo.get("email")
            metadata = {"name": userinfo.get("name"), "picture": userinfo.get("picture")}
        elif self.name == GITHUB:
            uid, email = userinfo.get("id"), userinfo.get("email")
            metadata = {
                "name": userinfo.get("name") or userinfo.get("login"),
                "login": userinfo.get("login"),
                "avatar": userinfo.get("avatar_url"),
            }
        elif self.name == FACEBOOK:
            uid, email = userinfo.get("id"), userinfo.get("email")
            picture = userinfo.get("picture")
            metadata = {
                "name": userinfo.get("name"),
                "picture": picture.get("data", {}).get("url")
                if isinstance(picture, dict)
                else None,
            }
        else:
            uid = userinfo.get("id")
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
            metadata = {"name": userinfo.get("displayName")}
        return ProviderUser(
            provider_user_id=self.normalize_id(uid) if uid is not None else "",
            email=normalize_email(email),
            metadata={k: v for k, v in metadata.items() if v is not None},
        )

    async def _github_primary_email(
        self, client: httpx.AsyncClient, headers: Dict[str, str]
    ) -> Optional[str]:
        response = await client.get(GITHUB_EMAILS_URL, headers=headers)
        if response.status_code != 200:
            return None
        emails = response.json()
        if not isinstance(emails, list):
            return None
        primary = next(
            (e for e in emails if isinstance(e, dict) and e.get("primary") and e.get("verified")),
            None,
        )
        return normalize_email(primary.get("email")) if primary else None


class ProviderRegistry:
    """Name -> provider lookup; disabled providers are treated as unknown."""

    def __init__(self, providers: Optional[List[CredentialProvider]] = None) -> None:
        self._providers: Dict[str, CredentialProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: CredentialProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> CredentialProvider:
        provider = self._providers.get(name)
        if not provider or not provider.enabled:
            raise InvalidProviderError(
                "Invalid authentication provider or provider is not enabled",
                detail={"provider": name},
            )
        return provider

    def find(self, name: str) -> Optional[CredentialProvider]:
        provider = self._providers.get(name)
        return provider if provider and provider.enabled else None

    def names(self) -> List[str]:
        return sorted(name for name, p in self._providers.items() if p.enabled)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        users: LocalUserLookup,
        passwords: PasswordService,
        mfa: MfaService,
        *,
        transport_factory: Optional[Callable[[str], httpx.AsyncBaseTransport]] = None,
    ) -> "ProviderRegistry":
        providers: List[CredentialProvider] = [
            EmailPasswordProvider(settings, users, passwords),
            PhoneProvider(settings, users, passwords, mfa),
            JwtBearerProvider(settings),
        ]
        for name in (GOOGLE, GITHUB, FACEBOOK, MICROSOFT):
            transport = transport_factory(name) if transport_factory else None
            providers.append(OAuthProvider(name, settings, transport=transport))
        return cls(providers)
