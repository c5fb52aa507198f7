"""Credential providers, with OAuth userinfo calls served by httpx.MockTransport."""

import base64
import hashlib
import hmac
import json
import time

import httpx
import pytest

from gatekeeper.service.errors import (
    InvalidCredentialsError,
    InvalidProviderError,
    MissingRequiredFieldsError,
    ProviderUnavailableError,
)
from gatekeeper.service.mfa import MfaService
from gatekeeper.service.passwords import PasswordService
from gatekeeper.service.providers import (
    EmailPasswordProvider,
    JwtBearerProvider,
    OAuthProvider,
    PhoneProvider,
    ProviderRegistry,
    require_fields,
    scoped_identity_id,
)
from gatekeeper.service.tokens import TokenService
from gatekeeper.storage.models import OtpPurpose, User, new_id

PASSWORD = "CorrectHorse1!"
ISSUER_SECRET = "e" * 40


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _issuer_token(claims, *, ttl=300, secret=ISSUER_SECRET):
    """HS256 token as a third-party issuer would mint it, with no engine ``type``."""
    header = _b64(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64(json.dumps({"exp": int(time.time()) + ttl, **claims}).encode())
    signature = hmac.new(secret.encode(), f"{header}.{payload}".encode(), hashlib.sha256)
    return f"{header}.{payload}.{_b64(signature.digest())}"


@pytest.fixture
def passwords(settings):
    return PasswordService(settings)


@pytest.fixture
def alice(store, passwords):
    return store.create_user(
        User(
            id=new_id(),
            email="alice@example.com",
            phone="+15550100",
            password_hash=passwords.hash(PASSWORD),
        )
    )


def _transport(routes):
    """MockTransport answering ``{url: (status, json)}`` and recording requests."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = routes.get(str(request.url), (404, {"message": "not found"}))
        return httpx.Response(status, json=body)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


class TestEmailPassword:
    async def test_valid_password(self, settings, store, passwords, alice):
        provider = EmailPasswordProvider(settings, store, passwords)
        result = await provider.validate({"email": "Alice@Example.com", "password": PASSWORD})
        assert result.user.id == alice.id
        assert result.provider_user_id == "alice@example.com"

    async def test_wrong_password_and_unknown_user_look_alike(self, settings, store, passwords, alice):
        provider = EmailPasswordProvider(settings, store, passwords)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await provider.validate({"email": "alice@example.com", "password": "nope-nope"})
        with pytest.raises(InvalidCredentialsError) as unknown:
            await provider.validate({"email": "ghost@example.com", "password": PASSWORD})
        assert wrong.value.message == unknown.value.message

    def test_required_fields(self, settings, store, passwords):
        provider = EmailPasswordProvider(settings, store, passwords)
        with pytest.raises(MissingRequiredFieldsError) as exc:
            require_fields(provider, {"email": "alice@example.com"})
        assert exc.value.detail["missing"] == ["password"]

    def test_scoped_identity(self):
        assert scoped_identity_id("t1", "alice@example.com") == "t1:alice@example.com"
        assert scoped_identity_id(None, "alice@example.com") == "alice@example.com"


class TestPhone:
    async def test_password_login(self, settings, store, passwords, alice):
        mfa = MfaService(settings, store, store, store, passwords)
        provider = PhoneProvider(settings, store, passwords, mfa)
        result = await provider.validate({"phone": "+1 555 0100", "password": PASSWORD})
        assert result.user.id == alice.id

    async def test_code_login_is_single_use(self, settings, store, passwords, alice):
        mfa = MfaService(settings, store, store, store, passwords)
        provider = PhoneProvider(settings, store, passwords, mfa)
        issued = mfa.issue_code(alice.id, OtpPurpose.VERIFICATION, 300)
        result = await provider.validate({"phone": "+15550100", "code": issued.code})
        assert result.phone == "+15550100"
        with pytest.raises(InvalidCredentialsError):
            await provider.validate({"phone": "+15550100", "code": issued.code})

    async def test_requires_password_or_code(self, settings, store, passwords):
        mfa = MfaService(settings, store, store, store, passwords)
        provider = PhoneProvider(settings, store, passwords, mfa)
        with pytest.raises(MissingRequiredFieldsError):
            await provider.validate({"phone": "+15550100"})


class TestJwtBearer:
    @pytest.fixture
    def jwt_settings(self, settings_factory):
        return settings_factory(jwt_provider_enabled=True, jwt_external_secret=ISSUER_SECRET)

    async def test_trusted_issuer_token(self, jwt_settings):
        token = _issuer_token({"sub": "ext-42", "email": "Bob@Example.com"})
        result = await JwtBearerProvider(jwt_settings).validate({"token": token})
        assert result.provider_user_id == "ext-42"
        assert result.email == "bob@example.com"
        assert "exp" not in result.metadata

    async def test_token_from_other_issuer(self, jwt_settings):
        forged = TokenService(jwt_settings).generate_access_token({"sub": "ext-42"})
        with pytest.raises(InvalidCredentialsError):
            await JwtBearerProvider(jwt_settings).validate({"token": forged})

    @pytest.mark.parametrize("kind", ["access", "refresh", "password_reset", "mfa_challenge"])
    async def test_engine_token_types_refused(self, jwt_settings, kind):
        token = _issuer_token({"sub": "ext-42", "type": kind})
        with pytest.raises(InvalidCredentialsError):
            await JwtBearerProvider(jwt_settings).validate({"token": token})

    async def test_expired_issuer_token(self, jwt_settings):
        token = _issuer_token({"sub": "ext-42"}, ttl=-10)
        with pytest.raises(InvalidCredentialsError):
            await JwtBearerProvider(jwt_settings).validate({"token": token})

    def test_disabled_without_secret(self, settings):
        assert JwtBearerProvider(settings).enabled is False


class TestOAuth:
    async def test_google_userinfo(self, settings):
        transport = _transport(
            {
                "https://www.googleapis.com/oauth2/v2/userinfo": (
                    200,
                    {"id": "g-1", "email": "Alice@Gmail.com", "name": "Alice"},
                )
            }
        )
        provider = OAuthProvider("google", settings, transport=transport)
        result = await provider.validate({"token": "ya29.token"})
        assert result.provider_user_id == "g-1"
        assert result.email == "alice@gmail.com"
        assert result.metadata == {"name": "Alice"}
        assert transport.seen[0].headers["Authorization"] == "Bearer ya29.token"

    async def test_github_falls_back_to_primary_email(self, settings):
        transport = _transport(
            {
                "https://api.github.com/user": (200, {"id": 7, "login": "octo", "email": None}),
                "https://api.github.com/user/emails": (
                    200,
                    [
                        {"email": "old@example.com", "primary": False, "verified": True},
                        {"email": "octo@example.com", "primary": True, "verified": True},
                    ],
                ),
            }
        )
        result = await OAuthProvider("github", settings, transport=transport).validate(
            {"token": "gho_x"}
        )
        assert result.provider_user_id == "7"
        assert result.email == "octo@example.com"
        assert result.metadata["login"] == "octo"

    async def test_microsoft_uses_principal_name(self, settings):
        transport = _transport(
            {
                "https://graph.microsoft.com/v1.0/me": (
                    200,
                    {"id": "m-1", "userPrincipalName": "Carol@Contoso.com", "displayName": "Carol"},
                )
            }
        )
        result = await OAuthProvider("microsoft", settings, transport=transport).validate(
            {"token": "t"}
        )
        assert result.email == "carol@contoso.com"

    async def test_rejected_token(self, settings):
        transport = _transport(
            {"https://www.googleapis.com/oauth2/v2/userinfo": (401, {"error": "invalid"})}
        )
        with pytest.raises(InvalidCredentialsError):
            await OAuthProvider("google", settings, transport=transport).validate({"token": "t"})

    async def test_provider_outage(self, settings):
        transport = _transport(
            {"https://www.googleapis.com/oauth2/v2/userinfo": (503, {"error": "down"})}
        )
        with pytest.raises(ProviderUnavailableError):
            await OAuthProvider("google", settings, transport=transport).validate({"token": "t"})

    async def test_network_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        provider = OAuthProvider("facebook", settings, transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderUnavailableError):
            await provider.validate({"token": "t"})

    async def test_missing_user_id(self, settings):
        transport = _transport(
            {"https://www.googleapis.com/oauth2/v2/userinfo": (200, {"email": "a@b.c"})}
        )
        with pytest.raises(InvalidCredentialsError):
            await OAuthProvider("google", settings, transport=transport).validate({"token": "t"})

    def test_unknown_provider(self, settings):
        with pytest.raises(InvalidProviderError):
            OAuthProvider("myspace", settings)

    def test_skips_local_mfa(self, settings):
        assert OAuthProvider("google", settings).skip_mfa is True


class TestRegistry:
    def test_only_enabled_providers_resolve(self, settings_factory, store, passwords):
        settings = settings_factory(oauth_github_enabled=True)
        mfa = MfaService(settings, store, store, store, passwords)
        registry = ProviderRegistry.from_settings(settings, store, passwords, mfa)
        assert registry.names() == ["email", "github"]
        assert registry.get("github").name == "github"
        assert registry.find("phone") is None
        with pytest.raises(InvalidProviderError):
            registry.get("google")
        with pytest.raises(InvalidProviderError):
            registry.get("ldap")
