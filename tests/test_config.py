"""Tests for settings loading, duration parsing and insecure-configuration warnings."""

import pytest
from pydantic import ValidationError

from gatekeeper.config import (
    MfaMethod,
    SameSite,
    SessionStorageType,
    Settings,
    TokenDelivery,
    parse_duration,
)

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (90, 90),
            ("90", 90),
            ("15m", 900),
            ("2h", 7200),
            ("7d", 604800),
            ("1w", 604800),
            ("2 days", 172800),
            ("30 seconds", 30),
            ("1500ms", 1),
            ("1y", 31557600),
        ],
    )
    def test_accepts_supported_forms(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "10 parsecs", "-5m", True, None, "0s", "500ms"])
    def test_rejects_invalid_or_sub_second(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSettings:
    def test_defaults(self, settings_factory):
        settings = settings_factory()
        assert settings.session_storage == SessionStorageType.MEMORY
        assert settings.token_delivery == TokenDelivery.BODY
        assert settings.mfa_methods == [MfaMethod.EMAIL, MfaMethod.TOTP]
        assert settings.seconds("access_token_expiry") == 900
        assert settings.seconds("refresh_token_expiry") == 30 * 86400
        assert settings.max_sessions_per_user == 10

    def test_short_jwt_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_missing_jwt_secret_is_generated(self):
        settings = Settings(jwt_secret=None)
        assert len(settings.jwt_secret) >= 32

    def test_invalid_duration_rejected(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(otp_expiry="soon")

    def test_seconds_rejects_unknown_field(self, settings_factory):
        with pytest.raises(KeyError):
            settings_factory().seconds("app_name")

    def test_settings_are_frozen(self, settings_factory):
        settings = settings_factory()
        with pytest.raises(ValidationError):
            settings.mfa_enabled = True

    def test_invalid_default_tenant_slug(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(default_tenant_slug="Not A Slug")

    def test_jwt_provider_needs_its_own_secret(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(jwt_provider_enabled=True)
        with pytest.raises(ValidationError):
            settings_factory(jwt_provider_enabled=True, jwt_external_secret=TEST_SECRET)
        settings = settings_factory(jwt_provider_enabled=True, jwt_external_secret="x" * 40)
        assert settings.jwt_external_secret == "x" * 40


class TestFromEnv:
    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
        monkeypatch.setenv("MFA_ENABLED", "true")
        monkeypatch.setenv("MFA_METHODS", "totp, sms")
        monkeypatch.setenv("MAX_SESSIONS_PER_USER", "3")
        monkeypatch.setenv("DEFAULT_ROLES", "user,reader")
        monkeypatch.setenv("TOKEN_DELIVERY", "cookie")
        settings = Settings.from_env()
        assert settings.mfa_enabled is True
        assert settings.mfa_methods == [MfaMethod.TOTP, MfaMethod.SMS]
        assert settings.max_sessions_per_user == 3
        assert settings.default_roles == ["user", "reader"]
        assert settings.token_delivery == TokenDelivery.COOKIE

    def test_environment_overrides_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("APP_NAME=FromFile\nOTP_LENGTH=8\n")
        monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
        monkeypatch.setenv("APP_NAME", "FromEnv")
        monkeypatch.delenv("OTP_LENGTH", raising=False)
        settings = Settings.from_env()
        assert settings.app_name == "FromEnv"
        assert settings.otp_length == 8


class TestSecurityWarnings:
    def test_clean_configuration_has_no_warnings(self, settings_factory):
        assert settings_factory().security_warnings() == []

    def test_default_otp_is_flagged(self, settings_factory):
        warnings = settings_factory(mfa_default_otp="000000").security_warnings()
        assert any("MFA_DEFAULT_OTP" in w for w in warnings)

    def test_blank_default_otp_is_disabled(self, settings_factory):
        assert settings_factory(mfa_default_otp="").mfa_default_otp is None

    def test_insecure_cookies_flagged(self, settings_factory):
        warnings = settings_factory(
            token_delivery=TokenDelivery.COOKIE, cookie_samesite=SameSite.NONE
        ).security_warnings()
        assert len(warnings) == 2
