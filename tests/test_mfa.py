"""MFA service: method policy, code challenges, TOTP enrollment, lockout and recovery."""

import pytest

from gatekeeper.config import MfaMethod
from gatekeeper.service.errors import (
    CannotEnableWithoutMethodError,
    MfaCodeExpiredError,
    MfaCodeInvalidError,
    MfaDeviceNotFoundError,
    MfaLockedOutError,
    MfaMethodUnavailableError,
    MfaNotEnabledError,
    RecoveryCodeInvalidError,
    TogglingNotAllowedError,
)
from gatekeeper.service.events import AuditEmitter, EventName
from gatekeeper.service.mfa import MfaService
from gatekeeper.service.otp import generate_totp
from gatekeeper.service.passwords import PasswordService
from gatekeeper.storage.models import User, new_id, utcnow


@pytest.fixture
def mfa_factory(store, clock):
    def _build(settings, *, events=None) -> MfaService:
        return MfaService(
            settings,
            store,
            store,
            store,
            PasswordService(settings),
            events=events,
            clock=clock,
        )

    return _build


@pytest.fixture
def mfa(mfa_factory, settings_factory):
    return mfa_factory(settings_factory(mfa_enabled=True))


@pytest.fixture
def user(store):
    return store.create_user(
        User(id=new_id(), email="alice@example.com", email_verified_at=utcnow())
    )


def _enroll_totp(mfa, user, clock):
    setup = mfa.setup_totp_device(user.id, "Phone")
    code = generate_totp(setup.secret, clock.now.timestamp())
    mfa.verify_totp_setup(user.id, setup.secret, code)
    return setup


class TestPolicy:
    def test_disabled_globally(self, mfa_factory, settings, user):
        service = mfa_factory(settings)
        assert service.get_enabled_methods() == []
        assert not service.is_requires_mfa(user)
        with pytest.raises(MfaNotEnabledError):
            service.enable_mfa(user.id)

    def test_required_for_everyone(self, mfa_factory, settings_factory, user):
        service = mfa_factory(settings_factory(mfa_enabled=True, mfa_required=True))
        assert service.is_requires_mfa(user)

    def test_verified_methods_need_verified_contact(self, mfa, store):
        unverified = store.create_user(User(id=new_id(), email="bob@example.com"))
        assert mfa.get_verified_methods(unverified.id) == []
        assert mfa.get_challenge_methods(unverified) == [MfaMethod.EMAIL]

    def test_verified_email_counts(self, mfa, user):
        assert mfa.get_verified_methods(user.id) == [MfaMethod.EMAIL]

    def test_enable_without_method_fails(self, mfa, store):
        bare = store.create_user(User(id=new_id(), email="bob@example.com"))
        with pytest.raises(CannotEnableWithoutMethodError):
            mfa.enable_mfa(bare.id)

    def test_toggle_forbidden(self, mfa_factory, settings_factory, user):
        service = mfa_factory(settings_factory(mfa_enabled=True, mfa_allow_user_toggle=False))
        with pytest.raises(TogglingNotAllowedError):
            service.disable_mfa(user.id)

    def test_enable_then_disable_publishes(self, mfa_factory, settings_factory, user):
        events = AuditEmitter()
        service = mfa_factory(settings_factory(mfa_enabled=True), events=events)
        assert service.enable_mfa(user.id).is_mfa_enabled
        assert not service.disable_mfa(user.id).is_mfa_enabled
        seen = []
        events.subscribe(seen.append)
        events.drain()
        assert [e.name for e in seen] == [
            EventName.TWO_FACTOR_ENABLED,
            EventName.TWO_FACTOR_DISABLED,
        ]


class TestCodes:
    def test_email_code_single_use(self, mfa, user):
        issued = mfa.send_code(user.id, MfaMethod.EMAIL)
        assert issued.destination == "alice@example.com"
        assert mfa.verify(user.id, issued.code, MfaMethod.EMAIL)
        with pytest.raises(MfaCodeInvalidError):
            mfa.verify(user.id, issued.code, MfaMethod.EMAIL)

    def test_code_stored_as_digest(self, mfa, store, user):
        issued = mfa.send_code(user.id, MfaMethod.EMAIL)
        assert all(otp.code != issued.code for otp in store.otps.values())

    def test_expired_code(self, mfa, clock, user):
        issued = mfa.send_code(user.id, MfaMethod.EMAIL)
        clock.advance(minutes=16)
        with pytest.raises(MfaCodeExpiredError):
            mfa.verify(user.id, issued.code, MfaMethod.EMAIL)

    def test_reissue_invalidates_previous_code(self, mfa, user):
        first = mfa.send_code(user.id, MfaMethod.EMAIL)
        second = mfa.send_code(user.id, MfaMethod.EMAIL)
        if first.code != second.code:
            with pytest.raises(MfaCodeInvalidError):
                mfa.verify(user.id, first.code, MfaMethod.EMAIL)
        assert mfa.verify(user.id, second.code, MfaMethod.EMAIL)

    def test_totp_codes_are_not_sent(self, mfa, user):
        with pytest.raises(MfaMethodUnavailableError):
            mfa.send_code(user.id, MfaMethod.TOTP)

    def test_sms_needs_configuration_and_phone(self, mfa_factory, settings_factory, user):
        service = mfa_factory(
            settings_factory(mfa_enabled=True, mfa_methods=[MfaMethod.EMAIL, MfaMethod.SMS])
        )
        with pytest.raises(MfaMethodUnavailableError):
            service.send_code(user.id, MfaMethod.SMS)

    def test_code_sent_event_carries_code(self, mfa_factory, settings_factory, user):
        events = AuditEmitter()
        service = mfa_factory(settings_factory(mfa_enabled=True), events=events)
        issued = service.send_code(user.id, MfaMethod.EMAIL)
        seen = []
        events.subscribe(seen.append, name=EventName.TWO_FACTOR_CODE_SENT)
        events.drain()
        assert seen[0].payload["code"] == issued.code

    def test_default_otp_bypass(self, mfa_factory, settings_factory, user):
        service = mfa_factory(settings_factory(mfa_enabled=True, mfa_default_otp="123456"))
        assert service.verify(user.id, "123456", MfaMethod.EMAIL)

    def test_without_default_otp_zeros_fail(self, mfa, user):
        mfa.send_code(user.id, MfaMethod.EMAIL)
        with pytest.raises(MfaCodeInvalidError):
            mfa.verify(user.id, "000000", MfaMethod.EMAIL)


class TestLockout:
    def test_locks_after_max_attempts(self, mfa_factory, settings_factory, clock, user):
        service = mfa_factory(
            settings_factory(mfa_enabled=True, mfa_max_attempts=3, mfa_lockout_seconds=60)
        )
        for _ in range(3):
            with pytest.raises(MfaCodeInvalidError):
                service.verify(user.id, "999999", MfaMethod.EMAIL)
        issued = service.send_code(user.id, MfaMethod.EMAIL)
        with pytest.raises(MfaLockedOutError):
            service.verify(user.id, issued.code, MfaMethod.EMAIL)
        clock.advance(seconds=61)
        assert service.verify(user.id, issued.code, MfaMethod.EMAIL)

    def test_counters_belong_to_the_instance(self, mfa_factory, settings_factory, user):
        settings = settings_factory(mfa_enabled=True, mfa_max_attempts=2)
        first, second = mfa_factory(settings), mfa_factory(settings)
        for _ in range(2):
            with pytest.raises(MfaCodeInvalidError):
                first.verify(user.id, "999999", MfaMethod.EMAIL)
        assert first.is_locked_out(user.id)
        assert not second.is_locked_out(user.id)

    def test_success_resets_counter(self, mfa_factory, settings_factory, user):
        service = mfa_factory(settings_factory(mfa_enabled=True, mfa_max_attempts=2))
        with pytest.raises(MfaCodeInvalidError):
            service.verify(user.id, "999999", MfaMethod.EMAIL)
        issued = service.send_code(user.id, MfaMethod.EMAIL)
        service.verify(user.id, issued.code, MfaMethod.EMAIL)
        with pytest.raises(MfaCodeInvalidError):
            service.verify(user.id, "999999", MfaMethod.EMAIL)
        assert not service.is_locked_out(user.id)


class TestTotp:
    def test_enrollment_flow(self, mfa, clock, user):
        setup = mfa.setup_totp_device(user.id)
        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert MfaMethod.TOTP not in mfa.get_verified_methods(user.id)
        code = generate_totp(setup.secret, clock.now.timestamp())
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(MfaCodeInvalidError):
            mfa.verify_totp_setup(user.id, setup.secret, wrong)
        device = mfa.verify_totp_setup(user.id, setup.secret, code)
        assert device.verified
        assert MfaMethod.TOTP in mfa.get_verified_methods(user.id)
        assert mfa.enable_mfa(user.id).is_mfa_enabled

    def test_verify_with_authenticator(self, mfa, clock, user):
        setup = _enroll_totp(mfa, user, clock)
        clock.advance(seconds=30)
        code = generate_totp(setup.secret, clock.now.timestamp())
        assert mfa.verify(user.id, code, MfaMethod.TOTP)

    def test_unknown_secret(self, mfa, user):
        with pytest.raises(MfaDeviceNotFoundError):
            mfa.verify_totp_setup(user.id, "JBSWY3DPEHPK3PXP", "123456")

    def test_remove_device(self, mfa, clock, user):
        setup = _enroll_totp(mfa, user, clock)
        assert [d.id for d in mfa.list_devices(user.id)] == [setup.device_id]
        mfa.remove_device(user.id, setup.device_id)
        with pytest.raises(MfaDeviceNotFoundError):
            mfa.remove_device(user.id, setup.device_id)


class TestRecovery:
    def test_reset_drops_devices_and_keeps_mfa(self, mfa, store, clock, user):
        _enroll_totp(mfa, user, clock)
        mfa.enable_mfa(user.id)
        code = mfa.generate_recovery_code(user.id)
        assert mfa.has_recovery_code(user.id)
        mfa.reset_mfa(user.id, code.lower())
        assert mfa.list_devices(user.id) == []
        assert not mfa.has_recovery_code(user.id)
        assert store.get_user(user.id).is_mfa_enabled
        with pytest.raises(RecoveryCodeInvalidError):
            mfa.reset_mfa(user.id, code)

    def test_wrong_recovery_code(self, mfa, user):
        mfa.generate_recovery_code(user.id)
        with pytest.raises(RecoveryCodeInvalidError):
            mfa.reset_mfa(user.id, "AAAA-BBBB-CCCC-DDDD")
        assert mfa.has_recovery_code(user.id)


class TestTrustedDevices:
    def test_token_validates_until_expiry(self, mfa, clock, user):
        token = mfa.create_trusted_device(user.id)
        assert mfa.validate_trusted_device(user.id, token)
        assert not mfa.validate_trusted_device("someone-else", token)
        clock.advance(days=30, seconds=1)
        assert not mfa.validate_trusted_device(user.id, token)

    def test_missing_token(self, mfa, user):
        assert not mfa.validate_trusted_device(user.id, None)
        assert not mfa.validate_trusted_device(user.id, "forged")

    def test_revoke(self, mfa, user):
        token = mfa.create_trusted_device(user.id)
        assert mfa.revoke_trusted_devices(user.id) == 1
        assert not mfa.validate_trusted_device(user.id, token)

