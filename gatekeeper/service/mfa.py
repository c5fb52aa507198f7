from __future__ import annotations

import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from gatekeeper.config import MfaMethod, Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import (
    CannotEnableWithoutMethodError,
    MfaCodeExpiredError,
    MfaCodeInvalidError,
    MfaDeviceNotFoundError,
    MfaLockedOutError,
    MfaMethodUnavailableError,
    MfaNotEnabledError,
    OtpAlreadyUsedError,
    OtpExpiredError,
    OtpInvalidError,
    RecoveryCodeInvalidError,
    TogglingNotAllowedError,
    UserNotFoundError,
)
from gatekeeper.service.events import AuditEmitter, EventName
from gatekeeper.service.otp import (
    generate_otp,
    generate_recovery_code,
    generate_totp_secret,
    normalize_recovery_code,
    provisioning_uri,
    verify_totp,
)
from gatekeeper.service.passwords import PasswordService
from gatekeeper.service.sessions import DeviceMeta
from gatekeeper.storage.common import hash_token, parse_ip_address
from gatekeeper.storage.models import (
    MfaDevice,
    Otp,
    OtpPurpose,
    OtpStatus,
    TrustedDevice,
    User,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


class MfaUserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...


class OtpStore(Protocol):
    def create_otp(self, otp: Otp) -> Otp: ...

    def consume_otp(
        self,
        user_id: str,
        purpose: OtpPurpose,
        code: str,
        *,
        now: Optional[datetime] = None,
        mode: str = "delete",
    ) -> Tuple[OtpStatus, Optional[Otp]]: ...


class MfaStore(Protocol):
    def create_mfa_device(self, device: MfaDevice) -> MfaDevice: ...

    def get_mfa_device_by_secret(
        self, user_id: str, secret: str
    ) -> Optional[MfaDevice]: ...

    def list_mfa_devices(
        self, user_id: str, *, verified_only: bool = False
    ) -> List[MfaDevice]: ...

    def update_mfa_device(self, device_id: str, **changes: Any) -> Optional[MfaDevice]: ...

    def delete_mfa_device(self, user_id: str, device_id: str) -> bool: ...

    def delete_user_mfa_devices(self, user_id: str) -> int: ...

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def get_trusted_device(
        self, user_id: str, token_hash: str
    ) -> Optional[TrustedDevice]: ...

    def touch_trusted_device(
        self, device_id: str, now: Optional[datetime] = None
    ) -> bool: ...

    def delete_trusted_device(self, device_id: str) -> bool: ...

    def delete_user_trusted_devices(self, user_id: str) -> int: ...


@dataclass
class TotpSetup:
    device_id: str
    secret: str
    provisioning_uri: str


@dataclass
class IssuedCode:
    """A freshly issued one-time code; ``code`` is plaintext and never stored."""

    otp_id: str
    code: str
    expires_at: datetime
    method: Optional[MfaMethod] = None
    destination: Optional[str] = None


class MfaService:
    """Second-factor state per user: OTP challenges, TOTP devices, recovery and trusted devices.

    OTP codes are stored as SHA-256 digests. TOTP secrets are encrypted by the
    store. Failed verifications count towards a lockout of ``mfa_max_attempts``
    within ``mfa_lockout_seconds``.

    Attempt counters and lockouts are held by this instance, not the store, so
    each worker process enforces its own limit. Emailed and texted codes are
    still single-use across workers because consumption goes through the store.
    """

    def __init__(
        self,
        settings: Settings,
        users: MfaUserStore,
        otps: OtpStore,
        devices: MfaStore,
        passwords: PasswordService,
        *,
        events: Optional[AuditEmitter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.otps = otps
        self.devices = devices
        self.passwords = passwords
        self.events = events
        self._clock = clock or utcnow
        self.otp_ttl = settings.seconds("otp_expiry")
        self.trusted_device_ttl = settings.seconds("trusted_device_expiry")
        self._state_lock = threading.Lock()
        self._attempts: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    def _require_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise UserNotFoundError("User not found")
        return user

    # -- policy ----------------------------------------------------------

    def get_enabled_methods(self) -> List[MfaMethod]:
        if not self.settings.mfa_enabled:
            return []
        return list(self.settings.mfa_methods)

    def get_verified_methods(self, user_id: str) -> List[MfaMethod]:
        """Methods the user can complete right now.

        TOTP needs a verified device; EMAIL and SMS need a verified address
        of the matching kind.
        """
        user = self._require_user(user_id)
        methods: List[MfaMethod] = []
        for method in self.get_enabled_methods():
            if method == MfaMethod.TOTP:
                if self.devices.list_mfa_devices(user.id, verified_only=True):
                    methods.append(method)
            elif method == MfaMethod.EMAIL:
                if user.email and user.email_verified_at:
                    methods.append(method)
            elif method == MfaMethod.SMS:
                if user.phone and user.phone_verified_at:
                    methods.append(method)
        return methods

    def get_challenge_methods(self, user: User) -> List[MfaMethod]:
        """Methods offered at login: verified ones, else any code channel with a contact."""
        verified = self.get_verified_methods(user.id)
        if verified:
            return verified
        fallback = []
        for method in self.get_enabled_methods():
            if method == MfaMethod.EMAIL and user.email:
                fallback.append(method)
            elif method == MfaMethod.SMS and user.phone:
                fallback.append(method)
        return fallback

    def is_requires_mfa(self, user: User) -> bool:
        if not self.settings.mfa_enabled:
            return False
        if self.settings.mfa_required:
            return True
        return user.is_mfa_enabled

    def _check_toggle(self) -> None:
        if not self.settings.mfa_enabled:
            raise MfaNotEnabledError("Multi-factor authentication is disabled")
        if not self.settings.mfa_allow_user_toggle:
            raise TogglingNotAllowedError("Users may not toggle multi-factor authentication")

    def enable_mfa(self, user_id: str) -> User:
        self._check_toggle()
        if not self.get_verified_methods(user_id):
            raise CannotEnableWithoutMethodError(
                "At least one verified MFA method is required"
            )
        user = self.users.update_user(user_id, is_mfa_enabled=True)
        if not user:
            raise UserNotFoundError("User not found")
        logger.info("mfa_enabled", user_id=user_id)
        self._publish(EventName.TWO_FACTOR_ENABLED, user)
        return user

    def disable_mfa(self, user_id: str) -> User:
        self._check_toggle()
        user = self.users.update_user(user_id, is_mfa_enabled=False)
        if not user:
            raise UserNotFoundError("User not found")
        logger.info("mfa_disabled", user_id=user_id)
        self._publish(EventName.TWO_FACTOR_DISABLED, user)
        return user

    # -- generic one-time codes ------------------------------------------

    def issue_code(self, user_id: str, purpose: OtpPurpose, ttl_seconds: int) -> IssuedCode:
        """Create a new code for ``purpose``; earlier unconsumed codes stop working."""
        code = generate_otp(self.settings.otp_length, self.settings.otp_format)
        otp = Otp(
            id=new_id(),
            user_id=user_id,
            purpose=purpose,
            code=self._digest(code),
            expires_at=self._now() + timedelta(seconds=ttl_seconds),
            created_at=self._now(),
        )
        self.otps.create_otp(otp)
        return IssuedCode(otp_id=otp.id, code=code, expires_at=otp.expires_at)

    def consume_code(
        self, user_id: str, purpose: OtpPurpose, code: str, *, mode: str = "delete"
    ) -> Otp:
        """Atomically spend a code, raising the matching OTP error otherwise."""
        if not code:
            raise OtpInvalidError("Code is required")
        status, otp = self.otps.consume_otp(
            user_id, purpose, self._digest(code), now=self._now(), mode=mode
        )
        if status == OtpStatus.CONSUMED and otp is not None:
            return otp
        if status == OtpStatus.EXPIRED:
            raise OtpExpiredError("Code has expired")
        if status == OtpStatus.USED:
            raise OtpAlreadyUsedError("Code has already been used")
        raise OtpInvalidError("Code is invalid")

    @staticmethod
    def _digest(code: str) -> str:
        return hash_token(code.strip().upper())

    # -- challenges ------------------------------------------------------

    def send_code(self, user_id: str, method: MfaMethod) -> IssuedCode:
        if method not in self.get_enabled_methods():
            raise MfaMethodUnavailableError(f"MFA method {method.value} is not enabled")
        if method == MfaMethod.TOTP:
            raise MfaMethodUnavailableError("Authenticator codes are not sent")
        user = self._require_user(user_id)
        destination = user.email if method == MfaMethod.EMAIL else user.phone
        if not destination:
            raise MfaMethodUnavailableError(
                f"No {method.value} destination on file",
                detail={"method": method.value},
            )
        issued = self.issue_code(user.id, OtpPurpose.MFA, self.otp_ttl)
        issued.method = method
        issued.destination = destination
        logger.info("mfa_code_sent", user_id=user.id, method=method.value)
        self._publish(
            EventName.TWO_FACTOR_CODE_SENT,
            user,
            method=method.value,
            destination=destination,
            code=issued.code,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    def verify(self, user_id: str, code: str, method: MfaMethod) -> bool:
        """Check a second-factor code; raises on failure, returns True on success."""
        self._check_lockout(user_id)
        default_otp = self.settings.mfa_default_otp
        if default_otp and code and hmac.compare_digest(code.strip(), default_otp):
            logger.warning("mfa_default_otp_used", user_id=user_id, method=method.value)
            self._clear_attempts(user_id)
            return True

        if method not in self.get_enabled_methods():
            raise MfaMethodUnavailableError(f"MFA method {method.value} is not enabled")

        if method == MfaMethod.TOTP:
            devices = self.devices.list_mfa_devices(user_id, verified_only=True)
            if not devices:
                raise MfaMethodUnavailableError("No verified authenticator device")
            now = self._now()
            for device in devices:
                if verify_totp(device.secret, code, timestamp=now.timestamp()):
                    self.devices.update_mfa_device(device.id, last_used_at=now)
                    self._clear_attempts(user_id)
                    return True
            self._record_failure(user_id)
            raise MfaCodeInvalidError("Invalid authentication code")

        try:
            self.consume_code(user_id, OtpPurpose.MFA, code)
        except OtpExpiredError:
            self._record_failure(user_id)
            raise MfaCodeExpiredError("Authentication code has expired")
        except (OtpInvalidError, OtpAlreadyUsedError):
            self._record_failure(user_id)
            raise MfaCodeInvalidError("Invalid authentication code")
        self._clear_attempts(user_id)
        return True

    # -- lockout ---------------------------------------------------------

    def is_locked_out(self, user_id: str) -> bool:
        with self._state_lock:
            until = self._lockouts.get(user_id)
            if until and until > self._now():
                return True
            if until:
                self._lockouts.pop(user_id, None)
            return False

    def _check_lockout(self, user_id: str) -> None:
        if self.is_locked_out(user_id):
            logger.warning("mfa_locked_out", user_id=user_id)
            raise MfaLockedOutError("Too many failed attempts; try again later")

    def _record_failure(self, user_id: str) -> None:
        now = self._now()
        window = timedelta(seconds=self.settings.mfa_lockout_seconds)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._attempts.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= self.settings.mfa_max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    def _clear_attempts(self, user_id: str) -> None:
        with self._state_lock:
            self._attempts.pop(user_id, None)

    # -- TOTP devices ----------------------------------------------------

    def setup_totp_device(
        self, user_id: str, device_name: Optional[str] = None
    ) -> TotpSetup:
        if MfaMethod.TOTP not in self.get_enabled_methods():
            raise MfaMethodUnavailableError("Authenticator apps are not enabled")
        user = self._require_user(user_id)
        secret = generate_totp_secret()
        device = MfaDevice(
            id=new_id(),
            user_id=user.id,
            secret=secret,
            device_name=device_name or "Authenticator",
            created_at=self._now(),
        )
        self.devices.create_mfa_device(device)
        account = user.email or user.phone or user.id
        logger.info("totp_device_created", user_id=user.id, device_id=device.id)
        return TotpSetup(
            device_id=device.id,
            secret=secret,
            provisioning_uri=provisioning_uri(secret, account, self.settings.app_name),
        )

    def verify_totp_setup(self, user_id: str, secret: str, code: str) -> MfaDevice:
        device = self.devices.get_mfa_device_by_secret(user_id, secret)
        if not device:
            raise MfaDeviceNotFoundError("Authenticator device not found")
        now = self._now()
        if not verify_totp(device.secret, code, timestamp=now.timestamp()):
            raise MfaCodeInvalidError("Invalid authentication code")
        updated = self.devices.update_mfa_device(device.id, verified=True, last_used_at=now)
        if not updated:
            raise MfaDeviceNotFoundError("Authenticator device not found")
        logger.info("totp_device_verified", user_id=user_id, device_id=device.id)
        return updated

    def list_devices(self, user_id: str) -> List[MfaDevice]:
        return self.devices.list_mfa_devices(user_id)

    def remove_device(self, user_id: str, device_id: str) -> None:
        if not self.devices.delete_mfa_device(user_id, device_id):
            raise MfaDeviceNotFoundError("Authenticator device not found")
        logger.info("totp_device_removed", user_id=user_id, device_id=device_id)

    # -- recovery --------------------------------------------------------

    def generate_recovery_code(self, user_id: str) -> str:
        """Return a new recovery code in plaintext; only its hash is kept."""
        self._require_user(user_id)
        code = generate_recovery_code()
        self.users.update_user(
            user_id,
            mfa_recovery_code_hash=self.passwords.hash(normalize_recovery_code(code)),
        )
        logger.info("mfa_recovery_code_generated", user_id=user_id)
        return code

    def has_recovery_code(self, user_id: str) -> bool:
        return bool(self._require_user(user_id).mfa_recovery_code_hash)

    def reset_mfa(self, user_id: str, code: str) -> None:
        """Spend the recovery code and drop every authenticator device.

        MFA stays enabled; the user re-enrolls a device afterwards.
        """
        self._check_lockout(user_id)
        user = self._require_user(user_id)
        if not user.mfa_recovery_code_hash or not self.passwords.verify(
            user.mfa_recovery_code_hash, normalize_recovery_code(code or "")
        ):
            self._record_failure(user_id)
            logger.warning("mfa_recovery_code_rejected", user_id=user_id)
            raise RecoveryCodeInvalidError("Recovery code is invalid")
        self.users.update_user(user_id, mfa_recovery_code_hash=None)
        removed = self.devices.delete_user_mfa_devices(user_id)
        self._clear_attempts(user_id)
        logger.info("mfa_reset", user_id=user_id, devices_removed=removed)

    # -- trusted devices -------------------------------------------------

    def create_trusted_device(
        self, user_id: str, device: Optional[DeviceMeta] = None
    ) -> str:
        """Issue a bypass token for ``user_id``; the plaintext is returned once."""
        device = device or DeviceMeta()
        token = secrets.token_urlsafe(32)
        now = self._now()
        record = TrustedDevice(
            id=new_id(),
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=now + timedelta(seconds=self.trusted_device_ttl),
            user_agent=device.user_agent,
            ip_address=parse_ip_address(device.ip_address),
            last_used_at=now,
            created_at=now,
        )
        self.devices.create_trusted_device(record)
        logger.info("trusted_device_created", user_id=user_id, device_id=record.id)
        return token

    def validate_trusted_device(self, user_id: str, token: Optional[str]) -> bool:
        if not token:
            return False
        record = self.devices.get_trusted_device(user_id, hash_token(token))
        if not record:
            return False
        now = self._now()
        if now >= record.expires_at:
            self.devices.delete_trusted_device(record.id)
            logger.info("trusted_device_expired", user_id=user_id, device_id=record.id)
            return False
        # The store refuses to touch a record that expired in the meantime
        return self.devices.touch_trusted_device(record.id, now)

    def revoke_trusted_devices(self, user_id: str) -> int:
        count = self.devices.delete_user_trusted_devices(user_id)
        logger.info("trusted_devices_revoked", user_id=user_id, count=count)
        return count

    def _publish(self, name: EventName, user: User, **payload: Any) -> None:
        if self.events:
            self.events.publish(
                name, user_id=user.id, tenant_id=user.tenant_id, payload=payload
            )


__all__ = [
    "IssuedCode",
    "MfaService",
    "MfaStore",
    "MfaUserStore",
    "OtpStore",
    "TotpSetup",
]
