from __future__ import annotations

import copy
import hmac
import json
import secrets
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from gatekeeper.logging import get_logger
from gatekeeper.storage.common import (
    SecretCipher,
    deserialize_datetime,
    normalize_email,
    normalize_phone,
    serialize_datetime,
)
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    Identity,
    MfaDevice,
    Otp,
    OtpPurpose,
    OtpStatus,
    Role,
    Session,
    Tenant,
    TrustedDevice,
    User,
    utcnow,
)

T = TypeVar("T")

_DATETIME_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "expires_at",
        "last_active",
        "last_used_at",
        "email_verified_at",
        "phone_verified_at",
    }
)


class MemoryStore:
    """Thread-safe in-process store implementing every store protocol.

    All reads and writes go through one ``RLock`` so compound operations
    (evict-then-insert, check-and-rotate, check-and-consume) are atomic.
    Returned entities are copies; mutating them never changes stored state.
    With ``state_path`` set, state is written to a JSON file after each
    mutation and reloaded on construction.
    """

    def __init__(
        self,
        state_path: Optional[str] = None,
        *,
        mfa_encryption_key: Optional[str] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Session] = {}
        self.otps: Dict[str, Otp] = {}
        self.mfa_devices: Dict[str, MfaDevice] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, List[str]] = {}
        # RLock so compound operations can call other locked methods
        self._data_lock = threading.RLock()
        self._state_file = Path(state_path) if state_path else None
        if self._state_file and not mfa_encryption_key:
            raise ValueError("mfa_encryption_key is required when state is persisted")
        self._cipher = SecretCipher(mfa_encryption_key or secrets.token_urlsafe(32))
        if self._state_file:
            self._load_state()

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            record = replace(
                user,
                email=normalize_email(user.email),
                phone=normalize_phone(user.phone),
                metadata=dict(user.metadata),
            )
            for existing in self.users.values():
                if existing.tenant_id != record.tenant_id:
                    continue
                if record.email and existing.email == record.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if record.phone and existing.phone == record.phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            self.users[record.id] = record
            self._persist_state()
            return copy.deepcopy(record)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return copy.deepcopy(self.users.get(user_id))

    def get_user_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized and user.tenant_id == tenant_id:
                    return copy.deepcopy(user)
        return None

    def get_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]:
        normalized = normalize_phone(phone)
        if not normalized:
            return None
        with self._data_lock:
            for user in self.users.values():
                if user.phone == normalized and user.tenant_id == tenant_id:
                    return copy.deepcopy(user)
        return None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in changes:
                changes["email"] = normalize_email(changes["email"])
            if "phone" in changes:
                changes["phone"] = normalize_phone(changes["phone"])
            for field_name in ("email", "phone"):
                value = changes.get(field_name)
                if not value:
                    continue
                for other in self.users.values():
                    if (
                        other.id != user_id
                        and other.tenant_id == user.tenant_id
                        and getattr(other, field_name) == value
                    ):
                        raise ConstraintViolation(
                            f"{field_name} already exists", {"field": field_name}
                        )
            updated = replace(user, updated_at=utcnow(), **changes)
            self.users[user_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    # -- identities ------------------------------------------------------

    def link_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            for existing in self.identities.values():
                if (
                    existing.provider == identity.provider
                    and existing.provider_id == identity.provider_id
                ):
                    if existing.user_id != identity.user_id:
                        raise ConstraintViolation(
                            "identity linked to another user", {"field": "identity"}
                        )
                    return copy.deepcopy(existing)
            self.identities[identity.id] = copy.deepcopy(identity)
            self._persist_state()
            return copy.deepcopy(identity)

    def find_identity(self, provider: str, provider_id: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.provider == provider and identity.provider_id == provider_id:
                    return copy.deepcopy(identity)
        return None

    def find_user_identity(self, user_id: str, provider: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.user_id == user_id and identity.provider == provider:
                    return copy.deepcopy(identity)
        return None

    def list_identities(self, user_id: str) -> List[Identity]:
        with self._data_lock:
            return [
                copy.deepcopy(i) for i in self.identities.values() if i.user_id == user_id
            ]

    # -- sessions --------------------------------------------------------

    def create_session(self, session: Session, *, max_sessions: int = 0) -> List[Session]:
        """Insert ``session``, first evicting least-recently-active sessions over the cap."""
        with self._data_lock:
            evicted: List[Session] = []
            if max_sessions > 0:
                existing = sorted(
                    (s for s in self.sessions.values() if s.user_id == session.user_id),
                    key=lambda s: s.last_active,
                )
                while len(existing) >= max_sessions:
                    oldest = existing.pop(0)
                    self.sessions.pop(oldest.id, None)
                    evicted.append(oldest)
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return copy.deepcopy(self.sessions.get(session_id))

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [
                copy.deepcopy(s) for s in self.sessions.values() if s.user_id == user_id
            ]

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_hash: Optional[str],
        new_hash: str,
        *,
        last_active: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.refresh_token_hash or not expected_hash:
                return None
            if not hmac.compare_digest(sess.refresh_token_hash, expected_hash):
                return None
            sess.refresh_token_hash = new_hash
            sess.last_active = last_active
            if expires_at is not None:
                sess.expires_at = expires_at
            self._persist_state()
            return copy.deepcopy(sess)

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            updated = replace(sess, **changes)
            self.sessions[session_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- one-time codes --------------------------------------------------

    def create_otp(self, otp: Otp) -> Otp:
        """Store ``otp``, replacing earlier codes for the same user and purpose.

        Used codes go too, along with anyone's codes that expired before this one
        was issued.
        """
        with self._data_lock:
            stale = [
                oid
                for oid, existing in self.otps.items()
                if (existing.user_id == otp.user_id and existing.purpose == otp.purpose)
                or existing.expires_at <= otp.created_at
            ]
            for oid in stale:
                self.otps.pop(oid, None)
            self.otps[otp.id] = copy.deepcopy(otp)
            self._persist_state()
            return copy.deepcopy(otp)

    def consume_otp(
        self,
        user_id: str,
        purpose: OtpPurpose,
        code: str,
        *,
        now: Optional[datetime] = None,
        mode: str = "delete",
    ) -> Tuple[OtpStatus, Optional[Otp]]:
        now = now or utcnow()
        with self._data_lock:
            match: Optional[Otp] = None
            for otp in self.otps.values():
                if (
                    otp.user_id == user_id
                    and otp.purpose == purpose
                    and hmac.compare_digest(otp.code, code)
                ):
                    # Prefer the live code when a used one with the same value lingers
                    if match is None or (match.used and not otp.used):
                        match = otp
            if match is None:
                return OtpStatus.MISSING, None
            if match.used:
                return OtpStatus.USED, copy.deepcopy(match)
            if now >= match.expires_at:
                self.otps.pop(match.id, None)
                self._persist_state()
                return OtpStatus.EXPIRED, copy.deepcopy(match)
            if mode == "mark":
                match.used = True
            else:
                self.otps.pop(match.id, None)
            self._persist_state()
            return OtpStatus.CONSUMED, copy.deepcopy(match)

    def delete_user_otps(self, user_id: str, purpose: Optional[OtpPurpose] = None) -> int:
        with self._data_lock:
            stale = [
                oid
                for oid, otp in self.otps.items()
                if otp.user_id == user_id and (purpose is None or otp.purpose == purpose)
            ]
            for oid in stale:
                self.otps.pop(oid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- TOTP devices ----------------------------------------------------

    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        with self._data_lock:
            self.mfa_devices[device.id] = replace(
                device, secret=self._cipher.encrypt(device.secret)
            )
            self._persist_state()
            return copy.deepcopy(device)

    def get_mfa_device(self, device_id: str) -> Optional[MfaDevice]:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            return self._decrypted(device) if device else None

    def get_mfa_device_by_secret(self, user_id: str, secret: str) -> Optional[MfaDevice]:
        with self._data_lock:
            for device in self.mfa_devices.values():
                if device.user_id != user_id:
                    continue
                plain = self._decrypted(device)
                if hmac.compare_digest(plain.secret, secret):
                    return plain
        return None

    def list_mfa_devices(
        self, user_id: str, *, verified_only: bool = False
    ) -> List[MfaDevice]:
        with self._data_lock:
            devices = [
                self._decrypted(d)
                for d in self.mfa_devices.values()
                if d.user_id == user_id and (d.verified or not verified_only)
            ]
        return sorted(devices, key=lambda d: d.created_at)

    def update_mfa_device(self, device_id: str, **changes: Any) -> Optional[MfaDevice]:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device:
                return None
            if "secret" in changes:
                changes["secret"] = self._cipher.encrypt(changes["secret"])
            updated = replace(device, **changes)
            self.mfa_devices[device_id] = updated
            self._persist_state()
            return self._decrypted(updated)

    def delete_mfa_device(self, user_id: str, device_id: str) -> bool:
        with self._data_lock:
            device = self.mfa_devices.get(device_id)
            if not device or device.user_id != user_id:
                return False
            self.mfa_devices.pop(device_id, None)
            self._persist_state()
            return True

    def delete_user_mfa_devices(self, user_id: str) -> int:
        with self._data_lock:
            stale = [did for did, d in self.mfa_devices.items() if d.user_id == user_id]
            for did in stale:
                self.mfa_devices.pop(did, None)
            if stale:
                self._persist_state()
            return len(stale)

    def _decrypted(self, device: MfaDevice) -> MfaDevice:
        return replace(device, secret=self._cipher.decrypt(device.secret))

    # -- trusted devices -------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            self.trusted_devices[device.id] = copy.deepcopy(device)
            self._persist_state()
            return copy.deepcopy(device)

    def get_trusted_device(self, user_id: str, token_hash: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            for device in self.trusted_devices.values():
                if device.user_id == user_id and hmac.compare_digest(
                    device.token_hash, token_hash
                ):
                    return copy.deepcopy(device)
        return None

    def touch_trusted_device(self, device_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or now >= device.expires_at:
                return False
            device.last_used_at = now
            self._persist_state()
            return True

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._data_lock:
            removed = self.trusted_devices.pop(device_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            stale = [
                did for did, d in self.trusted_devices.items() if d.user_id == user_id
            ]
            for did in stale:
                self.trusted_devices.pop(did, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- tenants ---------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        with self._data_lock:
            if any(t.slug == tenant.slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            self.tenants[tenant.id] = copy.deepcopy(tenant)
            self._persist_state()
            return copy.deepcopy(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return copy.deepcopy(self.tenants.get(tenant_id))

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.slug == slug:
                    return copy.deepcopy(tenant)
        return None

    # -- roles -----------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        with self._data_lock:
            if self._find_role(role.name, role.guard, role.tenant_id):
                raise ConstraintViolation("role already exists", {"field": "role"})
            self.roles[role.id] = copy.deepcopy(role)
            self._persist_state()
            return copy.deepcopy(role)

    def get_role(
        self, name: str, guard: str, tenant_id: Optional[str] = None
    ) -> Optional[Role]:
        with self._data_lock:
            return copy.deepcopy(self._find_role(name, guard, tenant_id))

    def _find_role(self, name: str, guard: str, tenant_id: Optional[str]) -> Optional[Role]:
        for role in self.roles.values():
            if role.name == name and role.guard == guard and role.tenant_id == tenant_id:
                return role
        return None

    def assign_role(self, user_id: str, role_id: str) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"field": "role"})
            assigned = self.user_roles.setdefault(user_id, [])
            if role_id not in assigned:
                assigned.append(role_id)
                self._persist_state()

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            assigned = self.user_roles.get(user_id, [])
            if role_id not in assigned:
                return False
            assigned.remove(role_id)
            self._persist_state()
            return True

    def list_user_roles(self, user_id: str, guard: Optional[str] = None) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[rid]
                for rid in self.user_roles.get(user_id, [])
                if rid in self.roles
            ]
            return [
                copy.deepcopy(r) for r in roles if guard is None or r.guard == guard
            ]

    # -- persistence -----------------------------------------------------

    def _persist_state(self) -> None:
        if not self._state_file:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "identities": [self._serialize(i) for i in self.identities.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "otps": [self._serialize(o) for o in self.otps.values()],
            "mfa_devices": [self._serialize(d) for d in self.mfa_devices.values()],
            "trusted_devices": [
                self._serialize(d) for d in self.trusted_devices.values()
            ],
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "roles": [self._serialize(r) for r in self.roles.values()],
            "user_roles": self.user_roles,
        }
        tmp_path = self._state_file.with_suffix(".tmp")
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self._state_file)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        assert self._state_file is not None
        try:
            data = json.loads(self._state_file.read_text())
        except FileNotFoundError:
            return False
        self.users = self._load_many(User, data.get("users", []))
        self.identities = self._load_many(Identity, data.get("identities", []))
        self.sessions = self._load_many(Session, data.get("sessions", []))
        self.otps = self._load_many(Otp, data.get("otps", []))
        for otp in self.otps.values():
            otp.purpose = OtpPurpose(otp.purpose)
        self.mfa_devices = self._load_many(MfaDevice, data.get("mfa_devices", []))
        self.trusted_devices = self._load_many(
            TrustedDevice, data.get("trusted_devices", [])
        )
        self.tenants = self._load_many(Tenant, data.get("tenants", []))
        self.roles = self._load_many(Role, data.get("roles", []))
        self.user_roles = {
            uid: list(role_ids) for uid, role_ids in data.get("user_roles", {}).items()
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize(obj: Any) -> dict:
        raw = asdict(obj)
        for key, value in raw.items():
            if isinstance(value, datetime):
                raw[key] = serialize_datetime(value)
            elif isinstance(value, Enum):
                raw[key] = value.value
        return raw

    @staticmethod
    def _deserialize(cls: Type[T], data: dict) -> T:
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        kwargs = {k: v for k, v in data.items() if k in known}
        for key in _DATETIME_FIELDS & kwargs.keys():
            kwargs[key] = deserialize_datetime(kwargs[key])
        return cls(**kwargs)

    def _load_many(self, cls: Type[T], rows: List[dict]) -> Dict[str, T]:
        loaded: Dict[str, T] = {}
        for row in rows:
            entity = self._deserialize(cls, row)
            loaded[entity.id] = entity  # type: ignore[attr-defined]
        return loaded
