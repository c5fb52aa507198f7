from __future__ import annotations

import hmac
import json
from dataclasses import fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeeper.logging import get_logger
from gatekeeper.storage.common import (
    SecretCipher,
    as_utc,
    normalize_email,
    normalize_phone,
    parse_json_meta,
    safe_row_value,
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

_JSON_COLUMNS = frozenset({"metadata", "data", "permissions"})

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS gk_tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL,
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT gk_tenant_slug_key UNIQUE (slug)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gk_user (
        id TEXT PRIMARY KEY,
        email TEXT,
        phone TEXT,
        tenant_id TEXT REFERENCES gk_tenant (id),
        password_hash TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        phone_verified_at TIMESTAMPTZ,
        is_mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_recovery_code_hash TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS gk_user_email_key
        ON gk_user (COALESCE(tenant_id, ''), email) WHERE email IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS gk_user_phone_key
        ON gk_user (COALESCE(tenant_id, ''), phone) WHERE phone IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS gk_identity (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES gk_user (id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT gk_identity_provider_key UNIQUE (provider, provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gk_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES gk_user (id) ON DELETE CASCADE,
        tenant_id TEXT,
        refresh_token_hash TEXT,
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        device_name TEXT,
        user_agent TEXT,
        ip_address TEXT,
        last_active TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS gk_session_user_idx ON gk_session (user_id, last_active)",
    """
    CREATE TABLE IF NOT EXISTS gk_otp (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES gk_user (id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS gk_otp_user_purpose_idx ON gk_otp (user_id, purpose)",
    """
    CREATE TABLE IF NOT EXISTS gk_mfa_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES gk_user (id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        device_name TEXT NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gk_trusted_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES gk_user (id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_address TEXT,
        last_used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gk_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        guard TEXT NOT NULL,
        tenant_id TEXT REFERENCES gk_tenant (id),
        permissions JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS gk_role_name_key
        ON gk_role (name, guard, COALESCE(tenant_id, ''))
    """,
    """
    CREATE TABLE IF NOT EXISTS gk_user_role (
        user_id TEXT NOT NULL REFERENCES gk_user (id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES gk_role (id) ON DELETE CASCADE,
        PRIMARY KEY (user_id, role_id)
    )
    """,
)

_USER_COLUMNS = frozenset(f.name for f in fields(User)) - {"id", "created_at"}
_SESSION_COLUMNS = frozenset(
    {"data", "device_name", "user_agent", "ip_address", "last_active", "expires_at"}
)
_MFA_DEVICE_COLUMNS = frozenset({"secret", "device_name", "verified", "last_used_at"})


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(exc.diag, "constraint_name", None) or ""
    for field_name in ("email", "phone", "slug", "provider", "name"):
        if field_name in name:
            return {"provider": "identity", "name": "role"}.get(field_name, field_name)
    return "unknown"


class PostgresStore:
    """Postgres-backed implementation of every store protocol.

    Compound operations run in one transaction on one pooled connection:
    session eviction takes a per-user advisory lock, refresh rotation is a
    conditional ``UPDATE ... RETURNING`` and OTP consumption locks the row
    with ``FOR UPDATE``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: Optional[str] = None,
        pool: Optional[Any] = None,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        if not mfa_encryption_key:
            raise ValueError("mfa_encryption_key is required for the postgres store")
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(SCHEMA))

    def close(self) -> None:
        self.pool.close()

    # -- row helpers -----------------------------------------------------

    @staticmethod
    def _adapt(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS:
            return json.dumps(value if value is not None else {})
        if isinstance(value, Enum):
            return value.value
        return value

    @staticmethod
    def _from_row(cls: Type[T], row: Dict[str, Any]) -> T:
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):  # type: ignore[arg-type]
            if f.name not in row:
                continue
            value = row[f.name]
            if f.name in _JSON_COLUMNS:
                if f.name == "permissions":
                    value = value if isinstance(value, list) else json.loads(value or "[]")
                else:
                    value = parse_json_meta(value)
            elif isinstance(value, datetime):
                value = as_utc(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _insert(self, conn: Any, table: str, entity: Any) -> None:
        columns = [f.name for f in fields(entity)]
        placeholders = ", ".join(["%s"] * len(columns))
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(self._adapt(c, getattr(entity, c)) for c in columns),
        )

    def _update(
        self,
        table: str,
        row_id: str,
        changes: Dict[str, Any],
        allowed: Iterable[str],
    ) -> Optional[Dict[str, Any]]:
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValueError(f"cannot update {table} columns: {sorted(unknown)}")
        if not changes:
            with self._connect() as conn:
                return conn.execute(
                    f"SELECT * FROM {table} WHERE id = %s", (row_id,)
                ).fetchone()
        assignments = ", ".join(f"{column} = %s" for column in changes)
        params = tuple(self._adapt(c, v) for c, v in changes.items()) + (row_id,)
        with self._connect() as conn:
            return conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = %s RETURNING *", params
            ).fetchone()

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        user = replace(
            user, email=normalize_email(user.email), phone=normalize_phone(user.phone)
        )
        try:
            with self._connect() as conn:
                self._insert(conn, "gk_user", user)
        except errors.UniqueViolation as exc:
            field_name = _constraint_field(exc)
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant missing", {"field": "tenant_id"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM gk_user WHERE id = %s", (user_id,)).fetchone()
        return self._from_row(User, row) if row else None

    def get_user_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_user WHERE email = %s AND tenant_id IS NOT DISTINCT FROM %s",
                (normalized, tenant_id),
            ).fetchone()
        return self._from_row(User, row) if row else None

    def get_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]:
        normalized = normalize_phone(phone)
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_user WHERE phone = %s AND tenant_id IS NOT DISTINCT FROM %s",
                (normalized, tenant_id),
            ).fetchone()
        return self._from_row(User, row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        if "phone" in changes:
            changes["phone"] = normalize_phone(changes["phone"])
        changes["updated_at"] = utcnow()
        try:
            row = self._update("gk_user", user_id, changes, _USER_COLUMNS)
        except errors.UniqueViolation as exc:
            field_name = _constraint_field(exc)
            raise ConstraintViolation(f"{field_name} already exists", {"field": field_name})
        return self._from_row(User, row) if row else None

    # -- identities ------------------------------------------------------

    def link_identity(self, identity: Identity) -> Identity:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gk_identity (id, user_id, provider, provider_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider, provider_id) DO NOTHING
                """,
                (
                    identity.id,
                    identity.user_id,
                    identity.provider,
                    identity.provider_id,
                    json.dumps(identity.metadata or {}),
                    identity.created_at,
                ),
            )
            row = conn.execute(
                "SELECT * FROM gk_identity WHERE provider = %s AND provider_id = %s",
                (identity.provider, identity.provider_id),
            ).fetchone()
        existing = self._from_row(Identity, row)
        if existing.user_id != identity.user_id:
            raise ConstraintViolation("identity linked to another user", {"field": "identity"})
        return existing

    def find_identity(self, provider: str, provider_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_identity WHERE provider = %s AND provider_id = %s",
                (provider, provider_id),
            ).fetchone()
        return self._from_row(Identity, row) if row else None

    def find_user_identity(self, user_id: str, provider: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_identity WHERE user_id = %s AND provider = %s ORDER BY created_at LIMIT 1",
                (user_id, provider),
            ).fetchone()
        return self._from_row(Identity, row) if row else None

    def list_identities(self, user_id: str) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gk_identity WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._from_row(Identity, row) for row in rows]

    # -- sessions --------------------------------------------------------

    def create_session(self, session: Session, *, max_sessions: int = 0) -> List[Session]:
        evicted: List[Session] = []
        with self._connect() as conn:
            # Serialize count-evict-insert per user for the rest of the transaction
            conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (session.user_id,))
            if max_sessions > 0:
                rows = conn.execute(
                    "SELECT * FROM gk_session WHERE user_id = %s ORDER BY last_active ASC",
                    (session.user_id,),
                ).fetchall()
                overflow = len(rows) - max_sessions + 1
                for row in rows[: max(0, overflow)]:
                    conn.execute("DELETE FROM gk_session WHERE id = %s", (row["id"],))
                    evicted.append(self._from_row(Session, row))
            self._insert(conn, "gk_session", session)
        return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._from_row(Session, row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gk_session WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [self._from_row(Session, row) for row in rows]

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_hash: Optional[str],
        new_hash: str,
        *,
        last_active: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        if not expected_hash:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE gk_session
                SET refresh_token_hash = %s,
                    last_active = %s,
                    expires_at = COALESCE(%s, expires_at)
                WHERE id = %s AND refresh_token_hash = %s
                RETURNING *
                """,
                (new_hash, last_active, expires_at, session_id, expected_hash),
            ).fetchone()
        return self._from_row(Session, row) if row else None

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        row = self._update("gk_session", session_id, changes, _SESSION_COLUMNS)
        return self._from_row(Session, row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM gk_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gk_session WHERE user_id = %s AND id IS DISTINCT FROM %s",
                (user_id, except_session_id),
            )
            return result.rowcount

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gk_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # -- one-time codes --------------------------------------------------

    def create_otp(self, otp: Otp) -> Otp:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM gk_otp WHERE (user_id = %s AND purpose = %s) OR expires_at <= %s",
                (otp.user_id, otp.purpose.value, otp.created_at),
            )
            self._insert(conn, "gk_otp", otp)
        return otp

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
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM gk_otp
                WHERE user_id = %s AND purpose = %s AND code = %s
                ORDER BY used ASC, created_at DESC
                LIMIT 1
                FOR UPDATE
                """,
                (user_id, purpose.value, code),
            ).fetchone()
            if not row:
                return OtpStatus.MISSING, None
            otp = self._otp_from_row(row)
            if otp.used:
                return OtpStatus.USED, otp
            if now >= otp.expires_at:
                conn.execute("DELETE FROM gk_otp WHERE id = %s", (otp.id,))
                return OtpStatus.EXPIRED, otp
            if mode == "mark":
                conn.execute("UPDATE gk_otp SET used = TRUE WHERE id = %s", (otp.id,))
                otp.used = True
            else:
                conn.execute("DELETE FROM gk_otp WHERE id = %s", (otp.id,))
        return OtpStatus.CONSUMED, otp

    def delete_user_otps(self, user_id: str, purpose: Optional[OtpPurpose] = None) -> int:
        with self._connect() as conn:
            if purpose is None:
                result = conn.execute("DELETE FROM gk_otp WHERE user_id = %s", (user_id,))
            else:
                result = conn.execute(
                    "DELETE FROM gk_otp WHERE user_id = %s AND purpose = %s",
                    (user_id, purpose.value),
                )
            return result.rowcount

    def _otp_from_row(self, row: Dict[str, Any]) -> Otp:
        otp = self._from_row(Otp, row)
        otp.purpose = OtpPurpose(otp.purpose)
        return otp

    # -- TOTP devices ----------------------------------------------------

    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gk_mfa_device (id, user_id, secret, device_name, verified, last_used_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    device.id,
                    device.user_id,
                    self._cipher.encrypt(device.secret),
                    device.device_name,
                    device.verified,
                    device.last_used_at,
                    device.created_at,
                ),
            )
        return device

    def get_mfa_device(self, device_id: str) -> Optional[MfaDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_mfa_device WHERE id = %s", (device_id,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def get_mfa_device_by_secret(self, user_id: str, secret: str) -> Optional[MfaDevice]:
        # Ciphertexts are salted, so matching happens after decryption
        for device in self.list_mfa_devices(user_id):
            if hmac.compare_digest(device.secret, secret):
                return device
        return None

    def list_mfa_devices(
        self, user_id: str, *, verified_only: bool = False
    ) -> List[MfaDevice]:
        query = "SELECT * FROM gk_mfa_device WHERE user_id = %s"
        if verified_only:
            query += " AND verified = TRUE"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", (user_id,)).fetchall()
        return [self._device_from_row(row) for row in rows]

    def update_mfa_device(self, device_id: str, **changes: Any) -> Optional[MfaDevice]:
        if "secret" in changes:
            changes["secret"] = self._cipher.encrypt(changes["secret"])
        row = self._update("gk_mfa_device", device_id, changes, _MFA_DEVICE_COLUMNS)
        return self._device_from_row(row) if row else None

    def delete_mfa_device(self, user_id: str, device_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gk_mfa_device WHERE id = %s AND user_id = %s",
                (device_id, user_id),
            )
            return result.rowcount > 0

    def delete_user_mfa_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM gk_mfa_device WHERE user_id = %s", (user_id,))
            return result.rowcount

    def _device_from_row(self, row: Dict[str, Any]) -> MfaDevice:
        device = self._from_row(MfaDevice, row)
        device.secret = self._cipher.decrypt(str(safe_row_value(row, "secret", "")))
        return device

    # -- trusted devices -------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._connect() as conn:
            self._insert(conn, "gk_trusted_device", device)
        return device

    def get_trusted_device(self, user_id: str, token_hash: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gk_trusted_device WHERE user_id = %s AND token_hash = %s",
                (user_id, token_hash),
            ).fetchone()
        return self._from_row(TrustedDevice, row) if row else None

    def touch_trusted_device(self, device_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE gk_trusted_device SET last_used_at = %s WHERE id = %s AND expires_at > %s",
                (now, device_id, now),
            )
            return result.rowcount > 0

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM gk_trusted_device WHERE id = %s", (device_id,))
            return result.rowcount > 0

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gk_trusted_device WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    # -- tenants ---------------------------------------------------------

    def create_tenant(self, tenant: Tenant) -> Tenant:
        try:
            with self._connect() as conn:
                self._insert(conn, "gk_tenant", tenant)
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM gk_tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._from_row(Tenant, row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM gk_tenant WHERE slug = %s", (slug,)).fetchone()
        return self._from_row(Tenant, row) if row else None

    # -- roles -----------------------------------------------------------

    def create_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                self._insert(conn, "gk_role", role)
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "role"})
        return role

    def get_role(
        self, name: str, guard: str, tenant_id: Optional[str] = None
    ) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM gk_role
                WHERE name = %s AND guard = %s AND tenant_id IS NOT DISTINCT FROM %s
                """,
                (name, guard, tenant_id),
            ).fetchone()
        return self._from_row(Role, row) if row else None

    def assign_role(self, user_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO gk_user_role (user_id, role_id) VALUES (%s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (user_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"field": "role"})

    def remove_role(self, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gk_user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return result.rowcount > 0

    def list_user_roles(self, user_id: str, guard: Optional[str] = None) -> List[Role]:
        query = (
            "SELECT r.* FROM gk_user_role ur JOIN gk_role r ON r.id = ur.role_id "
            "WHERE ur.user_id = %s"
        )
        params: Tuple[Any, ...] = (user_id,)
        if guard is not None:
            query += " AND r.guard = %s"
            params += (guard,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY r.name", params).fetchall()
        return [self._from_row(Role, row) for row in rows]
