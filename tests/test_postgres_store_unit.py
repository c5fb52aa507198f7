from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from gatekeeper.storage.common import SecretCipher
from gatekeeper.storage.models import MfaDevice, Otp, OtpPurpose, OtpStatus, Session, User
from gatekeeper.storage.postgres import SCHEMA, PostgresStore, _constraint_field

KEY = "unit-test-encryption-key"


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.results:
            return self.pool.results.pop(0)
        return FakeCursor()


class FakePool:
    """Records every statement; ``results`` scripts the cursors handed back in order."""

    def __init__(self):
        self.statements = []
        self.results = []
        self.closed = False

    def connection(self):
        return FakeConnection(self)

    def close(self):
        self.closed = True


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def pg(pool):
    store = PostgresStore("postgresql://unit", mfa_encryption_key=KEY, pool=pool)
    pool.statements.clear()
    return store


def _now():
    return datetime(2030, 1, 1, tzinfo=timezone.utc)


def test_schema_created_on_startup(pool):
    PostgresStore("postgresql://unit", mfa_encryption_key=KEY, pool=pool)
    assert len(pool.statements) == len(SCHEMA)
    assert pool.statements[0][0].startswith("CREATE TABLE IF NOT EXISTS gk_tenant")


def test_encryption_key_required(pool):
    with pytest.raises(ValueError):
        PostgresStore("postgresql://unit", pool=pool)


@pytest.mark.parametrize(
    "constraint,expected",
    [
        ("gk_user_email_key", "email"),
        ("gk_user_phone_key", "phone"),
        ("gk_tenant_slug_key", "slug"),
        ("gk_identity_provider_key", "identity"),
        ("gk_role_name_key", "role"),
        (None, "unknown"),
    ],
)
def test_constraint_field(constraint, expected):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))
    assert _constraint_field(exc) == expected


def test_create_user_normalizes_contact(pg, pool):
    pg.create_user(User(id="u1", email=" Alice@Example.COM ", phone="+1 (555) 0100"))
    sql, params = pool.statements[0]
    assert sql.startswith("INSERT INTO gk_user")
    assert "alice@example.com" in params
    assert "+15550100" in params


def test_update_rejects_unknown_columns(pg):
    with pytest.raises(ValueError):
        pg.update_session("s1", refresh_token_hash="sneaky")


def test_session_eviction_takes_advisory_lock(pg, pool):
    old = {
        "id": "old",
        "user_id": "u1",
        "expires_at": _now() + timedelta(days=1),
        "data": "{}",
        "last_active": _now() - timedelta(hours=2),
        "created_at": _now() - timedelta(hours=2),
    }
    newer = dict(old, id="newer", last_active=_now() - timedelta(hours=1))
    pool.results = [FakeCursor(), FakeCursor(rows=[old, newer])]
    evicted = pg.create_session(Session.new("u1", 3600, now=_now()), max_sessions=2)

    assert [s.id for s in evicted] == ["old"]
    statements = [sql for sql, _ in pool.statements]
    assert statements[0].startswith("SELECT pg_advisory_xact_lock")
    assert statements[2] == "DELETE FROM gk_session WHERE id = %s"
    assert statements[3].startswith("INSERT INTO gk_session")


def test_rotation_is_conditional_update(pg, pool):
    assert pg.rotate_refresh_token("s1", None, "new", last_active=_now()) is None
    assert pool.statements == []

    assert pg.rotate_refresh_token("s1", "old", "new", last_active=_now()) is None
    sql, params = pool.statements[0]
    assert "WHERE id = %s AND refresh_token_hash = %s" in sql
    assert params[-2:] == ("s1", "old")


def test_consume_otp_locks_row_and_marks(pg, pool):
    row = {
        "id": "o1",
        "user_id": "u1",
        "purpose": "password_reset",
        "code": "digest",
        "expires_at": _now() + timedelta(minutes=5),
        "used": False,
        "created_at": _now(),
    }
    pool.results = [FakeCursor(rows=[row])]
    status, otp = pg.consume_otp(
        "u1", OtpPurpose.PASSWORD_RESET, "digest", now=_now(), mode="mark"
    )
    assert status == OtpStatus.CONSUMED
    assert otp.purpose is OtpPurpose.PASSWORD_RESET and otp.used
    assert pool.statements[0][0].endswith("FOR UPDATE")
    assert pool.statements[1][0] == "UPDATE gk_otp SET used = TRUE WHERE id = %s"


def test_create_otp_prunes_before_insert(pg, pool):
    otp = Otp(
        id="o2",
        user_id="u1",
        purpose=OtpPurpose.MFA,
        code="digest",
        expires_at=_now() + timedelta(minutes=5),
        created_at=_now(),
    )
    pg.create_otp(otp)
    sql, params = pool.statements[0]
    assert sql == "DELETE FROM gk_otp WHERE (user_id = %s AND purpose = %s) OR expires_at <= %s"
    assert params == ("u1", "mfa", _now())
    assert pool.statements[1][0].startswith("INSERT INTO gk_otp")


def test_consume_missing_otp(pg, pool):
    status, otp = pg.consume_otp("u1", OtpPurpose.MFA, "digest", now=_now())
    assert (status, otp) == (OtpStatus.MISSING, None)


def test_mfa_secret_encrypted_before_insert(pg, pool):
    pg.create_mfa_device(MfaDevice(id="d1", user_id="u1", secret="JBSWY3DPEHPK3PXP"))
    _, params = pool.statements[0]
    assert params[2] != "JBSWY3DPEHPK3PXP"
    assert SecretCipher(KEY).decrypt(params[2]) == "JBSWY3DPEHPK3PXP"


def test_close_releases_pool(pg, pool):
    pg.close()
    assert pool.closed
