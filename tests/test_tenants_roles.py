"""Tenants and guard-partitioned roles."""

import pytest

from gatekeeper.service.errors import ConflictError, NotFoundError, TenantNotFoundError, ValidationError
from gatekeeper.service.roles import RoleService, permission_matches
from gatekeeper.service.tenants import TenantService
from gatekeeper.storage.models import User, new_id


class TestTenants:
    def test_create_and_fetch(self, settings, store):
        tenants = TenantService(settings, store)
        tenant = tenants.create_tenant("Acme", "acme", metadata={"plan": "pro"})
        assert tenants.get_tenant(tenant.id).metadata == {"plan": "pro"}

    @pytest.mark.parametrize("slug", ["Acme", "acme corp", "", "acme!"])
    def test_invalid_slug(self, settings, store, slug):
        with pytest.raises(ValidationError):
            TenantService(settings, store).create_tenant("Acme", slug)

    def test_duplicate_slug(self, settings, store):
        tenants = TenantService(settings, store)
        tenants.create_tenant("Acme", "acme")
        with pytest.raises(ConflictError):
            tenants.create_tenant("Acme again", "acme")

    def test_default_tenant_created_once(self, settings_factory, store):
        settings = settings_factory(default_tenant_slug="main", default_tenant_name="Main")
        first = TenantService(settings, store).initialize_default_tenant()
        second = TenantService(settings, store).initialize_default_tenant()
        assert first.id == second.id
        assert first.name == "Main"

    def test_no_default_tenant_configured(self, settings, store):
        tenants = TenantService(settings, store)
        assert tenants.initialize_default_tenant() is None
        assert tenants.resolve_tenant_id(None) is None

    def test_resolve_explicit_tenant(self, settings_factory, store):
        tenants = TenantService(settings_factory(default_tenant_slug="main"), store)
        other = tenants.create_tenant("Other", "other")
        assert tenants.resolve_tenant_id(other.id) == other.id
        assert tenants.resolve_tenant_id(None) == tenants.default_tenant_id()
        with pytest.raises(TenantNotFoundError):
            tenants.resolve_tenant_id("missing")

    def test_inactive_tenant_rejected(self, settings, store):
        tenants = TenantService(settings, store)
        tenant = tenants.create_tenant("Old", "old")
        store.tenants[tenant.id].is_active = False
        with pytest.raises(TenantNotFoundError):
            tenants.resolve_tenant_id(tenant.id)


class TestPermissionMatching:
    @pytest.mark.parametrize(
        "granted,required,expected",
        [
            ("*", "users.delete", True),
            ("users.*", "users.read", True),
            ("users.*", "usersettings.read", False),
            ("users.read", "users.read", True),
            ("users.read", "users.write", False),
        ],
    )
    def test_wildcards(self, granted, required, expected):
        assert permission_matches(granted, required) is expected


class TestRoles:
    @pytest.fixture
    def roles(self, settings, store):
        return RoleService(settings, store)

    @pytest.fixture
    def user(self, store):
        return store.create_user(User(id=new_id(), email="a@example.com", tenant_id="t1"))

    def test_default_roles_created_on_demand(self, roles, user):
        assigned = roles.assign_default_roles(user)
        assert [r.name for r in assigned] == ["user"]
        assert assigned[0].is_system
        assert roles.has_role(user.id, "user")

    def test_tenant_role_shadows_system_role(self, roles, user):
        roles.ensure_role("editor", permissions=["posts.read"])
        roles.ensure_role("editor", tenant_id="t1", permissions=["posts.*"])
        assert roles.assign(user, "editor").tenant_id == "t1"
        assert roles.has_permission(user.id, "posts.write")

    def test_ensure_role_is_idempotent(self, roles):
        assert roles.ensure_role("admin").id == roles.ensure_role("admin").id

    def test_guards_are_separate(self, roles, user):
        roles.ensure_role("admin", guard="api", permissions=["*"])
        roles.assign(user, "admin", guard="api")
        assert roles.role_names(user.id) == []
        assert roles.role_names(user.id, guard="api") == ["admin"]
        assert roles.has_permission(user.id, "anything", guard="api")
        assert not roles.has_permission(user.id, "anything")

    def test_assign_unknown_role(self, roles, user):
        with pytest.raises(NotFoundError):
            roles.assign(user, "ghost")

    def test_revoke(self, roles, user):
        roles.ensure_role("support")
        roles.assign(user, "support")
        assert roles.revoke(user, "support") is True
        assert roles.revoke(user, "support") is False
        assert roles.revoke(user, "ghost") is False
