from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Set

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import NotFoundError
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import Role, User, new_id

logger = get_logger(__name__)


class RoleStore(Protocol):
    def create_role(self, role: Role) -> Role: ...

    def get_role(
        self, name: str, guard: str, tenant_id: Optional[str] = None
    ) -> Optional[Role]: ...

    def assign_role(self, user_id: str, role_id: str) -> None: ...

    def remove_role(self, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, user_id: str, guard: Optional[str] = None) -> List[Role]: ...


def permission_matches(granted: str, required: str) -> bool:
    """``*`` grants everything; ``users.*`` grants ``users.read`` and ``users.write``."""
    if granted == "*" or granted == required:
        return True
    if granted.endswith(".*"):
        return required.startswith(granted[:-1])
    return False


class RoleService:
    """Roles partitioned by guard; a role with no tenant is a system role."""

    def __init__(self, settings: Settings, store: RoleStore) -> None:
        self.settings = settings
        self.store = store

    def _guard(self, guard: Optional[str]) -> str:
        return guard or self.settings.default_guard

    def ensure_role(
        self,
        name: str,
        *,
        guard: Optional[str] = None,
        tenant_id: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> Role:
        guard = self._guard(guard)
        existing = self.store.get_role(name, guard, tenant_id)
        if existing:
            return existing
        role = Role(
            id=new_id(),
            name=name,
            guard=guard,
            tenant_id=tenant_id,
            permissions=sorted(set(permissions or [])),
        )
        try:
            created = self.store.create_role(role)
        except ConstraintViolation:
            # Lost a creation race; the winner's row is the role
            found = self.store.get_role(name, guard, tenant_id)
            if not found:
                raise
            return found
        logger.info("role_created", role=name, guard=guard, tenant_id=tenant_id)
        return created

    def find_role(
        self, name: str, *, guard: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Optional[Role]:
        """Tenant role first, then the system role of the same name."""
        guard = self._guard(guard)
        if tenant_id:
            role = self.store.get_role(name, guard, tenant_id)
            if role:
                return role
        return self.store.get_role(name, guard, None)

    def assign(self, user: User, name: str, *, guard: Optional[str] = None) -> Role:
        role = self.find_role(name, guard=guard, tenant_id=user.tenant_id)
        if not role:
            raise NotFoundError("Role not found", detail={"role": name})
        self.store.assign_role(user.id, role.id)
        return role

    def revoke(self, user: User, name: str, *, guard: Optional[str] = None) -> bool:
        role = self.find_role(name, guard=guard, tenant_id=user.tenant_id)
        if not role:
            return False
        return self.store.remove_role(user.id, role.id)

    def assign_default_roles(self, user: User) -> List[Role]:
        assigned = []
        for name in self.settings.default_roles:
            role = self.find_role(name, tenant_id=user.tenant_id) or self.ensure_role(name)
            self.store.assign_role(user.id, role.id)
            assigned.append(role)
        return assigned

    def role_names(self, user_id: str, *, guard: Optional[str] = None) -> List[str]:
        return sorted({r.name for r in self.store.list_user_roles(user_id, self._guard(guard))})

    def permissions(self, user_id: str, *, guard: Optional[str] = None) -> Set[str]:
        granted: Set[str] = set()
        for role in self.store.list_user_roles(user_id, self._guard(guard)):
            granted.update(role.permissions)
        return granted

    def has_role(self, user_id: str, name: str, *, guard: Optional[str] = None) -> bool:
        return name in self.role_names(user_id, guard=guard)

    def has_permission(
        self, user_id: str, permission: str, *, guard: Optional[str] = None
    ) -> bool:
        return any(
            permission_matches(granted, permission)
            for granted in self.permissions(user_id, guard=guard)
        )
