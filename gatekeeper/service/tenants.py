from __future__ import annotations

import re
import threading
from typing import Any, Dict, Optional, Protocol

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import ConflictError, TenantNotFoundError, ValidationError
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import Tenant, new_id

logger = get_logger(__name__)

_SLUG_RE = re.compile(r"^[a-z0-9_-]+$")


class TenantStore(Protocol):
    def create_tenant(self, tenant: Tenant) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...


class TenantService:
    def __init__(self, settings: Settings, store: TenantStore) -> None:
        self.settings = settings
        self.store = store
        self._default: Optional[Tenant] = None
        self._lock = threading.Lock()

    def create_tenant(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tenant:
        if not _SLUG_RE.match(slug or ""):
            raise ValidationError(
                "Slug must be lowercase letters, numbers, hyphens or underscores",
                detail={"slug": slug},
            )
        tenant = Tenant(
            id=new_id(),
            name=name,
            slug=slug,
            description=description,
            metadata=dict(metadata or {}),
        )
        try:
            created = self.store.create_tenant(tenant)
        except ConstraintViolation:
            raise ConflictError("Tenant already exists", detail={"slug": slug})
        logger.info("tenant_created", tenant_id=created.id, slug=slug)
        return created

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise TenantNotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    def initialize_default_tenant(self) -> Optional[Tenant]:
        """Create (or load) the configured default tenant; None when unconfigured."""
        slug = self.settings.default_tenant_slug
        if not slug:
            return None
        with self._lock:
            if self._default:
                return self._default
            tenant = self.store.get_tenant_by_slug(slug)
            if not tenant:
                try:
                    tenant = self.create_tenant(
                        self.settings.default_tenant_name or slug,
                        slug,
                        description="Default tenant",
                    )
                except ConflictError:
                    # Another process created it first
                    tenant = self.store.get_tenant_by_slug(slug)
                    if not tenant:
                        raise
            self._default = tenant
            return tenant

    def default_tenant_id(self) -> Optional[str]:
        tenant = self.initialize_default_tenant()
        return tenant.id if tenant else None

    def resolve_tenant_id(self, tenant_id: Optional[str] = None) -> Optional[str]:
        """An explicit tenant must exist and be active; otherwise use the default."""
        if tenant_id:
            tenant = self.get_tenant(tenant_id)
            if not tenant.is_active:
                raise TenantNotFoundError("Tenant is inactive", detail={"tenant_id": tenant_id})
            return tenant.id
        return self.default_tenant_id()
