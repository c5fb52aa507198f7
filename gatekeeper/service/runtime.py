from __future__ import annotations

from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from gatekeeper.config import SessionStorageType, Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.auth import AuthOrchestrator
from gatekeeper.service.events import AuditEmitter
from gatekeeper.service.mfa import MfaService
from gatekeeper.service.passwords import PasswordService
from gatekeeper.service.providers import ProviderRegistry
from gatekeeper.service.roles import RoleService
from gatekeeper.service.sessions import SessionManager
from gatekeeper.service.tenants import TenantService
from gatekeeper.service.tokens import TokenService
from gatekeeper.storage.memory import MemoryStore
from gatekeeper.storage.postgres import PostgresStore
from gatekeeper.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds the stores and services for one ``Settings`` value.

    The primary store is Postgres when ``database_url`` is set and the
    in-memory store otherwise. Sessions may be split out to Redis with
    ``session_storage=redis``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        session_store: Any = None,
        events: Optional[AuditEmitter] = None,
        oauth_transport_factory: Optional[Callable[[str], httpx.AsyncBaseTransport]] = None,
        start_events: bool = True,
    ) -> None:
        self.settings = settings or Settings.from_env()
        logger.info(
            "runtime_init_started",
            session_storage=self.settings.session_storage.value,
            database_configured=bool(self.settings.database_url),
        )
        for warning in self.settings.security_warnings():
            logger.warning("insecure_configuration", message=warning)
        if self.settings.mfa_default_otp:
            logger.warning(
                "insecure_mfa_default_otp",
                message="MFA_DEFAULT_OTP is set; never run this configuration in production",
            )

        self.store = store if store is not None else self._build_store()
        self.session_store = (
            session_store if session_store is not None else self._build_session_store()
        )

        self.events = events or AuditEmitter()
        self.tokens = TokenService(self.settings)
        self.passwords = PasswordService(self.settings)
        self.sessions = SessionManager(
            self.settings, self.session_store, self.tokens, events=self.events
        )
        self.mfa = MfaService(
            self.settings,
            self.store,
            self.store,
            self.store,
            self.passwords,
            events=self.events,
        )
        self.tenants = TenantService(self.settings, self.store)
        self.roles = RoleService(self.settings, self.store)
        self.providers = ProviderRegistry.from_settings(
            self.settings,
            self.store,
            self.passwords,
            self.mfa,
            transport_factory=oauth_transport_factory,
        )
        self.auth = AuthOrchestrator(
            self.settings,
            self.store,
            tokens=self.tokens,
            sessions=self.sessions,
            mfa=self.mfa,
            providers=self.providers,
            passwords=self.passwords,
            tenants=self.tenants,
            roles=self.roles,
            events=self.events,
        )
        self._bootstrap_default_tenant()
        if start_events:
            self.events.start()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            session_store_type=type(self.session_store).__name__,
            providers=self.providers.names(),
            mfa_enabled=self.settings.mfa_enabled,
            mfa_required=self.settings.mfa_required,
        )

    def _build_store(self) -> Any:
        settings = self.settings
        store_type = "postgres" if settings.database_url else "memory"
        try:
            if settings.database_url:
                return PostgresStore(
                    settings.database_url, mfa_encryption_key=settings.mfa_encryption_key
                )
            return MemoryStore(
                settings.state_path, mfa_encryption_key=settings.mfa_encryption_key
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_session_store(self) -> Any:
        settings = self.settings
        if settings.session_storage == SessionStorageType.REDIS:
            try:
                store = RedisSessionStore(settings.redis_url)
                store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_init_failed",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                )
                raise
            return store
        if settings.session_storage == SessionStorageType.DATABASE and not isinstance(
            self.store, PostgresStore
        ):
            logger.warning(
                "session_storage_database_without_postgres",
                message="SESSION_STORAGE=database but DATABASE_URL is unset; sessions stay in memory",
            )
        return self.store

    def _bootstrap_default_tenant(self) -> None:
        if not self.settings.default_tenant_slug:
            return
        try:
            tenant = self.tenants.initialize_default_tenant()
        except Exception as exc:
            # Startup continues; tenant resolution retries on first use
            logger.error(
                "default_tenant_init_failed",
                slug=self.settings.default_tenant_slug,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if tenant:
            logger.info("default_tenant_ready", tenant_id=tenant.id, slug=tenant.slug)

    def close(self) -> None:
        self.events.stop()
        resources = [self.store]
        if self.session_store is not self.store:
            resources.append(self.session_store)
        for resource in resources:
            close = getattr(resource, "close", None)
            if close:
                close()
