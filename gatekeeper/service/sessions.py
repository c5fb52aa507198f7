from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import (
    RefreshTokenExpiredError,
    RefreshTokenInvalidError,
    SessionExpiredError,
    SessionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
)
from gatekeeper.service.events import AuditEmitter, EventName
from gatekeeper.service.tokens import REFRESH, TokenPair, TokenService, strip_reserved
from gatekeeper.storage.common import hash_token, parse_ip_address
from gatekeeper.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self, session: Session, *, max_sessions: int = 0
    ) -> List[Session]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_hash: Optional[str],
        new_hash: str,
        *,
        last_active: datetime,
        expires_at: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class DeviceMeta:
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


EXPIRING_SOON_SECONDS = 300


def remaining_seconds(session: Session, now: Optional[datetime] = None) -> int:
    return max(0, int((session.expires_at - (now or utcnow())).total_seconds()))


def is_expiring_soon(
    session: Session,
    threshold_seconds: int = EXPIRING_SOON_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    return remaining_seconds(session, now) <= threshold_seconds


def idle_seconds(session: Session, now: Optional[datetime] = None) -> int:
    return max(0, int(((now or utcnow()) - session.last_active).total_seconds()))


def age_seconds(session: Session, now: Optional[datetime] = None) -> int:
    return max(0, int(((now or utcnow()) - session.created_at).total_seconds()))


def is_same_device(
    session: Session, user_agent: Optional[str], ip_address: Optional[str]
) -> bool:
    return session.user_agent == user_agent and session.ip_address == parse_ip_address(
        ip_address
    )


def to_session_view(
    session: Session, current_session_id: Optional[str] = None
) -> Dict[str, Any]:
    """Public projection of a session; the server-side ``data`` blob is never included."""
    return {
        "id": session.id,
        "device_name": session.device_name,
        "user_agent": session.user_agent,
        "ip_address": session.ip_address,
        "last_active_at": session.last_active,
        "created_at": session.created_at,
        "expires_at": session.expires_at,
        "is_current": session.id == current_session_id,
    }


class SessionManager:
    """Session lifecycle: creation with eviction, refresh rotation, revocation.

    A session record lives for ``refresh_token_expiry``; each session holds
    the hash of exactly one live refresh token. Rotation is delegated to the
    store's conditional update so that two refreshes racing with the same
    token produce exactly one winner.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        tokens: TokenService,
        *,
        events: Optional[AuditEmitter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self.events = events
        self._clock = clock or utcnow
        self.session_ttl = settings.seconds("refresh_token_expiry")
        self.max_sessions = settings.max_sessions_per_user
        self.sliding = settings.sliding_expiration

    def _now(self) -> datetime:
        return self._clock()

    def create(
        self,
        user: User,
        device: Optional[DeviceMeta] = None,
        *,
        claims: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        is_mfa_verified: bool = False,
    ) -> Tuple[Session, TokenPair]:
        device = device or DeviceMeta()
        now = self._now()
        session_data = dict(data or {})
        session_data["is_mfa_verified"] = is_mfa_verified
        session = Session.new(
            user.id,
            self.session_ttl,
            device_name=device.device_name,
            user_agent=device.user_agent,
            ip_address=parse_ip_address(device.ip_address),
            tenant_id=user.tenant_id,
            data=session_data,
            now=now,
        )
        pair = self.tokens.generate_tokens(
            self._session_claims(claims or {"sub": user.id}, session),
            refresh_expires_at=session.expires_at.timestamp(),
        )
        session.refresh_token_hash = hash_token(pair.refresh_token)
        evicted = self.store.create_session(session, max_sessions=self.max_sessions)
        for old in evicted:
            logger.info(
                "session_evicted",
                user_id=user.id,
                session_id=old.id,
                last_active=old.last_active.isoformat(),
            )
            if self.events:
                self.events.publish(
                    EventName.SESSION_EVICTED,
                    user_id=user.id,
                    tenant_id=user.tenant_id,
                    session_id=old.id,
                    payload={"replaced_by": session.id},
                )
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return session, pair

    def refresh(
        self, refresh_token: str, *, claims: Optional[Dict[str, Any]] = None
    ) -> Tuple[Session, TokenPair]:
        try:
            payload = self.tokens.verify_token(refresh_token, expected_type=REFRESH)
        except TokenExpiredError:
            raise RefreshTokenExpiredError("Refresh token has expired")
        except TokenInvalidError as exc:
            raise RefreshTokenInvalidError(exc.message)

        session_id = payload.get("sessionId")
        if not session_id:
            raise RefreshTokenInvalidError("Refresh token is not bound to a session")
        session = self.validate_session(str(session_id))

        now = self._now()
        expires_at = now + timedelta(seconds=self.session_ttl) if self.sliding else None
        base_claims = claims if claims is not None else strip_reserved(payload)
        pair = self.tokens.generate_tokens(
            self._session_claims(base_claims, session),
            refresh_expires_at=(expires_at or session.expires_at).timestamp(),
        )
        rotated = self.store.rotate_refresh_token(
            session.id,
            hash_token(refresh_token),
            hash_token(pair.refresh_token),
            last_active=now,
            expires_at=expires_at,
        )
        if rotated is None:
            # Either a concurrent refresh won, or an already-rotated token was replayed
            logger.warning(
                "refresh_token_reuse_rejected",
                session_id=session.id,
                user_id=session.user_id,
            )
            raise RefreshTokenInvalidError("Refresh token has already been used")
        logger.info("session_refreshed", session_id=session.id, user_id=session.user_id)
        return rotated, pair

    def reissue(
        self, session_id: str, claims: Dict[str, Any]
    ) -> Tuple[Session, TokenPair]:
        """Mint a fresh pair for an existing session, invalidating its current refresh token."""
        session = self.validate_session(session_id)
        pair = self.tokens.generate_tokens(
            self._session_claims(claims, session),
            refresh_expires_at=session.expires_at.timestamp(),
        )
        rotated = self.store.rotate_refresh_token(
            session.id,
            session.refresh_token_hash,
            hash_token(pair.refresh_token),
            last_active=self._now(),
        )
        if rotated is None:
            raise RefreshTokenInvalidError("Session was rotated concurrently")
        return rotated, pair

    def get_session(self, session_id: str) -> Optional[Session]:
        """Return the live session, dropping it from the store if it has expired."""
        session = self.store.get_session(session_id)
        if session and session.is_expired(self._now()):
            self.store.delete_session(session_id)
            logger.info("session_expired_removed", session_id=session_id)
            return None
        return session

    def validate_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if not session:
            raise SessionNotFoundError("Session not found")
        if session.is_expired(self._now()):
            self.store.delete_session(session_id)
            raise SessionExpiredError("Session has expired")
        return session

    def touch(self, session_id: str) -> Optional[Session]:
        now = self._now()
        changes: Dict[str, Any] = {"last_active": now}
        if self.sliding:
            changes["expires_at"] = now + timedelta(seconds=self.session_ttl)
        return self.store.update_session(session_id, **changes)

    def extend_session(
        self, session_id: str, seconds: Optional[int] = None
    ) -> Session:
        session = self.validate_session(session_id)
        extra = seconds if seconds is not None else self.session_ttl
        updated = self.store.update_session(
            session.id, expires_at=self._now() + timedelta(seconds=extra)
        )
        if not updated:
            raise SessionNotFoundError("Session not found")
        return updated

    def update_session_data(self, session_id: str, data: Dict[str, Any]) -> Session:
        session = self.validate_session(session_id)
        merged = dict(session.data)
        merged.update(data)
        updated = self.store.update_session(session.id, data=merged)
        if not updated:
            raise SessionNotFoundError("Session not found")
        return updated

    def mark_mfa_verified(self, session_id: str) -> Session:
        return self.update_session_data(session_id, {"is_mfa_verified": True})

    def revoke(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id)
        return removed

    def revoke_others(self, user_id: str, current_session_id: str) -> int:
        count = self.store.delete_user_sessions(user_id, except_session_id=current_session_id)
        logger.info("sessions_revoked_others", user_id=user_id, count=count)
        return count

    def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    def list_active(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[Session]:
        now = self._now()
        sessions = [
            s for s in self.store.list_user_sessions(user_id) if not s.is_expired(now)
        ]
        sessions.sort(key=lambda s: s.last_active, reverse=True)
        if current_session_id:
            sessions.sort(key=lambda s: s.id != current_session_id)
        return sessions

    def count_active(self, user_id: str) -> int:
        return len(self.list_active(user_id))

    def has_reached_max_sessions(self, user_id: str) -> bool:
        if self.max_sessions <= 0:
            return False
        return self.count_active(user_id) >= self.max_sessions

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("sessions_cleanup", removed=removed)
        return removed

    @staticmethod
    def _session_claims(claims: Dict[str, Any], session: Session) -> Dict[str, Any]:
        merged = strip_reserved(claims)
        merged["sub"] = session.user_id
        merged["sessionId"] = session.id
        merged["isMfaVerified"] = session.is_mfa_verified
        if session.tenant_id is not None:
            merged["tenantId"] = session.tenant_id
        return merged
