from __future__ import annotations

import json
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from redis import Redis

from gatekeeper.logging import get_logger
from gatekeeper.storage.common import as_utc, deserialize_datetime, serialize_datetime
from gatekeeper.storage.models import Session, utcnow

logger = get_logger(__name__)

_SESSION_DATETIMES = ("expires_at", "last_active", "created_at")


def _encode_session(session: Session) -> str:
    raw = asdict(session)
    for key in _SESSION_DATETIMES:
        raw[key] = serialize_datetime(raw[key])
    return json.dumps(raw)


def _decode_session(raw: Optional[str]) -> Optional[Session]:
    if not raw:
        return None
    data = json.loads(raw)
    for key in _SESSION_DATETIMES:
        data[key] = deserialize_datetime(data.get(key))
    data["data"] = data.get("data") or {}
    return Session(**data)


class RedisSessionStore:
    """Session records in Redis, keyed by id with per-user and expiry indexes.

    - ``gk:session:<id>`` holds the JSON record with a TTL matching ``expires_at``
    - ``gk:user_sessions:<user_id>`` is a sorted set scored by ``last_active``
    - ``gk:session_expiry`` is a sorted set scored by ``expires_at``

    Refresh rotation runs as a Lua script so the compare-and-swap on the stored
    refresh hash is atomic. Eviction on create holds a per-user Redis lock.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    LOCK_TIMEOUT_SECONDS = 10

    # Atomic compare-and-rotate of the refresh hash
    _ROTATE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local sess = cjson.decode(raw)
if sess['refresh_token_hash'] ~= ARGV[1] then
  return false
end
sess['refresh_token_hash'] = ARGV[2]
sess['last_active'] = ARGV[3]
if ARGV[4] ~= '' then
  sess['expires_at'] = ARGV[4]
end
local encoded = cjson.encode(sess)
local ttl = tonumber(ARGV[5])
if ttl > 0 then
  redis.call('SET', KEYS[1], encoded, 'EX', ttl)
else
  redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
end
redis.call('ZADD', KEYS[2], ARGV[6], sess['id'])
if ARGV[7] ~= '' then
  redis.call('ZADD', KEYS[3], ARGV[7], sess['id'])
end
return encoded
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "gk",
    ) -> None:
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.prefix = prefix
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)

    def _session_key(self, session_id: str) -> str:
        return f"{self.prefix}:session:{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}:user_sessions:{user_id}"

    @property
    def _expiry_key(self) -> str:
        return f"{self.prefix}:session_expiry"

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for Redis."""
        expires_at = as_utc(expires_at)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        self.client.ping()

    def close(self) -> None:
        self.client.close()

    def _write(self, pipe: Any, session: Session) -> None:
        pipe.set(
            self._session_key(session.id),
            _encode_session(session),
            ex=self._ttl_seconds(session.expires_at),
        )
        pipe.zadd(self._user_key(session.user_id), {session.id: session.last_active.timestamp()})
        pipe.zadd(self._expiry_key, {session.id: session.expires_at.timestamp()})

    def _drop(self, pipe: Any, session_id: str, user_id: Optional[str]) -> None:
        pipe.delete(self._session_key(session_id))
        pipe.zrem(self._expiry_key, session_id)
        if user_id:
            pipe.zrem(self._user_key(user_id), session_id)

    # -- SessionStore ----------------------------------------------------

    def create_session(self, session: Session, *, max_sessions: int = 0) -> List[Session]:
        lock = self.client.lock(
            f"{self.prefix}:lock:user_sessions:{session.user_id}",
            timeout=self.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=self.DEFAULT_OPERATION_TIMEOUT,
        )
        evicted: List[Session] = []
        with lock:
            if max_sessions > 0:
                live = self.list_user_sessions(session.user_id)
                live.sort(key=lambda s: s.last_active)
                while len(live) >= max_sessions:
                    oldest = live.pop(0)
                    evicted.append(oldest)
            pipe = self.client.pipeline()
            for old in evicted:
                self._drop(pipe, old.id, old.user_id)
            self._write(pipe, session)
            pipe.execute()
        return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        return _decode_session(self.client.get(self._session_key(session_id)))

    def list_user_sessions(self, user_id: str) -> List[Session]:
        session_ids = self.client.zrange(self._user_key(user_id), 0, -1)
        if not session_ids:
            return []
        raws = self.client.mget([self._session_key(sid) for sid in session_ids])
        sessions: List[Session] = []
        stale: List[str] = []
        for sid, raw in zip(session_ids, raws):
            session = _decode_session(raw)
            if session is None:
                stale.append(sid)
            else:
                sessions.append(session)
        if stale:
            # Records already expired out of Redis; prune the index
            self.client.zrem(self._user_key(user_id), *stale)
        return sessions

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
        current = self.get_session(session_id)
        if current is None:
            return None
        result = self._rotate(
            keys=[
                self._session_key(session_id),
                self._user_key(current.user_id),
                self._expiry_key,
            ],
            args=[
                expected_hash,
                new_hash,
                serialize_datetime(last_active),
                serialize_datetime(expires_at) if expires_at else "",
                self._ttl_seconds(expires_at) if expires_at else 0,
                last_active.timestamp(),
                expires_at.timestamp() if expires_at else "",
            ],
        )
        if not result:
            return None
        return _decode_session(result)

    def update_session(self, session_id: str, **changes: Any) -> Optional[Session]:
        key = self._session_key(session_id)
        updated: Dict[str, Optional[Session]] = {"session": None}

        def _apply(pipe: Any) -> None:
            session = _decode_session(pipe.get(key))
            if session is None:
                return
            session = replace(session, **changes)
            pipe.multi()
            self._write(pipe, session)
            updated["session"] = session

        self.client.transaction(_apply, key)
        return updated["session"]

    def delete_session(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        pipe = self.client.pipeline()
        self._drop(pipe, session_id, session.user_id if session else None)
        removed = pipe.execute()[0]
        return bool(removed)

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        session_ids = [
            sid
            for sid in self.client.zrange(self._user_key(user_id), 0, -1)
            if sid != except_session_id
        ]
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for sid in session_ids:
            self._drop(pipe, sid, user_id)
        results = pipe.execute()
        # Every third result is the DEL reply for one session key
        return sum(1 for removed in results[::3] if removed)

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()).timestamp()
        expired_ids = self.client.zrangebyscore(self._expiry_key, 0, cutoff)
        removed = 0
        for sid in expired_ids:
            session = self.get_session(sid)
            if session is not None and not session.is_expired(now):
                continue
            pipe = self.client.pipeline()
            self._drop(pipe, sid, session.user_id if session else None)
            pipe.execute()
            removed += 1
        if removed:
            logger.info("redis_sessions_expired_removed", removed=removed)
        return removed
