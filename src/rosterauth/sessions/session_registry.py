"""Where granted sessions live until they expire or are revoked."""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from rosterauth.sessions.session import Session


class InMemorySessionRegistry:
    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: Session) -> None:
        async with self._lock:
            self._sessions[str(session.session_id)] = session

    async def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.expires_at <= datetime.now(timezone.utc):
            await self.remove(session_id)
            return None
        return session

    async def remove(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def remove_for(self, uid: str) -> int:
        async with self._lock:
            doomed = [sid for sid, session in self._sessions.items() if session.uid == uid]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)


class RedisSessionRegistry:
    SESSION_PREFIX = "session:"
    USER_PREFIX = "sessions_for:"

    def __init__(self, redis_client):
        self.redis = redis_client

    async def add(self, session: Session) -> None:
        ttl = max(1, int((session.expires_at - datetime.now(timezone.utc)).total_seconds()))
        sid = str(session.session_id)
        user_key = f"{self.USER_PREFIX}{session.uid}"
        await self.redis.setex(f"{self.SESSION_PREFIX}{sid}", ttl, session.model_dump_json())
        await self.redis.sadd(user_key, sid)
        await self.redis.expire(user_key, ttl)

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self.redis.get(f"{self.SESSION_PREFIX}{session_id}")
        if not raw:
            return None
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        return Session.model_validate_json(raw)

    async def remove(self, session_id: str) -> bool:
        session = await self.get(session_id)
        if session is not None:
            await self.redis.srem(f"{self.USER_PREFIX}{session.uid}", session_id)
        return bool(await self.redis.delete(f"{self.SESSION_PREFIX}{session_id}"))

    async def remove_for(self, uid: str) -> int:
        user_key = f"{self.USER_PREFIX}{uid}"
        members = await self.redis.smembers(user_key)
        session_keys = [
            f"{self.SESSION_PREFIX}{m.decode('utf-8') if isinstance(m, bytes) else m}"
            for m in members
        ]
        removed = await self.redis.delete(*session_keys) if session_keys else 0
        await self.redis.delete(user_key)
        return int(removed)
