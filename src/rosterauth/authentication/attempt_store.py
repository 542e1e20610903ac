"""Registry of pending sign-in attempts keyed by state token.

At most one attempt is pending per client session: registering a new attempt
replaces (and invalidates) the previous one. Attempts expire after
``oidc_state_ttl_seconds``.
"""

import asyncio
import json
from typing import Optional

from rosterauth.authentication.auth_models import AuthAttempt
from rosterauth.main.config import get_settings
from rosterauth.main.logging import get_logger

logger = get_logger(__name__)


class InMemoryAttemptStore:
    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or get_settings().oidc_state_ttl_seconds
        self._by_state: dict[str, AuthAttempt] = {}
        self._state_by_client: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _drop(self, state: str) -> Optional[AuthAttempt]:
        attempt = self._by_state.pop(state, None)
        if attempt and self._state_by_client.get(attempt.client_session_id) == state:
            del self._state_by_client[attempt.client_session_id]
        return attempt

    def _purge_expired(self) -> None:
        expired = [
            state
            for state, attempt in self._by_state.items()
            if attempt.is_expired(self.ttl_seconds)
        ]
        for state in expired:
            self._drop(state)

    async def register(self, attempt: AuthAttempt) -> Optional[AuthAttempt]:
        """Store ``attempt`` and return the attempt it replaced, if any."""
        async with self._lock:
            self._purge_expired()
            replaced = None
            previous_state = self._state_by_client.get(attempt.client_session_id)
            if previous_state is not None:
                replaced = self._drop(previous_state)
            self._by_state[attempt.expected_state] = attempt
            self._state_by_client[attempt.client_session_id] = attempt.expected_state
            return replaced

    async def get(self, state: str) -> Optional[AuthAttempt]:
        async with self._lock:
            attempt = self._by_state.get(state)
            if attempt is None:
                return None
            if attempt.is_expired(self.ttl_seconds):
                self._drop(state)
                return None
            return attempt

    async def discard(self, state: str) -> Optional[AuthAttempt]:
        async with self._lock:
            return self._drop(state)

    async def pending_for_client(self, client_session_id: str) -> Optional[AuthAttempt]:
        async with self._lock:
            state = self._state_by_client.get(client_session_id)
        if state is None:
            return None
        return await self.get(state)

    async def discard_for_client(self, client_session_id: str) -> Optional[AuthAttempt]:
        async with self._lock:
            state = self._state_by_client.get(client_session_id)
            if state is None:
                return None
            return self._drop(state)


class RedisAttemptStore:
    """Attempt registry shared by every worker, stored with ``SETEX``."""

    STATE_PREFIX = "oidc:attempt:"
    CLIENT_PREFIX = "oidc:attempt_client:"

    def __init__(self, redis_client, ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or get_settings().oidc_state_ttl_seconds

    async def _load(self, state: str) -> Optional[AuthAttempt]:
        raw = await self.redis.get(f"{self.STATE_PREFIX}{state}")
        if not raw:
            return None
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        return AuthAttempt.model_validate_json(text)

    async def _drop(self, attempt: AuthAttempt) -> None:
        await self.redis.delete(f"{self.STATE_PREFIX}{attempt.expected_state}")
        client_key = f"{self.CLIENT_PREFIX}{attempt.client_session_id}"
        current = await self.redis.get(client_key)
        if isinstance(current, (bytes, bytearray)):
            current = current.decode("utf-8")
        if current == attempt.expected_state:
            await self.redis.delete(client_key)

    async def register(self, attempt: AuthAttempt) -> Optional[AuthAttempt]:
        replaced = await self.pending_for_client(attempt.client_session_id)
        if replaced is not None:
            await self._drop(replaced)

        await self.redis.setex(
            f"{self.STATE_PREFIX}{attempt.expected_state}",
            self.ttl_seconds,
            attempt.model_dump_json(),
        )
        await self.redis.setex(
            f"{self.CLIENT_PREFIX}{attempt.client_session_id}",
            self.ttl_seconds,
            attempt.expected_state,
        )
        return replaced

    async def get(self, state: str) -> Optional[AuthAttempt]:
        try:
            attempt = await self._load(state)
        except (ValueError, json.JSONDecodeError) as e:
            logger.warning(
                "Discarding unreadable cached sign-in attempt",
                extra={"error": str(e)},
            )
            await self.redis.delete(f"{self.STATE_PREFIX}{state}")
            return None
        if attempt is not None and attempt.is_expired(self.ttl_seconds):
            await self._drop(attempt)
            return None
        return attempt

    async def discard(self, state: str) -> Optional[AuthAttempt]:
        attempt = await self.get(state)
        if attempt is not None:
            await self._drop(attempt)
        return attempt

    async def pending_for_client(self, client_session_id: str) -> Optional[AuthAttempt]:
        state = await self.redis.get(f"{self.CLIENT_PREFIX}{client_session_id}")
        if not state:
            return None
        if isinstance(state, (bytes, bytearray)):
            state = state.decode("utf-8")
        return await self.get(state)

    async def discard_for_client(self, client_session_id: str) -> Optional[AuthAttempt]:
        attempt = await self.pending_for_client(client_session_id)
        if attempt is not None:
            await self._drop(attempt)
        return attempt
