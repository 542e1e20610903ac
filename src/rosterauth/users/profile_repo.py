"""Profile stores with non-destructive merge semantics.

``merge`` writes only the fields it is given. Fields absent from the write, and
fields set to None, are left as stored.
"""

import asyncio
from datetime import datetime
from typing import Any, Optional

from rosterauth.main.logging import get_logger
from rosterauth.users.profile import UserProfile

logger = get_logger(__name__)


def _writable(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None and key != "uid"}


class InMemoryProfileRepository:
    def __init__(self):
        self._documents: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, uid: str) -> Optional[UserProfile]:
        document = self._documents.get(uid)
        if document is None:
            return None
        return UserProfile(uid=uid, **document)

    async def merge(self, uid: str, fields: dict[str, Any]) -> UserProfile:
        async with self._lock:
            document = self._documents.setdefault(uid, {})
            document.update(_writable(fields))
            return UserProfile(uid=uid, **document)

    async def delete(self, uid: str) -> bool:
        return self._documents.pop(uid, None) is not None

    def __len__(self) -> int:
        return len(self._documents)


class RedisProfileRepository:
    """One hash per user at ``profile:{uid}``; HSET of the written fields is the merge."""

    PREFIX = "profile:"

    def __init__(self, redis_client):
        self.redis = redis_client

    def _key(self, uid: str) -> str:
        return f"{self.PREFIX}{uid}"

    @staticmethod
    def _encode(value: Any) -> str:
        if isinstance(value, datetime):
            return value.isoformat()
        return str(value)

    @staticmethod
    def _decode(document: dict) -> dict[str, str]:
        return {
            (k.decode("utf-8") if isinstance(k, bytes) else k): (
                v.decode("utf-8") if isinstance(v, bytes) else v
            )
            for k, v in document.items()
        }

    async def get(self, uid: str) -> Optional[UserProfile]:
        document = await self.redis.hgetall(self._key(uid))
        if not document:
            return None
        document = self._decode(document)
        document.pop("uid", None)
        return UserProfile(uid=uid, **document)

    async def merge(self, uid: str, fields: dict[str, Any]) -> UserProfile:
        mapping = {key: self._encode(value) for key, value in _writable(fields).items()}
        if mapping:
            await self.redis.hset(self._key(uid), mapping=mapping)
        profile = await self.get(uid)
        if profile is None:
            logger.error("Profile missing right after merge", extra={"uid": uid})
            raise LookupError(f"Profile {uid} not found after merge")
        return profile

    async def delete(self, uid: str) -> bool:
        return bool(await self.redis.delete(self._key(uid)))
