"""Authorization store: who may sign in, keyed by normalized email."""

from typing import Iterable, Optional

from rosterauth.identity.identity import normalize_email
from rosterauth.roster.roster import ROSTER_FIELDS, RosterEntry


class InMemoryRosterRepository:
    def __init__(self, entries: Iterable[RosterEntry] = ()):
        self._entries: dict[str, RosterEntry] = {entry.email: entry for entry in entries}

    async def get(self, email: str) -> Optional[RosterEntry]:
        return self._entries.get(normalize_email(email))

    async def get_many(self, emails: list[str]) -> dict[str, RosterEntry]:
        return {email: self._entries[email] for email in emails if email in self._entries}

    async def upsert_many(self, entries: list[RosterEntry], *, merge: bool = True) -> None:
        for entry in entries:
            current = self._entries.get(entry.email)
            if merge and current is not None:
                entry = current.model_copy(update=entry.model_dump(exclude_none=True))
            self._entries[entry.email] = entry

    async def upsert(self, entry: RosterEntry, *, merge: bool = True) -> None:
        await self.upsert_many([entry], merge=merge)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRosterRepository:
    """One hash per student at ``roster:{email}``."""

    PREFIX = "roster:"

    def __init__(self, redis_client):
        self.redis = redis_client

    def _key(self, email: str) -> str:
        return f"{self.PREFIX}{normalize_email(email)}"

    @staticmethod
    def _entry(document: dict) -> Optional[RosterEntry]:
        if not document:
            return None
        document = {
            (k.decode("utf-8") if isinstance(k, bytes) else k): (
                v.decode("utf-8") if isinstance(v, bytes) else v
            )
            for k, v in document.items()
        }
        return RosterEntry(**{k: v for k, v in document.items() if k in ROSTER_FIELDS})

    async def get(self, email: str) -> Optional[RosterEntry]:
        return self._entry(await self.redis.hgetall(self._key(email)))

    async def get_many(self, emails: list[str]) -> dict[str, RosterEntry]:
        pipe = self.redis.pipeline()
        for email in emails:
            pipe.hgetall(self._key(email))
        documents = await pipe.execute()
        found = {}
        for email, document in zip(emails, documents):
            entry = self._entry(document)
            if entry is not None:
                found[email] = entry
        return found

    async def upsert_many(self, entries: list[RosterEntry], *, merge: bool = True) -> None:
        pipe = self.redis.pipeline()
        for entry in entries:
            key = self._key(entry.email)
            if not merge:
                pipe.delete(key)
            pipe.hset(
                key,
                mapping={k: v for k, v in entry.model_dump().items() if v is not None},
            )
        await pipe.execute()

    async def upsert(self, entry: RosterEntry, *, merge: bool = True) -> None:
        await self.upsert_many([entry], merge=merge)
