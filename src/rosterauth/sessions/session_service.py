from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import ValidationError

from rosterauth.identity.backend import HttpIdentityBackend
from rosterauth.main.config import Settings
from rosterauth.main.exceptions import SessionInvalid
from rosterauth.main.logging import get_logger
from rosterauth.sessions.session import Session, SessionClaims
from rosterauth.sessions.session_registry import InMemorySessionRegistry, RedisSessionRegistry
from rosterauth.users.profile import UserProfile

logger = get_logger(__name__)


class SessionService:
    """Issues signed session tokens and tracks them so they can be revoked."""

    def __init__(
        self,
        settings: Settings,
        registry: InMemorySessionRegistry | RedisSessionRegistry,
        backend: Optional[HttpIdentityBackend] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.backend = backend

    def _encode(self, claims: SessionClaims) -> str:
        return jwt.encode(
            claims.model_dump(),
            self.settings.session_secret,
            algorithm=self.settings.session_algorithm,
        )

    async def grant(self, profile: UserProfile) -> Session:
        now = datetime.now(timezone.utc)
        # Backdated so the token is valid on hosts with a slightly slow clock
        issued_at = now - timedelta(seconds=2)
        expires_at = now + timedelta(minutes=self.settings.session_expiry_minutes)

        session = Session(
            uid=profile.uid,
            email=profile.email,
            role=profile.role,
            token="",
            issued_at=issued_at,
            expires_at=expires_at,
        )
        claims = SessionClaims(
            sub=profile.uid,
            email=profile.email,
            role=profile.role,
            sid=str(session.session_id),
            aud=self.settings.session_audience,
            iat=issued_at.timestamp(),
            exp=expires_at.timestamp(),
        )
        session.token = self._encode(claims)

        await self.registry.add(session)
        logger.info(
            "Session granted",
            extra={"uid": profile.uid, "session_id": str(session.session_id)},
        )
        return session

    async def verify(self, token: str) -> Session:
        try:
            decoded = jwt.decode(
                token,
                key=self.settings.session_secret,
                audience=self.settings.session_audience,
                algorithms=[self.settings.session_algorithm],
            )
            claims = SessionClaims(**decoded)
        except (jwt.PyJWTError, ValidationError) as e:
            raise SessionInvalid("Could not validate session token") from e

        session = await self.registry.get(claims.sid)
        if session is None:
            raise SessionInvalid("Session revoked or expired")
        return session

    async def revoke(self, token: str) -> Optional[Session]:
        session = await self.verify(token)
        await self.registry.remove(str(session.session_id))
        logger.info(
            "Session revoked",
            extra={"uid": session.uid, "session_id": str(session.session_id)},
        )
        return session

    async def revoke_for(self, uid: str) -> int:
        """Revoke every local session of ``uid`` and, if federated, its backend sessions."""
        removed = await self.registry.remove_for(uid)
        backend_revoked = None
        if self.backend is not None:
            backend_revoked = await self.backend.revoke(uid)
        logger.info(
            "Revoked sessions for user",
            extra={"uid": uid, "local_sessions": removed, "backend_revoked": backend_revoked},
        )
        return removed
