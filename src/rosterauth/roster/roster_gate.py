from datetime import datetime, timezone
from typing import Any, Optional

from rosterauth.identity.identity import VerifiedIdentity
from rosterauth.main.config import Settings
from rosterauth.main.logging import get_logger
from rosterauth.observability.redaction import redact_email
from rosterauth.roster.roster import Denied, RosterEntry
from rosterauth.roster.roster_repo import InMemoryRosterRepository, RedisRosterRepository
from rosterauth.sessions.session_service import SessionService
from rosterauth.users.profile import UserProfile
from rosterauth.users.profile_repo import InMemoryProfileRepository, RedisProfileRepository

logger = get_logger(__name__)


def denial_message(email: str) -> str:
    return (
        f"The account {email} is not registered for this app. "
        "Contact your administrator to get access."
    )


class RosterGate:
    """Only identities on the roster get a profile. Everyone else is turned away."""

    def __init__(
        self,
        settings: Settings,
        roster_repo: InMemoryRosterRepository | RedisRosterRepository,
        profile_repo: InMemoryProfileRepository | RedisProfileRepository,
        session_service: SessionService,
    ):
        self.settings = settings
        self.roster_repo = roster_repo
        self.profile_repo = profile_repo
        self.session_service = session_service

    async def authorize(self, identity: VerifiedIdentity) -> UserProfile | Denied:
        if not self.settings.roster_gate_enabled:
            return await self._merge_profile(identity, None)

        entry = await self.roster_repo.get(identity.email)
        if entry is None:
            return await self._deny(identity)

        return await self._merge_profile(identity, entry)

    async def _deny(self, identity: VerifiedIdentity) -> Denied:
        revoked = await self.session_service.revoke_for(identity.subject_id)
        logger.warning(
            "Sign-in denied: email not on roster",
            extra={
                "email": redact_email(identity.email),
                "uid": identity.subject_id,
                "revoked_sessions": revoked,
            },
        )
        return Denied(email=identity.email, message=denial_message(identity.email))

    async def _merge_profile(
        self, identity: VerifiedIdentity, entry: Optional[RosterEntry]
    ) -> UserProfile:
        existing = await self.profile_repo.get(identity.subject_id)

        fields: dict[str, Any] = {
            "email": identity.email,
            "last_login_at": datetime.now(timezone.utc),
        }

        if entry is not None:
            fields["role"] = entry.role or self.settings.default_role
            if entry.grade:
                fields["grade"] = entry.grade
        elif existing is None or not existing.role:
            fields["role"] = self.settings.default_role

        # Never replace a stored name with an empty one
        if identity.display_name:
            fields["display_name"] = identity.display_name
        elif entry is not None and entry.name and not (existing and existing.display_name):
            fields["display_name"] = entry.name

        profile = await self.profile_repo.merge(identity.subject_id, fields)
        logger.info(
            "Roster check passed" if entry is not None else "Roster check skipped",
            extra={
                "uid": identity.subject_id,
                "role": profile.role,
                "profile_created": existing is None,
            },
        )
        return profile
