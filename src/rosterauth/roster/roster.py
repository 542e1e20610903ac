from typing import Optional

from pydantic import BaseModel, field_validator

from rosterauth.identity.identity import normalize_email

ROSTER_FIELDS = ("name", "role", "grade", "email")


class RosterEntry(BaseModel):
    email: str
    name: str = ""
    role: Optional[str] = None
    grade: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize(cls, value):
        return normalize_email(value)

    @field_validator("email")
    @classmethod
    def require_email(cls, value: str):
        if not value:
            raise ValueError("email must not be empty")
        return value

    def diff(self, other: "RosterEntry") -> dict[str, tuple]:
        """Fields whose values differ, as ``{field: (ours, theirs)}``."""
        return {
            field: (getattr(self, field), getattr(other, field))
            for field in ROSTER_FIELDS
            if (getattr(self, field) or "") != (getattr(other, field) or "")
        }


class Denied(BaseModel):
    """Roster miss. A terminal outcome, not an error."""

    email: str
    message: str
