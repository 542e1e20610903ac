from typing import Optional

from pydantic import BaseModel, field_validator


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class VerifiedIdentity(BaseModel):
    subject_id: str
    email: str
    display_name: str = ""

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

    @property
    def email_domain(self) -> str:
        return self.email.rpartition("@")[2]


class BackendSession(BaseModel):
    """What the internal identity backend returns for a federated credential."""

    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    session_token: Optional[str] = None
