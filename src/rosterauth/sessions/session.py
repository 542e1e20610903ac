from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class SessionClaims(BaseModel):
    sub: str
    email: str
    role: Optional[str] = None
    sid: str
    aud: str
    iat: float
    exp: float


class Session(BaseModel):
    """Grant handed to the caller after the roster gate passes."""

    session_id: UUID = Field(default_factory=uuid4)
    uid: str
    email: str
    role: Optional[str] = None
    token: str
    issued_at: datetime
    expires_at: datetime
