from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from rosterauth.sessions.session import Session
from rosterauth.users.profile import UserProfile


class ProviderEndpoints(BaseModel):
    """Endpoints published in the provider's discovery document."""

    authorization_endpoint: str
    token_endpoint: str
    issuer: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    end_session_endpoint: Optional[str] = None


class AuthAttempt(BaseModel):
    """One pending sign-in, alive between the redirect out and the redirect back."""

    attempt_id: UUID = Field(default_factory=uuid4)
    client_session_id: str
    code_verifier: str
    expected_state: str
    nonce: str
    redirect_uri: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.created_at + timedelta(seconds=ttl_seconds)


class TokenBundle(BaseModel):
    id_token: Optional[str] = None
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def require_a_token(self):
        if not self.id_token and not self.access_token:
            raise ValueError("TokenBundle needs an id_token or an access_token")
        return self


class RedirectParams(BaseModel):
    """OAuth parameters pulled out of a redirect, whichever transport carried them."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    error_codes: Optional[str] = None  # Entra returns numeric AADSTS codes here

    @property
    def has_error(self) -> bool:
        # Which error it is gets decided by classify_provider_error
        return bool(self.error)


class SignInStatus(str, Enum):
    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    EXCHANGING = "exchanging"
    SIGNED_IN = "signed_in"


class SignInResult(BaseModel):
    granted: bool
    session: Optional[Session] = None
    profile: Optional[UserProfile] = None
    message: Optional[str] = None


class InitiateAuthResponse(BaseModel):
    """Response with the provider authorization URL."""

    authorization_url: str
    state: str

    model_config = {
        "json_schema_extra": {
            "example": {
                "authorization_url": "https://login.microsoftonline.com/tenant/oauth2/v2.0/authorize?client_id=abc123&...",
                "state": "m3Xk2v...",
            }
        }
    }


class CallbackRequest(BaseModel):
    """Redirect parameters forwarded by a client that received them in a URL fragment."""

    redirect_url: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "redirect_url": "http://localhost:8081/#code=0.AXkA...&state=m3Xk2v...",
            }
        }
    }


class SignInStatusResponse(BaseModel):
    status: SignInStatus
