from typing import Optional

from pydantic import BaseModel

from rosterauth.users.profile import UserProfile


class GeneralError(BaseModel):
    message: str
    error_code: int


class SignInResponse(BaseModel):
    granted: bool
    token: Optional[str] = None
    profile: Optional[UserProfile] = None
    message: Optional[str] = None


class CancelResponse(BaseModel):
    cancelled: bool
