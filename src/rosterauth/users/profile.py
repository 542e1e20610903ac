from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class UserProfile(BaseModel):
    """Internal user document.

    Other subsystems write their own fields into the same document; unknown
    fields are kept so a merge never drops them.
    """

    model_config = ConfigDict(extra="allow")

    uid: str
    email: str
    display_name: str = ""
    role: Optional[str] = None
    grade: Optional[str] = None
    group_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
