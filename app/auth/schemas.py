from typing import Optional

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Caller identity as carried by the school system's access token."""

    token: str
    user_id: Optional[str] = None
    role: str = "admin"
