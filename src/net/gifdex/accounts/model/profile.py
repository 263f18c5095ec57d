"""gifdex profile models.

ProfileView is the AppView output of net.gifdex.actor.getProfile. ProfileRecord is
the net.gifdex.actor.profile record stored in the user's repository under rkey self.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

PROFILE_COLLECTION = "net.gifdex.actor.profile"


class ProfileView(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    did: str
    handle: Optional[str] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    pronouns: Optional[str] = None
    avatar: Optional[str] = None
    post_count: Optional[int] = Field(default=None, alias="postCount")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ProfileRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["net.gifdex.actor.profile"] = Field(
        default=PROFILE_COLLECTION, alias="$type"
    )
    created_at: str = Field(default_factory=now_iso, alias="createdAt")
    display_name: Optional[str] = Field(default=None, max_length=640, alias="displayName")
    pronouns: Optional[str] = Field(default=None, max_length=200)
    avatar: Optional[Dict[str, Any]] = None

    def to_record(self) -> Dict[str, Any]:
        """Serialize for com.atproto.repo.putRecord."""
        return self.model_dump(by_alias=True, exclude_none=True)
