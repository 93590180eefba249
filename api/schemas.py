"""
Request bodies for the public and admin APIs.

Fields are camelCase on the wire. Required-ness is checked in the handlers
rather than here so that missing fields produce the specific messages the UI
shows (e.g. "名前とスラッグは必須です"); these models only bound sizes and
types.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TITLE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 5000


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


# ============ Auth / user ============


class LoginRequest(CamelModel):
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=1024)


class ProfileUpdate(CamelModel):
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    department: Optional[str] = Field(default=None, max_length=100)
    current_password: Optional[str] = Field(default=None, alias="currentPassword", max_length=1024)
    new_password: Optional[str] = Field(default=None, alias="newPassword", min_length=8, max_length=1024)

    @field_validator("display_name", "email", "department", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _strip(v)


class FavoriteCreate(CamelModel):
    video_id: Optional[str] = Field(default=None, alias="videoId", max_length=32)


# ============ Taxonomy ============


class TagCreate(CamelModel):
    name: Optional[str] = Field(default=None, max_length=50)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return _strip(v)


class TagUpdate(TagCreate):
    pass


class CategoryCreate(CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)
    slug: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    color: Optional[str] = Field(default=None, max_length=20)

    @field_validator("name", "slug", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _strip(v)


class CategoryUpdate(CategoryCreate):
    pass


class CategoryReorder(CamelModel):
    category_ids: List[int] = Field(default_factory=list, alias="categoryIds")


# ============ Playlists ============


class PlaylistCreate(CamelModel):
    title: Optional[str] = Field(default=None, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    video_ids: Optional[List[str]] = Field(default=None, alias="videoIds")
    visibility: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return _strip(v)


class PlaylistUpdate(PlaylistCreate):
    pass


# ============ Videos / posts / schedules ============


class VideoUpdate(CamelModel):
    title: Optional[str] = Field(default=None, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    visibility: Optional[str] = None
    category_ids: Optional[List[int]] = Field(default=None, alias="categoryIds")
    tags: Optional[List[str]] = None
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailUrl", max_length=500)

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return _strip(v)


class ScheduleUpdate(CamelModel):
    """Schedule change for a video or post. Omitted times are left as they are; null clears."""

    scheduled_publish_at: Optional[datetime] = Field(default=None, alias="scheduledPublishAt")
    scheduled_unpublish_at: Optional[datetime] = Field(default=None, alias="scheduledUnpublishAt")
    title: Optional[str] = Field(default=None, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    visibility: Optional[str] = None


class ScheduleBatchItem(CamelModel):
    id: int
    type: str


class ScheduleBatch(CamelModel):
    action: str
    items: List[ScheduleBatchItem] = Field(default_factory=list)


class PostVisibilityUpdate(CamelModel):
    visibility: Optional[str] = None
    scheduled_publish_at: Optional[datetime] = Field(default=None, alias="scheduledPublishAt")
    scheduled_unpublish_at: Optional[datetime] = Field(default=None, alias="scheduledUnpublishAt")


# ============ Users (admin) ============


class UserCreate(CamelModel):
    username: Optional[str] = Field(default=None, max_length=100)
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=1024)
    role: Optional[str] = None
    department: Optional[str] = Field(default=None, max_length=100)

    @field_validator("username", "display_name", "email", "department", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _strip(v)


class UserUpdate(CamelModel):
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    role: Optional[str] = None
    department: Optional[str] = Field(default=None, max_length=100)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    password: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("display_name", "email", "department", mode="before")
    @classmethod
    def strip_text(cls, v):
        return _strip(v)


class UserTransfer(CamelModel):
    target_user_id: Optional[int] = Field(default=None, alias="targetUserId")
    delete_after_transfer: bool = Field(default=False, alias="deleteAfterTransfer")


# ============ Settings (admin) ============


class SettingUpdate(CamelModel):
    value: Any = None


class SettingsBulkUpdate(CamelModel):
    settings: dict = Field(default_factory=dict)
