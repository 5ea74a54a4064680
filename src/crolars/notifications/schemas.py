"""Pydantic request/response models for notification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Category = Literal["LIKE", "COMMENT", "FOLLOW", "MENTION", "MESSAGE", "SYSTEM", "ACHIEVEMENT"]
Frequency = Literal["INSTANT", "HOURLY", "DAILY", "WEEKLY", "NEVER"]
_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    message: str
    metadata: dict[str, Any] = {}
    action_url: str | None = None
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    unread: int
    page: int
    limit: int


class RecentNotificationsResponse(BaseModel):
    notifications: list[dict[str, Any]]


class UnreadCountResponse(BaseModel):
    unread_count: int


class _Selection(BaseModel):
    """Either explicit ``ids`` or ``all: true``."""

    model_config = ConfigDict(populate_by_name=True)

    ids: list[int] | None = None
    all_: bool = Field(False, alias="all")

    @model_validator(mode="after")
    def _require_target(self) -> _Selection:
        if not self.all_ and not self.ids:
            msg = "Provide ids or all=true"
            raise ValueError(msg)
        return self


class NotificationUpdateRequest(_Selection):
    is_read: bool = Field(True, alias="isRead")


class NotificationDeleteRequest(_Selection):
    pass


class UpdatedResponse(BaseModel):
    updated: int


class DeletedResponse(BaseModel):
    deleted: int


# --- Preferences ---


class CategoryPreferenceModel(BaseModel):
    category: Category
    enabled: bool
    email_enabled: bool
    push_enabled: bool
    frequency: Frequency
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None


class GlobalSettingsModel(BaseModel):
    email_notifications: bool
    push_notifications: bool
    quiet_hours_enabled: bool
    quiet_hours_start: str
    quiet_hours_end: str
    weekend_quiet_mode: bool


class PreferencesResponse(BaseModel):
    categories: list[CategoryPreferenceModel]
    settings: GlobalSettingsModel


class CategoryPreferenceUpdate(BaseModel):
    category: Category
    enabled: bool | None = None
    email_enabled: bool | None = None
    push_enabled: bool | None = None
    frequency: Frequency | None = None
    quiet_hours_start: str | None = Field(None, pattern=_HHMM)
    quiet_hours_end: str | None = Field(None, pattern=_HHMM)


class GlobalSettingsUpdate(BaseModel):
    email_notifications: bool | None = None
    push_notifications: bool | None = None
    quiet_hours_enabled: bool | None = None
    quiet_hours_start: str | None = Field(None, pattern=_HHMM)
    quiet_hours_end: str | None = Field(None, pattern=_HHMM)
    weekend_quiet_mode: bool | None = None


class PreferencesUpdateRequest(BaseModel):
    categories: list[CategoryPreferenceUpdate] = []
    settings: GlobalSettingsUpdate | None = None


# --- Admin ---


class BroadcastRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)
    message: str = Field(..., min_length=1, max_length=2000)
    link: str | None = Field(None, max_length=256)


class BroadcastResponse(BaseModel):
    announcement: dict[str, Any]
