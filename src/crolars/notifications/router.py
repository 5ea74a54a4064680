"""Notification API endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crolars.auth.dependencies import get_admin_user, get_current_user
from crolars.database import get_session
from crolars.db.models import Notification, User
from crolars.dependencies import get_dispatcher
from crolars.notifications.dispatcher import NotificationDispatcher
from crolars.notifications.payloads import SystemAnnouncement
from crolars.notifications.preferences import CATEGORIES, Preferences, get_preferences, update_preferences
from crolars.notifications.schemas import (
    BroadcastRequest,
    BroadcastResponse,
    CategoryPreferenceModel,
    DeletedResponse,
    GlobalSettingsModel,
    NotificationDeleteRequest,
    NotificationListResponse,
    NotificationResponse,
    NotificationUpdateRequest,
    PreferencesResponse,
    PreferencesUpdateRequest,
    RecentNotificationsResponse,
    UnreadCountResponse,
    UpdatedResponse,
)

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])
admin_router = APIRouter(prefix="/api/v1/admin/notifications", tags=["Admin"])


def notification_response(n: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=n.id,
        type=n.type,
        title=n.title,
        message=n.message,
        metadata=n.notification_metadata or {},
        action_url=n.action_url,
        is_read=n.read_at is not None,
        read_at=n.read_at,
        created_at=n.created_at,
    )


def preferences_response(preferences: Preferences) -> PreferencesResponse:
    return PreferencesResponse(
        categories=[
            CategoryPreferenceModel(**asdict(preferences.for_category(c))) for c in CATEGORIES
        ],
        settings=GlobalSettingsModel(**asdict(preferences.settings)),
    )


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False, alias="unreadOnly"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """User's notifications, newest first, with total and unread counts."""
    items, total, unread = await dispatcher.list(db, user.id, page, limit, unread_only)
    return NotificationListResponse(
        notifications=[notification_response(n) for n in items],
        total=total,
        unread=unread,
        page=page,
        limit=limit,
    )


@router.get("/recent", response_model=RecentNotificationsResponse)
async def recent_notifications(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Recent history, served from the Redis list when warm."""
    return RecentNotificationsResponse(notifications=await dispatcher.recent(db, user.id))


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return UnreadCountResponse(unread_count=await dispatcher.unread_count(db, user.id))


@router.patch("", response_model=UpdatedResponse)
async def update_notifications(
    body: NotificationUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Mark notifications read (or unread). Re-marking is a no-op."""
    if body.all_:
        mark_all = dispatcher.mark_all_read if body.is_read else dispatcher.mark_all_unread
        updated = await mark_all(db, user.id)
    elif body.is_read:
        updated = await dispatcher.mark_read(db, user.id, body.ids or [])
    else:
        updated = await dispatcher.mark_unread(db, user.id, body.ids or [])
    await db.commit()
    return UpdatedResponse(updated=updated)


@router.delete("", response_model=DeletedResponse)
async def delete_notifications(
    body: NotificationDeleteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    deleted = await dispatcher.delete(db, user.id, body.ids, delete_all=body.all_)
    await db.commit()
    return DeletedResponse(deleted=deleted)


@router.get("/preferences", response_model=PreferencesResponse)
async def read_preferences(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return preferences_response(await get_preferences(db, user.id))


@router.put("/preferences", response_model=PreferencesResponse)
async def write_preferences(
    body: PreferencesUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Upsert per-category preferences and global settings."""
    preferences = await update_preferences(
        db,
        user.id,
        [c.model_dump(exclude_none=True) for c in body.categories],
        body.settings.model_dump(exclude_none=True) if body.settings else None,
    )
    await db.commit()
    return preferences_response(preferences)


@admin_router.post("/broadcast", response_model=BroadcastResponse)
async def broadcast(
    body: BroadcastRequest,
    _admin: User = Depends(get_admin_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Publish a platform-wide system announcement."""
    announcement = SystemAnnouncement(headline=body.title, body=body.message, link=body.link)
    return BroadcastResponse(announcement=await dispatcher.broadcast_system(announcement))
