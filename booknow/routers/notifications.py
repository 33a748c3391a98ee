"""
Notifications Router

Inbox operations for the authenticated recipient (guest, hotel or admin),
plus the WebSocket used for live pushes.
"""
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
from sqlalchemy import desc
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from ..database import get_db
from ..errors import NotFoundError
from ..models.notification import Notification
from ..services.notification_dispatcher import (
    NotificationDispatcher,
    get_notification_dispatcher,
    normalize_type,
)
from ..services.presence import get_presence_directory
from ..utils.dependencies import get_current_principal
from ..utils.security import Principal, principal_from_token

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])
ws_router = APIRouter(tags=["Notifications"])


# ============ Schemas ============

class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    title: str
    message: str
    is_read: bool
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    total: int
    unread_count: int
    page: int
    pages: int


class UnreadCountResponse(BaseModel):
    count: int


def _owned(db: Session, principal: Principal, notification_id: str) -> Notification:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.recipient_id == principal.subject_id,
    ).first()
    if not notification:
        raise NotFoundError("Notification not found")
    return notification


# ============ Endpoints ============

@router.get("", response_model=NotificationListResponse)
async def get_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[str] = Query(None),
    is_read: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """Notifications for the caller, newest first"""
    base = db.query(Notification).filter(Notification.recipient_id == principal.subject_id)

    query = base
    if type:
        query = query.filter(Notification.type == normalize_type(type).value)
    if is_read is not None:
        query = query.filter(Notification.is_read == is_read)

    total = query.count()
    unread_count = base.filter(Notification.is_read == False).count()  # noqa: E712
    notifications = (
        query.order_by(desc(Notification.created_at), desc(Notification.id))
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "notifications": notifications,
        "total": total,
        "unread_count": unread_count,
        "page": page,
        "pages": (total + limit - 1) // limit,
    }


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    count = db.query(Notification).filter(
        Notification.recipient_id == principal.subject_id,
        Notification.is_read == False,  # noqa: E712
    ).count()
    return {"count": count}


@router.put("/read-all")
async def mark_all_as_read(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    updated = db.query(Notification).filter(
        Notification.recipient_id == principal.subject_id,
        Notification.is_read == False,  # noqa: E712
    ).update({"is_read": True, "read_at": datetime.utcnow()}, synchronize_session=False)
    db.commit()

    await dispatcher.push(principal.subject_id, {"event": "notifications_read_all"})
    return {"success": True, "updated": updated}


@router.delete("/read")
async def delete_read_notifications(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    deleted = db.query(Notification).filter(
        Notification.recipient_id == principal.subject_id,
        Notification.is_read == True,  # noqa: E712
    ).delete(synchronize_session=False)
    db.commit()

    await dispatcher.push(principal.subject_id, {"event": "notifications_read_deleted"})
    return {"success": True, "deleted": deleted}


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_as_read(
    notification_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    notification = _owned(db, principal, notification_id)
    if not notification.is_read:
        notification.mark_as_read()
        db.commit()
        db.refresh(notification)

    await dispatcher.push(principal.subject_id, {"event": "notification_read", "id": notification.id})
    return notification


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    notification = _owned(db, principal, notification_id)
    db.delete(notification)
    db.commit()

    await dispatcher.push(principal.subject_id, {"event": "notification_deleted", "id": notification_id})
    return {"success": True}


# ============ Live channel ============

@ws_router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str = Query("")):
    principal = principal_from_token(token)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    presence = get_presence_directory()
    await websocket.accept()
    presence.register(principal.subject_id, websocket)
    try:
        while True:
            # Client messages are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        presence.unregister(principal.subject_id, websocket)
