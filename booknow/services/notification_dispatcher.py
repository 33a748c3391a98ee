"""
Notification Dispatcher

Persist first, push second. The stored row is the source of truth; the live
push over the recipient's WebSocket is an optimization that may be skipped
(recipient offline) or fail without affecting anything else.
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..database import SessionLocal
from ..errors import ValidationError
from ..models.notification import Notification, NotificationType, RecipientRole
from ..utils.metrics import notifications_total
from .presence import PresenceDirectory, get_presence_directory

logger = logging.getLogger(__name__)


def normalize_type(notification_type) -> NotificationType:
    """Accept the enum or its name in any case; anything else is rejected."""
    if isinstance(notification_type, NotificationType):
        return notification_type
    try:
        return NotificationType(str(notification_type).upper())
    except ValueError:
        allowed = ", ".join(t.value for t in NotificationType)
        raise ValidationError(
            f"Unknown notification type '{notification_type}'",
            context={"allowed": allowed},
        )


class NotificationDispatcher:

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        presence: Optional[PresenceDirectory] = None,
    ):
        self.session_factory = session_factory
        self.presence = presence if presence is not None else get_presence_directory()

    def _persist(self, recipient_id: str, recipient_role: str, ntype: NotificationType,
                 title: str, message: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            notification = Notification(
                recipient_id=recipient_id,
                recipient_role=recipient_role,
                type=ntype.value,
                title=title,
                message=message,
                is_read=False,
            )
            db.add(notification)
            db.commit()
            db.refresh(notification)
            return notification.to_dict()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def notify(
        self,
        recipient_id: str,
        recipient_role: str,
        notification_type,
        title: str,
        message: str,
    ) -> Dict[str, Any]:
        """
        Store a notification and push it to the recipient if connected.

        Raises ValidationError for an unknown type or a missing recipient.
        Storage errors propagate; delivery errors never do.
        """
        ntype = normalize_type(notification_type)
        if not recipient_id:
            raise ValidationError("Notification recipient is required")
        if recipient_role not in {r.value for r in RecipientRole}:
            raise ValidationError(f"Unknown recipient role '{recipient_role}'")

        stored = await run_in_threadpool(
            self._persist, recipient_id, recipient_role, ntype, title, message
        )

        delivered = await self.push(recipient_id, {"event": "notification", "notification": stored})
        notifications_total.inc(type=ntype.value, delivery="live" if delivered else "stored")
        return stored

    async def push(self, recipient_id: str, payload: Dict[str, Any]) -> bool:
        """Send a live event to the recipient. Returns True if it was delivered."""
        channel = self.presence.get(recipient_id)
        if channel is None:
            logger.debug(f"Recipient {recipient_id} offline; event stored only")
            return False
        try:
            await channel.send_json(payload)
            return True
        except Exception as e:
            # Dead socket: drop it so later pushes skip straight to storage
            logger.warning(f"Live push to {recipient_id} failed: {e}")
            self.presence.unregister(recipient_id, channel)
            return False


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
