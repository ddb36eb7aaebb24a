# Overview: Post-commit notification events for recovery tickets, delivery sinks, and the recipient read side.

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models import Notification, User, UserStoreAccess
from ..time_utils import utcnow
from .concurrency import commit_with_retry

logger = logging.getLogger(__name__)


TYPE_RECOVERY_CREATED = "RECOVERY_CREATED"
TYPE_RECOVERY_ASSIGNED = "RECOVERY_ASSIGNED"
TYPE_RECOVERY_APPROVED = "RECOVERY_APPROVED"
TYPE_RECOVERY_REJECTED = "RECOVERY_REJECTED"
TYPE_RECOVERY_COMPLETED = "RECOVERY_COMPLETED"
TYPE_SYSTEM = "SYSTEM"
VALID_NOTIFICATION_TYPES = {
    TYPE_RECOVERY_CREATED,
    TYPE_RECOVERY_ASSIGNED,
    TYPE_RECOVERY_APPROVED,
    TYPE_RECOVERY_REJECTED,
    TYPE_RECOVERY_COMPLETED,
    TYPE_SYSTEM,
}

REFERENCE_RECOVERY = "RECOVERY"

_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


@dataclass(frozen=True)
class NotificationEvent:
    """A notification to fan out once the originating transaction has committed."""
    user_ids: tuple[int, ...]
    type: str
    title: str
    message: str | None = None
    reference_id: str | None = None
    reference_type: str | None = REFERENCE_RECOVERY
    link: str | None = None

    def payload(self) -> dict:
        return {
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "link": self.link,
        }


class NotificationSink(ABC):
    """Fire-and-forget delivery target."""

    @abstractmethod
    def notify(self, user_ids: list[int], payload: dict) -> int:
        """Deliver payload to every user; returns the number delivered."""


class DatabaseNotificationSink(NotificationSink):
    """Stores one Notification row per recipient (in-app bell)."""

    def notify(self, user_ids: list[int], payload: dict) -> int:
        if not user_ids:
            return 0
        if payload.get("type") not in VALID_NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {payload.get('type')}")

        try:
            for user_id in user_ids:
                db.session.add(Notification(
                    user_id=user_id,
                    type=payload["type"],
                    title=payload["title"],
                    message=payload.get("message"),
                    link=payload.get("link"),
                    reference_id=payload.get("reference_id"),
                    reference_type=payload.get("reference_type"),
                ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return len(user_ids)


def set_notification_sink(app, sink: NotificationSink) -> None:
    app.extensions["notification_sink"] = sink


def get_notification_sink() -> NotificationSink:
    sink = current_app.extensions.get("notification_sink")
    if sink is None:
        sink = DatabaseNotificationSink()
        current_app.extensions["notification_sink"] = sink
    return sink


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")
        return _executor


def _deliver(events: list[NotificationEvent]) -> None:
    sink = get_notification_sink()
    for event in events:
        try:
            delivered = sink.notify(list(event.user_ids), event.payload())
            logger.debug("Delivered %s to %s recipient(s)", event.type, delivered)
        except Exception:
            # Delivery is best-effort; the ticket mutation already committed
            logger.exception(
                "Notification delivery failed: type=%s reference=%s recipients=%d",
                event.type, event.reference_id, len(event.user_ids),
            )


def _deliver_in_context(app, events: list[NotificationEvent]) -> None:
    with app.app_context():
        try:
            _deliver(events)
        finally:
            db.session.remove()


def publish(events: list[NotificationEvent]) -> None:
    """
    Hand committed-transaction events to the notification sink.

    MUST be called after the originating commit. With NOTIFICATIONS_ASYNC the
    events are delivered on a background worker; otherwise inline. Either way
    failures are logged and never raised.
    """
    events = [e for e in events if e.user_ids]
    if not events:
        return

    app = current_app._get_current_object()
    if app.config.get("NOTIFICATIONS_ASYNC"):
        try:
            _get_executor().submit(_deliver_in_context, app, events)
        except RuntimeError:
            logger.exception("Notification worker unavailable; dropping %d event(s)", len(events))
        return

    _deliver(events)


def store_employee_ids(store_id: int, *, exclude_user_id: int | None = None) -> list[int]:
    """Active users whose primary store is store_id or who were granted access to it."""
    granted = db.session.query(UserStoreAccess.user_id).filter(UserStoreAccess.store_id == store_id)
    rows = (
        db.session.query(User.id)
        .filter(User.is_active.is_(True))
        .filter(or_(User.store_id == store_id, User.id.in_(granted)))
        .order_by(User.id.asc())
        .all()
    )
    return [r[0] for r in rows if r[0] != exclude_user_id]


def list_notifications(user_id: int, *, limit: int = 30, unread_only: bool = False) -> list[dict]:
    q = db.session.query(Notification).filter_by(user_id=user_id)
    if unread_only:
        q = q.filter_by(is_read=False)
    q = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    return [n.to_dict() for n in q.all()]


def get_unread_count(user_id: int) -> int:
    return db.session.query(Notification).filter_by(user_id=user_id, is_read=False).count()


def mark_as_read(notification_id: int, user_id: int) -> bool:
    notification = db.session.query(Notification).filter_by(id=notification_id, user_id=user_id).first()
    if not notification:
        return False
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        commit_with_retry()
    return True


def mark_all_as_read(user_id: int) -> int:
    updated = (
        db.session.query(Notification)
        .filter_by(user_id=user_id, is_read=False)
        .update({"is_read": True, "read_at": utcnow()}, synchronize_session=False)
    )
    commit_with_retry()
    return updated


def clean_old_notifications(days_old: int = 30) -> int:
    """Delete read notifications older than days_old. Returns rows deleted."""
    cutoff = utcnow() - timedelta(days=days_old)
    deleted = (
        db.session.query(Notification)
        .filter(Notification.is_read.is_(True), Notification.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    commit_with_retry()
    return deleted
