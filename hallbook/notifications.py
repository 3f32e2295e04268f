"""Notification fan-out and the per-user notification inbox.

Booking and approval transitions reach this module as events on the bus
(see :func:`register_fanout`). For each one the owner's settings are
consulted, a notification row is stored, pushed to any live SSE stream, and
handed to the push/e-mail transport when the user opted in.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import get_settings
from .database import SessionLocal
from .dates import format_date, format_time, local_now, utcnow, window_start
from .errors import NotFound, ValidationError
from .events import BOOKING_APPROVED, BOOKING_CANCELLED, BOOKING_REJECTED, USER_APPROVED, USER_REJECTED, DomainEvent, EventBus, event_bus
from .identity import Principal
from .models import (
    Booking,
    BookingStatus,
    EmailFrequency,
    Hall,
    Notification,
    NotificationSettings,
    NotificationType,
    RoleEnum,
    User,
)
from .realtime import NotificationHub, notification_hub
from .retry import retry_reads
from .transport import HttpTransport, get_transport

logger = logging.getLogger(__name__)
settings = get_settings()

PREFERENCE_FOR_TYPE: Dict[NotificationType, str] = {
    NotificationType.BOOKING: "booking_updates",
    NotificationType.REJECTION: "booking_updates",
    NotificationType.CANCELLATION: "booking_updates",
    NotificationType.UPDATE: "system_announcements",
    NotificationType.SYSTEM: "system_announcements",
    NotificationType.MAINTENANCE: "maintenance_alerts",
    NotificationType.REMINDER: "reminders",
}
SETTINGS_FIELDS = (
    "push_enabled",
    "email_enabled",
    "email_frequency",
    "booking_updates",
    "reminders",
    "reminder_time_minutes",
    "maintenance_alerts",
    "system_announcements",
)
ANNOUNCEMENT_TYPES = (NotificationType.SYSTEM, NotificationType.MAINTENANCE)


def notification_payload(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "data": notification.data or {},
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def get_or_create_settings(db: Session, user_id: int) -> NotificationSettings:
    row = db.get(NotificationSettings, user_id)
    if row is not None:
        return row
    row = NotificationSettings(user_id=user_id)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by another request
        db.rollback()
        row = db.get(NotificationSettings, user_id)
        if row is None:
            raise
    db.refresh(row)
    return row


class Notifier:
    """Stores a notification and delivers it through every enabled channel."""

    def __init__(self, hub: Optional[NotificationHub] = None, transport: Optional[HttpTransport] = None) -> None:
        self._hub = hub
        self._transport = transport

    @property
    def hub(self) -> NotificationHub:
        return self._hub or notification_hub

    @property
    def transport(self) -> HttpTransport:
        return self._transport or get_transport()

    def notify(
        self,
        db: Session,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        prefs = get_or_create_settings(db, user_id)
        if not getattr(prefs, PREFERENCE_FOR_TYPE[type]):
            logger.debug("User %s opted out of %s notifications", user_id, type.value)
            return None

        notification = Notification(user_id=user_id, type=type, title=title, message=message, data=data, is_read=False)
        db.add(notification)
        db.commit()
        db.refresh(notification)
        self._deliver(db, notification, prefs)
        return notification

    def _deliver(self, db: Session, notification: Notification, prefs: NotificationSettings) -> None:
        self.hub.publish(notification.user_id, notification_payload(notification))
        if prefs.push_enabled:
            self.transport.send_push(notification.user_id, notification.title, notification.message, notification.data)
        if prefs.email_enabled and prefs.email_frequency == EmailFrequency.IMMEDIATE:
            address = db.query(User.email).filter(User.id == notification.user_id).scalar()
            if address:
                self.transport.send_email(
                    address,
                    f"notification_{notification.type.value}",
                    {"title": notification.title, "message": notification.message, **(notification.data or {})},
                )


notifier = Notifier()


def _when(payload: Dict[str, Any]) -> str:
    return f"{payload.get('booking_date')} from {payload.get('start_time')} to {payload.get('end_time')}"


class NotificationFanout:
    """Turns lifecycle events into notifications, one session per event."""

    def __init__(self, notifier: Notifier = notifier, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.notifier = notifier
        self.session_factory = session_factory

    def __call__(self, event: DomainEvent) -> None:
        handler = {
            BOOKING_APPROVED: self._booking_approved,
            BOOKING_REJECTED: self._booking_rejected,
            BOOKING_CANCELLED: self._booking_cancelled,
            USER_APPROVED: self._user_approved,
            USER_REJECTED: self._user_rejected,
        }.get(event.name)
        if handler is None:
            return
        db = self.session_factory()
        try:
            handler(db, event.payload)
        except Exception:
            db.rollback()
            logger.exception("Fan-out failed for %s %s, needs reconciliation", event.name, event.payload)
        finally:
            db.close()

    def _booking_approved(self, db: Session, payload: Dict[str, Any]) -> None:
        if payload.get("user_id") is None:
            return
        hall = payload.get("hall_name") or "the hall"
        self.notifier.notify(
            db,
            payload["user_id"],
            NotificationType.BOOKING,
            "Booking Approved",
            f"Your booking for {hall} on {_when(payload)} has been approved.",
            {"booking_id": payload["booking_id"], "hall_name": payload.get("hall_name"), "action_type": "approved"},
        )

    def _booking_rejected(self, db: Session, payload: Dict[str, Any]) -> None:
        if payload.get("user_id") is None:
            return
        hall = payload.get("hall_name") or "the hall"
        self.notifier.notify(
            db,
            payload["user_id"],
            NotificationType.REJECTION,
            "Booking Rejected",
            f"Your booking for {hall} on {_when(payload)} was not approved.",
            {
                "booking_id": payload["booking_id"],
                "hall_name": payload.get("hall_name"),
                "rejection_reason": payload.get("reason"),
                "action_type": "rejected",
            },
        )

    def _booking_cancelled(self, db: Session, payload: Dict[str, Any]) -> None:
        if payload.get("user_id") is None:
            return
        hall = payload.get("hall_name") or "the hall"
        by_admin = bool(payload.get("cancelled_by_admin"))
        if by_admin:
            title = "Booking Cancelled by Administrator"
            message = f"Your booking for {hall} on {_when(payload)} was cancelled by an administrator."
        else:
            title = "Booking Cancelled"
            message = f"Your booking for {hall} on {_when(payload)} has been cancelled."
        self.notifier.notify(
            db,
            payload["user_id"],
            NotificationType.CANCELLATION,
            title,
            message,
            {
                "booking_id": payload["booking_id"],
                "hall_name": payload.get("hall_name"),
                "cancellation_reason": payload.get("reason"),
                "cancelled_by": payload.get("cancelled_by"),
                "cancelled_by_admin": by_admin,
                "action_type": "cancelled",
            },
        )

    def _user_approved(self, db: Session, payload: Dict[str, Any]) -> None:
        self.notifier.notify(
            db,
            payload["user_id"],
            NotificationType.UPDATE,
            "Account Approved",
            "Your account has been approved. You can now book seminar halls.",
            {"action_type": "account_approved"},
        )

    def _user_rejected(self, db: Session, payload: Dict[str, Any]) -> None:
        self.notifier.notify(
            db,
            payload["user_id"],
            NotificationType.UPDATE,
            "Registration Rejected",
            "Your registration was not approved. Contact the administration office for details.",
            {"rejection_reason": payload.get("reason"), "action_type": "account_rejected"},
        )


FANOUT_EVENTS = (BOOKING_APPROVED, BOOKING_REJECTED, BOOKING_CANCELLED, USER_APPROVED, USER_REJECTED)
fanout = NotificationFanout()


def register_fanout(bus: EventBus = event_bus, handler: Optional[NotificationFanout] = None) -> None:
    """Subscribe the fan-out to lifecycle events. Calling it twice is harmless."""

    handler = handler or fanout
    for name in FANOUT_EVENTS:
        if not bus.is_subscribed(name, handler):
            bus.subscribe(name, handler)


def _owned(db: Session, actor: Principal, notification_id: int) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == actor.user_id)
        .first()
    )
    if notification is None:
        raise NotFound("Notification not found", {"notification_id": notification_id})
    return notification


@retry_reads
def list_notifications(
    db: Session,
    actor: Principal,
    page: int = 1,
    page_size: int = 20,
    unread_only: bool = False,
) -> Dict[str, Any]:
    if page < 1 or not 1 <= page_size <= 100:
        raise ValidationError("page must be >= 1 and page_size between 1 and 100")
    query = db.query(Notification).filter(Notification.user_id == actor.user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    total = query.count()
    items = (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {"items": items, "total": total, "page": page, "page_size": page_size}


@retry_reads
def get_unread_count(db: Session, actor: Principal) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == actor.user_id, Notification.is_read.is_(False))
        .count()
    )


def mark_as_read(db: Session, actor: Principal, notification_id: int) -> Notification:
    notification = _owned(db, actor, notification_id)
    if not notification.is_read:
        notification.is_read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_multiple_as_read(db: Session, actor: Principal, notification_ids: Iterable[int]) -> int:
    """Mark the given notifications read; returns how many changed state."""

    ids = sorted(set(notification_ids))
    if not ids:
        return 0
    owned = {
        row.id
        for row in db.query(Notification.id).filter(Notification.id.in_(ids), Notification.user_id == actor.user_id)
    }
    missing = [i for i in ids if i not in owned]
    if missing:
        raise NotFound("Some notifications were not found", {"notification_ids": missing})
    changed = (
        db.query(Notification)
        .filter(Notification.id.in_(ids), Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return changed


def mark_all_as_read(db: Session, actor: Principal) -> int:
    changed = (
        db.query(Notification)
        .filter(Notification.user_id == actor.user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return changed


def delete_notification(db: Session, actor: Principal, notification_id: int) -> bool:
    """Hard delete. Returns whether a row was removed by this call.

    An id that no longer exists counts as deleted, so repeating the call is
    harmless. Another user's notification is reported as not found.
    """

    owner_id = db.query(Notification.user_id).filter(Notification.id == notification_id).scalar()
    if owner_id is None:
        return False
    if owner_id != actor.user_id:
        raise NotFound("Notification not found", {"notification_id": notification_id})
    deleted = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == actor.user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def delete_old_notifications(db: Session, actor: Principal, older_than_days: int = 30, now: Optional[datetime] = None) -> int:
    if older_than_days < 1:
        raise ValidationError("older_than_days must be at least 1", {"field": "older_than_days"})
    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    deleted = (
        db.query(Notification)
        .filter(Notification.user_id == actor.user_id, Notification.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def get_notification_settings(db: Session, actor: Principal) -> NotificationSettings:
    return get_or_create_settings(db, actor.user_id)


def update_notification_settings(db: Session, actor: Principal, **changes: Any) -> NotificationSettings:
    unknown = set(changes) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValidationError("Unknown notification settings", {"fields": sorted(unknown)})
    minutes = changes.get("reminder_time_minutes")
    if minutes is not None and not 5 <= minutes <= 1440:
        raise ValidationError("reminder_time_minutes must be between 5 and 1440", {"field": "reminder_time_minutes"})
    if "email_frequency" in changes and changes["email_frequency"] is not None:
        changes["email_frequency"] = EmailFrequency(changes["email_frequency"])

    prefs = get_or_create_settings(db, actor.user_id)
    for key, value in changes.items():
        if value is not None:
            setattr(prefs, key, value)
    db.commit()
    db.refresh(prefs)
    return prefs


def load_snapshot(user_id: int, limit: Optional[int] = None) -> Dict[str, Any]:
    """Unread count and most recent notifications, in a session of its own."""

    db = SessionLocal()
    try:
        recent = (
            db.query(Notification)
            .filter(Notification.user_id == user_id)
            .order_by(Notification.id.desc())
            .limit(limit or settings.recent_notifications_limit)
            .all()
        )
        unread = (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .count()
        )
        return {"unread_count": unread, "recent": [notification_payload(n) for n in recent]}
    finally:
        db.close()


def load_missed(user_id: int, last_event_id: int) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        rows = (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.id > last_event_id)
            .order_by(Notification.id)
            .all()
        )
        return [notification_payload(n) for n in rows]
    finally:
        db.close()


def send_due_reminders(db: Session, now: Optional[datetime] = None, sender: Optional[Notifier] = None) -> int:
    """Send one reminder per approved booking starting within the owner's lead time."""

    sender = sender or notifier
    now = now or local_now()
    candidates = (
        db.query(Booking)
        .filter(
            Booking.status == BookingStatus.APPROVED,
            Booking.reminder_sent_at.is_(None),
            Booking.user_id.isnot(None),
            Booking.booking_date >= now.date(),
            Booking.booking_date <= (now + timedelta(days=1)).date(),
        )
        .all()
    )
    sent = 0
    for booking in candidates:
        starts_at = window_start(booking.booking_date, booking.start_time)
        lead = get_or_create_settings(db, booking.user_id).reminder_time_minutes
        if not now <= starts_at <= now + timedelta(minutes=lead):
            continue
        claimed = (
            db.query(Booking)
            .filter(Booking.id == booking.id, Booking.reminder_sent_at.is_(None))
            .update({Booking.reminder_sent_at: utcnow()}, synchronize_session=False)
        )
        db.commit()
        if not claimed:
            continue
        hall = db.get(Hall, booking.hall_id)
        hall_name = hall.name if hall is not None else "your hall"
        sender.notify(
            db,
            booking.user_id,
            NotificationType.REMINDER,
            "Upcoming Booking",
            f"Reminder: {hall_name} is booked for you at {format_time(booking.start_time)} on {format_date(booking.booking_date)}.",
            {"booking_id": booking.id, "hall_name": hall_name, "action_type": "reminder"},
        )
        sent += 1
    return sent


def broadcast_announcement(
    db: Session,
    actor: Principal,
    title: str,
    message: str,
    type: NotificationType = NotificationType.SYSTEM,
    role: Optional[RoleEnum] = None,
    sender: Optional[Notifier] = None,
) -> int:
    """Admin announcement to every active user (optionally one role). Returns recipients."""

    actor.require(RoleEnum.ADMIN)
    if type not in ANNOUNCEMENT_TYPES:
        raise ValidationError("Announcements must be system or maintenance notices", {"field": "type"})
    title, message = (title or "").strip(), (message or "").strip()
    if not title or not message:
        raise ValidationError("Title and message are required")

    sender = sender or notifier
    query = db.query(User.id).filter(User.is_active.is_(True))
    if role is not None:
        query = query.filter(User.role == role)
    recipients = [row.id for row in query.all()]
    created = 0
    for user_id in recipients:
        if sender.notify(db, user_id, type, title, message, {"action_type": "announcement", "sent_by": actor.user_id}):
            created += 1
    logger.info("Announcement %r sent to %s of %s users by %s", title, created, len(recipients), actor.user_id)
    return created
