"""Unit tests for the notification fan-out, inbox and reminder sweep."""
import asyncio
import json
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest

from hallbook import bookings
from hallbook.database import SessionLocal
from hallbook.errors import NotFound
from hallbook.events import BOOKING_APPROVED, BOOKING_CANCELLED, USER_APPROVED, DomainEvent, EventBus
from hallbook.models import Notification, NotificationSettings, NotificationType, RoleEnum
from hallbook.notifications import (
    NotificationFanout,
    Notifier,
    delete_notification,
    get_unread_count,
    load_missed,
    load_snapshot,
    mark_as_read,
    register_fanout,
    send_due_reminders,
)
from hallbook.realtime import NotificationHub, notification_stream

DAY = date(2030, 3, 10)
NOW = datetime(2030, 3, 1, 9, 0)


@pytest.fixture()
def transport():
    return MagicMock()


@pytest.fixture()
def notifier(transport):
    return Notifier(hub=NotificationHub(), transport=transport)


@pytest.fixture()
def bus(notifier):
    bus = EventBus()
    register_fanout(bus, NotificationFanout(notifier, SessionLocal))
    return bus


def inbox(db, user_id):
    db.expire_all()
    return db.query(Notification).filter(Notification.user_id == user_id).order_by(Notification.id).all()


class TestFanout:
    def test_approval_reaches_the_owner(self, db_session, make_user, make_hall, bus, transport):
        owner = make_user(email="owner@campus.edu")
        admin = make_user(role=RoleEnum.ADMIN)
        hall = make_hall()
        booking = bookings.create_booking(
            db_session, owner, hall.id, DAY, "10:00", "11:00", "Seminar", 20, now=NOW, bus=bus
        )

        bookings.approve_booking(db_session, admin, booking.id, now=NOW, bus=bus)

        [note] = inbox(db_session, owner.user_id)
        assert note.type == NotificationType.BOOKING
        assert note.title == "Booking Approved"
        assert note.data["booking_id"] == booking.id
        assert hall.name in note.message
        transport.send_push.assert_called_once()
        assert transport.send_email.call_args[0][0] == "owner@campus.edu"

    def test_admin_cancellation_title(self, db_session, make_user, make_hall, bus):
        owner = make_user()
        admin = make_user(role=RoleEnum.ADMIN)
        hall = make_hall()
        booking = bookings.create_booking(
            db_session, owner, hall.id, DAY, "10:00", "11:00", "Seminar", 20, now=NOW, bus=bus
        )

        bookings.cancel_booking(db_session, admin, booking.id, "Hall closed", now=NOW, bus=bus)

        [note] = inbox(db_session, owner.user_id)
        assert note.title == "Booking Cancelled by Administrator"
        assert note.data["cancellation_reason"] == "Hall closed"
        assert note.data["cancelled_by"] == admin.user_id

    def test_opted_out_owner_gets_nothing(self, db_session, make_user, make_hall, bus, transport):
        owner = make_user()
        db_session.add(NotificationSettings(user_id=owner.user_id, booking_updates=False))
        db_session.commit()
        admin = make_user(role=RoleEnum.ADMIN)
        hall = make_hall()
        booking = bookings.create_booking(
            db_session, owner, hall.id, DAY, "10:00", "11:00", "Seminar", 20, now=NOW, bus=bus
        )

        bookings.approve_booking(db_session, admin, booking.id, now=NOW, bus=bus)

        assert inbox(db_session, owner.user_id) == []
        transport.send_push.assert_not_called()

    def test_live_stream_receives_payload(self, db_session, make_user):
        hub = MagicMock()
        fanout = NotificationFanout(Notifier(hub=hub, transport=MagicMock()), SessionLocal)
        user = make_user()

        fanout(DomainEvent(USER_APPROVED, {"user_id": user.user_id}))

        user_id, payload = hub.publish.call_args[0]
        assert user_id == user.user_id
        assert payload["title"] == "Account Approved"
        assert payload["type"] == "update"

    def test_ownerless_booking_is_skipped(self, db_session):
        sender = MagicMock()
        fanout = NotificationFanout(sender, SessionLocal)

        fanout(DomainEvent(BOOKING_CANCELLED, {"booking_id": 1, "user_id": None}))

        sender.notify.assert_not_called()

    def test_failures_are_logged_not_raised(self, caplog):
        sender = MagicMock()
        sender.notify.side_effect = RuntimeError("push gateway exploded")
        session = MagicMock()
        fanout = NotificationFanout(sender, lambda: session)

        fanout(DomainEvent(USER_APPROVED, {"user_id": 7}))

        session.rollback.assert_called_once()
        session.close.assert_called_once()
        assert "needs reconciliation" in caplog.text

    def test_register_is_idempotent(self):
        bus = EventBus()
        handler = MagicMock()

        register_fanout(bus, handler)
        register_fanout(bus, handler)
        bus.publish(BOOKING_APPROVED, booking_id=1, user_id=1)

        assert handler.call_count == 1


class TestReminders:
    def _approved(self, db, make_user, make_hall, start="10:00", end="11:00"):
        owner = make_user()
        admin = make_user(role=RoleEnum.ADMIN)
        hall = make_hall()
        quiet = EventBus()
        booking = bookings.create_booking(db, owner, hall.id, DAY, start, end, "Seminar", 20, now=NOW, bus=quiet)
        bookings.approve_booking(db, admin, booking.id, now=NOW, bus=quiet)
        return owner, booking

    def test_reminder_sent_once_inside_lead_time(self, db_session, make_user, make_hall, notifier):
        owner, booking = self._approved(db_session, make_user, make_hall)

        assert send_due_reminders(db_session, now=datetime(2030, 3, 10, 9, 30), sender=notifier) == 1
        assert send_due_reminders(db_session, now=datetime(2030, 3, 10, 9, 45), sender=notifier) == 0

        [note] = inbox(db_session, owner.user_id)
        assert note.type == NotificationType.REMINDER
        assert note.data["booking_id"] == booking.id

    def test_outside_lead_time_waits(self, db_session, make_user, make_hall, notifier):
        self._approved(db_session, make_user, make_hall)

        assert send_due_reminders(db_session, now=datetime(2030, 3, 10, 8, 0), sender=notifier) == 0
        assert send_due_reminders(db_session, now=datetime(2030, 3, 10, 10, 30), sender=notifier) == 0


class TestInbox:
    def test_mark_as_read_twice(self, db_session, make_user, notifier):
        user = make_user()
        note = notifier.notify(db_session, user.user_id, NotificationType.SYSTEM, "Fire drill", "Drill at noon")

        assert mark_as_read(db_session, user, note.id).is_read is True
        assert mark_as_read(db_session, user, note.id).is_read is True
        assert get_unread_count(db_session, user) == 0

    def test_delete_is_repeatable(self, db_session, make_user, notifier):
        user = make_user()
        note = notifier.notify(db_session, user.user_id, NotificationType.SYSTEM, "Fire drill", "Drill at noon")

        assert delete_notification(db_session, user, note.id) is True
        assert delete_notification(db_session, user, note.id) is False
        assert inbox(db_session, user.user_id) == []

    def test_delete_of_another_users_notification(self, db_session, make_user, notifier):
        owner, other = make_user(), make_user()
        note = notifier.notify(db_session, owner.user_id, NotificationType.SYSTEM, "Fire drill", "Drill at noon")

        with pytest.raises(NotFound):
            delete_notification(db_session, other, note.id)
        assert len(inbox(db_session, owner.user_id)) == 1


class TestStreamAcrossServices:
    """Bookings stores the notification; a separate notifications process streams it."""

    def test_row_stored_by_another_hub_is_streamed(self, db_session, make_user, make_hall):
        owner = make_user()
        admin = make_user(role=RoleEnum.ADMIN)
        hall = make_hall()
        bookings_side = EventBus()
        register_fanout(bookings_side, NotificationFanout(Notifier(hub=NotificationHub(), transport=MagicMock()), SessionLocal))
        booking = bookings.create_booking(
            db_session, owner, hall.id, DAY, "10:00", "11:00", "Seminar", 20, now=NOW, bus=bookings_side
        )
        streaming_hub = NotificationHub()

        async def scenario():
            stream = notification_stream(
                owner.user_id,
                lambda: load_snapshot(owner.user_id),
                lambda after: load_missed(owner.user_id, after),
                hub=streaming_hub,
                heartbeat_seconds=5,
                poll_seconds=0.05,
            )
            snapshot = await stream.__anext__()
            bookings.approve_booking(db_session, admin, booking.id, now=NOW, bus=bookings_side)
            pushed = await asyncio.wait_for(stream.__anext__(), timeout=2)
            await stream.aclose()
            return snapshot, pushed

        snapshot, pushed = asyncio.run(scenario())

        assert json.loads(snapshot["data"])["recent"] == []
        assert pushed["event"] == "notification"
        assert json.loads(pushed["data"])["title"] == "Booking Approved"
        assert json.loads(pushed["data"])["data"]["booking_id"] == booking.id
