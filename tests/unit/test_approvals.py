"""Unit tests for the registration approval workflow and user administration."""
from datetime import date, datetime

import pytest

from hallbook import approvals, bookings
from hallbook.errors import AccountDeactivated, Forbidden, InsufficientRole, InvalidTransition, NotFound, ValidationError
from hallbook.events import USER_APPROVED, USER_DEACTIVATED, USER_REJECTED, WILDCARD, EventBus
from hallbook.identity import LocalIdentityProvider, authorize
from hallbook.models import (
    ActivityLog,
    AuthSession,
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    RegistrationStatus,
    RoleEnum,
    User,
)

NOW = datetime(2030, 3, 1, 9, 0)


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def events(bus):
    seen = []
    bus.subscribe(WILDCARD, seen.append)
    return seen


@pytest.fixture()
def admin(make_user):
    return make_user(role=RoleEnum.ADMIN, email="admin@campus.edu")


@pytest.fixture()
def pending(make_user):
    return make_user(registration_status=RegistrationStatus.PENDING, email="new@campus.edu")


class TestRegistrationQueue:
    def test_pending_list_only_shows_active_faculty(self, db_session, admin, pending, make_user):
        make_user(registration_status=RegistrationStatus.PENDING, is_active=False)
        make_user()

        listed = approvals.list_pending_approvals(db_session, admin)

        assert [u.email for u in listed] == ["new@campus.edu"]

    def test_faculty_cannot_see_queue(self, db_session, pending):
        with pytest.raises(InsufficientRole):
            approvals.list_pending_approvals(db_session, pending)

    def test_approve_is_idempotent(self, db_session, admin, pending, bus, events):
        user = approvals.approve_user(db_session, admin, "NEW@campus.edu", bus=bus)
        again = approvals.approve_user(db_session, admin, "new@campus.edu", bus=bus)

        assert user.approved_by_admin is True
        assert again.id == user.id
        assert [e.name for e in events] == [USER_APPROVED]
        assert db_session.query(ActivityLog).filter(ActivityLog.action == "user_approved").count() == 1

    def test_reject_deactivates_and_revokes(self, db_session, admin, pending, bus, events):
        provider = LocalIdentityProvider(EventBus())
        token = provider.sign_in(db_session, "new@campus.edu", "Passw0rd!").session_token

        user = approvals.reject_user(db_session, admin, "new@campus.edu", "Unknown department", bus=bus)

        assert user.registration_status == RegistrationStatus.REJECTED
        assert user.rejected_reason == "Unknown department"
        assert user.is_active is False
        assert events[0].name == USER_REJECTED
        assert db_session.query(AuthSession).filter(AuthSession.revoked_at.is_(None)).count() == 0
        with pytest.raises(AccountDeactivated):
            authorize(db_session, token)

    def test_cross_transitions_are_refused(self, db_session, admin, pending, make_user):
        approvals.reject_user(db_session, admin, "new@campus.edu", bus=EventBus())
        with pytest.raises(InvalidTransition):
            approvals.approve_user(db_session, admin, "new@campus.edu", bus=EventBus())

        make_user(email="ok@campus.edu")
        with pytest.raises(InvalidTransition):
            approvals.reject_user(db_session, admin, "ok@campus.edu", bus=EventBus())

    def test_unknown_email(self, db_session, admin):
        with pytest.raises(NotFound):
            approvals.approve_user(db_session, admin, "ghost@campus.edu")

    def test_reactivating_rejected_user_returns_to_queue(self, db_session, admin, pending):
        approvals.reject_user(db_session, admin, "new@campus.edu", bus=EventBus())

        user = approvals.toggle_active_status(db_session, admin, pending.user_id, True, bus=EventBus())

        assert user.is_active is True
        assert user.registration_status == RegistrationStatus.PENDING
        assert [u.id for u in approvals.list_pending_approvals(db_session, admin)] == [pending.user_id]


class TestAccountAdministration:
    def test_deactivation_emits_and_blocks_self(self, db_session, admin, make_user, bus, events):
        target = make_user()
        approvals.toggle_active_status(db_session, admin, target.user_id, False, bus=bus)

        assert events[0].name == USER_DEACTIVATED
        with pytest.raises(Forbidden):
            approvals.toggle_active_status(db_session, admin, admin.user_id, False)

    def test_only_super_admin_touches_super_admins(self, db_session, admin, make_user):
        boss = make_user(role=RoleEnum.SUPER_ADMIN)
        faculty = make_user()

        with pytest.raises(Forbidden):
            approvals.toggle_active_status(db_session, admin, boss.user_id, False)
        with pytest.raises(Forbidden):
            approvals.change_user_role(db_session, admin, faculty.user_id, RoleEnum.SUPER_ADMIN)

    def test_last_super_admin_cannot_be_demoted(self, db_session, make_user):
        boss = make_user(role=RoleEnum.SUPER_ADMIN)
        with pytest.raises(Forbidden):
            approvals.change_user_role(db_session, boss, boss.user_id, RoleEnum.ADMIN)

        second = make_user(role=RoleEnum.SUPER_ADMIN)
        demoted = approvals.change_user_role(db_session, boss, second.user_id, RoleEnum.ADMIN)
        assert demoted.role == RoleEnum.ADMIN

    def test_promotion_approves_registration(self, db_session, admin, pending):
        promoted = approvals.change_user_role(db_session, admin, pending.user_id, RoleEnum.ADMIN)
        assert promoted.registration_status == RegistrationStatus.APPROVED

    def test_update_user_limits_fields(self, db_session, admin, make_user):
        target = make_user()
        updated = approvals.update_user(db_session, target, target.user_id, department=" Physics ")
        assert updated.department == "Physics"

        with pytest.raises(ValidationError):
            approvals.update_user(db_session, target, target.user_id, role="admin")
        with pytest.raises(InsufficientRole):
            approvals.update_user(db_session, make_user(), target.user_id, name="Hijack")

    def test_create_user_is_preapproved(self, db_session, admin):
        user = approvals.create_user(db_session, admin, name="Dr Rao", email="rao@campus.edu", password="Passw0rd!")
        assert user.approved_by_admin is True

        with pytest.raises(Forbidden):
            approvals.create_user(
                db_session, admin, name="X", email="x@campus.edu", password="Passw0rd!", role=RoleEnum.SUPER_ADMIN
            )

    def test_list_users_filters(self, db_session, admin, pending, make_user):
        make_user(is_active=False)
        page = approvals.list_users(db_session, admin, registration_status=RegistrationStatus.PENDING)
        assert [u.email for u in page["items"]] == ["new@campus.edu"]
        assert approvals.list_users(db_session, admin, is_active=False)["total"] == 1


class TestDeleteUser:
    def test_super_admin_is_never_deleted(self, db_session, admin, make_user):
        boss = make_user(role=RoleEnum.SUPER_ADMIN)
        with pytest.raises(Forbidden):
            approvals.delete_user(db_session, admin, boss.user_id)
        with pytest.raises(Forbidden):
            approvals.delete_user(db_session, boss, boss.user_id)
        db_session.expire_all()
        assert db_session.get(User, boss.user_id) is not None

    def test_admin_targets_need_super_admin(self, db_session, admin, make_user):
        other_admin = make_user(role=RoleEnum.ADMIN)
        with pytest.raises(Forbidden):
            approvals.delete_user(db_session, admin, other_admin.user_id)

        boss = make_user(role=RoleEnum.SUPER_ADMIN)
        assert approvals.delete_user(db_session, boss, other_admin.user_id)["deleted_user_id"] == other_admin.user_id

    def test_delete_cancels_future_bookings_and_keeps_rows(self, db_session, admin, make_user, make_hall):
        owner = make_user()
        hall = make_hall()
        future = bookings.create_booking(
            db_session, owner, hall.id, date(2030, 3, 10), "10:00", "11:00", "Seminar", 10, now=NOW, bus=EventBus()
        )
        db_session.add(Notification(user_id=owner.user_id, type=NotificationType.SYSTEM, title="t", message="m"))
        db_session.commit()

        result = approvals.delete_user(db_session, admin, owner.user_id, now=NOW)

        assert result == {"deleted_user_id": owner.user_id, "cancelled_bookings": 1}
        db_session.expire_all()
        kept = db_session.get(Booking, future.id)
        assert kept.status == BookingStatus.CANCELLED
        assert kept.user_id is None
        assert db_session.query(Notification).count() == 0
        assert db_session.get(User, owner.user_id) is None


class TestAnalytics:
    def test_user_analytics_counts(self, db_session, admin, pending, make_user):
        make_user(is_active=False)

        stats = approvals.get_user_analytics(db_session, admin)

        assert stats["total_users"] == 3
        assert stats["inactive_users"] == 1
        assert stats["pending_approvals"] == 1
        assert stats["users_by_role"] == {"faculty": 2, "admin": 1, "super_admin": 0}

    def test_new_users_this_month_uses_campus_calendar(self, db_session, admin, monkeypatch):
        monkeypatch.setattr(approvals, "local_now", lambda: datetime(2099, 1, 1, 0, 30))
        assert approvals.get_user_analytics(db_session, admin)["new_users_this_month"] == 0

        monkeypatch.setattr(approvals, "local_now", lambda: datetime(2000, 1, 1, 0, 30))
        assert approvals.get_user_analytics(db_session, admin)["new_users_this_month"] == 1
