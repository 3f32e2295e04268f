"""Registration approval workflow and administrative user management.

Registration status (pending/approved/rejected) is tracked separately from
``is_active``: a pending faculty member can sign in and browse but cannot
book; a deactivated account cannot do anything.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import get_password_hash
from .dates import local_now, month_bounds, utcnow
from .errors import Forbidden, InvalidTransition, NotFound, ValidationError
from .events import USER_APPROVED, USER_DEACTIVATED, USER_REJECTED, EventBus, event_bus
from .identity import ADMIN_ROLES, Principal, revoke_sessions
from .models import (
    ActivityLog,
    AuthSession,
    Booking,
    BookingStatus,
    Notification,
    NotificationSettings,
    RegistrationStatus,
    RoleEnum,
    User,
)
from .retry import retry_reads

logger = logging.getLogger(__name__)

EDITABLE_PROFILE_FIELDS = ("name", "phone", "employee_id", "department")


def _bus(bus: Optional[EventBus]) -> EventBus:
    return bus if bus is not None else event_bus


def record_activity(
    db: Session,
    actor_id: Optional[int],
    action: str,
    target_type: str,
    target_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Append to the admin activity log after the main change has committed."""

    try:
        db.add(ActivityLog(actor_id=actor_id, action=action, target_type=target_type, target_id=target_id, details=details))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not record activity %s on %s %s", action, target_type, target_id)


def _user_by_email(db: Session, email: str) -> User:
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if user is None:
        raise NotFound("User not found", {"email": email})
    return user


def _user_by_id(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found", {"user_id": user_id})
    return user


def _guard_super_admin(actor: Principal, target: User, new_role: Optional[RoleEnum] = None) -> None:
    touches_super = target.role == RoleEnum.SUPER_ADMIN or new_role == RoleEnum.SUPER_ADMIN
    if touches_super and not actor.is_super_admin:
        raise Forbidden("Only a super admin can manage super admin accounts", {"user_id": target.id})


@retry_reads
def list_pending_approvals(db: Session, actor: Principal) -> List[User]:
    actor.require(RoleEnum.ADMIN)
    return (
        db.query(User)
        .filter(
            User.role == RoleEnum.FACULTY,
            User.registration_status == RegistrationStatus.PENDING,
            User.is_active.is_(True),
        )
        .order_by(User.created_at.desc(), User.id.desc())
        .all()
    )


def approve_user(db: Session, actor: Principal, target_email: str, bus: Optional[EventBus] = None) -> User:
    actor.require(RoleEnum.ADMIN)
    user = _user_by_email(db, target_email)
    if user.registration_status == RegistrationStatus.APPROVED:
        return user
    if user.registration_status == RegistrationStatus.REJECTED:
        raise InvalidTransition(
            "Rejected registrations must be reactivated before approval", {"user_id": user.id}
        )

    moved = (
        db.query(User)
        .filter(User.id == user.id, User.registration_status == RegistrationStatus.PENDING)
        .update(
            {User.registration_status: RegistrationStatus.APPROVED, User.rejected_reason: None},
            synchronize_session=False,
        )
    )
    if not moved:
        db.rollback()
        raise InvalidTransition("Registration was changed by someone else", {"user_id": user.id})
    db.commit()
    db.refresh(user)
    logger.info("User %s approved by %s", user.id, actor.user_id)
    record_activity(db, actor.user_id, "user_approved", "user", user.id, {"email": user.email})
    _bus(bus).publish(USER_APPROVED, user_id=user.id, actor_id=actor.user_id)
    return user


def reject_user(
    db: Session,
    actor: Principal,
    target_email: str,
    reason: Optional[str] = None,
    bus: Optional[EventBus] = None,
) -> User:
    actor.require(RoleEnum.ADMIN)
    user = _user_by_email(db, target_email)
    if user.registration_status == RegistrationStatus.REJECTED:
        return user
    if user.registration_status == RegistrationStatus.APPROVED:
        raise InvalidTransition(
            "Approved accounts are deactivated, not rejected", {"user_id": user.id}
        )

    reason = (reason or "").strip() or None
    moved = (
        db.query(User)
        .filter(User.id == user.id, User.registration_status == RegistrationStatus.PENDING)
        .update(
            {
                User.registration_status: RegistrationStatus.REJECTED,
                User.rejected_reason: reason,
                User.is_active: False,
            },
            synchronize_session=False,
        )
    )
    if not moved:
        db.rollback()
        raise InvalidTransition("Registration was changed by someone else", {"user_id": user.id})
    revoke_sessions(db, user.id)
    db.commit()
    db.refresh(user)
    logger.info("User %s rejected by %s", user.id, actor.user_id)
    record_activity(db, actor.user_id, "user_rejected", "user", user.id, {"email": user.email, "reason": reason})
    _bus(bus).publish(USER_REJECTED, user_id=user.id, actor_id=actor.user_id, reason=reason)
    return user


def change_user_role(db: Session, actor: Principal, target_id: int, new_role: RoleEnum) -> User:
    actor.require(RoleEnum.ADMIN)
    user = _user_by_id(db, target_id)
    _guard_super_admin(actor, user, new_role)
    if user.role == new_role:
        return user

    if user.role == RoleEnum.SUPER_ADMIN:
        remaining = db.query(func.count(User.id)).filter(User.role == RoleEnum.SUPER_ADMIN).scalar()
        if remaining <= 1:
            raise Forbidden("The last super admin cannot be demoted", {"user_id": user.id})

    previous = user.role
    user.role = new_role
    if new_role in ADMIN_ROLES:
        user.registration_status = RegistrationStatus.APPROVED
        user.rejected_reason = None
    db.commit()
    db.refresh(user)
    logger.info("User %s role %s -> %s by %s", user.id, previous.value, new_role.value, actor.user_id)
    record_activity(
        db, actor.user_id, "role_changed", "user", user.id, {"from": previous.value, "to": new_role.value}
    )
    return user


def toggle_active_status(
    db: Session,
    actor: Principal,
    target_id: int,
    is_active: bool,
    bus: Optional[EventBus] = None,
) -> User:
    """Activate or deactivate an account.

    Deactivation revokes every session, so the user's next call fails with
    ``AccountDeactivated``. Activating a rejected account puts its
    registration back to pending for a fresh review.
    """

    actor.require(RoleEnum.ADMIN)
    user = _user_by_id(db, target_id)
    if user.id == actor.user_id and not is_active:
        raise Forbidden("You cannot deactivate your own account", {"user_id": user.id})
    _guard_super_admin(actor, user)

    user.is_active = is_active
    if is_active and user.registration_status == RegistrationStatus.REJECTED:
        user.registration_status = RegistrationStatus.PENDING
        user.rejected_reason = None
    if not is_active:
        revoke_sessions(db, user.id)
    db.commit()
    db.refresh(user)
    logger.info("User %s %s by %s", user.id, "activated" if is_active else "deactivated", actor.user_id)
    record_activity(db, actor.user_id, "user_activated" if is_active else "user_deactivated", "user", user.id)
    if not is_active:
        _bus(bus).publish(USER_DEACTIVATED, user_id=user.id, actor_id=actor.user_id)
    return user


def delete_user(db: Session, actor: Principal, target_id: int, now: Optional[datetime] = None) -> Dict[str, int]:
    """Hard-delete an account.

    Upcoming pending/approved bookings are cancelled first; every booking row
    survives for the audit trail with its owner cleared.
    """

    actor.require(RoleEnum.ADMIN)
    user = _user_by_id(db, target_id)
    if user.id == actor.user_id:
        raise Forbidden("You cannot delete your own account", {"user_id": user.id})
    if user.role == RoleEnum.SUPER_ADMIN:
        raise Forbidden("Super admin accounts cannot be deleted", {"user_id": user.id})
    if user.role == RoleEnum.ADMIN and not actor.is_super_admin:
        raise Forbidden("Only a super admin can delete admin accounts", {"user_id": user.id})

    today = (now or local_now()).date()
    cancelled = (
        db.query(Booking)
        .filter(
            Booking.user_id == user.id,
            Booking.booking_date >= today,
            Booking.status.in_([BookingStatus.PENDING, BookingStatus.APPROVED]),
        )
        .update(
            {
                Booking.status: BookingStatus.CANCELLED,
                Booking.cancellation_reason: "Organiser account was removed",
                Booking.cancelled_by: actor.user_id,
            },
            synchronize_session=False,
        )
    )
    db.query(Booking).filter(Booking.user_id == user.id).update({Booking.user_id: None}, synchronize_session=False)
    db.query(AuthSession).filter(AuthSession.user_id == user.id).delete(synchronize_session=False)
    db.query(Notification).filter(Notification.user_id == user.id).delete(synchronize_session=False)
    db.query(NotificationSettings).filter(NotificationSettings.user_id == user.id).delete(synchronize_session=False)
    db.expire(user, ["bookings"])
    db.delete(user)
    db.commit()
    logger.info("User %s deleted by %s (%s bookings cancelled)", target_id, actor.user_id, cancelled)
    record_activity(db, actor.user_id, "user_deleted", "user", target_id, {"cancelled_bookings": cancelled})
    return {"deleted_user_id": target_id, "cancelled_bookings": cancelled}


@retry_reads
def list_users(
    db: Session,
    actor: Principal,
    page: int = 1,
    page_size: int = 20,
    role: Optional[RoleEnum] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    registration_status: Optional[RegistrationStatus] = None,
) -> Dict[str, Any]:
    actor.require(RoleEnum.ADMIN)
    if page < 1 or not 1 <= page_size <= 100:
        raise ValidationError("page must be >= 1 and page_size between 1 and 100")
    query = db.query(User)
    if role is not None:
        query = query.filter(User.role == role)
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))
    if registration_status is not None:
        query = query.filter(User.registration_status == registration_status)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(User.name.ilike(pattern), User.email.ilike(pattern), User.department.ilike(pattern), User.employee_id.ilike(pattern))
        )
    total = query.count()
    items = query.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return {"items": items, "total": total, "page": page, "page_size": page_size}


def create_user(
    db: Session,
    actor: Principal,
    *,
    name: str,
    email: str,
    password: str,
    role: RoleEnum = RoleEnum.FACULTY,
    phone: Optional[str] = None,
    employee_id: Optional[str] = None,
    department: Optional[str] = None,
) -> User:
    """Admin-created accounts skip the approval queue."""

    actor.require(RoleEnum.ADMIN)
    if role == RoleEnum.SUPER_ADMIN and not actor.is_super_admin:
        raise Forbidden("Only a super admin can create super admin accounts")
    email = email.strip().lower()
    if db.query(User.id).filter(User.email == email).first() is not None:
        raise ValidationError("An account with this email already exists", {"field": "email"})

    user = User(
        name=name.strip(),
        email=email,
        hashed_password=get_password_hash(password),
        role=role,
        phone=phone,
        employee_id=employee_id,
        department=department,
        is_active=True,
        registration_status=RegistrationStatus.APPROVED,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    record_activity(db, actor.user_id, "user_created", "user", user.id, {"role": role.value})
    return user


def update_user(db: Session, actor: Principal, target_id: int, **changes: Any) -> User:
    """Profile edits by the user themselves or an admin."""

    if actor.user_id != target_id:
        actor.require(RoleEnum.ADMIN)
    user = _user_by_id(db, target_id)
    if actor.user_id != target_id:
        _guard_super_admin(actor, user)

    unknown = set(changes) - set(EDITABLE_PROFILE_FIELDS)
    if unknown:
        raise ValidationError("These fields cannot be edited here", {"fields": sorted(unknown)})
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError("Name is required", {"field": "name"})

    for key, value in changes.items():
        setattr(user, key, value.strip() if isinstance(value, str) else value)
    db.commit()
    db.refresh(user)
    return user


@retry_reads
def get_user_analytics(db: Session, actor: Principal, now: Optional[datetime] = None) -> Dict[str, Any]:
    actor.require(RoleEnum.ADMIN)
    month_start, _ = month_bounds((now or local_now()).date())
    seen_since = (now or utcnow()) - timedelta(days=30)

    by_role = dict(db.query(User.role, func.count(User.id)).group_by(User.role).all())
    total = db.query(func.count(User.id)).scalar() or 0
    active = db.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0
    pending = (
        db.query(func.count(User.id))
        .filter(User.registration_status == RegistrationStatus.PENDING, User.is_active.is_(True))
        .scalar()
        or 0
    )
    recently_seen = (
        db.query(func.count(User.id)).filter(User.last_login_at >= seen_since).scalar() or 0
    )
    new_this_month = (
        db.query(func.count(User.id)).filter(User.created_at >= datetime.combine(month_start, datetime.min.time())).scalar()
        or 0
    )
    return {
        "total_users": total,
        "active_users": active,
        "inactive_users": total - active,
        "pending_approvals": pending,
        "users_by_role": {role.value: int(by_role.get(role, 0)) for role in RoleEnum},
        "new_users_this_month": new_this_month,
        "active_last_30_days": recently_seen,
    }


@retry_reads
def list_activity(db: Session, actor: Principal, page: int = 1, page_size: int = 50) -> Dict[str, Any]:
    actor.require(RoleEnum.ADMIN)
    if page < 1 or not 1 <= page_size <= 200:
        raise ValidationError("page must be >= 1 and page_size between 1 and 200")
    query = db.query(ActivityLog)
    total = query.count()
    items = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
    return {"items": items, "total": total, "page": page, "page_size": page_size}
