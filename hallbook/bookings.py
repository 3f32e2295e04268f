"""Booking lifecycle engine.

State machine::

    pending  -> approved | rejected | cancelled   (editable by its organiser)
    approved -> cancelled | completed

Every transition is a compare-and-set ``UPDATE ... WHERE status IN (...)``; a
zero row count means another actor committed first. Approval additionally
bumps the hall's ``schedule_version`` with a compare-and-set, so two approvals
racing in the same hall cannot both commit.

Events are published on the bus only after the transition has committed.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .config import get_settings
from .dates import (
    DateLike,
    TimeLike,
    duration_minutes,
    format_date,
    format_time,
    local_now,
    minutes_of,
    month_bounds,
    parse_date,
    parse_time,
    shift_time,
    time_from_minutes,
    utcnow,
    week_start,
    window_end,
    windows_overlap,
)
from .errors import (
    AlreadyElapsed,
    Conflict,
    Forbidden,
    HallUnavailable,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .events import (
    BOOKING_APPROVED,
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CREATED,
    BOOKING_REJECTED,
    BOOKING_UPDATED,
    EventBus,
    event_bus,
)
from .identity import Principal
from .models import Booking, BookingStatus, Hall, MaintenanceWindow, RoleEnum, User
from .retry import retry_reads

logger = logging.getLogger(__name__)
settings = get_settings()

ACTIVE_STATUSES: Tuple[BookingStatus, ...] = (BookingStatus.PENDING, BookingStatus.APPROVED)
TRANSITIONS: Dict[BookingStatus, frozenset] = {
    BookingStatus.PENDING: frozenset({BookingStatus.APPROVED, BookingStatus.REJECTED, BookingStatus.CANCELLED}),
    BookingStatus.APPROVED: frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
}

# the standard two-hour blocks shown on the hall calendar
STANDARD_SLOTS: Tuple[Tuple[str, str], ...] = (
    ("06:00", "08:00"),
    ("08:00", "10:00"),
    ("10:00", "12:00"),
    ("12:00", "14:00"),
    ("14:00", "16:00"),
    ("16:00", "18:00"),
    ("18:00", "20:00"),
    ("20:00", "22:00"),
)
SUGGESTION_STEP_MINUTES = 30

DATE_RANGES = ("today", "this_week", "this_month", "all")


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def operating_hours() -> Tuple[time, time]:
    return parse_time(settings.opening_time, "opening_time"), parse_time(settings.closing_time, "closing_time")


def _bus(bus: Optional[EventBus]) -> EventBus:
    return bus if bus is not None else event_bus


def _get_hall(db: Session, hall_id: int) -> Hall:
    hall = db.get(Hall, hall_id)
    if hall is None:
        raise NotFound("Hall not found", {"hall_id": hall_id})
    return hall


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found", {"booking_id": booking_id})
    return booking


def _hall_name(db: Session, hall_id: int) -> Optional[str]:
    hall = db.get(Hall, hall_id)
    return hall.name if hall is not None else None


def validate_window(
    booking_date: DateLike,
    start_time: TimeLike,
    end_time: TimeLike,
    now: Optional[datetime] = None,
) -> Tuple[date, time, time]:
    """Parse and check a requested window; returns canonical values."""

    day = parse_date(booking_date)
    start = parse_time(start_time, "start_time")
    end = parse_time(end_time, "end_time")
    now = now or local_now()

    if start >= end:
        raise ValidationError("End time must be after start time", {"start_time": format_time(start), "end_time": format_time(end)})
    if day < now.date():
        raise ValidationError("Cannot book halls for past dates", {"booking_date": format_date(day)})
    if duration_minutes(start, end) < settings.min_booking_minutes:
        raise ValidationError(
            f"Minimum booking duration is {settings.min_booking_minutes} minutes",
            {"duration_minutes": duration_minutes(start, end)},
        )
    opening, closing = operating_hours()
    if start < opening or end > closing:
        raise ValidationError(
            f"Bookings are only allowed between {format_time(opening)} and {format_time(closing)}",
            {"opening_time": format_time(opening), "closing_time": format_time(closing)},
        )
    return day, start, end


def maintenance_overlaps(db: Session, hall_id: int, booking_date: date, start: time, end: time) -> List[MaintenanceWindow]:
    windows = (
        db.query(MaintenanceWindow)
        .filter(MaintenanceWindow.hall_id == hall_id, MaintenanceWindow.window_date == booking_date)
        .all()
    )
    return [w for w in windows if windows_overlap(start, end, w.start_time, w.end_time)]


def ensure_hall_available(db: Session, hall: Hall, booking_date: date, start: time, end: time) -> None:
    if not hall.is_active:
        raise HallUnavailable("Hall is not accepting bookings", {"hall_id": hall.id})
    if hall.is_maintenance:
        raise HallUnavailable("Hall is under maintenance", {"hall_id": hall.id, "notes": hall.maintenance_notes})
    blocked = maintenance_overlaps(db, hall.id, booking_date, start, end)
    if blocked:
        raise HallUnavailable(
            "Hall has scheduled maintenance during this time",
            {"hall_id": hall.id, "maintenance_window_ids": [w.id for w in blocked]},
        )


def find_conflicts(
    db: Session,
    hall_id: int,
    booking_date: DateLike,
    start_time: TimeLike,
    end_time: TimeLike,
    exclude_booking_id: Optional[int] = None,
    statuses: Iterable[BookingStatus] = (BookingStatus.APPROVED,),
) -> List[Booking]:
    """Bookings in ``statuses`` overlapping the half-open window.

    The window is widened on both sides by ``booking_buffer_minutes`` so a
    hall gets turnaround time between events.
    """

    day = parse_date(booking_date)
    start = parse_time(start_time, "start_time")
    end = parse_time(end_time, "end_time")
    buffer = settings.booking_buffer_minutes
    low, high = shift_time(start, -buffer), shift_time(end, buffer)

    query = db.query(Booking).filter(
        Booking.hall_id == hall_id,
        Booking.booking_date == day,
        Booking.status.in_(list(statuses)),
        Booking.start_time < high,
        Booking.end_time > low,
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.order_by(Booking.start_time).all()


def has_conflict(
    db: Session,
    hall_id: int,
    booking_date: DateLike,
    start_time: TimeLike,
    end_time: TimeLike,
    exclude_booking_id: Optional[int] = None,
    statuses: Iterable[BookingStatus] = (BookingStatus.APPROVED,),
) -> bool:
    return bool(find_conflicts(db, hall_id, booking_date, start_time, end_time, exclude_booking_id, statuses))


def conflict_warning(db: Session, booking: Booking) -> Optional[Dict[str, Any]]:
    """Soft warning shown at creation when other active bookings overlap."""

    others = find_conflicts(
        db,
        booking.hall_id,
        booking.booking_date,
        booking.start_time,
        booking.end_time,
        exclude_booking_id=booking.id,
        statuses=ACTIVE_STATUSES,
    )
    if not others:
        return None
    return {
        "message": "This time overlaps other requests; only one can be approved",
        "conflicting_booking_ids": [other.id for other in others],
    }


def create_booking(
    db: Session,
    actor: Principal,
    hall_id: int,
    booking_date: DateLike,
    start_time: TimeLike,
    end_time: TimeLike,
    purpose: str,
    attendees_count: int,
    equipment: Optional[Sequence[str]] = None,
    special_requirements: Optional[str] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
    bus: Optional[EventBus] = None,
) -> Booking:
    """Create a ``pending`` booking. Overlap is not an error at this stage."""

    actor.require_approved()
    day, start, end = validate_window(booking_date, start_time, end_time, now)
    purpose = (purpose or "").strip()
    if not purpose:
        raise ValidationError("Purpose is required", {"field": "purpose"})
    if attendees_count is None or attendees_count < 1:
        raise ValidationError("At least one attendee is required", {"field": "attendees_count"})

    hall = _get_hall(db, hall_id)
    if attendees_count > hall.capacity:
        raise ValidationError(
            f"Attendees exceed hall capacity of {hall.capacity}",
            {"field": "attendees_count", "capacity": hall.capacity},
        )
    ensure_hall_available(db, hall, day, start, end)

    booking = Booking(
        hall_id=hall.id,
        user_id=actor.user_id,
        booking_date=day,
        start_time=start,
        end_time=end,
        duration_minutes=duration_minutes(start, end),
        purpose=purpose,
        description=description,
        attendees_count=attendees_count,
        equipment_needed=list(equipment or []),
        special_requirements=special_requirements,
        status=BookingStatus.PENDING,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s created by user %s for hall %s on %s", booking.id, actor.user_id, hall.id, day)
    _bus(bus).publish(
        BOOKING_CREATED,
        booking_id=booking.id,
        user_id=actor.user_id,
        hall_id=hall.id,
        hall_name=hall.name,
        booking_date=format_date(day),
        start_time=format_time(start),
        end_time=format_time(end),
    )
    return booking


EDITABLE_FIELDS = (
    "booking_date",
    "start_time",
    "end_time",
    "purpose",
    "description",
    "attendees_count",
    "equipment",
    "special_requirements",
)
WINDOW_FIELDS = ("booking_date", "start_time", "end_time")


def update_booking(
    db: Session,
    actor: Principal,
    booking_id: int,
    now: Optional[datetime] = None,
    bus: Optional[EventBus] = None,
    **changes: Any,
) -> Booking:
    """Edit a ``pending`` booking on behalf of its organiser.

    ``None`` values are ignored. Moving the window repeats the creation checks
    and refuses a slot held by an approved booking; the booking being edited
    is left out of that check. Duration is recomputed from the new window.
    """

    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("These booking fields cannot be edited", {"fields": sorted(unknown)})
    changes = {key: value for key, value in changes.items() if value is not None}

    booking = _get_booking(db, booking_id)
    if booking.user_id != actor.user_id:
        raise Forbidden("You can only edit your own bookings", {"booking_id": booking_id})
    if booking.status != BookingStatus.PENDING:
        raise InvalidTransition(
            f"Only pending bookings can be edited (booking is {booking.status.value})",
            {"booking_id": booking_id, "status": booking.status.value},
        )
    if not changes:
        return booking

    hall = _get_hall(db, booking.hall_id)
    values: Dict[Any, Any] = {}
    if any(key in changes for key in WINDOW_FIELDS):
        day, start, end = validate_window(
            changes.get("booking_date", booking.booking_date),
            changes.get("start_time", booking.start_time),
            changes.get("end_time", booking.end_time),
            now,
        )
        ensure_hall_available(db, hall, day, start, end)
        taken = find_conflicts(db, hall.id, day, start, end, exclude_booking_id=booking.id)
        if taken:
            raise Conflict(
                "Time slot is already booked",
                {"booking_id": booking_id, "conflicting_booking_ids": [other.id for other in taken]},
            )
        values.update(
            {
                Booking.booking_date: day,
                Booking.start_time: start,
                Booking.end_time: end,
                Booking.duration_minutes: duration_minutes(start, end),
            }
        )
    if "purpose" in changes:
        purpose = changes["purpose"].strip()
        if not purpose:
            raise ValidationError("Purpose is required", {"field": "purpose"})
        values[Booking.purpose] = purpose
    if "attendees_count" in changes:
        attendees = changes["attendees_count"]
        if attendees < 1:
            raise ValidationError("At least one attendee is required", {"field": "attendees_count"})
        if attendees > hall.capacity:
            raise ValidationError(
                f"Attendees exceed hall capacity of {hall.capacity}",
                {"field": "attendees_count", "capacity": hall.capacity},
            )
        values[Booking.attendees_count] = attendees
    if "equipment" in changes:
        values[Booking.equipment_needed] = list(changes["equipment"])
    for key in ("description", "special_requirements"):
        if key in changes:
            values[getattr(Booking, key)] = changes[key]

    edited = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.status == BookingStatus.PENDING)
        .update({**values, Booking.updated_at: utcnow()}, synchronize_session=False)
    )
    if not edited:
        db.rollback()
        raise InvalidTransition("Booking was decided while it was being edited", {"booking_id": booking_id})
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s edited by user %s (%s)", booking.id, actor.user_id, ", ".join(sorted(changes)))
    _bus(bus).publish(BOOKING_UPDATED, changed=sorted(changes), **_event_payload(booking, hall.name))
    return booking


def _transition(
    db: Session,
    booking_id: int,
    allowed_from: Iterable[BookingStatus],
    target: BookingStatus,
    values: Dict[Any, Any],
) -> None:
    moved = (
        db.query(Booking)
        .filter(Booking.id == booking_id, Booking.status.in_(list(allowed_from)))
        .update({Booking.status: target, **values}, synchronize_session=False)
    )
    if not moved:
        db.rollback()
        raise InvalidTransition(
            f"Booking can no longer be moved to {target.value}",
            {"booking_id": booking_id, "target": target.value},
        )


def _event_payload(booking: Booking, hall_name: Optional[str]) -> Dict[str, Any]:
    return {
        "booking_id": booking.id,
        "user_id": booking.user_id,
        "hall_id": booking.hall_id,
        "hall_name": hall_name,
        "booking_date": format_date(booking.booking_date),
        "start_time": format_time(booking.start_time),
        "end_time": format_time(booking.end_time),
    }


def approve_booking(
    db: Session,
    actor: Principal,
    booking_id: int,
    admin_notes: Optional[str] = None,
    now: Optional[datetime] = None,
    bus: Optional[EventBus] = None,
) -> Booking:
    actor.require(RoleEnum.ADMIN)
    booking = _get_booking(db, booking_id)
    if booking.status != BookingStatus.PENDING:
        raise InvalidTransition(
            f"Only pending bookings can be approved (booking is {booking.status.value})",
            {"booking_id": booking_id, "status": booking.status.value},
        )
    now = now or local_now()
    if window_end(booking.booking_date, booking.end_time) <= now:
        raise AlreadyElapsed("This booking's time has already passed", {"booking_id": booking_id})

    hall = _get_hall(db, booking.hall_id)
    ensure_hall_available(db, hall, booking.booking_date, booking.start_time, booking.end_time)
    seen_version = hall.schedule_version

    conflicts = find_conflicts(
        db, hall.id, booking.booking_date, booking.start_time, booking.end_time, exclude_booking_id=booking.id
    )
    if conflicts:
        raise Conflict(
            "Another approved booking overlaps this time",
            {"booking_id": booking_id, "conflicting_booking_ids": [c.id for c in conflicts]},
        )

    bumped = (
        db.query(Hall)
        .filter(Hall.id == hall.id, Hall.schedule_version == seen_version)
        .update({Hall.schedule_version: seen_version + 1}, synchronize_session=False)
    )
    if not bumped:
        db.rollback()
        raise Conflict(
            "The hall schedule changed while approving, reload and try again",
            {"booking_id": booking_id, "hall_id": hall.id},
        )
    _transition(
        db,
        booking_id,
        (BookingStatus.PENDING,),
        BookingStatus.APPROVED,
        {
            Booking.approved_by: actor.user_id,
            Booking.approved_at: utcnow(),
            Booking.admin_notes: admin_notes,
        },
    )
    db.commit()
    db.refresh(booking)
    db.refresh(hall)
    logger.info("Booking %s approved by %s", booking_id, actor.user_id)
    _bus(bus).publish(BOOKING_APPROVED, actor_id=actor.user_id, admin_notes=admin_notes, **_event_payload(booking, hall.name))
    return booking


def reject_booking(
    db: Session,
    actor: Principal,
    booking_id: int,
    reason: str,
    bus: Optional[EventBus] = None,
) -> Booking:
    actor.require(RoleEnum.ADMIN)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required", {"field": "reason"})
    booking = _get_booking(db, booking_id)
    if booking.status != BookingStatus.PENDING:
        raise InvalidTransition(
            f"Only pending bookings can be rejected (booking is {booking.status.value})",
            {"booking_id": booking_id, "status": booking.status.value},
        )
    _transition(db, booking_id, (BookingStatus.PENDING,), BookingStatus.REJECTED, {Booking.rejected_reason: reason})
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s rejected by %s", booking_id, actor.user_id)
    _bus(bus).publish(
        BOOKING_REJECTED,
        actor_id=actor.user_id,
        reason=reason,
        **_event_payload(booking, _hall_name(db, booking.hall_id)),
    )
    return booking


def cancel_booking(
    db: Session,
    actor: Principal,
    booking_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    bus: Optional[EventBus] = None,
) -> Booking:
    """Cancel a pending or approved booking dated today or later.

    Owners need an approved account; admins may cancel anyone's booking, in
    which case the notification names the admin separately from the reason.
    """

    booking = _get_booking(db, booking_id)
    is_owner = booking.user_id == actor.user_id
    if not is_owner and not actor.is_admin:
        raise Forbidden("You can only cancel your own bookings", {"booking_id": booking_id})
    if not actor.is_admin:
        actor.require_approved()

    now = now or local_now()
    if booking.booking_date < now.date():
        raise AlreadyElapsed("Past bookings cannot be cancelled", {"booking_id": booking_id})
    if booking.status not in ACTIVE_STATUSES:
        raise InvalidTransition(
            f"Booking is already {booking.status.value}",
            {"booking_id": booking_id, "status": booking.status.value},
        )

    reason = (reason or "").strip() or None
    _transition(
        db,
        booking_id,
        ACTIVE_STATUSES,
        BookingStatus.CANCELLED,
        {Booking.cancellation_reason: reason, Booking.cancelled_by: actor.user_id},
    )
    db.commit()
    db.refresh(booking)
    logger.info("Booking %s cancelled by %s", booking_id, actor.user_id)
    _bus(bus).publish(
        BOOKING_CANCELLED,
        actor_id=actor.user_id,
        reason=reason,
        cancelled_by=actor.user_id,
        cancelled_by_admin=not is_owner,
        **_event_payload(booking, _hall_name(db, booking.hall_id)),
    )
    return booking


def rate_booking(db: Session, actor: Principal, booking_id: int, rating: int) -> Booking:
    booking = _get_booking(db, booking_id)
    if booking.user_id != actor.user_id:
        raise Forbidden("Only the organiser can rate a booking", {"booking_id": booking_id})
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidTransition("Only completed bookings can be rated", {"booking_id": booking_id})
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5", {"field": "rating"})
    booking.rating = rating
    db.commit()
    db.refresh(booking)
    return booking


def complete_elapsed_bookings(db: Session, now: Optional[datetime] = None, bus: Optional[EventBus] = None) -> int:
    """Scheduled sweep: approved bookings whose window has ended become completed."""

    now = now or local_now()
    candidates = (
        db.query(Booking)
        .filter(Booking.status == BookingStatus.APPROVED, Booking.booking_date <= now.date())
        .all()
    )
    elapsed = [b for b in candidates if window_end(b.booking_date, b.end_time) <= now]
    completed: List[Booking] = []
    for booking in elapsed:
        moved = (
            db.query(Booking)
            .filter(Booking.id == booking.id, Booking.status == BookingStatus.APPROVED)
            .update({Booking.status: BookingStatus.COMPLETED}, synchronize_session=False)
        )
        if moved:
            completed.append(booking)
    db.commit()
    for booking in completed:
        db.refresh(booking)
        _bus(bus).publish(BOOKING_COMPLETED, booking_id=booking.id, user_id=booking.user_id, hall_id=booking.hall_id)
    if completed:
        logger.info("Marked %s elapsed bookings completed", len(completed))
    return len(completed)


def _ensure_owner_or_admin(actor: Principal, user_id: Optional[int], message: str) -> None:
    if actor.user_id != user_id and not actor.is_admin:
        raise Forbidden(message, {"user_id": user_id})


@retry_reads
def get_booking(db: Session, actor: Principal, booking_id: int) -> Booking:
    booking = _get_booking(db, booking_id)
    _ensure_owner_or_admin(actor, booking.user_id, "You can only view your own bookings")
    return booking


@retry_reads
def list_user_bookings(
    db: Session,
    actor: Principal,
    user_id: int,
    status: Optional[BookingStatus] = None,
    limit: Optional[int] = None,
) -> List[Booking]:
    _ensure_owner_or_admin(actor, user_id, "You can only view your own bookings")
    query = db.query(Booking).filter(Booking.user_id == user_id)
    if status is not None:
        query = query.filter(Booking.status == status)
    return (
        query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        .limit(limit or settings.user_bookings_limit)
        .all()
    )


@retry_reads
def get_user_booking_stats(db: Session, actor: Principal, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    _ensure_owner_or_admin(actor, user_id, "You can only view your own statistics")
    today = (now or local_now()).date()
    month_start, next_month = month_bounds(today)

    rows = db.query(Booking.status, Booking.booking_date, Booking.rating).filter(Booking.user_id == user_id).all()
    ratings = [row.rating for row in rows if row.rating is not None]
    return {
        "total_bookings": len(rows),
        "this_month_bookings": sum(1 for row in rows if month_start <= row.booking_date < next_month),
        "approved_bookings": sum(1 for row in rows if row.status == BookingStatus.APPROVED),
        "pending_bookings": sum(1 for row in rows if row.status == BookingStatus.PENDING),
        "completed_bookings": sum(1 for row in rows if row.status == BookingStatus.COMPLETED),
        "average_rating": round(sum(ratings) / len(ratings), 1) if ratings else 0.0,
    }


def _date_range_bounds(date_range: str, today: date) -> Optional[Tuple[date, date]]:
    if date_range == "today":
        return today, today + timedelta(days=1)
    if date_range == "this_week":
        start = week_start(today)
        return start, start + timedelta(days=7)
    if date_range == "this_month":
        return month_bounds(today)
    if date_range == "all":
        return None
    raise ValidationError(f"date_range must be one of {', '.join(DATE_RANGES)}", {"field": "date_range"})


@retry_reads
def list_bookings(
    db: Session,
    actor: Principal,
    status: Optional[BookingStatus] = None,
    hall_id: Optional[int] = None,
    date_range: str = "all",
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin oversight listing, newest booking date first."""

    actor.require(RoleEnum.ADMIN)
    if page < 1 or not 1 <= page_size <= 100:
        raise ValidationError("page must be >= 1 and page_size between 1 and 100")

    query = db.query(Booking).outerjoin(User, Booking.user_id == User.id).join(Hall, Booking.hall_id == Hall.id)
    if status is not None:
        query = query.filter(Booking.status == status)
    if hall_id is not None:
        query = query.filter(Booking.hall_id == hall_id)
    bounds = _date_range_bounds(date_range, (now or local_now()).date())
    if bounds is not None:
        query = query.filter(Booking.booking_date >= bounds[0], Booking.booking_date < bounds[1])
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(Booking.purpose.ilike(pattern), User.name.ilike(pattern), User.email.ilike(pattern), Hall.name.ilike(pattern))
        )

    total = query.count()
    items = (
        query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {"items": items, "total": total, "page": page, "page_size": page_size}


@retry_reads
def get_booking_statistics(
    db: Session,
    actor: Principal,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Status counts plus today/this-month totals and hall popularity."""

    if user_id is None:
        actor.require(RoleEnum.ADMIN)
    else:
        _ensure_owner_or_admin(actor, user_id, "You can only view your own statistics")
    today = (now or local_now()).date()
    month_start, next_month = month_bounds(today)

    base = db.query(Booking)
    if user_id is not None:
        base = base.filter(Booking.user_id == user_id)

    by_status = dict(
        base.with_entities(Booking.status, func.count(Booking.id)).group_by(Booking.status).all()
    )
    stats: Dict[str, Any] = {f"{s.value}_bookings": int(by_status.get(s, 0)) for s in BookingStatus}
    stats["total_bookings"] = sum(stats.values())
    stats["today_bookings"] = base.filter(Booking.booking_date == today).count()
    stats["this_month_bookings"] = base.filter(
        Booking.booking_date >= month_start, Booking.booking_date < next_month
    ).count()

    popularity = (
        base.join(Hall, Booking.hall_id == Hall.id)
        .filter(Booking.status.in_([BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.COMPLETED]))
        .with_entities(Hall.id, Hall.name, func.count(Booking.id).label("booking_count"))
        .group_by(Hall.id, Hall.name)
        .order_by(func.count(Booking.id).desc(), Hall.name)
        .all()
    )
    stats["hall_popularity"] = [
        {"hall_id": row.id, "hall_name": row.name, "booking_count": int(row.booking_count)} for row in popularity
    ]
    return stats


REPORT_MAX_DAYS = 365
HELD_STATUSES: Tuple[BookingStatus, ...] = (BookingStatus.APPROVED, BookingStatus.COMPLETED)


def _report_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= REPORT_MAX_DAYS:
        raise ValidationError(f"days must be between 1 and {REPORT_MAX_DAYS}", {"field": "days"})
    return days


@retry_reads
def get_booking_trends(db: Session, actor: Principal, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Requests per day over the last ``days`` days, by the day they were made.

    Every day in the range is listed, oldest first. ``approved`` counts requests
    that were approved and still hold (including completed ones).
    """

    actor.require(RoleEnum.ADMIN)
    days = _report_days(days)
    last_day = (now or utcnow()).date()
    first_day = last_day - timedelta(days=days - 1)

    counts = {first_day + timedelta(days=offset): {"bookings": 0, "approved": 0, "cancelled": 0} for offset in range(days)}
    rows = (
        db.query(Booking.created_at, Booking.status)
        .filter(Booking.created_at >= datetime.combine(first_day, time.min))
        .all()
    )
    for row in rows:
        bucket = counts.get(row.created_at.date())
        if bucket is None:
            continue
        bucket["bookings"] += 1
        if row.status in HELD_STATUSES:
            bucket["approved"] += 1
        elif row.status == BookingStatus.CANCELLED:
            bucket["cancelled"] += 1
    return [{"date": format_date(day), **bucket} for day, bucket in sorted(counts.items())]


@retry_reads
def get_hall_performance(db: Session, actor: Principal, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Per-hall usage over the ``days`` days ending today.

    ``utilization_rate`` is the share of bookable minutes (operating hours
    times days) taken by approved or completed bookings, as a percentage.
    """

    actor.require(RoleEnum.ADMIN)
    days = _report_days(days)
    last_day = (now or local_now()).date()
    first_day = last_day - timedelta(days=days - 1)
    opening, closing = operating_hours()
    bookable_minutes = duration_minutes(opening, closing) * days

    in_range = (
        db.query(Booking.hall_id, Booking.status, Booking.duration_minutes)
        .filter(Booking.booking_date >= first_day, Booking.booking_date <= last_day)
        .all()
    )
    maintenance = (
        db.query(MaintenanceWindow.hall_id, MaintenanceWindow.start_time, MaintenanceWindow.end_time)
        .filter(MaintenanceWindow.window_date >= first_day, MaintenanceWindow.window_date <= last_day)
        .all()
    )

    report: List[Dict[str, Any]] = []
    for hall in db.query(Hall).order_by(Hall.name).all():
        durations = [row.duration_minutes for row in in_range if row.hall_id == hall.id]
        held = [row.duration_minutes for row in in_range if row.hall_id == hall.id and row.status in HELD_STATUSES]
        closed = sum(duration_minutes(w.start_time, w.end_time) for w in maintenance if w.hall_id == hall.id)
        report.append(
            {
                "hall_id": hall.id,
                "hall_name": hall.name,
                "total_bookings": len(durations),
                "held_bookings": len(held),
                "average_duration_minutes": round(sum(durations) / len(durations)) if durations else 0,
                "utilization_rate": round(sum(held) * 100 / bookable_minutes, 1) if bookable_minutes > 0 else 0.0,
                "maintenance_hours": round(closed / 60, 1),
            }
        )
    return report


def _day_is_blocked(db: Session, hall: Hall, day: date, start: time, end: time) -> bool:
    if not hall.is_active or hall.is_maintenance:
        return True
    return bool(maintenance_overlaps(db, hall.id, day, start, end))


@retry_reads
def get_available_slots(db: Session, hall_id: int, booking_date: DateLike) -> List[Dict[str, Any]]:
    """Standard two-hour blocks for a day with their availability."""

    hall = _get_hall(db, hall_id)
    day = parse_date(booking_date)
    slots: List[Dict[str, Any]] = []
    for start_text, end_text in STANDARD_SLOTS:
        start, end = parse_time(start_text), parse_time(end_text)
        taken = find_conflicts(db, hall.id, day, start, end, statuses=ACTIVE_STATUSES)
        blocked = _day_is_blocked(db, hall, day, start, end)
        slots.append(
            {
                "start_time": start_text,
                "end_time": end_text,
                "available": not taken and not blocked,
                "conflicting_booking_ids": [b.id for b in taken],
            }
        )
    return slots


@retry_reads
def suggest_slots(
    db: Session,
    hall_id: int,
    booking_date: DateLike,
    duration: int,
    limit: int = 5,
) -> List[Dict[str, str]]:
    """Free windows of ``duration`` minutes, scanned in half-hour steps."""

    if duration < settings.min_booking_minutes:
        raise ValidationError(
            f"Minimum booking duration is {settings.min_booking_minutes} minutes", {"field": "duration"}
        )
    hall = _get_hall(db, hall_id)
    day = parse_date(booking_date)
    opening, closing = operating_hours()

    suggestions: List[Dict[str, str]] = []
    cursor = minutes_of(opening)
    while cursor + duration <= minutes_of(closing) and len(suggestions) < limit:
        start, end = time_from_minutes(cursor), time_from_minutes(cursor + duration)
        if not _day_is_blocked(db, hall, day, start, end) and not has_conflict(
            db, hall.id, day, start, end, statuses=ACTIVE_STATUSES
        ):
            suggestions.append({"start_time": format_time(start), "end_time": format_time(end)})
        cursor += SUGGESTION_STEP_MINUTES
    return suggestions
