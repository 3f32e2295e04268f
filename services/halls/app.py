from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from hallbook import bookings
from hallbook.cache import SimpleTTLCache
from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dates import format_date, local_now, parse_date, parse_time, shift_time
from hallbook.dependencies import get_principal, require_role
from hallbook.errors import Conflict, NotFound, ValidationError, install_error_handlers
from hallbook.identity import Principal
from hallbook.logging_middleware import add_audit_middleware
from hallbook.models import Booking, BookingStatus, Hall, MaintenanceWindow, RoleEnum
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.schemas import (
    HallCreate,
    HallRead,
    HallUpdate,
    MaintenanceToggle,
    MaintenanceWindowCreate,
    MaintenanceWindowRead,
    SlotRead,
)

settings = get_settings()
require_admin = require_role(RoleEnum.ADMIN)
hall_status_cache: SimpleTTLCache[dict[str, Any]] = SimpleTTLCache(ttl=settings.hall_cache_ttl)


def _hall_status_key(hall_id: int) -> str:
    return f"hall-status:{hall_id}"


def _invalidate_hall_cache(hall_id: int) -> None:
    hall_status_cache.pop(_hall_status_key(hall_id))


def _get_hall(db: Session, hall_id: int) -> Hall:
    hall = db.get(Hall, hall_id)
    if not hall:
        raise NotFound("Hall not found", {"hall_id": hall_id})
    return hall


def _ensure_unique_name(db: Session, name: str, hall_id: Optional[int] = None) -> None:
    query = db.query(Hall.id).filter(func.lower(Hall.name) == name.strip().lower())
    if hall_id is not None:
        query = query.filter(Hall.id != hall_id)
    if query.first() is not None:
        raise ValidationError("A hall with this name already exists", {"field": "name"})


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Halls Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "halls")
    install_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "halls"}


@app.post("/halls", response_model=HallRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def add_hall(
    request: Request,
    hall_in: HallCreate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Hall:
    _ensure_unique_name(db, hall_in.name)
    hall = Hall(**hall_in.model_dump())
    hall.name = hall.name.strip()
    db.add(hall)
    db.commit()
    db.refresh(hall)
    return hall


@app.get("/halls", response_model=List[HallRead])
@limiter.limit("60/minute")
def list_halls(
    request: Request,
    min_capacity: Optional[int] = Query(None, ge=1),
    location: Optional[str] = None,
    equipment: Optional[List[str]] = Query(default=None),
    include_inactive: bool = False,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> List[Hall]:
    query = db.query(Hall)
    if not (include_inactive and principal.is_admin):
        query = query.filter(Hall.is_active.is_(True))
    if min_capacity:
        query = query.filter(Hall.capacity >= min_capacity)
    if location:
        query = query.filter(Hall.location.ilike(f"%{location}%"))
    halls = query.order_by(Hall.name).all()
    if equipment:
        wanted = set(equipment)
        halls = [hall for hall in halls if wanted.issubset(set(hall.equipment or []))]
    return halls


@app.get("/halls/{hall_id}", response_model=HallRead)
@limiter.limit("60/minute")
def get_hall(request: Request, hall_id: int, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> Hall:
    return _get_hall(db, hall_id)


@app.put("/halls/{hall_id}", response_model=HallRead)
@limiter.limit("15/minute")
def update_hall(
    request: Request,
    hall_id: int,
    hall_update: HallUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Hall:
    hall = _get_hall(db, hall_id)
    update_data = hall_update.model_dump(exclude_unset=True)
    if update_data.get("name"):
        _ensure_unique_name(db, update_data["name"], hall_id)
    for key, value in update_data.items():
        setattr(hall, key, value)
    db.commit()
    db.refresh(hall)
    _invalidate_hall_cache(hall.id)
    return hall


@app.delete("/halls/{hall_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_hall(
    request: Request,
    hall_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Response:
    """Soft delete; halls with upcoming approved bookings stay active."""

    hall = _get_hall(db, hall_id)
    upcoming = (
        db.query(Booking.id)
        .filter(
            Booking.hall_id == hall_id,
            Booking.status == BookingStatus.APPROVED,
            Booking.booking_date >= local_now().date(),
        )
        .all()
    )
    if upcoming:
        raise Conflict(
            "Hall has upcoming approved bookings",
            {"hall_id": hall_id, "booking_ids": [row.id for row in upcoming]},
        )
    hall.is_active = False
    db.commit()
    _invalidate_hall_cache(hall_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.put("/halls/{hall_id}/maintenance", response_model=HallRead)
@limiter.limit("15/minute")
def set_maintenance(
    request: Request,
    hall_id: int,
    body: MaintenanceToggle,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Hall:
    hall = _get_hall(db, hall_id)
    hall.is_maintenance = body.is_maintenance
    hall.maintenance_notes = body.maintenance_notes if body.is_maintenance else None
    db.commit()
    db.refresh(hall)
    _invalidate_hall_cache(hall_id)
    return hall


@app.post(
    "/halls/{hall_id}/maintenance-windows",
    response_model=MaintenanceWindowRead,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("15/minute")
def add_maintenance_window(
    request: Request,
    hall_id: int,
    body: MaintenanceWindowCreate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> MaintenanceWindow:
    hall = _get_hall(db, hall_id)
    window_date = parse_date(body.window_date, "window_date")
    start = parse_time(body.start_time, "start_time")
    end = parse_time(body.end_time, "end_time")
    if start >= end:
        raise ValidationError("End time must be after start time")
    window = MaintenanceWindow(
        hall_id=hall.id,
        window_date=window_date,
        start_time=start,
        end_time=end,
        description=body.description,
    )
    db.add(window)
    db.commit()
    db.refresh(window)
    _invalidate_hall_cache(hall_id)
    return window


@app.get("/halls/{hall_id}/maintenance-windows", response_model=List[MaintenanceWindowRead])
@limiter.limit("30/minute")
def list_maintenance_windows(
    request: Request,
    hall_id: int,
    upcoming_only: bool = True,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> List[MaintenanceWindow]:
    _get_hall(db, hall_id)
    query = db.query(MaintenanceWindow).filter(MaintenanceWindow.hall_id == hall_id)
    if upcoming_only:
        query = query.filter(MaintenanceWindow.window_date >= local_now().date())
    return query.order_by(MaintenanceWindow.window_date, MaintenanceWindow.start_time).all()


@app.delete("/halls/{hall_id}/maintenance-windows/{window_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_maintenance_window(
    request: Request,
    hall_id: int,
    window_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Response:
    window = (
        db.query(MaintenanceWindow)
        .filter(MaintenanceWindow.id == window_id, MaintenanceWindow.hall_id == hall_id)
        .first()
    )
    if window is None:
        raise NotFound("Maintenance window not found", {"window_id": window_id})
    db.delete(window)
    db.commit()
    _invalidate_hall_cache(hall_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/halls/{hall_id}/status")
@limiter.limit("30/minute")
def hall_status(
    request: Request,
    hall_id: int,
    force_refresh: bool = False,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    hall = _get_hall(db, hall_id)
    if force_refresh:
        _invalidate_hall_cache(hall_id)

    def compute() -> dict[str, Any]:
        now = local_now()
        current = (
            db.query(Booking)
            .filter(
                Booking.hall_id == hall_id,
                Booking.status == BookingStatus.APPROVED,
                Booking.booking_date == now.date(),
                Booking.start_time <= now.time(),
                Booking.end_time > now.time(),
            )
            .first()
        )
        if not hall.is_active:
            label = "inactive"
        elif hall.is_maintenance or bookings.maintenance_overlaps(
            db, hall_id, now.date(), now.time(), shift_time(now.time(), 1)
        ):
            label = "maintenance"
        elif current is not None:
            label = "in_use"
        else:
            label = "available"
        return {
            "hall_id": hall_id,
            "status": label,
            "current_booking_id": current.id if current is not None else None,
            "checked_at": now.isoformat(),
        }

    return hall_status_cache.get_or_set(_hall_status_key(hall_id), compute)


@app.get("/halls/{hall_id}/slots", response_model=List[SlotRead])
@limiter.limit("60/minute")
def available_slots(
    request: Request,
    hall_id: int,
    date: str = Query(..., description="YYYY-MM-DD"),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    return bookings.get_available_slots(db, hall_id, date)


@app.get("/halls/{hall_id}/suggestions", response_model=List[SlotRead])
@limiter.limit("60/minute")
def suggested_slots(
    request: Request,
    hall_id: int,
    date: str = Query(..., description="YYYY-MM-DD"),
    duration: int = Query(120, ge=1),
    limit: int = Query(5, ge=1, le=20),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> List[Dict[str, str]]:
    return bookings.suggest_slots(db, hall_id, date, duration, limit)


@app.get("/halls/{hall_id}/stats")
@limiter.limit("20/minute")
def hall_stats(
    request: Request,
    hall_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    hall = _get_hall(db, hall_id)
    today = local_now().date()
    by_status = dict(
        db.query(Booking.status, func.count(Booking.id)).filter(Booking.hall_id == hall_id).group_by(Booking.status).all()
    )
    upcoming = (
        db.query(func.count(Booking.id))
        .filter(Booking.hall_id == hall_id, Booking.status == BookingStatus.APPROVED, Booking.booking_date >= today)
        .scalar()
    )
    average_attendees = (
        db.query(func.avg(Booking.attendees_count))
        .filter(Booking.hall_id == hall_id, Booking.status.in_([BookingStatus.APPROVED, BookingStatus.COMPLETED]))
        .scalar()
    )
    return {
        "hall_id": hall.id,
        "hall_name": hall.name,
        "bookings_by_status": {s.value: int(by_status.get(s, 0)) for s in BookingStatus},
        "upcoming_approved": int(upcoming or 0),
        "average_attendees": round(float(average_attendees), 1) if average_attendees else 0.0,
        "as_of": format_date(today),
    }
