from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi import status as http_status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from hallbook import bookings
from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dependencies import get_principal, require_role, require_service_key
from hallbook.errors import install_error_handlers
from hallbook.identity import Principal
from hallbook.logging_middleware import add_audit_middleware
from hallbook.models import Booking, BookingStatus, RoleEnum
from hallbook.notifications import register_fanout
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.relay import register_relay
from hallbook.schemas import (
    BookingApproval,
    BookingCancellation,
    BookingCreate,
    BookingCreated,
    BookingPage,
    BookingRating,
    BookingRead,
    BookingRejection,
    BookingUpdate,
    UserBookingStats,
)

settings = get_settings()
require_admin = require_role(RoleEnum.ADMIN)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    install_error_handlers(fastapi_app)
    register_fanout()
    register_relay()
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.post("/bookings", response_model=BookingCreated, status_code=http_status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> BookingCreated:
    booking = bookings.create_booking(
        db,
        principal,
        hall_id=booking_in.hall_id,
        booking_date=booking_in.booking_date,
        start_time=booking_in.start_time,
        end_time=booking_in.end_time,
        purpose=booking_in.purpose,
        attendees_count=booking_in.attendees_count,
        equipment=booking_in.equipment_needed,
        special_requirements=booking_in.special_requirements,
        description=booking_in.description,
    )
    created = BookingCreated.model_validate(booking)
    created.conflict_warning = bookings.conflict_warning(db, booking)
    return created


@app.get("/bookings", response_model=BookingPage)
@limiter.limit("30/minute")
def list_all_bookings(
    request: Request,
    status: Optional[BookingStatus] = None,
    hall_id: Optional[int] = None,
    date_range: str = Query("all", pattern="^(today|this_week|this_month|all)$"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return bookings.list_bookings(
        db,
        principal,
        status=status,
        hall_id=hall_id,
        date_range=date_range,
        search=search,
        page=page,
        page_size=page_size,
    )


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("60/minute")
def my_bookings(
    request: Request,
    status: Optional[BookingStatus] = None,
    limit: Optional[int] = Query(None, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> List[Booking]:
    return bookings.list_user_bookings(db, principal, principal.user_id, status=status, limit=limit)


@app.get("/bookings/me/stats", response_model=UserBookingStats)
@limiter.limit("60/minute")
def my_booking_stats(request: Request, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return bookings.get_user_booking_stats(db, principal, principal.user_id)


@app.get("/bookings/users/{user_id}", response_model=List[BookingRead])
@limiter.limit("30/minute")
def user_bookings(
    request: Request,
    user_id: int,
    status: Optional[BookingStatus] = None,
    limit: Optional[int] = Query(None, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> List[Booking]:
    return bookings.list_user_bookings(db, principal, user_id, status=status, limit=limit)


@app.get("/bookings/users/{user_id}/stats", response_model=UserBookingStats)
@limiter.limit("30/minute")
def user_booking_stats(
    request: Request,
    user_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return bookings.get_user_booking_stats(db, principal, user_id)


@app.get("/bookings/statistics")
@limiter.limit("20/minute")
def booking_statistics(
    request: Request,
    user_id: Optional[int] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return bookings.get_booking_statistics(db, principal, user_id=user_id)


@app.get("/bookings/statistics/trends")
@limiter.limit("20/minute")
def booking_trends(
    request: Request,
    days: int = Query(30, ge=1, le=bookings.REPORT_MAX_DAYS),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    return bookings.get_booking_trends(db, principal, days=days)


@app.get("/bookings/statistics/halls")
@limiter.limit("20/minute")
def hall_performance(
    request: Request,
    days: int = Query(30, ge=1, le=bookings.REPORT_MAX_DAYS),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    return bookings.get_hall_performance(db, principal, days=days)


@app.get("/bookings/conflicts")
@limiter.limit("60/minute")
def check_conflicts(
    request: Request,
    hall_id: int,
    booking_date: str,
    start_time: str,
    end_time: str,
    exclude_booking_id: Optional[int] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    conflicts = bookings.find_conflicts(
        db,
        hall_id,
        booking_date,
        start_time,
        end_time,
        exclude_booking_id=exclude_booking_id,
        statuses=bookings.ACTIVE_STATUSES,
    )
    return {
        "has_conflict": bool(conflicts),
        "conflicting_booking_ids": [c.id for c in conflicts],
        "approved_conflict": any(c.status == BookingStatus.APPROVED for c in conflicts),
    }


@app.post("/bookings/sweeps/complete", dependencies=[Depends(require_service_key)])
def complete_elapsed(db: Session = Depends(get_db)) -> Dict[str, int]:
    return {"completed": bookings.complete_elapsed_bookings(db)}


@app.get("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("60/minute")
def get_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Booking:
    return bookings.get_booking(db, principal, booking_id)


@app.put("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("20/minute")
def update_booking(
    request: Request,
    booking_id: int,
    body: BookingUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Booking:
    changes = body.model_dump(exclude_unset=True)
    if "equipment_needed" in changes:
        changes["equipment"] = changes.pop("equipment_needed")
    return bookings.update_booking(db, principal, booking_id, **changes)


@app.post("/bookings/{booking_id}/approve", response_model=BookingRead)
@limiter.limit("30/minute")
def approve_booking(
    request: Request,
    booking_id: int,
    body: Optional[BookingApproval] = None,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Booking:
    return bookings.approve_booking(db, principal, booking_id, admin_notes=body.admin_notes if body else None)


@app.post("/bookings/{booking_id}/reject", response_model=BookingRead)
@limiter.limit("30/minute")
def reject_booking(
    request: Request,
    booking_id: int,
    body: BookingRejection,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Booking:
    return bookings.reject_booking(db, principal, booking_id, body.reason)


@app.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: int,
    body: Optional[BookingCancellation] = None,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Booking:
    return bookings.cancel_booking(db, principal, booking_id, body.reason if body else None)


@app.post("/bookings/{booking_id}/rating", response_model=BookingRead)
@limiter.limit("20/minute")
def rate_booking(
    request: Request,
    booking_id: int,
    body: BookingRating,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Booking:
    return bookings.rate_booking(db, principal, booking_id, body.rating)
