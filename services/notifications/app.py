import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from hallbook import notifications
from hallbook.config import get_settings
from hallbook.database import Base, SessionLocal, engine, get_db
from hallbook.dependencies import get_principal, get_session_token, require_role, require_service_key
from hallbook.errors import install_error_handlers
from hallbook.identity import Principal, authorize
from hallbook.logging_middleware import add_audit_middleware
from hallbook.models import Notification, NotificationSettings, RoleEnum
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.realtime import notification_stream
from hallbook.schemas import (
    AnnouncementCreate,
    AnnouncementResult,
    MarkRead,
    NotificationPage,
    NotificationRead,
    NotificationSettingsRead,
    NotificationSettingsUpdate,
    UnreadCount,
    UpdatedCount,
)

logger = logging.getLogger(__name__)
settings = get_settings()
require_admin = require_role(RoleEnum.ADMIN)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Notifications Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "notifications")
    install_error_handlers(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "notifications"}


@app.get("/notifications", response_model=NotificationPage)
@limiter.limit("60/minute")
def list_notifications(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return notifications.list_notifications(db, principal, page=page, page_size=page_size, unread_only=unread_only)


@app.get("/notifications/unread-count", response_model=UnreadCount)
@limiter.limit("120/minute")
def unread_count(request: Request, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> UnreadCount:
    return UnreadCount(unread_count=notifications.get_unread_count(db, principal))


@app.get("/notifications/settings", response_model=NotificationSettingsRead)
@limiter.limit("30/minute")
def read_settings(request: Request, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> NotificationSettings:
    return notifications.get_notification_settings(db, principal)


@app.put("/notifications/settings", response_model=NotificationSettingsRead)
@limiter.limit("15/minute")
def update_settings(
    request: Request,
    body: NotificationSettingsUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> NotificationSettings:
    return notifications.update_notification_settings(db, principal, **body.model_dump(exclude_unset=True))


@app.post("/notifications/read", response_model=UpdatedCount)
@limiter.limit("30/minute")
def mark_many_read(
    request: Request,
    body: MarkRead,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> UpdatedCount:
    return UpdatedCount(updated=notifications.mark_multiple_as_read(db, principal, body.notification_ids))


@app.post("/notifications/read-all", response_model=UpdatedCount)
@limiter.limit("30/minute")
def mark_all_read(request: Request, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> UpdatedCount:
    return UpdatedCount(updated=notifications.mark_all_as_read(db, principal))


@app.post("/notifications/{notification_id}/read", response_model=NotificationRead)
@limiter.limit("60/minute")
def mark_read(
    request: Request,
    notification_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Notification:
    return notifications.mark_as_read(db, principal, notification_id)


@app.delete("/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_notification(
    request: Request,
    notification_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Response:
    notifications.delete_notification(db, principal, notification_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.delete("/notifications")
@limiter.limit("10/minute")
def delete_old(
    request: Request,
    older_than_days: int = Query(30, ge=1),
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    return {"deleted": notifications.delete_old_notifications(db, principal, older_than_days)}


@app.post("/notifications/announcements", response_model=AnnouncementResult, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def announce(
    request: Request,
    body: AnnouncementCreate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> AnnouncementResult:
    recipients = notifications.broadcast_announcement(db, principal, body.title, body.message, body.type, body.role)
    return AnnouncementResult(recipients=recipients)


@app.post("/notifications/sweeps/reminders", dependencies=[Depends(require_service_key)])
def send_reminders(db: Session = Depends(get_db)) -> Dict[str, int]:
    return {"sent": notifications.send_due_reminders(db)}


def _authorize_stream(token: Optional[str]) -> Principal:
    db = SessionLocal()
    try:
        return authorize(db, token)
    finally:
        db.close()


def _parse_last_event_id(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.info("[SSE] ignoring malformed Last-Event-ID %r", raw)
        return None


@app.get("/notifications/stream")
@limiter.limit("10/minute")
async def stream(
    request: Request,
    access_token: Optional[str] = Query(None, description="For EventSource clients that cannot set headers"),
    header_token: Optional[str] = Depends(get_session_token),
) -> EventSourceResponse:
    """Live notifications for the signed-in user over Server-Sent Events.

    Browsers reconnect with ``Last-Event-ID`` and receive whatever they
    missed before live delivery resumes.
    """

    principal = await asyncio.to_thread(_authorize_stream, header_token or access_token)
    last_event_id = _parse_last_event_id(request.headers.get("Last-Event-ID"))
    user_id = principal.user_id

    events = notification_stream(
        user_id,
        load_snapshot=lambda: notifications.load_snapshot(user_id),
        load_missed=lambda after: notifications.load_missed(user_id, after),
        last_event_id=last_event_id,
        heartbeat_seconds=settings.sse_heartbeat_seconds,
        poll_seconds=settings.sse_poll_seconds,
    )
    return EventSourceResponse(
        events,
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
        },
    )
