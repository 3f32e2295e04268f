from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from hallbook import approvals
from hallbook.config import get_settings
from hallbook.database import Base, engine, get_db
from hallbook.dependencies import get_principal, get_session_token, require_role
from hallbook.errors import Forbidden, NotFound, Unauthenticated, install_error_handlers
from hallbook.identity import Principal, identity_provider, record_last_login
from hallbook.logging_middleware import add_audit_middleware
from hallbook.models import RegistrationStatus, RoleEnum, User
from hallbook.notifications import register_fanout
from hallbook.rate_limit import apply_rate_limiter, limiter
from hallbook.relay import register_relay
from hallbook.schemas import (
    ActivityPage,
    RegistrationRejection,
    RoleUpdate,
    StatusUpdate,
    Token,
    UserCreate,
    UserPage,
    UserRead,
    UserUpdate,
)

settings = get_settings()
require_admin = require_role(RoleEnum.ADMIN)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Users Service", version="1.0.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_audit_middleware(fastapi_app, "users")
    install_error_handlers(fastapi_app)
    register_fanout()
    register_relay()
    return fastapi_app


app = create_app()
_stop_login_tracking = identity_provider.on_session_change(record_last_login)


def _token(result) -> Token:
    return Token(access_token=result.session_token, user_id=result.user_id, expires_at=result.expires_at)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "users"}


@app.post("/users/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register_user(request: Request, user_in: UserCreate, db: Session = Depends(get_db)) -> User:
    return identity_provider.sign_up(
        db,
        name=user_in.name,
        email=user_in.email,
        password=user_in.password,
        role=user_in.role,
        phone=user_in.phone,
        employee_id=user_in.employee_id,
        department=user_in.department,
    )


@app.post("/users/login", response_model=Token)
@limiter.limit("10/minute")
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    return _token(identity_provider.sign_in(db, form_data.username, form_data.password))


@app.post("/users/logout", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
def logout(request: Request, token: Optional[str] = Depends(get_session_token), db: Session = Depends(get_db)) -> Response:
    if not token:
        raise Unauthenticated("Sign in to continue")
    identity_provider.sign_out(db, token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/users/refresh", response_model=Token)
@limiter.limit("20/minute")
def refresh(request: Request, token: Optional[str] = Depends(get_session_token), db: Session = Depends(get_db)) -> Token:
    return _token(identity_provider.refresh(db, token or ""))


@app.get("/users/me", response_model=UserRead)
@limiter.limit("60/minute")
def read_me(request: Request, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> User:
    user = db.get(User, principal.user_id)
    if user is None:
        raise NotFound("User not found")
    return user


@app.put("/users/me", response_model=UserRead)
@limiter.limit("10/minute")
def update_me(
    request: Request,
    user_update: UserUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> User:
    return approvals.update_user(db, principal, principal.user_id, **user_update.model_dump(exclude_unset=True))


@app.get("/users", response_model=UserPage)
@limiter.limit("20/minute")
def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    role: Optional[RoleEnum] = None,
    is_active: Optional[bool] = None,
    registration_status: Optional[RegistrationStatus] = None,
    search: Optional[str] = None,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return approvals.list_users(
        db,
        principal,
        page=page,
        page_size=page_size,
        role=role,
        is_active=is_active,
        search=search,
        registration_status=registration_status,
    )


@app.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_user(
    request: Request,
    user_in: UserCreate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    return approvals.create_user(
        db,
        principal,
        name=user_in.name,
        email=user_in.email,
        password=user_in.password,
        role=user_in.role,
        phone=user_in.phone,
        employee_id=user_in.employee_id,
        department=user_in.department,
    )


@app.get("/users/approvals/pending", response_model=List[UserRead])
@limiter.limit("30/minute")
def pending_approvals(request: Request, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)) -> List[User]:
    return approvals.list_pending_approvals(db, principal)


@app.post("/users/approvals/{email}/approve", response_model=UserRead)
@limiter.limit("30/minute")
def approve_registration(
    request: Request,
    email: str,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    return approvals.approve_user(db, principal, email)


@app.post("/users/approvals/{email}/reject", response_model=UserRead)
@limiter.limit("30/minute")
def reject_registration(
    request: Request,
    email: str,
    body: RegistrationRejection,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    return approvals.reject_user(db, principal, email, body.reason)


@app.get("/users/analytics")
@limiter.limit("20/minute")
def user_analytics(request: Request, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return approvals.get_user_analytics(db, principal)


@app.get("/users/activity", response_model=ActivityPage)
@limiter.limit("20/minute")
def activity_log(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return approvals.list_activity(db, principal, page=page, page_size=page_size)


@app.get("/users/{user_id}", response_model=UserRead)
@limiter.limit("30/minute")
def get_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> User:
    if principal.user_id != user_id and not principal.is_admin:
        raise Forbidden("Access denied")
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found", {"user_id": user_id})
    return user


@app.put("/users/{user_id}", response_model=UserRead)
@limiter.limit("10/minute")
def update_user(
    request: Request,
    user_id: int,
    user_update: UserUpdate,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
) -> User:
    return approvals.update_user(db, principal, user_id, **user_update.model_dump(exclude_unset=True))


@app.put("/users/{user_id}/role", response_model=UserRead)
@limiter.limit("10/minute")
def change_role(
    request: Request,
    user_id: int,
    body: RoleUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    return approvals.change_user_role(db, principal, user_id, body.role)


@app.put("/users/{user_id}/status", response_model=UserRead)
@limiter.limit("10/minute")
def change_status(
    request: Request,
    user_id: int,
    body: StatusUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    return approvals.toggle_active_status(db, principal, user_id, body.is_active)


@app.delete("/users/{user_id}")
@limiter.limit("10/minute")
def delete_user(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Dict[str, int]:
    return approvals.delete_user(db, principal, user_id)
