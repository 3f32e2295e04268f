"""Identity & role gate.

Every domain operation starts by resolving the caller's session token into a
:class:`Principal` through :func:`authorize`. The gate checks, in order:

1. the token decodes and names a live, unrevoked session;
2. the profile row exists (retried with backoff, it can lag sign-up);
3. the account is active, otherwise all its sessions are revoked;
4. the role meets ``required_role`` in the faculty < admin < super_admin order;
5. optionally, the registration has been approved by an admin.

:class:`LocalIdentityProvider` is the in-repo identity provider: it issues and
revokes the session tokens the gate consumes.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from .auth import authenticate_user, get_password_hash, issue_session_token, read_session_claims
from .config import get_settings
from .database import SessionLocal
from .dates import utcnow
from .errors import (
    AccountDeactivated,
    AccountNotApproved,
    Forbidden,
    InsufficientRole,
    ProfileNotReady,
    Unauthenticated,
    ValidationError,
)
from .events import SIGNED_IN, SIGNED_OUT, TOKEN_REFRESHED, USER_REGISTERED, DomainEvent, EventBus, event_bus
from .models import AuthSession, RegistrationStatus, RoleEnum, User
from .retry import lookup_with_backoff

logger = logging.getLogger(__name__)
settings = get_settings()

ROLE_RANK: Dict[RoleEnum, int] = {
    RoleEnum.FACULTY: 0,
    RoleEnum.ADMIN: 1,
    RoleEnum.SUPER_ADMIN: 2,
}
ADMIN_ROLES = (RoleEnum.ADMIN, RoleEnum.SUPER_ADMIN)


def role_at_least(role: RoleEnum, required: RoleEnum) -> bool:
    return ROLE_RANK[role] >= ROLE_RANK[required]


@dataclass(frozen=True)
class Principal:
    """The resolved caller. Never persisted, rebuilt from the user row."""

    user_id: int
    role: RoleEnum
    is_active: bool
    registration_status: RegistrationStatus
    email: str = ""
    name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            user_id=user.id,
            role=user.role,
            is_active=bool(user.is_active),
            registration_status=user.registration_status,
            email=user.email,
            name=user.name,
        )

    @property
    def is_admin(self) -> bool:
        return role_at_least(self.role, RoleEnum.ADMIN)

    @property
    def is_super_admin(self) -> bool:
        return self.role == RoleEnum.SUPER_ADMIN

    @property
    def approved_by_admin(self) -> bool:
        return self.registration_status == RegistrationStatus.APPROVED

    def require(self, required_role: RoleEnum) -> "Principal":
        if not role_at_least(self.role, required_role):
            raise InsufficientRole(
                f"This action requires the {required_role.value} role",
                {"required_role": required_role.value, "role": self.role.value},
            )
        return self

    def require_approved(self) -> "Principal":
        # admins are approved on creation; the gate only bites faculty
        if not self.is_admin and not self.approved_by_admin:
            raise AccountNotApproved(
                "Your account is awaiting admin approval",
                {"registration_status": self.registration_status.value},
            )
        return self


def revoke_sessions(db: Session, user_id: int, now: Optional[datetime] = None) -> int:
    """Mark every live session of ``user_id`` revoked. The caller commits."""

    revoked = (
        db.query(AuthSession)
        .filter(AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None))
        .update({AuthSession.revoked_at: now or utcnow()}, synchronize_session=False)
    )
    return revoked


def _load_principal(db: Session, user_id: int) -> Principal:
    def fetch() -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    user = lookup_with_backoff(fetch, on_retry=db.rollback)
    if user is None:
        raise ProfileNotReady("Your profile is still being set up, please retry shortly", {"user_id": user_id})
    return Principal.from_user(user)


def _deactivated(db: Session, user_id: int) -> AccountDeactivated:
    revoke_sessions(db, user_id)
    db.commit()
    return AccountDeactivated("This account has been deactivated", {"user_id": user_id})


def authorize(
    db: Session,
    session_token: Optional[str],
    required_role: Optional[RoleEnum] = None,
    *,
    require_approved: bool = False,
) -> Principal:
    """Resolve ``session_token`` into a :class:`Principal` or raise."""

    if not session_token:
        raise Unauthenticated("Sign in to continue")

    claims = read_session_claims(session_token)
    user_id = claims.user_id
    session_row = db.get(AuthSession, claims.session_id)
    if session_row is None or session_row.user_id != user_id or session_row.expires_at <= utcnow():
        raise Unauthenticated("Session has expired, sign in again")
    if session_row.revoked_at is not None:
        # a session revoked by deactivation reports why
        owner = db.query(User.is_active).filter(User.id == user_id).first()
        if owner is not None and not owner.is_active:
            raise AccountDeactivated("This account has been deactivated", {"user_id": user_id})
        raise Unauthenticated("Session has been signed out")

    principal = _load_principal(db, user_id)
    if not principal.is_active:
        raise _deactivated(db, user_id)
    if required_role is not None:
        principal.require(required_role)
    if require_approved:
        principal.require_approved()
    return principal


@dataclass(frozen=True)
class SignInResult:
    session_token: str
    user_id: int
    expires_at: datetime


@dataclass(frozen=True)
class SessionChange:
    event: str
    user_id: int


_SESSION_EVENTS = {SIGNED_IN: "signed_in", SIGNED_OUT: "signed_out", TOKEN_REFRESHED: "token_refreshed"}


class LocalIdentityProvider:
    """Issues, refreshes and revokes JWT session tokens backed by ``auth_sessions``."""

    def __init__(self, bus: EventBus = event_bus) -> None:
        self.bus = bus

    def _issue(self, db: Session, user_id: int) -> SignInResult:
        lifetime = timedelta(minutes=settings.access_token_expire_minutes)
        session_row = AuthSession(id=str(uuid.uuid4()), user_id=user_id, expires_at=utcnow() + lifetime)
        db.add(session_row)
        token = issue_session_token(user_id, session_row.id, lifetime)
        return SignInResult(session_token=token, user_id=user_id, expires_at=session_row.expires_at)

    def sign_up(
        self,
        db: Session,
        *,
        name: str,
        email: str,
        password: str,
        role: RoleEnum = RoleEnum.FACULTY,
        phone: Optional[str] = None,
        employee_id: Optional[str] = None,
        department: Optional[str] = None,
    ) -> User:
        """Public registration.

        Faculty start active but pending approval. An elevated role is only
        accepted while the system has no administrator yet (first-run
        bootstrap) and is approved straight away.
        """

        email = email.strip().lower()
        if not name or not name.strip():
            raise ValidationError("Name is required", {"field": "name"})
        if db.query(User.id).filter(User.email == email).first() is not None:
            raise ValidationError("An account with this email already exists", {"field": "email"})

        status = RegistrationStatus.PENDING
        if role != RoleEnum.FACULTY:
            admin_exists = db.query(User.id).filter(User.role.in_(ADMIN_ROLES)).first() is not None
            if admin_exists:
                raise Forbidden("Administrator accounts are created by an existing admin")
            status = RegistrationStatus.APPROVED

        user = User(
            name=name.strip(),
            email=email,
            hashed_password=get_password_hash(password),
            role=role,
            phone=phone,
            employee_id=employee_id,
            department=department,
            is_active=True,
            registration_status=status,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        self.bus.publish(USER_REGISTERED, user_id=user.id, role=user.role.value, registration_status=status.value)
        return user

    def sign_in(self, db: Session, email: str, password: str) -> SignInResult:
        user = authenticate_user(db, email, password)
        if user is None:
            raise Unauthenticated("Incorrect email or password")
        if not user.is_active:
            raise AccountDeactivated("This account has been deactivated", {"user_id": user.id})
        result = self._issue(db, user.id)
        db.commit()
        self.bus.publish(SIGNED_IN, user_id=user.id)
        return result

    def sign_out(self, db: Session, session_token: str) -> None:
        session_row = db.get(AuthSession, read_session_claims(session_token).session_id)
        if session_row is None or session_row.revoked_at is not None:
            return
        session_row.revoked_at = utcnow()
        db.commit()
        self.bus.publish(SIGNED_OUT, user_id=session_row.user_id)

    def refresh(self, db: Session, session_token: str) -> SignInResult:
        """Swap a live session for a new one with a fresh lifetime."""

        principal = authorize(db, session_token)
        old = db.get(AuthSession, read_session_claims(session_token).session_id)
        if old is not None:
            old.revoked_at = utcnow()
        result = self._issue(db, principal.user_id)
        db.commit()
        self.bus.publish(TOKEN_REFRESHED, user_id=principal.user_id)
        return result

    def on_session_change(self, callback: Callable[[SessionChange], None]) -> Callable[[], None]:
        def relay(event: DomainEvent) -> None:
            callback(SessionChange(event=_SESSION_EVENTS[event.name], user_id=event.payload["user_id"]))

        unsubscribers = [self.bus.subscribe(name, relay) for name in _SESSION_EVENTS]

        def unsubscribe() -> None:
            for undo in unsubscribers:
                undo()

        return unsubscribe


def record_last_login(change: SessionChange) -> None:
    """Stamp ``last_login_at`` in a session of its own; sign-in never waits on it."""

    if change.event != "signed_in":
        return
    db = SessionLocal()
    try:
        db.query(User).filter(User.id == change.user_id).update(
            {User.last_login_at: utcnow()}, synchronize_session=False
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not record last login for user %s", change.user_id)
    finally:
        db.close()


identity_provider = LocalIdentityProvider()
